# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""TFTP client and server configuration module.

Read raw parameter values from different sources and return a validated
configuration. The sources are, by order of priority:
    the command line
    the YAML files of the extra_config_files directory, in alphabetical order
    the YAML config_file
    the default values

The following parameters are defined:
    config_file
    extra_config_files
    general:
        verbose
        log_file
    client:
        timeout
            Seconds to wait for an answer before retransmitting.
        max_timeouts
            How many retransmissions before giving up.
        mode
            octet or netascii
        blksize
            The block size to request, none for the RFC 1350 default.
        tsize
            Request the transfer size option.
        local_address
        local_port
    server:
        listen_interface
        port
        directory
        mode
            get_only, put_only or get_and_put
        allow_overwrite
        timeout
        max_retries
        max_blksize

"""
from __future__ import annotations

import copy
import logging
import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from twisted.python import usage

from wazo_tftp.options import MAX_BLKSIZE, MAX_TIMEOUT, MIN_BLKSIZE, MIN_TIMEOUT
from wazo_tftp.packet import TransferMode
from wazo_tftp.server.proto import ServerMode

logger = logging.getLogger(__name__)

DEFAULT_PORT = 69

_DEFAULT_CONFIG: dict[str, Any] = {
    'config_file': '/etc/wazo-tftp/config.yml',
    'extra_config_files': '/etc/wazo-tftp/conf.d',
    'general': {
        'verbose': False,
        'log_file': None,
    },
    'client': {
        'timeout': 5.0,
        'max_timeouts': 5,
        'mode': 'octet',
        'blksize': None,
        'tsize': False,
        'local_address': '',
        'local_port': 0,
    },
    'server': {
        'listen_interface': '',
        'port': DEFAULT_PORT,
        'directory': '/var/lib/wazo-tftp',
        'mode': 'get_only',
        'allow_overwrite': False,
        'timeout': 4,
        'max_retries': 4,
        'max_blksize': MAX_BLKSIZE,
    },
}

_OPTION_TO_PARAM_LIST = [
    # (<option name, (<section, param name>)>)
    ('log-file', ('general', 'log_file')),
]

_CLIENT_OPTION_TO_PARAM_LIST = [
    ('timeout', ('client', 'timeout')),
    ('max-timeouts', ('client', 'max_timeouts')),
    ('blksize', ('client', 'blksize')),
    ('local-port', ('client', 'local_port')),
]

_SERVER_OPTION_TO_PARAM_LIST = [
    ('port', ('server', 'port')),
    ('interface', ('server', 'listen_interface')),
    ('directory', ('server', 'directory')),
    ('mode', ('server', 'mode')),
    ('timeout', ('server', 'timeout')),
]


class ConfigError(Exception):
    """Raise when an error occur while getting configuration."""

    pass


class GeneralConfig(BaseModel):
    verbose: bool = False
    log_file: Optional[str] = None


class ClientConfig(BaseModel):
    timeout: float = Field(5.0, gt=0)
    max_timeouts: int = Field(5, ge=1)
    mode: TransferMode = TransferMode.OCTET
    blksize: Optional[int] = Field(None, ge=MIN_BLKSIZE, le=MAX_BLKSIZE)
    tsize: bool = False
    local_address: str = ''
    local_port: int = Field(0, ge=0, le=65535)


class ServerConfig(BaseModel):
    listen_interface: str = ''
    port: int = Field(DEFAULT_PORT, ge=0, le=65535)
    directory: str
    mode: ServerMode = ServerMode.GET_ONLY
    allow_overwrite: bool = False
    timeout: int = Field(4, ge=MIN_TIMEOUT, le=MAX_TIMEOUT)
    max_retries: int = Field(4, ge=1)
    max_blksize: int = Field(MAX_BLKSIZE, ge=MIN_BLKSIZE, le=MAX_BLKSIZE)


class TFTPConfig(BaseModel):
    config_file: str
    extra_config_files: str
    general: GeneralConfig
    client: ClientConfig
    server: ServerConfig


def parse_host_port(value: str, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """Split 'host[:port]' in a (host, port) tuple.

    IPv6 addresses with a port must be written between brackets, i.e.
    '[::1]:6969'.

    """
    if value.startswith('['):
        host, sep, rest = value[1:].partition(']')
        if not sep or (rest and not rest.startswith(':')):
            raise usage.UsageError(f'invalid address {value!r}')
        port = rest[1:]
    elif value.count(':') == 1:
        host, port = value.split(':')
    else:
        host, port = value, ''
    if not host:
        raise usage.UsageError(f'missing host in {value!r}')
    if not port:
        return host, default_port
    try:
        return host, int(port)
    except ValueError:
        raise usage.UsageError(f'invalid port {port!r}')


class _TransferOptions(usage.Options):
    optFlags = [
        ('ascii', 'a', 'Use netascii transfer mode.'),
        ('binary', 'b', 'Use octet transfer mode (the default).'),
        ('tsize', 'T', 'Request the transfer size option.'),
    ]

    optParameters = [
        ('timeout', 't', None, 'Seconds to wait for an answer before retransmitting.', float),
        ('max-timeouts', 'r', None, 'Number of retransmissions before giving up.', int),
        ('blksize', 'B', None, 'The block size to request.', int),
        ('local-port', None, None, 'The local port to send from.', int),
    ]

    def postOptions(self) -> None:
        if self['ascii'] and self['binary']:
            raise usage.UsageError('--ascii and --binary are mutually exclusive')


class GetOptions(_TransferOptions):
    synopsis = '[options] host[:port] remotefile localfile'

    def parseArgs(self, address: str, remote_file: str, local_file: str) -> None:
        self['host'], self['port'] = parse_host_port(address)
        self['remote_file'] = remote_file
        self['local_file'] = local_file


class PutOptions(_TransferOptions):
    synopsis = '[options] host[:port] localfile remotefile'

    def parseArgs(self, address: str, local_file: str, remote_file: str) -> None:
        self['host'], self['port'] = parse_host_port(address)
        self['local_file'] = local_file
        self['remote_file'] = remote_file


class ServeOptions(usage.Options):
    optParameters = [
        ('port', 'p', None, 'The TFTP port to listen on.', int),
        ('interface', 'i', None, 'The interface to listen on.'),
        ('directory', 'd', None, 'The directory files are served from.'),
        ('mode', 'm', None, 'get_only, put_only or get_and_put.'),
        ('timeout', 't', None, 'Seconds to wait for an answer before retransmitting.', int),
    ]


class Options(usage.Options):
    # The 'stderr' option should probably be defined somewhere else but
    # it's more practical to define it here. It SHOULD NOT be inserted
    # in the config though.
    optFlags = [
        ('stderr', 's', 'Log to standard error instead of the log file.'),
        ('verbose', 'v', 'Increase verbosity (trace every packet).'),
    ]

    optParameters = [
        ('config-file', 'f', None, 'The configuration file'),
        ('log-file', 'l', None, 'The log file'),
    ]

    subCommands = [
        ('get', None, GetOptions, 'Receive a file from a TFTP server'),
        ('put', None, PutOptions, 'Send a file to a TFTP server'),
        ('serve', None, ServeOptions, 'Run a TFTP server'),
    ]

    def postOptions(self) -> None:
        if getattr(self, 'subCommand', None) is None:
            raise usage.UsageError('missing command')


def _set_params(
    raw_config: dict[str, Any],
    options: usage.Options,
    option_to_param_list: list[tuple[str, tuple[str, str]]],
) -> None:
    for option_name, (section, param_name) in option_to_param_list:
        if options[option_name] is not None:
            raw_config.setdefault(section, {})[param_name] = options[option_name]


def _convert_cli_to_config(options: Options) -> dict[str, Any]:
    raw_config: dict[str, Any] = {'general': {}, 'client': {}, 'server': {}}
    if options['config-file'] is not None:
        raw_config['config_file'] = options['config-file']
    _set_params(raw_config, options, _OPTION_TO_PARAM_LIST)
    if options['verbose']:
        raw_config['general']['verbose'] = True

    sub_options = options.subOptions
    if options.subCommand in ('get', 'put'):
        _set_params(raw_config, sub_options, _CLIENT_OPTION_TO_PARAM_LIST)
        if sub_options['ascii']:
            raw_config['client']['mode'] = TransferMode.NETASCII.value
        elif sub_options['binary']:
            raw_config['client']['mode'] = TransferMode.OCTET.value
        if sub_options['tsize']:
            raw_config['client']['tsize'] = True
    elif options.subCommand == 'serve':
        _set_params(raw_config, sub_options, _SERVER_OPTION_TO_PARAM_LIST)
    return raw_config


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def parse_config_file(config_file: str) -> dict[str, Any]:
    """Return the content of a YAML config file, or {} if it does not exist."""
    try:
        with open(config_file) as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug('Config file %s not found', config_file)
        return {}
    except OSError as e:
        raise ConfigError(f'Could not read config file {config_file}: {e}')
    except yaml.YAMLError as e:
        raise ConfigError(f'Invalid YAML in config file {config_file}: {e}')
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f'Config file {config_file} is not a mapping')
    return content


def read_config_file_hierarchy(config: dict[str, Any]) -> dict[str, Any]:
    """Return the merged content of the config file and its extra config files."""
    file_config = parse_config_file(config['config_file'])
    extra_config_files = file_config.get(
        'extra_config_files', config['extra_config_files']
    )
    try:
        names = sorted(
            name for name in os.listdir(extra_config_files) if name.endswith('.yml')
        )
    except OSError:
        logger.debug('Extra config directory %s not readable', extra_config_files)
        names = []
    for name in names:
        extra_config = parse_config_file(os.path.join(extra_config_files, name))
        file_config = _merge(file_config, extra_config)
    return file_config


def build_config(raw_config: dict[str, Any]) -> TFTPConfig:
    try:
        return TFTPConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f'Invalid configuration: {e}')


def get_config(argv: Options) -> TFTPConfig:
    """Pull the raw parameters values from the configuration sources and
    return a validated config.
    """
    cli_config = _convert_cli_to_config(argv)
    file_config = read_config_file_hierarchy(_merge(_DEFAULT_CONFIG, cli_config))
    raw_config = _merge(_merge(_DEFAULT_CONFIG, file_config), cli_config)
    return build_config(raw_config)
