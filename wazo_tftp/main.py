# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Callable

from twisted.logger import STDLibLogObserver, globalLogBeginner
from twisted.python import usage

from wazo_tftp.client import TFTPClient
from wazo_tftp.config import ConfigError, Options, TFTPConfig, get_config
from wazo_tftp.exceptions import TFTPError
from wazo_tftp.options import TransferOptions
from wazo_tftp.server import TFTPFileService, TFTPLogService, TFTPProtocol
from wazo_tftp.transport import resolve_address

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] (%(levelname)s) (%(name)s): %(message)s'


def setup_logging(
    log_file: str | None = None,
    debug: bool = False,
    default_level: int = logging.INFO,
) -> None:
    root_logger = logging.getLogger()
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if debug else default_level)


# redirect twisted logs to standard logging
def twistd_logs() -> Callable[[dict[str, Any]], None]:
    return STDLibLogObserver()


def _transfer_options(config: TFTPConfig, tsize: int | None) -> TransferOptions:
    return TransferOptions(
        blksize=config.client.blksize,
        tsize=tsize if config.client.tsize else None,
    )


def run_client(command: str, sub_options: usage.Options, config: TFTPConfig) -> int:
    client = TFTPClient(
        timeout=config.client.timeout, max_timeouts=config.client.max_timeouts
    )
    failed = False
    try:
        family, _ = resolve_address(sub_options['host'], sub_options['port'])
        client.open(config.client.local_port, config.client.local_address, family)
        if command == 'get':
            with open(sub_options['local_file'], 'wb') as fobj:
                client.receive_file(
                    sub_options['remote_file'],
                    fobj,
                    sub_options['host'],
                    sub_options['port'],
                    config.client.mode,
                    _transfer_options(config, 0),
                )
        else:
            with open(sub_options['local_file'], 'rb') as fobj:
                client.send_file(
                    sub_options['remote_file'],
                    fobj,
                    sub_options['host'],
                    sub_options['port'],
                    config.client.mode,
                    _transfer_options(config, os.fstat(fobj.fileno()).st_size),
                )
    except (TFTPError, OSError) as e:
        logger.error('Transfer failed: %s', e)
        failed = True
    finally:
        client.close()

    print(f'Recd: {client.total_bytes_received} Sent: {client.total_bytes_sent}')
    if failed:
        print('Failed')
        return 1
    print('OK')
    return 0


def run_server(config: TFTPConfig) -> int:
    from twisted.internet import reactor

    server_config = config.server
    globalLogBeginner.beginLoggingTo([twistd_logs()], redirectStandardIO=False)
    service = TFTPLogService(
        logger.info,
        TFTPFileService(server_config.directory, server_config.allow_overwrite),
    )
    protocol = TFTPProtocol(
        service,
        mode=server_config.mode,
        interface=server_config.listen_interface,
        max_blksize=server_config.max_blksize,
        timeout=server_config.timeout,
        max_retries=server_config.max_retries,
    )
    reactor.listenUDP(
        server_config.port, protocol, interface=server_config.listen_interface
    )
    logger.info(
        'Serving %s on port %s (%s)',
        server_config.directory,
        server_config.port,
        server_config.mode.value,
    )
    reactor.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    options = Options()
    try:
        options.parseOptions(argv)
    except usage.UsageError as e:
        print(f'{options}\n{sys.argv[0]}: {e}', file=sys.stderr)
        return 2

    try:
        config = get_config(options)
    except ConfigError as e:
        print(f'{sys.argv[0]}: {e}', file=sys.stderr)
        return 1

    is_server = options.subCommand == 'serve'
    log_file = None if options['stderr'] else config.general.log_file
    setup_logging(
        log_file,
        debug=config.general.verbose,
        default_level=logging.INFO if is_server else logging.WARNING,
    )
    if is_server:
        return run_server(config)
    return run_client(options.subCommand, options.subOptions, config)


if __name__ == '__main__':
    sys.exit(main())
