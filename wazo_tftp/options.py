# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""TFTP option extension (RFC 2347) and the options we support.

- blksize (RFC 2348)
- timeout and tsize (RFC 2349)

"""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wazo_tftp.exceptions import OptionNegotiationError
from wazo_tftp.packet import DEFAULT_BLKSIZE, ErrorCode, PacketOptions

logger = logging.getLogger(__name__)

OPT_BLKSIZE = 'blksize'
OPT_TIMEOUT = 'timeout'
OPT_TSIZE = 'tsize'

MIN_BLKSIZE = 8
MAX_BLKSIZE = 65464
MIN_TIMEOUT = 1
MAX_TIMEOUT = 255


class TransferOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    blksize: Optional[int] = Field(None, ge=MIN_BLKSIZE, le=MAX_BLKSIZE)
    timeout: Optional[int] = Field(None, ge=MIN_TIMEOUT, le=MAX_TIMEOUT)
    tsize: Optional[int] = Field(None, ge=0)

    @property
    def effective_blksize(self) -> int:
        return self.blksize or DEFAULT_BLKSIZE

    def is_empty(self) -> bool:
        return not self.to_packet_options()

    def to_packet_options(self) -> PacketOptions:
        """Return the options as they must appear in a request or an OACK."""
        return {
            name: str(value)
            for name, value in self.model_dump(exclude_none=True).items()
        }


def _negotiation_error(msg: str) -> OptionNegotiationError:
    return OptionNegotiationError(ErrorCode.OPTION_NEGOTIATION_FAILED, msg)


def negotiate_options(
    requested: TransferOptions, oack_options: PacketOptions
) -> TransferOptions:
    """Return the options accepted by the server in its OACK.

    Raise an OptionNegotiationError if the server acknowledged an option we
    did not request, or if an acknowledged value is not acceptable.

    """
    requested_options = requested.to_packet_options()
    for name in oack_options:
        if name not in requested_options:
            raise _negotiation_error(f'option {name!r} was not requested')

    try:
        accepted = TransferOptions.model_validate(oack_options)
    except ValidationError as e:
        logger.info('Invalid option values in OACK: %s', e)
        raise _negotiation_error('invalid option value')

    if accepted.blksize is not None and accepted.blksize > requested.effective_blksize:
        raise _negotiation_error('blksize larger than requested')
    if accepted.timeout is not None and accepted.timeout != requested.timeout:
        raise _negotiation_error('timeout different than requested')
    return accepted


def _parse_option(name: str, value: str) -> dict[str, Any]:
    try:
        TransferOptions.model_validate({name: value})
    except ValidationError:
        logger.info('Ignoring invalid option value %s=%r', name, value)
        return {}
    return {name: value}


def parse_request_options(options: PacketOptions) -> TransferOptions:
    """Return the options of a request we know about.

    Unknown options and invalid values are silently dropped, as a server
    is expected to do per RFC 2347.

    """
    known: dict[str, Any] = {}
    for name, value in options.items():
        if name in TransferOptions.model_fields:
            known.update(_parse_option(name, value))
        else:
            logger.debug('Ignoring unsupported option %s', name)
    return TransferOptions.model_validate(known)
