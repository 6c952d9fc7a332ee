# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Exceptions raised by the TFTP client and server."""
from __future__ import annotations


class TFTPError(Exception):
    """Base class of every TFTP related error."""


class PacketError(TFTPError):
    """Raise when a problem with building a datagram arise."""


class MalformedPacketError(PacketError):
    """Raise when a received datagram can't be parsed.

    The address the datagram came from is available as the 'address'
    attribute when it is known.

    """

    def __init__(self, msg: str, address: tuple | None = None) -> None:
        super().__init__(msg)
        self.address = address


class TransferTimeoutError(TFTPError, TimeoutError):
    """Raise when the remote host stopped answering."""


class ProtocolError(TFTPError):
    """Raise when the transfer is aborted by an error packet."""

    def __init__(self, errcode: int, errmsg: str) -> None:
        super().__init__(f'TFTP error {int(errcode)}: {errmsg}')
        self.errcode = errcode
        self.errmsg = errmsg


class IllegalPacketError(ProtocolError):
    """Raise when the remote host sent a packet we can't accept now."""


class OptionNegotiationError(ProtocolError):
    """Raise when the options acknowledged by the server are not acceptable."""


class TransportError(TFTPError):
    """Raise on a socket level failure."""


class TransportClosedError(TransportError):
    """Raise when the transport is used, or waited on, after being closed."""


class UnsupportedModeError(TFTPError, ValueError):
    """Raise when a transfer in an unsupported mode (i.e. mail) is asked."""
