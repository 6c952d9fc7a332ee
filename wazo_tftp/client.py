# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""TFTP client.

Example::

    with TFTPClient(timeout=2.0) as client, open('phone.cfg', 'wb') as fobj:
        client.receive_file('phone.cfg', fobj, '10.0.0.1')

"""
from __future__ import annotations

import logging
import socket
from typing import BinaryIO

from wazo_tftp.exceptions import TransportError, UnsupportedModeError
from wazo_tftp.options import TransferOptions
from wazo_tftp.packet import TransferMode
from wazo_tftp.session import (
    DEFAULT_MAX_RETRIES,
    ReadSession,
    WriteSession,
    _AbstractSession,
)
from wazo_tftp.transport import DEFAULT_TIMEOUT, DatagramTransport, resolve_address

logger = logging.getLogger(__name__)

DEFAULT_PORT = 69
DEFAULT_MAX_TIMEOUTS = DEFAULT_MAX_RETRIES


class TFTPClient:
    """Transfer files from and to TFTP servers.

    The transport can be opened explicitly with the open method, in which
    case it is reused by every transfer until close is called. Else it is
    opened at the start of each transfer and closed at its end.

    Calling close from another thread cancels the transfer in progress.

    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_timeouts: int = DEFAULT_MAX_TIMEOUTS,
        options: TransferOptions | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_timeouts = max_timeouts
        self.options = options or TransferOptions()
        self.total_bytes_received = 0
        self.total_bytes_sent = 0
        self._transport: DatagramTransport | None = None

    def __enter__(self) -> TFTPClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def max_timeouts(self) -> int:
        return self._max_timeouts

    @max_timeouts.setter
    def max_timeouts(self, value: int) -> None:
        self._max_timeouts = max(1, value)

    @property
    def is_open(self) -> bool:
        return self._transport is not None and self._transport.is_open

    def open(
        self,
        local_port: int = 0,
        local_address: str = '',
        family: socket.AddressFamily = socket.AF_INET,
    ) -> None:
        if self.is_open:
            raise TransportError('client already open')
        transport = DatagramTransport(self.timeout)
        transport.open(local_port, local_address, family)
        self._transport = transport

    def close(self) -> None:
        transport = self._transport
        if transport is not None:
            transport.close()

    def _transfer(
        self,
        session_class: type[_AbstractSession],
        filename: str,
        fobj: BinaryIO,
        host: str,
        port: int,
        mode: TransferMode | str,
        options: TransferOptions | None,
        newline: bytes,
        counter: str,
    ) -> _AbstractSession:
        mode = TransferMode(mode)
        if mode == TransferMode.MAIL:
            raise UnsupportedModeError('mail mode is not supported')

        family, address = resolve_address(host, port)
        implicit_open = not self.is_open
        if implicit_open:
            self.open(family=family)
        transport = self._transport
        try:
            session = session_class(
                transport,
                address,
                filename,
                fobj,
                mode=mode,
                options=options if options is not None else self.options,
                max_retries=self.max_timeouts,
                newline=newline,
            )
            try:
                session.run()
            finally:
                setattr(self, counter, session.bytes_transferred)
        finally:
            if implicit_open:
                transport.close()
        return session

    def receive_file(
        self,
        filename: str,
        output: BinaryIO,
        host: str,
        port: int = DEFAULT_PORT,
        mode: TransferMode | str = TransferMode.OCTET,
        options: TransferOptions | None = None,
        newline: bytes = b'\n',
    ) -> int:
        """Download filename from the server and write it to output.

        Return the number of bytes received. Data written to output before a
        failure is left as is. In netascii mode, line endings are written as
        newline.

        """
        logger.info('Receiving %r from %s:%s in %s mode', filename, host, port, mode)
        self.total_bytes_received = 0
        session = self._transfer(
            ReadSession,
            filename,
            output,
            host,
            port,
            mode,
            options,
            newline,
            'total_bytes_received',
        )
        return session.bytes_transferred

    def send_file(
        self,
        filename: str,
        input: BinaryIO,
        host: str,
        port: int = DEFAULT_PORT,
        mode: TransferMode | str = TransferMode.OCTET,
        options: TransferOptions | None = None,
        newline: bytes = b'\n',
    ) -> int:
        """Upload the content of input to the server as filename.

        Return the number of bytes sent. In netascii mode, newline is the
        line ending of input: with b'\\r\\n', its CR LF are sent unchanged.

        """
        logger.info('Sending %r to %s:%s in %s mode', filename, host, port, mode)
        self.total_bytes_sent = 0
        session = self._transfer(
            WriteSession,
            filename,
            input,
            host,
            port,
            mode,
            options,
            newline,
            'total_bytes_sent',
        )
        return session.bytes_transferred
