# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, BinaryIO, Callable, Union

from twisted.internet.protocol import DatagramProtocol

from wazo_tftp.exceptions import PacketError
from wazo_tftp.options import MAX_BLKSIZE, TransferOptions, parse_request_options
from wazo_tftp.packet import (
    OP_RRQ,
    OP_WRQ,
    ErrorCode,
    RequestPacket,
    TransferMode,
    build_dgram,
    err_packet,
    parse_dgram,
)
from wazo_tftp.server.connection import (
    ReadConnection,
    WriteConnection,
    _AbstractConnection,
)
from wazo_tftp.server.service import (
    AbstractTFTPReadService,
    AbstractTFTPWriteService,
    TFTPRequest,
)

logger = logging.getLogger(__name__)

AcceptCallback = Callable[[BinaryIO], None]
RejectCallback = Callable[[Union[ErrorCode, int], str], None]


class ServerMode(str, Enum):
    GET_ONLY = 'get_only'
    PUT_ONLY = 'put_only'
    GET_AND_PUT = 'get_and_put'


class _Response:
    def __init__(self, freject: RejectCallback, faccept: AcceptCallback) -> None:
        self._answered = False
        self._do_reject = freject
        self._do_accept = faccept

    def _raise_if_answered(self) -> None:
        if self._answered:
            raise ValueError('Request has already been answered')
        else:
            self._answered = True

    def ignore(self) -> None:
        self._raise_if_answered()

    def reject(self, errcode: ErrorCode | int, errmsg: str) -> None:
        self._raise_if_answered()
        self._do_reject(errcode, errmsg)

    def accept(self, fobj: BinaryIO) -> None:
        self._raise_if_answered()
        self._do_accept(fobj)


def _file_size(fobj: BinaryIO) -> int | None:
    try:
        return os.fstat(fobj.fileno()).st_size
    except (AttributeError, OSError, ValueError):
        pass
    try:
        return len(fobj.getbuffer())  # type: ignore[attr-defined]
    except AttributeError:
        return None


class TFTPProtocol(DatagramProtocol):
    """Accept TFTP requests on the well-known port.

    Each accepted request is served by a new connection listening on its
    own port.

    """

    def __init__(
        self,
        service: AbstractTFTPReadService | AbstractTFTPWriteService | None = None,
        mode: ServerMode = ServerMode.GET_AND_PUT,
        interface: str = '',
        max_blksize: int = MAX_BLKSIZE,
        timeout: int = _AbstractConnection.timeout,
        max_retries: int = _AbstractConnection.max_retries,
        reactor: Any = None,
    ) -> None:
        if reactor is None:
            from twisted.internet import reactor
        self._service = service
        self.mode = ServerMode(mode)
        self.interface = interface
        self.max_blksize = max_blksize
        self.timeout = timeout
        self.max_retries = max_retries
        self._reactor = reactor
        self.active_connections: set[_AbstractConnection] = set()

    def set_tftp_request_processing_service(
        self, service: AbstractTFTPReadService | AbstractTFTPWriteService | None
    ) -> None:
        self._service = service

    def _send_error(self, errcode: ErrorCode, errmsg: str, addr: tuple[str, int]) -> None:
        self.transport.write(build_dgram(err_packet(errcode, errmsg)), addr)

    def _accepted_options(self, pkt: RequestPacket, fobj: BinaryIO) -> TransferOptions:
        requested = parse_request_options(pkt['options'])
        accepted = requested.model_dump(exclude_none=True)
        if requested.blksize is not None and requested.blksize > self.max_blksize:
            accepted['blksize'] = self.max_blksize
        if requested.tsize is not None and pkt['opcode'] == OP_RRQ:
            # the size on the wire is only known in octet mode
            size = _file_size(fobj) if pkt['mode'] == TransferMode.OCTET else None
            if size is None:
                del accepted['tsize']
            else:
                accepted['tsize'] = size
        return TransferOptions.model_validate(accepted)

    def _start_connection(
        self,
        connection_class: type[_AbstractConnection],
        pkt: RequestPacket,
        addr: tuple[str, int],
        fobj: BinaryIO,
    ) -> None:
        options = self._accepted_options(pkt, fobj)
        if not options.is_empty():
            logger.debug('Acknowledging TFTP options %s', options.to_packet_options())
        connection = connection_class(
            addr, fobj, pkt['mode'], options, clock=self._reactor
        )
        connection.timeout = options.timeout or self.timeout
        connection.max_retries = self.max_retries
        self.active_connections.add(connection)
        connection.finished.addBoth(self._connection_finished, connection)
        self._reactor.listenUDP(0, connection, interface=self.interface)

    def _connection_finished(self, result: Any, connection: _AbstractConnection) -> Any:
        self.active_connections.discard(connection)
        return result

    def _handle_request(self, pkt: RequestPacket, addr: tuple[str, int]) -> None:
        is_read = pkt['opcode'] == OP_RRQ
        kind = 'read' if is_read else 'write'
        service_class = AbstractTFTPReadService if is_read else AbstractTFTPWriteService
        if not isinstance(self._service, service_class):
            self._send_error(ErrorCode.UNDEFINED, 'service unavailable', addr)
            return

        if pkt['mode'] == TransferMode.MAIL:
            logger.warning('TFTP mode not supported: %s', pkt['mode'].value)
            self._send_error(ErrorCode.UNDEFINED, 'mode not supported', addr)
            return

        def on_reject(errcode: ErrorCode | int, errmsg: str) -> None:
            logger.info('TFTP %s request rejected: %s', kind, errmsg)
            self._send_error(errcode, errmsg, addr)

        def on_accept(fobj: BinaryIO) -> None:
            logger.info('TFTP %s request accepted', kind)
            connection_class = ReadConnection if is_read else WriteConnection
            self._start_connection(connection_class, pkt, addr, fobj)

        request: TFTPRequest = {'address': addr, 'packet': pkt}
        response = _Response(on_reject, on_accept)
        if is_read:
            self._service.handle_read_request(request, response)  # type: ignore[union-attr]
        else:
            self._service.handle_write_request(request, response)  # type: ignore[union-attr]

    def _handle_rrq(self, pkt: RequestPacket, addr: tuple[str, int]) -> None:
        if self.mode == ServerMode.PUT_ONLY:
            logger.info('TFTP read request refused, server is put only')
            self._send_error(ErrorCode.ILLEGAL_OPERATION, 'RRQ not supported', addr)
        else:
            self._handle_request(pkt, addr)

    def _handle_wrq(self, pkt: RequestPacket, addr: tuple[str, int]) -> None:
        if self.mode == ServerMode.GET_ONLY:
            logger.info('TFTP write request refused, server is get only')
            self._send_error(ErrorCode.ILLEGAL_OPERATION, 'WRQ not supported', addr)
        else:
            self._handle_request(pkt, addr)

    def datagramReceived(self, dgram: bytes, addr: tuple[str, int]) -> None:
        try:
            pkt = parse_dgram(dgram)
        except PacketError as e:
            # invalid datagram - ignore it
            logger.info('Received invalid TFTP datagram from %s: %s', addr, e)
        else:
            if pkt['opcode'] == OP_WRQ:
                logger.info('TFTP write request from %s', addr)
                request_pkt: RequestPacket = pkt  # type: ignore[assignment]
                self._handle_wrq(request_pkt, addr)
            elif pkt['opcode'] == OP_RRQ:
                logger.info('TFTP read request from %s', addr)
                request_pkt: RequestPacket = pkt  # type: ignore[assignment,no-redef]
                self._handle_rrq(request_pkt, addr)
            else:
                logger.info('Ignoring non-request packet from %s', addr)
