# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Manage one transfer between the client and a TFTP server.

A session is synchronous: it sends a packet, then blocks on the transport
until the expected answer is received, retransmitting the last packet each
time the timeout expires.

"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import BinaryIO

from wazo_tftp.exceptions import (
    IllegalPacketError,
    MalformedPacketError,
    OptionNegotiationError,
    ProtocolError,
    TransferTimeoutError,
    TransportError,
    UnsupportedModeError,
)
from wazo_tftp.netascii import open_reader, open_writer
from wazo_tftp.options import TransferOptions, negotiate_options
from wazo_tftp.packet import (
    DEFAULT_BLKSIZE,
    OP_ACK,
    OP_DATA,
    OP_ERR,
    OP_OACK,
    DataPacket,
    ErrorCode,
    OptionAckPacket,
    Packet,
    RequestPacket,
    TransferMode,
    ack_packet,
    data_packet,
    err_packet,
    format_packet,
    next_blkno,
    opcode_name,
    rrq_packet,
    wrq_packet,
)
from wazo_tftp.transport import Address, DatagramTransport

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


class SessionState(Enum):
    REQUESTING = 'requesting'
    AWAITING_OACK = 'awaiting_oack'
    TRANSFERRING = 'transferring'
    COMPLETED = 'completed'
    FAILED = 'failed'


class _AbstractSession:
    """Represent a transfer from the point of view of the client.

    The '_request_packet' method MUST be overridden in derived class. It
    returns the request (RRQ or WRQ) starting the transfer.

    The '_handle_packet' method MUST be overridden in derived class. It is
    called with every packet received from the server, except error packets,
    and must update the state of the session, usually sending the next
    packet.

    """

    def __init__(
        self,
        transport: DatagramTransport,
        server_address: Address,
        filename: str,
        mode: TransferMode = TransferMode.OCTET,
        options: TransferOptions | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        newline: bytes = b'\n',
    ) -> None:
        if mode == TransferMode.MAIL:
            raise UnsupportedModeError('mail mode is not supported')
        self.filename = filename
        self.mode = TransferMode(mode)
        self.max_retries = max_retries
        # the local line ending, used in netascii mode only
        self.newline = newline
        self.state = SessionState.REQUESTING
        self.blksize = DEFAULT_BLKSIZE
        self.negotiated_options = TransferOptions()
        self.bytes_transferred = 0
        # the server address and port (TID), locked on the first reply
        self.remote_address: Address | None = None
        self._transport = transport
        self._server_address = server_address
        self._requested_options = options or TransferOptions()
        self._timeout = transport.timeout
        self._last_packet: Packet = None  # type: ignore[assignment]
        self._retry_cnt = 0

    def _request_packet(self) -> RequestPacket:
        """Return the request starting the transfer.

        Must be overridden in derived class.
        """
        raise NotImplementedError('Must be implemented in derived class')

    def _handle_packet(self, packet: Packet) -> None:
        """Handle a packet received from the server.

        Must be overridden in derived class.
        """
        raise NotImplementedError('Must be implemented in derived class')

    @property
    def _peer_address(self) -> Address:
        return self.remote_address or self._server_address

    def run(self) -> int:
        """Do the transfer and return the number of bytes transferred."""
        try:
            # datagrams still queued from a previous transfer on this transport
            self._transport.discard_pending_packets()
            self._send_packet(self._request_packet())
            if not self._requested_options.is_empty():
                self.state = SessionState.AWAITING_OACK
            while self.state != SessionState.COMPLETED:
                self._handle_packet(self._receive_reply())
        except BaseException:
            self.state = SessionState.FAILED
            raise
        logger.info(
            'Transfer of %r completed: %s bytes', self.filename, self.bytes_transferred
        )
        return self.bytes_transferred

    def _send_packet(self, packet: Packet) -> None:
        """Send a new packet, which becomes the one to retransmit on timeout."""
        self._retry_cnt = 0
        self._last_packet = packet
        self._send(packet)

    def _send_last_packet(self) -> None:
        self._send(self._last_packet)

    def _send(self, packet: Packet) -> None:
        logger.debug('> %s', format_packet(packet))
        self._transport.send(packet, self._peer_address)

    def _send_error(self, errcode: ErrorCode, errmsg: str) -> None:
        try:
            self._send(err_packet(errcode, errmsg))
        except TransportError as e:
            logger.warning('Could not send error packet to server: %s', e)

    def _timeout_expired(self) -> None:
        if self._retry_cnt >= self.max_retries:
            raise TransferTimeoutError(
                f'Connection timed out after {self._retry_cnt} retransmissions'
            )
        self._retry_cnt += 1
        logger.info(
            'Timeout has expired, retransmitting %s (retry %s/%s)',
            opcode_name(self._last_packet['opcode']),
            self._retry_cnt,
            self.max_retries,
        )
        self._send_last_packet()

    def _accept_source(self, address: Address) -> bool:
        if address[0] != self._server_address[0]:
            logger.info('Ignoring datagram from unexpected host %s', address)
            return False
        if self.remote_address is None:
            logger.debug('Transfer ID of the server is port %s', address[1])
            self.remote_address = address
        elif address[1] != self.remote_address[1]:
            logger.info('Ignoring datagram with wrong TID from %s', address)
            return False
        return True

    def _receive_reply(self) -> Packet:
        """Return the next packet sent by the server.

        Foreign and invalid datagrams are dropped without restarting the
        timeout. An error packet ends the transfer.

        """
        deadline = time.monotonic() + self._timeout
        while True:
            try:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransferTimeoutError('attempt timed out')
                packet, address = self._transport.receive(remaining)
            except TransferTimeoutError:
                self._timeout_expired()
                deadline = time.monotonic() + self._timeout
                continue
            except MalformedPacketError as e:
                logger.info('Received an invalid datagram from %s: %s', e.address, e)
                continue

            if not self._accept_source(address):
                continue
            logger.debug('< %s', format_packet(packet))
            if packet['opcode'] == OP_ERR:
                logger.info('Received an error packet')
                raise ProtocolError(packet['errcode'], packet['errmsg'])  # type: ignore[typeddict-item]
            return packet

    def _illegal_packet(self, packet: Packet, errmsg: str = 'Illegal TFTP operation') -> None:
        logger.info(
            'Received an unexpected packet - %s', opcode_name(packet['opcode'])
        )
        self._send_error(ErrorCode.ILLEGAL_OPERATION, errmsg)
        raise IllegalPacketError(ErrorCode.ILLEGAL_OPERATION, errmsg)

    def _handle_oack(self, packet: OptionAckPacket) -> None:
        try:
            accepted = negotiate_options(self._requested_options, packet['options'])
        except OptionNegotiationError as e:
            logger.info('Refusing options acknowledged by server: %s', e.errmsg)
            self._send_error(ErrorCode.OPTION_NEGOTIATION_FAILED, e.errmsg)
            raise
        if accepted.is_empty():
            logger.info('Server acknowledged no option, using defaults')
        self.negotiated_options = accepted
        self.blksize = accepted.effective_blksize
        if accepted.timeout is not None:
            self._timeout = float(accepted.timeout)
        self.state = SessionState.TRANSFERRING

    def _start_without_options(self) -> None:
        if self.state == SessionState.AWAITING_OACK:
            logger.info('Server ignored the requested options, using defaults')
        self.state = SessionState.TRANSFERRING


class ReadSession(_AbstractSession):
    """Receive a file from the server (RRQ)."""

    def __init__(self, transport: DatagramTransport, server_address: Address,
                 filename: str, output: BinaryIO, **kwargs) -> None:
        super().__init__(transport, server_address, filename, **kwargs)
        self._writer = open_writer(output, self.mode, self.newline)
        # the block number we are waiting for
        self._blk_no = 1
        self._last_blk_no: int | None = None

    def _request_packet(self) -> RequestPacket:
        return rrq_packet(
            self.filename, self.mode, self._requested_options.to_packet_options()
        )

    def _handle_packet(self, packet: Packet) -> None:
        opcode = packet['opcode']
        if opcode == OP_DATA:
            data_pkt: DataPacket = packet  # type: ignore[assignment]
            self._handle_data(data_pkt)
        elif opcode == OP_OACK and self.state == SessionState.AWAITING_OACK:
            oack_pkt: OptionAckPacket = packet  # type: ignore[assignment]
            self._handle_oack(oack_pkt)
            self._last_blk_no = 0
            self._send_packet(ack_packet(0))
        elif opcode == OP_OACK and self._last_blk_no == 0:
            # our ACK of the OACK was lost
            self._send_last_packet()
        else:
            self._illegal_packet(packet)

    def _write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
        except OSError:
            self._send_error(ErrorCode.DISK_FULL, 'File write failed')
            raise

    def _handle_data(self, packet: DataPacket) -> None:
        blk_no = packet['blkno']
        if blk_no == self._blk_no:
            if self.state != SessionState.TRANSFERRING:
                self._start_without_options()
            data = packet['data']
            if len(data) > self.blksize:
                self._illegal_packet(packet, 'Block larger than block size')
            self._write(data)
            self.bytes_transferred += len(data)
            self._last_blk_no = blk_no
            self._blk_no = next_blkno(blk_no)
            self._send_packet(ack_packet(blk_no))
            if len(data) < self.blksize:
                self._writer.flush()
                self.state = SessionState.COMPLETED
        elif blk_no == self._last_blk_no:
            # our last ACK was lost, the server is sending the block again
            logger.info('Received duplicate DATA %s, sending ACK again', blk_no)
            self._transport.discard_pending_packets()
            self._send_last_packet()
        else:
            logger.info('Ignoring DATA %s, waiting for DATA %s', blk_no, self._blk_no)
            self._transport.discard_pending_packets()


class WriteSession(_AbstractSession):
    """Send a file to the server (WRQ)."""

    def __init__(self, transport: DatagramTransport, server_address: Address,
                 filename: str, input: BinaryIO, **kwargs) -> None:
        super().__init__(transport, server_address, filename, **kwargs)
        self._reader = open_reader(input, self.mode, self.newline)
        # the block number we are waiting an ACK for
        self._blk_no = 0
        self._last_blk_no: int | None = None
        self._dup_ack = False
        self._last_block_sent = False

    def _request_packet(self) -> RequestPacket:
        return wrq_packet(
            self.filename, self.mode, self._requested_options.to_packet_options()
        )

    def _handle_packet(self, packet: Packet) -> None:
        opcode = packet['opcode']
        if opcode == OP_ACK:
            self._handle_ack(packet['blkno'])  # type: ignore[typeddict-item]
        elif opcode == OP_OACK and self.state == SessionState.AWAITING_OACK:
            oack_pkt: OptionAckPacket = packet  # type: ignore[assignment]
            self._handle_oack(oack_pkt)
            # an OACK acknowledges the request, like an ACK 0
            self._handle_ack(0)
        elif opcode == OP_OACK and self._last_blk_no == 0 and self._blk_no == 1:
            self._handle_ack(0)
        else:
            self._illegal_packet(packet)

    def _read_block(self) -> bytes:
        chunks = []
        size = 0
        try:
            while size < self.blksize:
                chunk = self._reader.read(self.blksize - size)
                if not chunk:
                    break
                chunks.append(chunk)
                size += len(chunk)
        except OSError:
            self._send_error(ErrorCode.UNDEFINED, 'File read failed')
            raise
        return b''.join(chunks)

    def _send_next_block(self) -> None:
        data = self._read_block()
        if len(data) < self.blksize:
            # also true for the empty block following a file whose size is
            # a multiple of blksize
            self._last_block_sent = True
        self._blk_no = next_blkno(self._blk_no)
        self.bytes_transferred += len(data)
        self._send_packet(data_packet(self._blk_no, data))

    def _handle_ack(self, blk_no: int) -> None:
        if blk_no == self._blk_no:
            if self.state != SessionState.TRANSFERRING:
                self._start_without_options()
            self._last_blk_no = blk_no
            self._dup_ack = False
            if self._last_block_sent:
                self.state = SessionState.COMPLETED
            else:
                self._send_next_block()
        elif blk_no == self._last_blk_no:
            # only answer the first duplicate to avoid the Sorcerer's
            # Apprentice syndrome
            if not self._dup_ack:
                logger.info('Received duplicate ACK %s, sending DATA again', blk_no)
                self._dup_ack = True
                self._send_last_packet()
        else:
            logger.info('Ignoring ACK %s, waiting for ACK %s', blk_no, self._blk_no)
            self._transport.discard_pending_packets()
