# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Manage the transfer between two host."""
from __future__ import annotations

import logging
from typing import Any, BinaryIO

from twisted.internet import defer
from twisted.internet.protocol import DatagramProtocol

from wazo_tftp.exceptions import PacketError
from wazo_tftp.netascii import open_reader, open_writer
from wazo_tftp.options import TransferOptions
from wazo_tftp.packet import (
    DEFAULT_BLKSIZE,
    OP_ACK,
    OP_DATA,
    OP_ERR,
    AckPacket,
    DataPacket,
    ErrorCode,
    Packet,
    TransferMode,
    ack_packet,
    build_dgram,
    data_packet,
    err_packet,
    format_packet,
    next_blkno,
    oack_packet,
    opcode_name,
    parse_dgram,
    previous_blkno,
)

# TODO RFC1122 says we must use an adaptive timeout...


logger = logging.getLogger(__name__)


class _NoMoreDatagramError(Exception):
    """Raised when there is no more datagram to send."""


class _AbstractConnection(DatagramProtocol):
    """Represent a connection from the point of view of the server.

    The '_handle_packet' method MUST be overridden in derived class. It is
    called with every packet received from the remote host, except error
    packets.

    The '_close' method MAY be overridden in derived class. It will be called
    once after the connection is closed, in any circumstances.

    The 'finished' deferred fires with True once the transfer has completed
    and the connection is closed, or with False if the transfer failed.

    """

    blksize = DEFAULT_BLKSIZE
    timeout = 4
    max_retries = 4

    def __init__(
        self,
        addr: tuple[str, int],
        fobj: BinaryIO,
        mode: TransferMode = TransferMode.OCTET,
        options: TransferOptions | None = None,
        clock: Any = None,
    ) -> None:
        """Create a new connection with a remote host.

        addr -- the address of the remote host.
        fobj -- the file-object the data is read from or written to. Its
                close method is called when the connection is closed.
        mode -- the transfer mode, octet or netascii.
        options -- the options acknowledged to the remote host, if any.
        clock -- the object used to schedule retransmissions (the reactor
                 by default).

        """
        if clock is None:
            from twisted.internet import reactor as clock
        self._addr = addr
        self._fobj = fobj
        self._mode = TransferMode(mode)
        self._options = options or TransferOptions()
        self._clock = clock
        if self._options.blksize is not None:
            self.blksize = self._options.blksize
        if self._options.timeout is not None:
            self.timeout = self._options.timeout
        self._closed = False
        self._last_packet: Packet = None  # type: ignore[assignment]
        self._retry_cnt = 0
        self._timeout_timer = None
        self.finished: defer.Deferred = defer.Deferred()

    def _close(self, success: bool) -> None:
        """Close this connection.

        This is the right place to do cleanup and will be called once and only
        once. MAY be overridden in derived class.
        """
        self._fobj.close()

    def _handle_packet(self, pkt: Packet) -> None:
        """Handle a packet received from the remote host.

        Must be overridden in derived class.
        """
        raise NotImplementedError('Must be implemented in derived class')

    def _do_close(self, success: bool = False) -> None:
        """Cleanup and make sure self._close is called once."""
        if not self._closed:
            self._cancel_timeout()
            self._closed = True
            try:
                self._close(success)
            except OSError as e:
                logger.warning('Error while closing transferred file: %s', e)
                success = False
            self.transport.stopListening()
            self.finished.callback(success)

    def _cancel_timeout(self) -> None:
        if self._timeout_timer:
            self._retry_cnt = 0
            self._timeout_timer.cancel()
            self._timeout_timer = None

    def _set_timeout(self) -> None:
        self._timeout_timer = self._clock.callLater(self.timeout, self._timeout_expired)

    def _timeout_expired(self) -> None:
        logger.info('Timeout has expired with current retry count %s', self._retry_cnt)
        self._timeout_timer = None
        self._retry_cnt += 1
        if self._retry_cnt >= self.max_retries:
            self._do_close()
        else:
            self._send_last_packet()

    def _write(self, pkt: Packet, addr: tuple[str, int]) -> None:
        logger.debug('> %s', format_packet(pkt))
        self.transport.write(build_dgram(pkt), addr)

    def _send_packet(self, pkt: Packet) -> None:
        self._write(pkt, self._addr)
        self._last_packet = pkt
        self._set_timeout()

    def _send_last_packet(self) -> None:
        self._send_packet(self._last_packet)

    def _handle_wrong_tid(self, addr: tuple[str, int]) -> None:
        self._write(err_packet(ErrorCode.UNKNOWN_TID, 'Unknown TID'), addr)

    def _handle_invalid_dgram(self, errmsg: str = 'Invalid datagram') -> None:
        """Called when a datagram sent by the remote host could not be parsed."""
        self._write(err_packet(ErrorCode.UNDEFINED, errmsg), self._addr)
        self._do_close()

    def _handle_illegal_pkt(self, errmsg: str = 'Illegal TFTP operation') -> None:
        self._write(err_packet(ErrorCode.ILLEGAL_OPERATION, errmsg), self._addr)
        self._do_close()

    def datagramReceived(self, dgram: bytes, addr: tuple[str, int]) -> None:
        if self._closed:
            return
        if addr != self._addr:
            logger.info('Datagram received with wrong TID from %s', addr)
            self._handle_wrong_tid(addr)
            return
        try:
            pkt = parse_dgram(dgram)
        except PacketError as e:
            logger.info('Received an invalid datagram: %s', e)
            self._handle_invalid_dgram()
            return
        logger.debug('< %s', format_packet(pkt))
        if pkt['opcode'] == OP_ERR:
            logger.info('Received an error packet')
            self._do_close()
        else:
            self._handle_packet(pkt)

    def stopProtocol(self) -> None:
        self._do_close()


class ReadConnection(_AbstractConnection):
    """Send a file to the remote host (answer to a RRQ).

    When options are given, an OACK is sent first and acknowledged by an
    ACK 0 before the first DATA.

    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reader = open_reader(self._fobj, self._mode)
        # the block number we are waiting in the next ACK packet
        self._blk_no = 0
        self._last_blk_no: int | None = None
        self._dup_ack = False
        self._oack_sent = False
        self._last_buf: bytes | None = None

    def _read_block(self) -> bytes:
        chunks = []
        size = 0
        while size < self.blksize:
            chunk = self._reader.read(self.blksize - size)
            if not chunk:
                break
            chunks.append(chunk)
            size += len(chunk)
        return b''.join(chunks)

    def _next_packet(self) -> Packet:
        if not self._oack_sent and not self._options.is_empty():
            self._oack_sent = True
            return oack_packet(self._options.to_packet_options())

        if self._last_buf is not None and len(self._last_buf) < self.blksize:
            # the last block we sent was not the size of blksize
            raise _NoMoreDatagramError()

        buf = self._read_block()
        self._last_buf = buf
        self._blk_no = next_blkno(self._blk_no)
        return data_packet(self._blk_no, buf)

    def _send_next_packet(self) -> None:
        try:
            pkt = self._next_packet()
        except _NoMoreDatagramError:
            logger.info('File sent to %s', self._addr)
            self._do_close(True)
        except OSError as e:
            logger.warning('Could not read file: %s', e)
            self._write(err_packet(ErrorCode.UNDEFINED, 'File read failed'), self._addr)
            self._do_close()
        else:
            self._send_packet(pkt)

    def _handle_ack(self, pkt: AckPacket) -> None:
        blk_no = pkt['blkno']
        if blk_no == self._blk_no:
            self._last_blk_no = blk_no
            self._dup_ack = False
            self._cancel_timeout()
            self._send_next_packet()
        elif blk_no == self._last_blk_no:
            if not self._dup_ack:
                self._dup_ack = True
                self._cancel_timeout()
                self._send_last_packet()
        else:
            self._handle_illegal_pkt('Illegal block number')

    def _handle_packet(self, pkt: Packet) -> None:
        if pkt['opcode'] == OP_ACK:
            ack_pkt: AckPacket = pkt  # type: ignore[assignment]
            self._handle_ack(ack_pkt)
        else:
            logger.info('Received an unexpected packet - %s', opcode_name(pkt['opcode']))
            self._handle_illegal_pkt()

    def startProtocol(self) -> None:
        self._send_next_packet()


class WriteConnection(_AbstractConnection):
    """Receive a file from the remote host (answer to a WRQ).

    Once the last block is acknowledged, the connection stays open for one
    timeout period to acknowledge it again if the remote host did not get
    the final ACK.

    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._writer = open_writer(self._fobj, self._mode)
        # the block number we are waiting in the next DATA packet
        self._blk_no = 1
        self._completed = False
        self._dally_timer = None

    def _close(self, success: bool) -> None:
        if self._dally_timer is not None and self._dally_timer.active():
            self._dally_timer.cancel()
        try:
            if success:
                self._writer.flush()
        finally:
            self._fobj.close()

    def _complete(self) -> None:
        logger.info('File received from %s', self._addr)
        self._completed = True
        self._cancel_timeout()
        self._dally_timer = self._clock.callLater(self.timeout, self._do_close, True)

    def _handle_data(self, pkt: DataPacket) -> None:
        blk_no = pkt['blkno']
        if blk_no == self._blk_no and not self._completed:
            data = pkt['data']
            if len(data) > self.blksize:
                self._handle_illegal_pkt('Block larger than block size')
                return
            try:
                self._writer.write(data)
            except OSError as e:
                logger.warning('Could not write file: %s', e)
                self._write(err_packet(ErrorCode.DISK_FULL, 'File write failed'), self._addr)
                self._do_close()
                return
            self._cancel_timeout()
            self._blk_no = next_blkno(blk_no)
            if len(data) < self.blksize:
                self._write(ack_packet(blk_no), self._addr)
                self._last_packet = ack_packet(blk_no)
                self._complete()
            else:
                self._send_packet(ack_packet(blk_no))
        elif blk_no == previous_blkno(self._blk_no):
            # our last ACK was lost
            if self._completed:
                self._write(self._last_packet, self._addr)
            else:
                self._cancel_timeout()
                self._send_last_packet()
        else:
            self._handle_illegal_pkt('Illegal block number')

    def _handle_packet(self, pkt: Packet) -> None:
        if pkt['opcode'] == OP_DATA:
            data_pkt: DataPacket = pkt  # type: ignore[assignment]
            self._handle_data(data_pkt)
        else:
            logger.info('Received an unexpected packet - %s', opcode_name(pkt['opcode']))
            self._handle_illegal_pkt()

    def startProtocol(self) -> None:
        if self._options.is_empty():
            self._send_packet(ack_packet(0))
        else:
            self._send_packet(oack_packet(self._options.to_packet_options()))
