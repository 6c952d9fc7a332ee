# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Blocking datagram transport used by the TFTP client.

The transport owns one UDP socket bound to a (usually ephemeral) local port.
Receiving blocks up to a timeout. Closing the transport from another thread
wakes up a pending receive, which is how a transfer is cancelled.

"""
from __future__ import annotations

import logging
import selectors
import socket
import threading
import time

from wazo_tftp.exceptions import (
    MalformedPacketError,
    TransferTimeoutError,
    TransportClosedError,
    TransportError,
)
from wazo_tftp.packet import (
    MAX_DGRAM_SIZE,
    OP_ACK,
    OP_DATA,
    OP_ERR,
    Packet,
    build_dgram,
    build_dgram_into,
    parse_dgram,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

Address = tuple  # (host, port) or (host, port, flowinfo, scope_id)

_IN_PLACE_OPCODES = (OP_DATA, OP_ACK, OP_ERR)


def resolve_address(host: str, port: int) -> tuple[socket.AddressFamily, Address]:
    """Return the address family and the address of host, port.

    Raise a TransportError if the host can't be resolved.

    """
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise TransportError(f'could not resolve hostname {host!r}: {e}')
    family, _, _, _, address = infos[0]
    return family, address


class DatagramTransport:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._selector: selectors.BaseSelector | None = None
        self._wakeup_r: socket.socket | None = None
        self._wakeup_w: socket.socket | None = None
        self._send_buf = bytearray(MAX_DGRAM_SIZE)
        self._lock = threading.Lock()
        self._closed = False
        self._receiving = False

    def __enter__(self) -> DatagramTransport:
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._sock is not None and not self._closed

    @property
    def local_address(self) -> Address:
        return self._require_open().getsockname()

    def open(
        self,
        local_port: int = 0,
        local_address: str = '',
        family: socket.AddressFamily = socket.AF_INET,
    ) -> None:
        """Open the socket. A local_port of 0 means an ephemeral port."""
        with self._lock:
            if self._sock is not None:
                if self._closed:
                    raise TransportError('transport is still being closed')
                raise TransportError('transport already open')
            try:
                sock = socket.socket(family, socket.SOCK_DGRAM)
            except OSError as e:
                raise TransportError(f'could not create socket: {e}')
            try:
                sock.bind((local_address, local_port))
                sock.setblocking(False)
                wakeup_r, wakeup_w = socket.socketpair()
            except OSError as e:
                sock.close()
                raise TransportError(f'could not bind socket: {e}')
            wakeup_r.setblocking(False)
            selector = selectors.DefaultSelector()
            selector.register(sock, selectors.EVENT_READ)
            selector.register(wakeup_r, selectors.EVENT_READ)
            self._sock = sock
            self._selector = selector
            self._wakeup_r = wakeup_r
            self._wakeup_w = wakeup_w
            self._closed = False
        logger.debug('Transport open on %s', sock.getsockname())

    def _require_open(self) -> socket.socket:
        if self._sock is None or self._closed:
            raise TransportClosedError('transport is closed')
        return self._sock

    def send_dgram(self, dgram: bytes | memoryview, address: Address) -> None:
        sock = self._require_open()
        try:
            sock.sendto(dgram, address)
        except OSError as e:
            raise TransportError(f'could not send datagram to {address}: {e}')

    def send(self, packet: Packet, address: Address) -> None:
        if packet['opcode'] in _IN_PLACE_OPCODES:
            length = build_dgram_into(packet, self._send_buf)
            self.send_dgram(memoryview(self._send_buf)[:length], address)
        else:
            self.send_dgram(build_dgram(packet), address)

    def receive(self, timeout: float | None = None) -> tuple[Packet, Address]:
        """Wait for a datagram and return it parsed, with its source address.

        Raise TransferTimeoutError if nothing is received before timeout
        seconds (the transport timeout if None), MalformedPacketError if the
        datagram can't be parsed, TransportClosedError if the transport is
        closed while waiting.

        """
        if timeout is None:
            timeout = self.timeout
        with self._lock:
            sock = self._require_open()
            self._receiving = True
        deadline = time.monotonic() + max(timeout, 0)
        try:
            while True:
                events = self._selector.select(max(deadline - time.monotonic(), 0))
                if self._closed:
                    raise TransportClosedError('transport closed while receiving')
                if not events:
                    raise TransferTimeoutError(f'no datagram received after {timeout}s')
                try:
                    dgram, address = sock.recvfrom(MAX_DGRAM_SIZE)
                except BlockingIOError:
                    # spurious wakeup, wait for the rest of the timeout
                    continue
                except OSError as e:
                    raise TransportError(f'could not receive datagram: {e}')
                break
        finally:
            with self._lock:
                self._receiving = False
                if self._closed:
                    self._release()

        try:
            return parse_dgram(dgram), address
        except MalformedPacketError as e:
            e.address = address
            raise

    def discard_pending_packets(self) -> int:
        """Drop every datagram already queued on the socket."""
        sock = self._require_open()
        count = 0
        while True:
            try:
                sock.recvfrom(MAX_DGRAM_SIZE)
            except (BlockingIOError, InterruptedError):
                break
            except OSError as e:
                raise TransportError(f'could not receive datagram: {e}')
            count += 1
        if count:
            logger.debug('Discarded %s pending datagrams', count)
        return count

    def close(self) -> None:
        """Close the transport. Safe to call more than once, from any thread."""
        with self._lock:
            if self._sock is None or self._closed:
                return
            self._closed = True
            try:
                self._wakeup_w.send(b'\x00')
            except OSError as e:
                logger.debug('Could not wake up the receiving thread: %s', e)
            if not self._receiving:
                self._release()

    def _release(self) -> None:
        # Pre: self._lock is held and self._closed is set
        if self._sock is None:
            return
        self._selector.close()
        for sock in (self._sock, self._wakeup_r, self._wakeup_w):
            sock.close()
        self._sock = self._selector = self._wakeup_r = self._wakeup_w = None
