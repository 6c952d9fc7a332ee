# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import socket
import threading
import time
import unittest
from unittest.mock import Mock, patch

from hamcrest import assert_that, calling, equal_to, raises

from wazo_tftp.exceptions import (
    MalformedPacketError,
    TransferTimeoutError,
    TransportClosedError,
    TransportError,
)
from wazo_tftp.packet import (
    ErrorCode,
    TransferMode,
    ack_packet,
    data_packet,
    err_packet,
    rrq_packet,
)
from wazo_tftp.transport import DatagramTransport, resolve_address


class TestDatagramTransport(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = DatagramTransport(timeout=2.0)
        self.transport.open(local_address='127.0.0.1')
        self.peer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.peer.bind(('127.0.0.1', 0))
        self.peer.settimeout(2.0)

    def tearDown(self) -> None:
        self.transport.close()
        self.peer.close()

    def test_send(self) -> None:
        self.transport.send(data_packet(1, b'hello'), self.peer.getsockname())
        self.transport.send(
            rrq_packet('f', TransferMode.OCTET), self.peer.getsockname()
        )

        dgram, address = self.peer.recvfrom(1024)
        assert_that(dgram, equal_to(b'\x00\x03\x00\x01hello'))
        assert_that(address, equal_to(self.transport.local_address))
        dgram, _ = self.peer.recvfrom(1024)
        assert_that(dgram, equal_to(b'\x00\x01f\x00octet\x00'))

    def test_send_reuses_buffer(self) -> None:
        self.transport.send(data_packet(1, b'a' * 100), self.peer.getsockname())
        self.transport.send(err_packet(ErrorCode.DISK_FULL, 'x'), self.peer.getsockname())

        self.peer.recvfrom(1024)
        dgram, _ = self.peer.recvfrom(1024)
        assert_that(dgram, equal_to(b'\x00\x05\x00\x03x\x00'))

    def test_receive(self) -> None:
        self.peer.sendto(b'\x00\x04\x00\x05', self.transport.local_address)

        packet, address = self.transport.receive()

        assert_that(packet, equal_to(ack_packet(5)))
        assert_that(address, equal_to(self.peer.getsockname()))

    def test_receive_timeout(self) -> None:
        assert_that(
            calling(self.transport.receive).with_args(0.05),
            raises(TransferTimeoutError),
        )

    def test_receive_malformed_datagram(self) -> None:
        self.peer.sendto(b'\x00\x09', self.transport.local_address)

        try:
            self.transport.receive()
        except MalformedPacketError as e:
            assert_that(e.address, equal_to(self.peer.getsockname()))
        else:
            self.fail('Exception should have been raised')

    def test_discard_pending_packets(self) -> None:
        for blk_no in range(3):
            self.peer.sendto(b'\x00\x04\x00' + bytes([blk_no]), self.transport.local_address)
        time.sleep(0.2)

        assert_that(self.transport.discard_pending_packets(), equal_to(3))
        assert_that(
            calling(self.transport.receive).with_args(0.05),
            raises(TransferTimeoutError),
        )

    def test_close_from_another_thread_unblocks_receive(self) -> None:
        timer = threading.Timer(0.1, self.transport.close)
        timer.start()

        start = time.monotonic()
        assert_that(
            calling(self.transport.receive).with_args(5.0),
            raises(TransportClosedError),
        )
        timer.join()

        assert_that(time.monotonic() - start < 4.0, equal_to(True))
        assert_that(self.transport.is_open, equal_to(False))

    def test_closed_transport(self) -> None:
        self.transport.close()
        self.transport.close()

        assert_that(
            calling(self.transport.send).with_args(ack_packet(1), ('127.0.0.1', 69)),
            raises(TransportClosedError),
        )
        assert_that(calling(self.transport.receive), raises(TransportClosedError))

    def test_reopen(self) -> None:
        self.transport.close()

        self.transport.open(local_address='127.0.0.1')

        assert_that(self.transport.is_open, equal_to(True))

    def test_open_twice(self) -> None:
        assert_that(calling(self.transport.open), raises(TransportError))


    def test_spurious_wakeup_waits_for_the_datagram(self) -> None:
        sock = self.transport._sock
        wakeups = []

        def recvfrom(size):
            if not wakeups:
                wakeups.append(size)
                raise BlockingIOError()
            return sock.recvfrom(size)

        self.peer.sendto(b'\x00\x04\x00\x05', self.transport.local_address)
        self.transport._sock = Mock(recvfrom=recvfrom)
        try:
            packet, _ = self.transport.receive(1.0)
        finally:
            self.transport._sock = sock

        assert_that(packet, equal_to(ack_packet(5)))
        assert_that(len(wakeups), equal_to(1))


class TestResolveAddress(unittest.TestCase):
    def test_resolve(self) -> None:
        family, address = resolve_address('127.0.0.1', 6969)

        assert_that(family, equal_to(socket.AF_INET))
        assert_that(address, equal_to(('127.0.0.1', 6969)))

    @patch('socket.getaddrinfo')
    def test_unknown_host(self, getaddrinfo) -> None:
        getaddrinfo.side_effect = socket.gaierror(-2, 'Name or service not known')

        assert_that(
            calling(resolve_address).with_args('unknown.example', 69),
            raises(TransportError),
        )
