# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import os
from io import BytesIO

from hamcrest import assert_that, equal_to
from twisted.internet import defer, reactor, threads
from twisted.trial import unittest

from wazo_tftp.client import TFTPClient
from wazo_tftp.exceptions import ProtocolError
from wazo_tftp.options import TransferOptions
from wazo_tftp.packet import ErrorCode, TransferMode
from wazo_tftp.server import ServerMode, TFTPFileService, TFTPProtocol


class TestClientServerTransfer(unittest.TestCase):
    def setUp(self) -> None:
        self.directory = self.mktemp()
        os.makedirs(self.directory)
        self.protocol = TFTPProtocol(
            TFTPFileService(self.directory),
            mode=ServerMode.GET_AND_PUT,
            interface='127.0.0.1',
            timeout=1,
        )
        self.port = reactor.listenUDP(0, self.protocol, interface='127.0.0.1')
        self.server_port = self.port.getHost().port
        self.client = TFTPClient(timeout=2.0)

    def tearDown(self):
        pending = [connection.finished for connection in self.protocol.active_connections]
        d = defer.DeferredList(pending)
        d.addCallback(lambda _: self.port.stopListening())
        return d

    def _write_file(self, filename: str, content: bytes) -> None:
        with open(os.path.join(self.directory, filename), 'wb') as f:
            f.write(content)

    def _read_file(self, filename: str) -> bytes:
        with open(os.path.join(self.directory, filename), 'rb') as f:
            return f.read()

    @defer.inlineCallbacks
    def test_receive_file(self):
        content = os.urandom(3000)
        self._write_file('firmware.bin', content)
        output = BytesIO()

        nb_bytes = yield threads.deferToThread(
            self.client.receive_file,
            'firmware.bin',
            output,
            '127.0.0.1',
            self.server_port,
            options=TransferOptions(blksize=1024, tsize=0),
        )

        assert_that(output.getvalue(), equal_to(content))
        assert_that(nb_bytes, equal_to(3000))

    @defer.inlineCallbacks
    def test_receive_file_multiple_of_blksize(self):
        content = b'x' * 1024
        self._write_file('exact.bin', content)
        output = BytesIO()

        yield threads.deferToThread(
            self.client.receive_file, 'exact.bin', output, '127.0.0.1', self.server_port
        )

        assert_that(output.getvalue(), equal_to(content))

    @defer.inlineCallbacks
    def test_send_file_in_netascii(self):
        content = b'line 1\nline 2\n'

        nb_bytes = yield threads.deferToThread(
            self.client.send_file,
            'config.txt',
            BytesIO(content),
            '127.0.0.1',
            self.server_port,
            mode=TransferMode.NETASCII,
        )
        yield defer.DeferredList(
            [connection.finished for connection in self.protocol.active_connections]
        )

        assert_that(self._read_file('config.txt'), equal_to(content))
        assert_that(nb_bytes, equal_to(len(b'line 1\r\nline 2\r\n')))

    @defer.inlineCallbacks
    def test_receive_missing_file(self):
        output = BytesIO()

        try:
            yield threads.deferToThread(
                self.client.receive_file, 'missing.bin', output, '127.0.0.1', self.server_port
            )
        except ProtocolError as e:
            assert_that(e.errcode, equal_to(ErrorCode.FILE_NOT_FOUND))
        else:
            self.fail('Exception should have been raised')
