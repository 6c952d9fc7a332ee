# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import unittest
from io import BytesIO
from unittest.mock import ANY, Mock, patch, sentinel

from hamcrest import assert_that, calling, equal_to, raises

from wazo_tftp.client import TFTPClient
from wazo_tftp.exceptions import TransferTimeoutError, UnsupportedModeError
from wazo_tftp.options import TransferOptions
from wazo_tftp.packet import TransferMode


@patch('wazo_tftp.client.resolve_address', Mock(return_value=(2, ('10.0.0.1', 69))))
@patch('wazo_tftp.client.DatagramTransport')
@patch('wazo_tftp.client.WriteSession')
@patch('wazo_tftp.client.ReadSession')
class TestTFTPClient(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TFTPClient(timeout=2.0, max_timeouts=3)

    def test_receive_file(self, read_session, write_session, transport_class) -> None:
        read_session.return_value.bytes_transferred = 42
        output = BytesIO()

        nb_bytes = self.client.receive_file('f.txt', output, '10.0.0.1')

        assert_that(nb_bytes, equal_to(42))
        assert_that(self.client.total_bytes_received, equal_to(42))
        read_session.assert_called_once_with(
            transport_class.return_value,
            ('10.0.0.1', 69),
            'f.txt',
            output,
            mode=TransferMode.OCTET,
            options=TransferOptions(),
            max_retries=3,
            newline=b'\n',
        )
        transport_class.assert_called_once_with(2.0)
        transport_class.return_value.open.assert_called_once_with(0, '', 2)

    def test_send_file(self, read_session, write_session, transport_class) -> None:
        write_session.return_value.bytes_transferred = 7

        nb_bytes = self.client.send_file(
            'f.txt', BytesIO(b'content'), '10.0.0.1', mode='netascii'
        )

        assert_that(nb_bytes, equal_to(7))
        assert_that(self.client.total_bytes_sent, equal_to(7))
        write_session.assert_called_once_with(
            ANY,
            ANY,
            'f.txt',
            ANY,
            mode=TransferMode.NETASCII,
            options=ANY,
            max_retries=3,
            newline=b'\n',
        )

    def test_newline_is_forwarded(self, read_session, write_session, transport_class) -> None:
        self.client.send_file(
            'f.txt', BytesIO(), '10.0.0.1', mode='netascii', newline=b'\r\n'
        )

        assert_that(write_session.call_args.kwargs['newline'], equal_to(b'\r\n'))

    def test_implicit_transport_is_closed(
        self, read_session, write_session, transport_class
    ) -> None:
        transport = transport_class.return_value
        transport.is_open = True

        self.client.receive_file('f.txt', BytesIO(), '10.0.0.1')

        transport.close.assert_called_once_with()

    def test_explicit_transport_is_kept_open(
        self, read_session, write_session, transport_class
    ) -> None:
        transport = transport_class.return_value
        transport.is_open = True
        self.client.open()

        self.client.receive_file('f.txt', BytesIO(), '10.0.0.1')
        self.client.receive_file('g.txt', BytesIO(), '10.0.0.1')

        transport.close.assert_not_called()
        transport_class.assert_called_once_with(2.0)
        self.client.close()
        transport.close.assert_called_once_with()

    def test_transport_is_closed_on_failure(
        self, read_session, write_session, transport_class
    ) -> None:
        read_session.return_value.run.side_effect = TransferTimeoutError('timeout')
        read_session.return_value.bytes_transferred = 512

        assert_that(
            calling(self.client.receive_file).with_args('f.txt', BytesIO(), '10.0.0.1'),
            raises(TransferTimeoutError),
        )
        transport_class.return_value.close.assert_called_once_with()
        assert_that(self.client.total_bytes_received, equal_to(512))

    def test_per_call_options(self, read_session, write_session, transport_class) -> None:
        self.client.options = TransferOptions(blksize=1024)
        options = TransferOptions(tsize=0)

        self.client.receive_file('f.txt', BytesIO(), '10.0.0.1', options=options)
        self.client.receive_file('f.txt', BytesIO(), '10.0.0.1')

        first_call, second_call = read_session.call_args_list
        assert_that(first_call.kwargs['options'], equal_to(options))
        assert_that(second_call.kwargs['options'], equal_to(TransferOptions(blksize=1024)))

    def test_mail_mode_is_rejected_before_any_io(
        self, read_session, write_session, transport_class
    ) -> None:
        assert_that(
            calling(self.client.send_file).with_args(
                'f.txt', sentinel.input, '10.0.0.1', mode=TransferMode.MAIL
            ),
            raises(UnsupportedModeError),
        )
        transport_class.assert_not_called()
        write_session.assert_not_called()


class TestTFTPClientSettings(unittest.TestCase):
    def test_max_timeouts_is_at_least_one(self) -> None:
        client = TFTPClient(max_timeouts=0)

        assert_that(client.max_timeouts, equal_to(1))

        client.max_timeouts = 8
        assert_that(client.max_timeouts, equal_to(8))

    def test_close_without_open(self) -> None:
        client = TFTPClient()

        client.close()

        assert_that(client.is_open, equal_to(False))
