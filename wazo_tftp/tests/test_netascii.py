# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import unittest
from io import BytesIO

import pytest
from hamcrest import assert_that, calling, equal_to, raises

from wazo_tftp.exceptions import UnsupportedModeError
from wazo_tftp.netascii import (
    NetasciiDecoder,
    NetasciiEncoder,
    NetasciiReader,
    NetasciiWriter,
    from_wire,
    open_reader,
    open_writer,
    to_wire,
)
from wazo_tftp.packet import TransferMode


class TestToWire(unittest.TestCase):
    def test_octet_is_identity(self) -> None:
        data = b'a\nb\r\x00'

        assert_that(to_wire(data, TransferMode.OCTET), equal_to(data))
        assert_that(from_wire(data, TransferMode.OCTET), equal_to(data))

    def test_lf_becomes_crlf(self) -> None:
        assert_that(
            to_wire(b'line1\nline2\n', TransferMode.NETASCII),
            equal_to(b'line1\r\nline2\r\n'),
        )

    def test_lone_cr_becomes_cr_nul(self) -> None:
        assert_that(to_wire(b'a\rb', TransferMode.NETASCII), equal_to(b'a\r\x00b'))

    def test_crlf_newline(self) -> None:
        assert_that(
            to_wire(b'a\r\nb\nc\rd\r', TransferMode.NETASCII, newline=b'\r\n'),
            equal_to(b'a\r\nb\r\nc\r\x00d\r\x00'),
        )

    def test_mail_mode(self) -> None:
        assert_that(
            calling(to_wire).with_args(b'', TransferMode.MAIL),
            raises(UnsupportedModeError),
        )
        assert_that(
            calling(from_wire).with_args(b'', TransferMode.MAIL),
            raises(UnsupportedModeError),
        )
        assert_that(
            calling(open_reader).with_args(BytesIO(), TransferMode.MAIL),
            raises(UnsupportedModeError),
        )


class TestFromWire(unittest.TestCase):
    def test_crlf_becomes_lf(self) -> None:
        assert_that(
            from_wire(b'line1\r\nline2\r\n', TransferMode.NETASCII),
            equal_to(b'line1\nline2\n'),
        )

    def test_cr_nul_becomes_cr(self) -> None:
        assert_that(from_wire(b'a\r\x00b', TransferMode.NETASCII), equal_to(b'a\rb'))

    def test_other_cr_is_kept(self) -> None:
        assert_that(from_wire(b'a\rb\r', TransferMode.NETASCII), equal_to(b'a\rb\r'))

    def test_crlf_newline(self) -> None:
        assert_that(
            from_wire(b'a\r\nb', TransferMode.NETASCII, newline=b'\r\n'),
            equal_to(b'a\r\nb'),
        )


class TestStreaming(unittest.TestCase):
    def test_encoder_with_cr_at_chunk_boundary(self) -> None:
        encoder = NetasciiEncoder(newline=b'\r\n')

        result = encoder.encode(b'a\r') + encoder.encode(b'\nb\r') + encoder.encode(
            b'', final=True
        )

        assert_that(result, equal_to(b'a\r\nb\r\x00'))

    def test_decoder_with_cr_at_chunk_boundary(self) -> None:
        decoder = NetasciiDecoder()

        result = (
            decoder.decode(b'a\r')
            + decoder.decode(b'\nb\r')
            + decoder.decode(b'\x00c')
            + decoder.decode(b'', final=True)
        )

        assert_that(result, equal_to(b'a\nb\rc'))

    def test_reader_returns_full_blocks(self) -> None:
        reader = NetasciiReader(BytesIO(b'\n' * 5))

        assert_that(reader.read(4), equal_to(b'\r\n\r\n'))
        assert_that(reader.read(4), equal_to(b'\r\n\r\n'))
        assert_that(reader.read(4), equal_to(b'\r\n'))
        assert_that(reader.read(4), equal_to(b''))

    def test_reader_and_writer_with_crlf_newline(self) -> None:
        reader = open_reader(BytesIO(b'a\r\nb\n'), TransferMode.NETASCII, b'\r\n')
        output = BytesIO()
        writer = open_writer(output, TransferMode.NETASCII, b'\r\n')

        wire = reader.read(16)
        writer.write(wire)
        writer.flush()

        assert_that(wire, equal_to(b'a\r\nb\r\n'))
        assert_that(output.getvalue(), equal_to(b'a\r\nb\r\n'))

    def test_writer_flushes_pending_cr(self) -> None:
        fobj = BytesIO()
        writer = NetasciiWriter(fobj)

        writer.write(b'a\r\n')
        writer.write(b'b\r')
        writer.flush()

        assert_that(fobj.getvalue(), equal_to(b'a\nb\r'))
        assert_that(fobj.closed, equal_to(False))


@pytest.mark.parametrize(
    'data',
    [
        b'',
        b'no newline',
        b'unix\nlines\n',
        b'dos\r\nlines\r\n',
        b'lone\rcr\r',
        b'\r\r\n\n\r\x00',
    ],
)
def test_wire_round_trip(data: bytes) -> None:
    wire = to_wire(data, TransferMode.NETASCII)

    assert from_wire(wire, TransferMode.NETASCII) == data


@pytest.mark.parametrize('chunk_size', [1, 2, 3, 7])
def test_reader_then_writer_round_trip(chunk_size: int) -> None:
    data = b'first\r\nsecond\nthird\rfourth\r'
    reader = NetasciiReader(BytesIO(data))
    output = BytesIO()
    writer = NetasciiWriter(output)

    while True:
        chunk = reader.read(chunk_size)
        writer.write(chunk)
        if len(chunk) < chunk_size:
            break
    writer.flush()

    assert output.getvalue() == data
