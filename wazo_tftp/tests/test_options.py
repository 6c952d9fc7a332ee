# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import unittest

import pytest
from hamcrest import assert_that, calling, equal_to, raises
from pydantic import ValidationError

from wazo_tftp.exceptions import OptionNegotiationError
from wazo_tftp.options import (
    TransferOptions,
    negotiate_options,
    parse_request_options,
)
from wazo_tftp.packet import ErrorCode


class TestTransferOptions(unittest.TestCase):
    def test_defaults(self) -> None:
        options = TransferOptions()

        assert_that(options.is_empty(), equal_to(True))
        assert_that(options.effective_blksize, equal_to(512))
        assert_that(options.to_packet_options(), equal_to({}))

    def test_to_packet_options(self) -> None:
        options = TransferOptions(blksize=1024, tsize=0)

        assert_that(
            options.to_packet_options(), equal_to({'blksize': '1024', 'tsize': '0'})
        )

    def test_invalid_values(self) -> None:
        assert_that(calling(TransferOptions).with_args(blksize=7), raises(ValidationError))
        assert_that(
            calling(TransferOptions).with_args(blksize=65465), raises(ValidationError)
        )
        assert_that(calling(TransferOptions).with_args(timeout=0), raises(ValidationError))
        assert_that(calling(TransferOptions).with_args(tsize=-1), raises(ValidationError))


class TestNegotiateOptions(unittest.TestCase):
    def test_accepted_options(self) -> None:
        requested = TransferOptions(blksize=1024, timeout=3, tsize=0)

        accepted = negotiate_options(
            requested, {'blksize': '1024', 'timeout': '3', 'tsize': '2048'}
        )

        assert_that(accepted, equal_to(TransferOptions(blksize=1024, timeout=3, tsize=2048)))

    def test_smaller_blksize_is_accepted(self) -> None:
        requested = TransferOptions(blksize=1428)

        accepted = negotiate_options(requested, {'blksize': '1024'})

        assert_that(accepted.effective_blksize, equal_to(1024))

    def test_empty_oack_falls_back_to_defaults(self) -> None:
        accepted = negotiate_options(TransferOptions(blksize=1024), {})

        assert_that(accepted.effective_blksize, equal_to(512))

    def test_option_not_requested(self) -> None:
        requested = TransferOptions(blksize=1024)

        assert_that(
            calling(negotiate_options).with_args(requested, {'tsize': '10'}),
            raises(OptionNegotiationError),
        )

    def test_unknown_option(self) -> None:
        assert_that(
            calling(negotiate_options).with_args(
                TransferOptions(blksize=1024), {'windowsize': '4'}
            ),
            raises(OptionNegotiationError),
        )

    def test_larger_blksize(self) -> None:
        assert_that(
            calling(negotiate_options).with_args(
                TransferOptions(blksize=1024), {'blksize': '2048'}
            ),
            raises(OptionNegotiationError),
        )

    def test_different_timeout(self) -> None:
        assert_that(
            calling(negotiate_options).with_args(
                TransferOptions(timeout=3), {'timeout': '4'}
            ),
            raises(OptionNegotiationError),
        )

    def test_invalid_value(self) -> None:
        try:
            negotiate_options(TransferOptions(blksize=1024), {'blksize': 'abc'})
        except OptionNegotiationError as e:
            assert_that(e.errcode, equal_to(ErrorCode.OPTION_NEGOTIATION_FAILED))
        else:
            self.fail('Exception should have been raised')


@pytest.mark.parametrize(
    'options,expected',
    [
        ({}, TransferOptions()),
        ({'blksize': '1428'}, TransferOptions(blksize=1428)),
        ({'blksize': '4', 'tsize': '0'}, TransferOptions(tsize=0)),
        ({'windowsize': '8', 'timeout': '2'}, TransferOptions(timeout=2)),
        ({'timeout': '1000'}, TransferOptions()),
    ],
)
def test_parse_request_options(options: dict[str, str], expected: TransferOptions) -> None:
    assert parse_request_options(options) == expected
