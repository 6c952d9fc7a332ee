# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Low-level functions to manipulate packets and datagrams.

A packet is a dictionary object, discriminated by its 'opcode' key. A dgram
(datagram) is a bytes object.

"""
from __future__ import annotations

import struct
from collections.abc import Callable
from enum import Enum, IntEnum
from typing import TypedDict, Union

from wazo_tftp.exceptions import MalformedPacketError, PacketError

PacketOptions = dict[str, str]


class TransferMode(str, Enum):
    NETASCII = 'netascii'
    OCTET = 'octet'
    MAIL = 'mail'


class ErrorCode(IntEnum):
    UNDEFINED = 0  # Not defined, see error message (if any)
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3  # Disk full or allocation exceeded
    ILLEGAL_OPERATION = 4
    UNKNOWN_TID = 5  # Unknown transfer ID
    FILE_EXISTS = 6
    NO_SUCH_USER = 7
    OPTION_NEGOTIATION_FAILED = 8  # RFC 2347


class BasePacket(TypedDict):
    opcode: bytes


class RequestPacket(BasePacket):
    filename: str
    mode: TransferMode
    options: PacketOptions


class DataPacket(BasePacket):
    blkno: int
    data: bytes


class AckPacket(BasePacket):
    blkno: int


class ErrorPacket(BasePacket):
    errcode: Union[ErrorCode, int]
    errmsg: str


class OptionAckPacket(BasePacket):
    options: PacketOptions


Packet = Union[AckPacket, DataPacket, ErrorPacket, OptionAckPacket, RequestPacket]

OP_RRQ = b'\x00\x01'
OP_WRQ = b'\x00\x02'
OP_DATA = b'\x00\x03'
OP_ACK = b'\x00\x04'
OP_ERR = b'\x00\x05'
OP_OACK = b'\x00\x06'

_OPCODE_NAMES = {
    OP_RRQ: 'RRQ',
    OP_WRQ: 'WRQ',
    OP_DATA: 'DATA',
    OP_ACK: 'ACK',
    OP_ERR: 'ERROR',
    OP_OACK: 'OACK',
}

DEFAULT_BLKSIZE = 512
MAX_BLKNO = 65535
# opcode + block number + the largest blksize allowed by RFC 2348
MAX_DGRAM_SIZE = 4 + 65464

_ENCODING = 'utf-8'
_UINT16_STRUCT = struct.Struct('!H')
_HEADER_STRUCT = struct.Struct('!2sH')


def next_blkno(blk_no: int) -> int:
    return (blk_no + 1) % (MAX_BLKNO + 1)


def previous_blkno(blk_no: int) -> int:
    return (blk_no - 1) % (MAX_BLKNO + 1)


def opcode_name(opcode: bytes) -> str:
    return _OPCODE_NAMES.get(opcode, repr(opcode))


def _unpack_to_uint16(data: bytes) -> int:
    return _UINT16_STRUCT.unpack(data)[0]


def _to_errcode(value: int) -> ErrorCode | int:
    try:
        return ErrorCode(value)
    except ValueError:
        # unknown error codes are kept as is
        return value


def _decode_str(raw: bytes, field: str) -> str:
    try:
        return raw.decode(_ENCODING)
    except UnicodeDecodeError:
        raise MalformedPacketError(f'invalid {field} encoding')


def _split_strings(dgram: bytes) -> list[bytes]:
    # Note: b'file\x00mode\x00'[:-1].split(b'\x00') == [b'file', b'mode']
    if dgram[-1:] != b'\x00':
        raise MalformedPacketError('last dgram byte not null')
    return dgram[:-1].split(b'\x00')


def _parse_options(tokens: list[bytes]) -> PacketOptions:
    if len(tokens) % 2:
        raise MalformedPacketError('option without value')

    options: PacketOptions = {}
    for i in range(0, len(tokens), 2):
        opt = _decode_str(tokens[i], 'option name').lower()
        if opt in options:
            # An option may only be specified once
            raise MalformedPacketError('same option specified more than once')
        options[opt] = _decode_str(tokens[i + 1], 'option value')
    return options


def _parse_request(opcode: bytes, dgram: bytes) -> RequestPacket:
    """dgram is the original datagram with the first 2 bytes removed.

    TFTP option extension is supported.

    """
    tokens = _split_strings(dgram)
    if len(tokens) < 2:
        raise MalformedPacketError('too small')

    raw_mode = _decode_str(tokens[1], 'mode').lower()
    try:
        mode = TransferMode(raw_mode)
    except ValueError:
        raise MalformedPacketError(f'unrecognized transfer mode {raw_mode!r}')

    return {
        'opcode': opcode,
        'filename': _decode_str(tokens[0], 'filename'),
        'mode': mode,
        'options': _parse_options(tokens[2:]),
    }


def _parse_data(opcode: bytes, dgram: bytes) -> DataPacket:
    if len(dgram) < 2:
        raise MalformedPacketError('too small')
    return {'opcode': opcode, 'blkno': _unpack_to_uint16(dgram[:2]), 'data': dgram[2:]}


def _parse_ack(opcode: bytes, dgram: bytes) -> AckPacket:
    if len(dgram) != 2:
        raise MalformedPacketError('incorrect size')
    return {'opcode': opcode, 'blkno': _unpack_to_uint16(dgram)}


def _parse_err(opcode: bytes, dgram: bytes) -> ErrorPacket:
    if len(dgram) < 3:
        raise MalformedPacketError('too small')
    end = dgram.find(b'\x00', 2)
    if end == -1:
        raise MalformedPacketError('error message not null terminated')
    return {
        'opcode': opcode,
        'errcode': _to_errcode(_unpack_to_uint16(dgram[:2])),
        'errmsg': dgram[2:end].decode(_ENCODING, errors='replace'),
    }


def _parse_oack(opcode: bytes, dgram: bytes) -> OptionAckPacket:
    if not dgram:
        return {'opcode': opcode, 'options': {}}
    return {'opcode': opcode, 'options': _parse_options(_split_strings(dgram))}


_PARSE_MAP: dict[bytes, Callable[[bytes, bytes], Packet]] = {
    OP_RRQ: _parse_request,
    OP_WRQ: _parse_request,
    OP_DATA: _parse_data,
    OP_ACK: _parse_ack,
    OP_ERR: _parse_err,
    OP_OACK: _parse_oack,
}


def parse_dgram(dgram: bytes) -> Packet:
    """Return a packet object (a dictionary) from a datagram (a bytes object).

    Raise a MalformedPacketError if the datagram is not parsable (i.e.
    invalid). Else, return a dictionary with the following keys:
      opcode -- the opcode of the packet as a 2-byte string

    The others keys in the dictionary depends on the type of the packet.

    Read/write request:
      filename -- the filename
      mode -- the mode, as a TransferMode
      options -- a possibly empty dictionary of option/value

    Data packet:
      blkno -- the block number as an integer
      data -- the data

    Ack packet:
      blkno -- the block number as an integer

    Error packet:
      errcode -- the error code, an ErrorCode or an int if unknown
      errmsg -- the error message

    Option acknowledgement packet:
      options -- a possibly empty dictionary of option/value

    Case-insensitive fields (mode field of request packet and option names)
    are returned in lowercase.

    """
    opcode = dgram[:2]
    try:
        fct = _PARSE_MAP[opcode]
    except KeyError:
        raise MalformedPacketError('invalid opcode')

    return fct(opcode, dgram[2:])


def _encode_str(value: str, field: str) -> bytes:
    if '\x00' in value:
        raise PacketError(f'null byte in {field}')
    return value.encode(_ENCODING)


def _pack_uint16(value: int, field: str) -> bytes:
    if not 0 <= value <= MAX_BLKNO:
        raise PacketError(f'{field} out of range')
    return _UINT16_STRUCT.pack(value)


def _build_options(options: PacketOptions) -> bytes:
    return b''.join(
        _encode_str(opt, 'option name') + b'\x00' + _encode_str(val, 'option value') + b'\x00'
        for opt, val in options.items()
    )


def _build_request(packet: RequestPacket) -> bytes:
    mode = TransferMode(packet['mode'])
    return (
        _encode_str(packet['filename'], 'filename')
        + b'\x00'
        + mode.value.encode(_ENCODING)
        + b'\x00'
        + _build_options(packet['options'])
    )


def _build_data(packet: DataPacket) -> bytes:
    return _pack_uint16(packet['blkno'], 'blkno') + packet['data']


def _build_ack(packet: AckPacket) -> bytes:
    return _pack_uint16(packet['blkno'], 'blkno')


def _build_error(packet: ErrorPacket) -> bytes:
    return (
        _pack_uint16(int(packet['errcode']), 'errcode')
        + _encode_str(packet['errmsg'], 'errmsg')
        + b'\x00'
    )


def _build_oack(packet: OptionAckPacket) -> bytes:
    return _build_options(packet['options'])


BuildCallbacks = Union[
    Callable[[RequestPacket], bytes],
    Callable[[DataPacket], bytes],
    Callable[[AckPacket], bytes],
    Callable[[ErrorPacket], bytes],
    Callable[[OptionAckPacket], bytes],
]

_BUILD_MAP: dict[bytes, BuildCallbacks] = {
    OP_RRQ: _build_request,
    OP_WRQ: _build_request,
    OP_DATA: _build_data,
    OP_ACK: _build_ack,
    OP_ERR: _build_error,
    OP_OACK: _build_oack,
}


def build_dgram(packet: Packet) -> bytes:
    """Return a datagram (bytes) from a packet objet (a dictionary).

    Raise KeyError if a key is missing from the packet object. A PacketError
    is raised if the datagram can't be build (invalid field in the packet).

    Look at parse_dgram for the keys that must be in the packet objects.

    """
    opcode = packet['opcode']
    try:
        fct = _BUILD_MAP[opcode]
    except KeyError:
        raise PacketError('invalid opcode')
    return opcode + fct(packet)  # type: ignore[arg-type]


def build_dgram_into(packet: Packet, buf: bytearray) -> int:
    """Build a DATA, ACK or ERROR datagram at the start of buf.

    Return the length of the datagram. Only these 3 kinds of packets are
    supported since they are the ones sent for every block of a transfer.

    """
    opcode = packet['opcode']
    if opcode == OP_DATA or opcode == OP_ACK:
        blk_no = packet['blkno']  # type: ignore[typeddict-item]
        payload = packet.get('data', b'')
        length = 4 + len(payload)
        if length > len(buf):
            raise PacketError('buffer too small')
        _pack_uint16(blk_no, 'blkno')
        _HEADER_STRUCT.pack_into(buf, 0, opcode, blk_no)
        buf[4:length] = payload
        return length
    elif opcode == OP_ERR:
        errcode = int(packet['errcode'])  # type: ignore[typeddict-item]
        errmsg = _encode_str(packet['errmsg'], 'errmsg')  # type: ignore[typeddict-item]
        length = 5 + len(errmsg)
        if length > len(buf):
            raise PacketError('buffer too small')
        _pack_uint16(errcode, 'errcode')
        _HEADER_STRUCT.pack_into(buf, 0, opcode, errcode)
        buf[4 : length - 1] = errmsg
        buf[length - 1] = 0
        return length
    raise PacketError('in-place building not supported for this opcode')


def format_packet(packet: Packet) -> str:
    """Return a short human readable description of a packet."""
    opcode = packet['opcode']
    name = opcode_name(opcode)
    if opcode in (OP_RRQ, OP_WRQ):
        desc = f"{name} {packet['filename']!r} {TransferMode(packet['mode']).value}"
        if packet['options']:
            desc += f" {packet['options']}"
        return desc
    if opcode == OP_DATA:
        return f"{name} {packet['blkno']} ({len(packet['data'])} bytes)"
    if opcode == OP_ACK:
        return f"{name} {packet['blkno']}"
    if opcode == OP_ERR:
        return f"{name} {int(packet['errcode'])} {packet['errmsg']!r}"
    return f"{name} {packet['options']}"


def rrq_packet(
    filename: str, mode: TransferMode, options: PacketOptions | None = None
) -> RequestPacket:
    """Return a new read request packet."""
    return {'opcode': OP_RRQ, 'filename': filename, 'mode': mode, 'options': options or {}}


def wrq_packet(
    filename: str, mode: TransferMode, options: PacketOptions | None = None
) -> RequestPacket:
    """Return a new write request packet."""
    return {'opcode': OP_WRQ, 'filename': filename, 'mode': mode, 'options': options or {}}


def err_packet(errcode: ErrorCode | int, errmsg: str = '') -> ErrorPacket:
    """Return a new error packet.

    errmsg is a NVT ASCII string.

    """
    return {'opcode': OP_ERR, 'errcode': errcode, 'errmsg': errmsg}


def data_packet(blk_no: int, data: bytes) -> DataPacket:
    """Return a new data packet."""
    return {'opcode': OP_DATA, 'blkno': blk_no, 'data': data}


def ack_packet(blk_no: int) -> AckPacket:
    """Return a new acknowledgement packet."""
    return {'opcode': OP_ACK, 'blkno': blk_no}


def oack_packet(options: PacketOptions) -> OptionAckPacket:
    """Return a new option acknowledgement packet.

    Options is a dictionary of option/value.

    """
    return {'opcode': OP_OACK, 'options': options}
