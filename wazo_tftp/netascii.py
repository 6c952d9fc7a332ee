# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Conversion between local files and the netascii transfer mode.

In netascii, a line ends with CR LF and a CR that is not the start of a line
ending is followed by a NUL. Files are transferred in blocks, so the
converters keep track of a CR seen at the end of a chunk.

The local line ending is given by newline. With the default b'\\n', every LF
becomes CR LF and every CR becomes CR NUL, so that any file is received
back unchanged. With b'\\r\\n', a local CR LF is sent as is and only a LF not
already preceded by a CR is expanded, as expected for text files with DOS
line endings.

"""
from __future__ import annotations

from typing import BinaryIO

from wazo_tftp.exceptions import UnsupportedModeError
from wazo_tftp.packet import TransferMode

CR = 0x0D
LF = 0x0A
NUL = 0x00

_NEWLINES = (b'\n', b'\r\n')


def _check_newline(newline: bytes) -> None:
    if newline not in _NEWLINES:
        raise ValueError(f'unsupported newline {newline!r}')


class NetasciiEncoder:
    """Convert local bytes to netascii.

    newline is the local line ending. With b'\\r\\n', a CR LF is already a
    netascii line ending and a lone LF is also turned into CR LF.

    """

    def __init__(self, newline: bytes = b'\n') -> None:
        _check_newline(newline)
        self._crlf = newline == b'\r\n'
        self._pending_cr = False

    def encode(self, data: bytes, final: bool = False) -> bytes:
        out = bytearray()
        for byte in data:
            if self._pending_cr:
                self._pending_cr = False
                if byte == LF:
                    out += b'\r\n'
                    continue
                out += b'\r\x00'
            if byte == CR:
                if self._crlf:
                    self._pending_cr = True
                else:
                    out += b'\r\x00'
            elif byte == LF:
                out += b'\r\n'
            else:
                out.append(byte)
        if final and self._pending_cr:
            self._pending_cr = False
            out += b'\r\x00'
        return bytes(out)


class NetasciiDecoder:
    """Convert netascii bytes to local bytes."""

    def __init__(self, newline: bytes = b'\n') -> None:
        _check_newline(newline)
        self._newline = newline
        self._pending_cr = False

    def decode(self, data: bytes, final: bool = False) -> bytes:
        out = bytearray()
        for byte in data:
            if self._pending_cr:
                self._pending_cr = False
                if byte == LF:
                    out += self._newline
                    continue
                out.append(CR)
                if byte == NUL:
                    continue
            if byte == CR:
                self._pending_cr = True
            else:
                out.append(byte)
        if final and self._pending_cr:
            # a CR ending the transfer is invalid netascii, keep it anyway
            self._pending_cr = False
            out.append(CR)
        return bytes(out)


def _check_mode(mode: TransferMode) -> None:
    if mode == TransferMode.MAIL:
        raise UnsupportedModeError('mail mode is not supported')


def to_wire(data: bytes, mode: TransferMode, newline: bytes = b'\n') -> bytes:
    _check_mode(mode)
    if mode == TransferMode.OCTET:
        return data
    return NetasciiEncoder(newline).encode(data, final=True)


def from_wire(data: bytes, mode: TransferMode, newline: bytes = b'\n') -> bytes:
    _check_mode(mode)
    if mode == TransferMode.OCTET:
        return data
    return NetasciiDecoder(newline).decode(data, final=True)


class NetasciiReader:
    """Wrap a binary file-like object and read it converted to netascii.

    read(size) returns exactly size bytes until the end of the file is
    reached, so that every block but the last one is a full block.

    """

    def __init__(self, fobj: BinaryIO, newline: bytes = b'\n') -> None:
        self._fobj = fobj
        self._encoder = NetasciiEncoder(newline)
        self._buf = b''
        self._eof = False

    def read(self, size: int) -> bytes:
        while len(self._buf) < size and not self._eof:
            new_data = self._fobj.read(size - len(self._buf))
            if not new_data:
                self._eof = True
            self._buf += self._encoder.encode(new_data, final=self._eof)
        data = self._buf[:size]
        self._buf = self._buf[size:]
        return data


class NetasciiWriter:
    """Wrap a binary file-like object and write netascii data to it.

    The wrapped object is never closed. Call flush once all the data has
    been written.

    """

    def __init__(self, fobj: BinaryIO, newline: bytes = b'\n') -> None:
        self._fobj = fobj
        self._decoder = NetasciiDecoder(newline)

    def write(self, data: bytes) -> int:
        self._fobj.write(self._decoder.decode(data))
        return len(data)

    def flush(self) -> None:
        self._fobj.write(self._decoder.decode(b'', final=True))
        self._fobj.flush()


def open_reader(
    fobj: BinaryIO, mode: TransferMode, newline: bytes = b'\n'
) -> BinaryIO | NetasciiReader:
    _check_mode(mode)
    if mode == TransferMode.NETASCII:
        return NetasciiReader(fobj, newline)
    return fobj


def open_writer(
    fobj: BinaryIO, mode: TransferMode, newline: bytes = b'\n'
) -> BinaryIO | NetasciiWriter:
    _check_mode(mode)
    if mode == TransferMode.NETASCII:
        return NetasciiWriter(fobj, newline)
    return fobj
