# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""TFTP service definition module."""
from __future__ import annotations

import logging
import os
from abc import ABCMeta
from collections.abc import Callable
from io import BytesIO
from typing import TYPE_CHECKING, TypedDict

from wazo_tftp.packet import ErrorCode, RequestPacket

if TYPE_CHECKING:
    from wazo_tftp.server.proto import _Response

logger = logging.getLogger(__name__)


class TFTPRequest(TypedDict):
    address: tuple[str, int]
    packet: RequestPacket


class AbstractTFTPReadService(metaclass=ABCMeta):
    """A TFTP read service handles TFTP read requests (RRQ)."""

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        """Handle a TFTP read request (RRQ).

        request is a dictionary with the following keys:
          address -- the address of the client (an (ip, port) tuple)
          packet -- the RRQ packet sent by the client

        response is an object with the following methods:
          accept -- call this method with a readable binary file-like object
            you want to transfer if you accept the request.
          reject -- call this method with an errcode (an ErrorCode) and an
            error message if you reject the request. This will send an error
            packet to the client.
          ignore -- call this method if you want to silently ignore
            the request. You'll get the same behaviour if you call no
            method of the response object.

        Note that it's fine not to call one of the response methods before
        returning the control to the caller, i.e. for an asynchronous use.
        If you never eventually call one of the response methods, it will
        implicitly behave like if you had called the ignore method.

        """


class AbstractTFTPWriteService(metaclass=ABCMeta):
    """A TFTP write service handles TFTP write requests (WRQ)."""

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        """Handle a TFTP write request (WRQ).

        Same as handle_read_request, except that the file-like object given
        to the accept method must be writable. It is closed once the transfer
        is over, successfully or not.

        """


class TFTPNullService(AbstractTFTPReadService, AbstractTFTPWriteService):
    """A service that always reject the requests."""

    def __init__(
        self,
        errcode: ErrorCode = ErrorCode.FILE_NOT_FOUND,
        errmsg: str = 'File not found',
    ) -> None:
        self.errcode = errcode
        self.errmsg = errmsg

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        response.reject(self.errcode, self.errmsg)

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        response.reject(self.errcode, self.errmsg)


class TFTPBytesService(AbstractTFTPReadService):
    """A read service that always serve the same content."""

    def __init__(self, content: bytes) -> None:
        self._content = content

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        response.accept(BytesIO(self._content))


class TFTPFileService(AbstractTFTPReadService, AbstractTFTPWriteService):
    """A service that serve and store files under a path.

    It strips any leading path separator of the requested filename. For
    example, filename '/foo.txt' is the same as 'foo.txt'.

    It also rejects any request that makes reference to the parent directory
    once normalized. For example, a request for filename 'bar/../../foo.txt'
    will be rejected even if 'foo.txt' exist in the parent directory.

    Existing files are not overwritten by write requests unless
    allow_overwrite is true.

    """

    def __init__(self, path: str, allow_overwrite: bool = False) -> None:
        self._path = os.path.abspath(path)
        self._allow_overwrite = allow_overwrite

    def _final_path(self, request: TFTPRequest) -> str | None:
        rq_orig_path = request['packet']['filename']
        rq_stripped_path = rq_orig_path.lstrip(os.sep)
        rq_final_path = os.path.normpath(os.path.join(self._path, rq_stripped_path))
        if rq_final_path == self._path or not rq_final_path.startswith(
            self._path + os.sep
        ):
            return None
        return rq_final_path

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        rq_final_path = self._final_path(request)
        if rq_final_path is None:
            response.reject(ErrorCode.FILE_NOT_FOUND, 'Invalid filename')
            return
        try:
            fobj = open(rq_final_path, 'rb')
        except OSError:
            response.reject(ErrorCode.FILE_NOT_FOUND, 'File not found')
        else:
            response.accept(fobj)

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        rq_final_path = self._final_path(request)
        if rq_final_path is None:
            response.reject(ErrorCode.ACCESS_VIOLATION, 'Invalid filename')
            return
        try:
            fobj = open(rq_final_path, 'wb' if self._allow_overwrite else 'xb')
        except FileExistsError:
            response.reject(ErrorCode.FILE_EXISTS, 'File already exists')
        except OSError as e:
            logger.info('Could not create file %s: %s', rq_final_path, e)
            response.reject(ErrorCode.ACCESS_VIOLATION, 'Could not create file')
        else:
            response.accept(fobj)


class TFTPHookService(AbstractTFTPReadService, AbstractTFTPWriteService):
    """Base class for non-terminal service.

    Services that only want to inspect the request should derive from this
    class and override the _pre_handle method.

    """

    def __init__(self, service: AbstractTFTPReadService | AbstractTFTPWriteService) -> None:
        self._service = service

    def _pre_handle(self, request: TFTPRequest) -> None:
        """This MAY be overridden in derived classes."""
        pass

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        self._pre_handle(request)
        if isinstance(self._service, AbstractTFTPReadService):
            self._service.handle_read_request(request, response)
        else:
            response.reject(ErrorCode.ILLEGAL_OPERATION, 'RRQ not supported')

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        self._pre_handle(request)
        if isinstance(self._service, AbstractTFTPWriteService):
            self._service.handle_write_request(request, response)
        else:
            response.reject(ErrorCode.ILLEGAL_OPERATION, 'WRQ not supported')


class TFTPLogService(TFTPHookService):
    """A small hook service that permits logging of the requests."""

    def __init__(
        self,
        logger: Callable[[str], None],
        service: AbstractTFTPReadService | AbstractTFTPWriteService,
    ) -> None:
        """
        logger -- a callable object taking a string as argument

        """
        super().__init__(service)
        self._logger = logger

    def _pre_handle(self, request: TFTPRequest) -> None:
        packet = request['packet']
        msg = (
            f"TFTP request from {request['address']!r} - "
            f"filename {packet['filename']!r} - mode {packet['mode'].value!r}"
        )
        if packet['options']:
            msg += f" - options {packet['options']!r}"
        self._logger(msg)
