# Copyright 2024 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""A TFTP server implementation with twisted.

Things to note:
- read (RRQ) and write (WRQ) requests are supported. The server mode
  restricts the server to one of them if needed.
- octet and netascii modes are supported. Mail mode is not, since it's
  deprecated.
- support the blksize option (RFC2348) and the timeout and tsize options
  (RFC2349).
- use zero-based wraparound when transferring files taking more than
  65535 blocks to transfer.
- it's not using an adaptive timeout.

"""

from wazo_tftp.server.proto import ServerMode, TFTPProtocol
from wazo_tftp.server.service import (
    AbstractTFTPReadService,
    AbstractTFTPWriteService,
    TFTPBytesService,
    TFTPFileService,
    TFTPHookService,
    TFTPLogService,
    TFTPNullService,
    TFTPRequest,
)

__all__ = [
    'AbstractTFTPReadService',
    'AbstractTFTPWriteService',
    'ServerMode',
    'TFTPBytesService',
    'TFTPFileService',
    'TFTPHookService',
    'TFTPLogService',
    'TFTPNullService',
    'TFTPProtocol',
    'TFTPRequest',
]
