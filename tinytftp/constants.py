#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# TFTP opcodes
OPCODE_RRQ = 1
OPCODE_WRQ = 2
OPCODE_DATA = 3
OPCODE_ACK = 4
OPCODE_ERROR = 5

# TFTP modes (encodings). All of them are served as octet streams.
MODE_NETASCII = "netascii"
MODE_BINARY = "octet"
MODE_MAIL = "mail"
ACCEPTED_MODES = frozenset([MODE_NETASCII, MODE_BINARY, MODE_MAIL])

# TFTP error codes
ERR_UNDEFINED = 0  # Not defined, see error msg (if any) - RFC 1350.
ERR_FILE_NOT_FOUND = 1  # File not found - RFC 1350.
ERR_ACCESS_VIOLATION = 2  # Access violation - RFC 1350.
ERR_DISK_FULL = 3  # Disk full or allocation exceeded - RFC 1350.
ERR_ILLEGAL_OPERATION = 4  # Illegal TFTP operation - RFC 1350.
ERR_UNKNOWN_TRANSFER_ID = 5  # Unknown transfer ID - RFC 1350.
ERR_FILE_EXISTS = 6  # File already exists - RFC 1350.
ERR_NO_SUCH_USER = 7  # No such user - RFC 1350.

MSG_FILE_NOT_FOUND = "File not found"
MSG_ACCESS_VIOLATION = "Access violation"
MSG_UNKNOWN_TRANSFER_ID = "Unknown transfer id"

# TFTP's block number is an unsigned 16 bit integer, it wraps to 0.
MAX_BLOCK_NUMBER = 65535

# fixed payload size of a DATA packet, RFC 1350
BLOCK_SIZE = 512

# receive buffer size. A datagram filling it completely may have been
# truncated by the kernel and is rejected.
MAX_PACKET_SIZE = BLOCK_SIZE * 2

DEFAULT_PORT = 69

# How often blocking receives wake up to check for cancellation
POLL_INTERVAL_SECONDS = 0.5

DEFAULT_MAX_TRANSFERS = 32

# used by the command line tools, the library default is to wait forever
DEFAULT_TIMEOUT_SECONDS = 5
