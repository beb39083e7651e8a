#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Encoding and decoding of the five RFC 1350 packet shapes.

All integers on the wire are unsigned 16 bit big-endian. Strings (file names,
modes, error messages) are NUL terminated and are mapped to `str` through
latin-1 so that every byte value survives a round trip.
"""

import collections
import enum
import struct

from . import constants


class OpCode(enum.IntEnum):
    RRQ = constants.OPCODE_RRQ
    WRQ = constants.OPCODE_WRQ
    DATA = constants.OPCODE_DATA
    ACK = constants.OPCODE_ACK
    ERROR = constants.OPCODE_ERROR


class PacketError(Exception):
    """Base class for everything that can go wrong while decoding."""


class MalformedPacket(PacketError):
    pass


class TruncatedField(MalformedPacket):
    pass


class UnknownOpCode(PacketError):
    pass


class WrongOpCode(PacketError):
    pass


RequestPacket = collections.namedtuple("RequestPacket", ["opcode", "filename", "mode"])
DataPacket = collections.namedtuple("DataPacket", ["block_number", "payload"])
AckPacket = collections.namedtuple("AckPacket", ["block_number"])
ErrorPacket = collections.namedtuple("ErrorPacket", ["error_code", "message"])

_HEADER = struct.Struct("!HH")


def _to_bytes(value, errors="strict"):
    if isinstance(value, str):
        return value.encode("latin-1", errors)
    return bytes(value)


def _read_string(buf, start, field):
    end = buf.find(b"\x00", start)
    if end < 0:
        raise TruncatedField("%s is not NUL terminated" % field)
    return buf[start:end].decode("latin-1"), end + 1


def decode_opcode(buf):
    """
    Extract the opcode of a datagram.

    Args:
        buf (bytes): a raw datagram.

    Returns:
        OpCode: the opcode found in the first two bytes.

    Raises:
        MalformedPacket: the datagram is shorter than two bytes.
        UnknownOpCode: the value is not a RFC 1350 opcode.
    """
    if len(buf) < 2:
        raise MalformedPacket("packet too small to get opcode: %d bytes" % len(buf))
    code = struct.unpack("!H", buf[:2])[0]
    try:
        return OpCode(code)
    except ValueError:
        raise UnknownOpCode("unknown opcode: %d" % code) from None


def _expect(buf, *opcodes):
    opcode = decode_opcode(buf)
    if opcode not in opcodes:
        raise WrongOpCode(
            "expected %s, got %s"
            % ("/".join(op.name for op in opcodes), opcode.name)
        )
    return opcode


def decode_request(buf):
    """
    Parses a RRQ/WRQ packet:

      2 bytes     string    1 byte     string   1 byte
     ------------------------------------------------
    | Opcode |  Filename  |   0  |    Mode    |   0  |
     ------------------------------------------------

    Anything following the mode terminator is ignored.
    """
    opcode = _expect(buf, OpCode.RRQ, OpCode.WRQ)
    filename, pos = _read_string(buf, 2, "filename")
    mode, _ = _read_string(buf, pos, "mode")
    if not filename:
        raise MalformedPacket("empty filename")
    return RequestPacket(opcode, filename, mode)


def decode_ack(buf):
    if len(buf) != 4:
        raise MalformedPacket("ACK must be 4 bytes, got %d" % len(buf))
    _expect(buf, OpCode.ACK)
    return AckPacket(_HEADER.unpack(buf)[1])


def decode_data(buf):
    if len(buf) < 4:
        raise MalformedPacket("DATA too small: %d bytes" % len(buf))
    _expect(buf, OpCode.DATA)
    payload = bytes(buf[4:])
    if len(payload) > constants.BLOCK_SIZE:
        raise MalformedPacket("DATA payload too big: %d bytes" % len(payload))
    return DataPacket(_HEADER.unpack(buf[:4])[1], payload)


def decode_error(buf):
    if len(buf) < 4:
        raise MalformedPacket("ERROR too small: %d bytes" % len(buf))
    _expect(buf, OpCode.ERROR)
    # some peers forget the terminator, keep whatever is there
    message = bytes(buf[4:]).split(b"\x00", 1)[0]
    return ErrorPacket(_HEADER.unpack(buf[:4])[1], message.decode("latin-1"))


def encode_request(opcode, filename, mode):
    filename, mode = _to_bytes(filename), _to_bytes(mode)
    fmt = "!H%dsx%dsx" % (len(filename), len(mode))
    return struct.pack(fmt, opcode, filename, mode)


def encode_data(block_number, payload):
    """
    Builds a DATA packet:

      2 bytes     2 bytes      n bytes
     ----------------------------------
    | Opcode |   Block #  |   Data     |
     ----------------------------------

    Callers chunk the payload, it is never split here.
    """
    payload = bytes(payload)
    if len(payload) > constants.BLOCK_SIZE:
        raise ValueError(
            "payload of %d bytes exceeds block size %d"
            % (len(payload), constants.BLOCK_SIZE)
        )
    return _HEADER.pack(OpCode.DATA, block_number) + payload


def encode_ack(block_number):
    return _HEADER.pack(OpCode.ACK, block_number)


def encode_error(error_code, message):
    message = _to_bytes(message, errors="replace")
    fmt = "!HH%dsx" % len(message)
    return struct.pack(fmt, OpCode.ERROR, error_code, message)
