#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from unittest.mock import Mock
import unittest

from tinytftp.channel import MemoryChannel
from tinytftp.packet import OpCode
from tinytftp.server import Listener

"""
Feeds the listener with broken requests and checks that none of them crashes
it, spawns a transfer or gets an answer.
"""

RRQ = b"\x00\x01"
WRQ = b"\x00\x02"

# if you want to add more packets for the tests, do it here
TEST_PAYLOADS = (
    b"",
    b"\x00",
    RRQ,
    RRQ + b"some_fi",
    RRQ + b"some_file\x00",
    RRQ + b"some_file\x00bina",
    RRQ + b"some_file\x00binascii\x00",
    RRQ + b"\x00octet\x00",
    WRQ + b"some_file",
    WRQ + b"some_file\x00netascii",
    b"\x00\x03\x00\x01data",
    b"\x00\x05\x00\x01File not found\x00",
    b"\x00\x07some_file\x00octet\x00",
    RRQ + b"x" * 2048,
)


class TestServerMalformedPacket(unittest.TestCase):
    def testMalformedPackets(self):
        channel = MemoryChannel()
        handler = Mock()
        listener = Listener(
            "::", 0, {OpCode.RRQ: handler, OpCode.WRQ: handler}, channel=channel
        )
        for payload in TEST_PAYLOADS:
            channel.push(payload, ("::1", 4242, 0, 0))
            listener.run_once()
        handler.assert_not_called()
        self.assertEqual(channel.sent, [])
        self.assertEqual(listener.stats.get_counter("transfer_count"), 0)
