#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from unittest.mock import Mock, patch
import os
import tempfile
import threading
import unittest

from tinytftp import constants, packet
from tinytftp.channel import MemoryChannel
from tinytftp.handlers import FileSendTransfer
from tinytftp.storage import BytesSource
from tinytftp.transfer import SendTransfer

LOCAL = ("127.0.0.1", 0)
PEER = ("127.0.0.1", 5678)


class StaticSendTransfer(SendTransfer):
    def __init__(self, source, *args, **kwargs):
        self.source = source
        super().__init__(*args, **kwargs)

    def get_source(self):
        if isinstance(self.source, Exception):
            raise self.source
        return self.source


def ack(n):
    return packet.encode_ack(n)


def data(n, payload):
    return packet.encode_data(n, payload)


class TestSendTransfer(unittest.TestCase):
    def setUp(self):
        self.channel = MemoryChannel()
        self.stats_callback = Mock()

    def make(self, source, timeout=5):
        return StaticSendTransfer(
            source,
            LOCAL,
            PEER,
            "want/bacon/file",
            timeout=timeout,
            stats_callback=self.stats_callback,
            channel=self.channel,
        )

    def testShortFile(self):
        self.channel.push(ack(1), PEER)
        stats = self.make(BytesSource("foo")).run()
        self.assertEqual(self.channel.sent, [(b"\x00\x03\x00\x01foo", PEER)])
        self.assertEqual(stats.error, {})
        self.assertEqual(stats.packets_sent, 1)
        self.assertEqual(stats.packets_acked, 1)
        self.assertEqual(stats.bytes_sent, 3)
        self.assertTrue(self.channel.closed)
        self.stats_callback.assert_called_once_with(stats)

    def testMultipleOfBlockSize(self):
        payload = bytes(range(256)) * 4
        for n in (1, 2, 3):
            self.channel.push(ack(n), PEER)
        stats = self.make(BytesSource(payload)).run()
        self.assertEqual(
            self.channel.sent,
            [
                (data(1, payload[:512]), PEER),
                (data(2, payload[512:]), PEER),
                (data(3, b""), PEER),
            ],
        )
        self.assertEqual(stats.error, {})
        self.assertEqual(stats.packets_acked, 3)
        self.assertEqual(stats.bytes_sent, 1024)

    def testEmptySource(self):
        self.channel.push(ack(1), PEER)
        stats = self.make(BytesSource(b"")).run()
        self.assertEqual(self.channel.sent, [(data(1, b""), PEER)])
        self.assertEqual(stats.error, {})

    def testMissingFile(self):
        with tempfile.TemporaryDirectory() as root:
            transfer = FileSendTransfer(
                LOCAL, PEER, "does/not/exist", root, timeout=5, channel=self.channel
            )
            stats = transfer.run()
        self.assertEqual(
            self.channel.sent,
            [(packet.encode_error(constants.ERR_FILE_NOT_FOUND, "File not found"), PEER)],
        )
        self.assertEqual(stats.error["error_code"], constants.ERR_FILE_NOT_FOUND)
        self.assertTrue(self.channel.closed)

    def testOutsideRoot(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = os.path.join(tmpdir, "root")
            os.mkdir(root)
            secret = os.path.join(tmpdir, "secret")
            with open(secret, "wb") as f:
                f.write(b"secret")
            for path in ("../secret", secret, "sub/../../secret"):
                self.channel = MemoryChannel()
                stats = FileSendTransfer(
                    LOCAL, PEER, path, root, timeout=5, channel=self.channel
                ).run()
                self.assertEqual(
                    self.channel.sent,
                    [(packet.encode_error(2, "Access violation"), PEER)],
                )
                self.assertEqual(
                    stats.error["error_code"], constants.ERR_ACCESS_VIOLATION
                )

    def testSourceOpenFailure(self):
        stats = self.make(PermissionError("boom!")).run()
        self.assertEqual(self.channel.sent, [(packet.encode_error(0, "boom!"), PEER)])
        self.assertEqual(stats.error, {"error_code": 0, "error_message": "boom!"})

    def testAckMismatch(self):
        self.channel.push(ack(2), PEER)
        stats = self.make(BytesSource(b"x" * 1024)).run()
        self.assertEqual(self.channel.sent, [(data(1, b"x" * 512), PEER)])
        self.assertEqual(stats.error["error_code"], constants.ERR_ILLEGAL_OPERATION)
        self.assertEqual(stats.packets_acked, 0)

    def testNotAnAck(self):
        self.channel.push(data(1, b"foo"), PEER)
        stats = self.make(BytesSource("foo")).run()
        self.assertEqual(len(self.channel.sent), 1)
        self.assertEqual(stats.error["error_code"], constants.ERR_ILLEGAL_OPERATION)

    def testUndecodableDatagram(self):
        self.channel.push(b"\x00", PEER)
        stats = self.make(BytesSource("foo")).run()
        self.assertEqual(len(self.channel.sent), 1)
        self.assertEqual(stats.error["error_code"], constants.ERR_ILLEGAL_OPERATION)

    def testRemoteError(self):
        self.channel.push(packet.encode_error(3, "disk full"), PEER)
        stats = self.make(BytesSource(b"x" * 2048)).run()
        # the error is not echoed back
        self.assertEqual(self.channel.sent, [(data(1, b"x" * 512), PEER)])
        self.assertEqual(stats.error, {"error_code": 3, "error_message": "disk full"})

    def testStrayPeer(self):
        stray = ("1.2.3.4", 9999)
        self.channel.push(ack(1), stray)
        self.channel.push(ack(1), PEER)
        stats = self.make(BytesSource("foo")).run()
        self.assertEqual(
            self.channel.sent,
            [
                (data(1, b"foo"), PEER),
                (packet.encode_error(5, "Unknown transfer id"), stray),
            ],
        )
        self.assertEqual(stats.error, {})

    @patch.object(constants, "POLL_INTERVAL_SECONDS", 0.01)
    def testTimeout(self):
        stats = self.make(BytesSource("foo"), timeout=0.05).run()
        # no retransmission
        self.assertEqual(len(self.channel.sent), 1)
        self.assertEqual(stats.error["error_code"], constants.ERR_UNDEFINED)
        self.assertTrue(stats.error["error_message"].startswith("timeout"))

    @patch.object(constants, "POLL_INTERVAL_SECONDS", 0.01)
    def testCancel(self):
        transfer = self.make(BytesSource("foo"), timeout=None)
        timer = threading.Timer(0.05, transfer.cancel)
        timer.start()
        stats = transfer.run()
        timer.join()
        self.assertEqual(
            stats.error, {"error_code": 0, "error_message": "transfer cancelled"}
        )
        self.assertTrue(self.channel.closed)

    def testSendFailure(self):
        self.channel.send = Mock(side_effect=OSError("network is down"))
        stats = self.make(BytesSource("foo")).run()
        # DATA and the ERROR reporting its failure were both attempted
        self.assertEqual(self.channel.send.call_count, 2)
        self.assertEqual(
            stats.error, {"error_code": 0, "error_message": "network is down"}
        )

    def testReadFailure(self):
        source = Mock()
        source.read.side_effect = IOError("bad sector")
        stats = self.make(source).run()
        self.assertEqual(
            self.channel.sent,
            [(packet.encode_error(0, "Error while reading from source"), PEER)],
        )
        self.assertEqual(stats.error["error_code"], constants.ERR_UNDEFINED)
        source.close.assert_called_once_with()

    def testPartialReads(self):
        source = Mock()
        source.read.side_effect = [b"a" * 100, b"b" * 300, b"c" * 112, b"d", b""]
        self.channel.push(ack(1), PEER)
        self.channel.push(ack(2), PEER)
        stats = self.make(source).run()
        self.assertEqual(
            self.channel.sent,
            [
                (data(1, b"a" * 100 + b"b" * 300 + b"c" * 112), PEER),
                (data(2, b"d"), PEER),
            ],
        )
        self.assertEqual(stats.error, {})

    def testBlockNumberWraps(self):
        transfer = self.make(BytesSource(b"x" * 2048))
        transfer._source = transfer.get_source()
        transfer._last_block_sent = constants.MAX_BLOCK_NUMBER
        transfer._next_block()
        self.assertEqual(transfer._last_block_sent, 0)
        transfer._next_block()
        self.assertEqual(transfer._last_block_sent, 1)

    def testStatsCallbackException(self):
        self.stats_callback.side_effect = Exception("boom!")
        self.channel.push(ack(1), PEER)
        stats = self.make(BytesSource("foo")).run()
        self.assertEqual(stats.error, {})
        self.assertTrue(self.channel.closed)
