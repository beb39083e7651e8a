#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import logging
import os
import socket

from . import constants, packet
from .packet import OpCode
from .storage import AtomicFileSink, FileSource
from .transfer import ReceiveTransfer, SendTransfer, TransferStats


class _ClientMixin:
    # the server answers from a new port, whoever replies first becomes the
    # peer of the transfer
    _peer_locked = False
    # local failures concern nobody but the caller
    _report_storage_errors = False

    def _transmit_request(self, opcode):
        try:
            self._transmit(packet.encode_request(opcode, self._path, self._mode))
        except OSError as e:
            logging.error(
                "Error sending %s to %s: %s" % (opcode.name, self._peer, e)
            )
            self._set_error(constants.ERR_UNDEFINED, str(e))
            self._should_stop = True


class GetTransfer(_ClientMixin, ReceiveTransfer):
    """Reads `path` from a server into `local_path`."""

    _acknowledge_request = False

    def __init__(
        self, local_addr, server, path, local_path, mode=constants.MODE_BINARY, **kwargs
    ):
        self._local_path = local_path
        self._mode = mode
        super().__init__(local_addr, server, path, **kwargs)

    def get_sink(self):
        return AtomicFileSink(self._local_path)

    def _start(self):
        self._transmit_request(OpCode.RRQ)


class PutTransfer(_ClientMixin, SendTransfer):
    """
    Writes `local_path` to `path` on a server. The send loop starts when the
    server acknowledges the request with ACK 0.
    """

    def __init__(
        self, local_addr, server, path, local_path, mode=constants.MODE_BINARY, **kwargs
    ):
        self._local_path = local_path
        self._mode = mode
        super().__init__(local_addr, server, path, **kwargs)

    def get_source(self):
        return FileSource(self._local_path)

    def _start(self):
        self._transmit_request(OpCode.WRQ)


def _resolve(host, port):
    """
    Returns the address family and socket address to reach `host` at. IPv4
    comes first when a name has both, servers bind 0.0.0.0 by default.
    """
    addresses = socket.getaddrinfo(host, port, 0, socket.SOCK_DGRAM)
    addresses.sort(key=lambda a: a[0] != socket.AF_INET)
    family, _, _, _, server = addresses[0]
    return family, server


def run_transfer(
    opcode,
    remote_address,
    filename,
    local_path=None,
    mode=constants.MODE_BINARY,
    timeout=constants.DEFAULT_TIMEOUT_SECONDS,
    stats_callback=None,
    channel=None,
):
    """
    Performs one client transfer against a TFTP server.

    Args:
        opcode (int): `OpCode.RRQ` to get a file, `OpCode.WRQ` to put one.

        remote_address (tuple): (host, port) of the server's rendezvous
            socket.

        filename (str): name of the file on the server.

        local_path (str): local file to write to (get) or read from (put).
            Defaults to the base name of `filename`.

        mode (str): transfer mode announced in the request.

        timeout (float): seconds to wait for every packet, `None` waits
            forever.

        stats_callback (callable): called with the `TransferStats` at the
            end.

        channel (PacketChannel): use this channel instead of binding a UDP
            socket.

    Returns:
        TransferStats: `error` is empty if the transfer succeeded.

    Raises:
        ValueError: `opcode` doesn't start a transfer.
    """
    opcode = OpCode(opcode)
    if opcode not in (OpCode.RRQ, OpCode.WRQ):
        raise ValueError("only RRQ and WRQ start a transfer, got %s" % opcode.name)
    if local_path is None:
        local_path = os.path.basename(filename)

    try:
        family, server = _resolve(*remote_address)
    except OSError as e:
        logging.error("Unable to resolve %s: %s" % (remote_address[0], e))
        stats = TransferStats(None, remote_address, filename)
        stats.error = {"error_code": constants.ERR_UNDEFINED, "error_message": str(e)}
        if stats_callback is not None:
            stats_callback(stats)
        return stats
    local_addr = ("::" if family == socket.AF_INET6 else "0.0.0.0", 0)

    cls = GetTransfer if opcode == OpCode.RRQ else PutTransfer
    transfer = cls(
        local_addr,
        server,
        filename,
        local_path,
        mode=mode,
        timeout=timeout,
        stats_callback=stats_callback,
        channel=channel,
    )
    return transfer.run()
