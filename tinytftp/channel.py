#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import ipaddress
import logging
import queue
import socket


def address_family(address):
    """Returns the socket family matching an IPv4 or IPv6 literal."""
    if isinstance(ipaddress.ip_address(address), ipaddress.IPv4Address):
        return socket.AF_INET
    return socket.AF_INET6


class PacketChannel:
    """
    A base class representing a datagram endpoint.

    The rendezvous endpoint of the server and the private endpoint of every
    transfer are both `PacketChannel` objects, which lets the protocol code
    run against real sockets or against in-memory queues.
    """

    def receive(self, bufsize, timeout=None):
        """
        Blocks until a datagram arrives.

        Args:
            bufsize (int): maximum number of bytes returned, longer datagrams
                are truncated.
            timeout (float): seconds to wait, `None` waits forever.

        Returns:
            tuple: (data, peer)

        Raises:
            socket.timeout: nothing arrived within `timeout`.
        """
        raise NotImplementedError()

    def send(self, data, peer):
        raise NotImplementedError()

    def getsockname(self):
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()


class UDPChannel(PacketChannel):
    def __init__(self, address="0.0.0.0", port=0):
        """
        Binds a UDP socket. Port 0 lets the kernel pick an ephemeral port.

        Args:
            address (str): IPv4 or IPv6 address to bind to.
            port (int): port to bind to.
        """
        self._family = address_family(address)
        self._socket = socket.socket(self._family, socket.SOCK_DGRAM)
        try:
            self._socket.bind((address, port))
        except OSError:
            self._socket.close()
            raise
        logging.debug("Bound UDP socket on %s" % str(self.getsockname()))

    @property
    def family(self):
        return self._family

    def receive(self, bufsize, timeout=None):
        self._socket.settimeout(timeout)
        return self._socket.recvfrom(bufsize)

    def send(self, data, peer):
        return self._socket.sendto(data, peer)

    def getsockname(self):
        return self._socket.getsockname()

    def close(self):
        self._socket.close()


class MemoryChannel(PacketChannel):
    """
    A queue-backed `PacketChannel`. Inbound datagrams are queued with `push`,
    outbound ones are recorded in `sent` as (data, peer) tuples.
    """

    def __init__(self, address=("127.0.0.1", 0)):
        self._address = address
        self._inbox = queue.Queue()
        self.sent = []
        self.closed = False

    def push(self, data, peer):
        self._inbox.put((bytes(data), peer))

    def receive(self, bufsize, timeout=None):
        try:
            data, peer = self._inbox.get(timeout=timeout)
        except queue.Empty:
            raise socket.timeout("timed out") from None
        return data[:bufsize], peer

    def send(self, data, peer):
        self.sent.append((bytes(data), peer))
        return len(data)

    def getsockname(self):
        return self._address

    def close(self):
        self.closed = True
