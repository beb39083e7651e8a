#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import collections
import logging
import socket
import threading
import time
import traceback
import types

from . import constants, packet
from .channel import UDPChannel
from .handlers import default_handlers
from .packet import PacketError


class ServerStats:
    def __init__(self, server_addr=None):
        """
        `ServerStats` holds named counters about what the listener did with
        the datagrams it received: `transfer_count`, `malformed_count`,
        `rejected_mode_count`, `unhandled_opcode_count` and `busy_count`.

        Counters are updated by the listener loop and may be read from any
        thread, every operation is atomic.

        Args:
            server_addr (tuple): the rendezvous address, for the programmer's
                convenience.
        """
        self.server_addr = server_addr
        self.start_time = time.time()
        self._counters = collections.Counter()
        self._counters_lock = threading.Lock()

    def get_counter(self, name):
        with self._counters_lock:
            return self._counters[name]

    def increment_counter(self, name, increment=1):
        with self._counters_lock:
            self._counters[name] += increment

    def get_all_counters(self):
        with self._counters_lock:
            return dict(self._counters)

    def get_and_reset_all_counters(self):
        with self._counters_lock:
            counters = dict(self._counters)
            self._counters.clear()
        return counters

    def duration(self):
        """Listener uptime in seconds."""
        return time.time() - self.start_time


class Listener:
    def __init__(
        self,
        address,
        port,
        handlers,
        max_transfers=constants.DEFAULT_MAX_TRANSFERS,
        channel=None,
    ):
        """
        This class implements the loop which deals with accepting new
        requests on the rendezvous socket.

        Every accepted request is handed to the handler registered for its
        opcode, the resulting transfer runs on its own thread over its own
        socket while the listener goes back to waiting.

        Args:
            address (str): address (IPv4 or IPv6) the listener binds to.

            port (int): the port the listener binds to.

            handlers (mapping): `OpCode` to callable
                `(local_addr, peer, filename)` returning a transfer. It is
                copied into a read-only mapping, later changes to the argument
                are not seen.

            max_transfers (int): how many transfers may run at the same time.
                Requests arriving while all slots are taken are dropped.

            channel (PacketChannel): an already bound rendezvous channel to
                use instead of binding a UDP socket.

        Raises:
            OSError: the rendezvous socket can't be bound.
        """
        self._handlers = types.MappingProxyType(dict(handlers))
        if channel is None:
            channel = UDPChannel(address, port)
        self._channel = channel
        self._server_addr = (address, self._channel.getsockname()[1])
        self._should_stop = False
        self._server_stats = ServerStats(self._server_addr)
        self._slots = threading.BoundedSemaphore(max_transfers)
        self._transfers = {}
        self._transfers_lock = threading.Lock()
        self._thread = None

    @property
    def server_addr(self):
        return self._server_addr

    @property
    def stats(self):
        return self._server_stats

    def start(self):
        """Runs the serving loop on a background thread."""
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()
        return self

    def run(self, run_once=False):
        """
        Run the serving loop until `close()` is called.

        Args:
            run_once (bool): If True it will exit the loop after first
                iteration.  Note this is only used in unit tests.
        """
        logging.info("Waiting for requests on %s" % str(self._server_addr))
        try:
            while not self._should_stop:
                self.run_once()
                if run_once:
                    break
        finally:
            self._channel.close()

    def run_once(self):
        """
        Waits a bit for a datagram on the rendezvous socket. The wait is
        bounded so that `close()` is noticed.
        """
        try:
            data, peer = self._channel.receive(
                constants.MAX_PACKET_SIZE, constants.POLL_INTERVAL_SECONDS
            )
        except socket.timeout:
            return
        except OSError as e:
            if not self._should_stop:
                logging.error("Error receiving on the rendezvous socket: %s" % e)
            return
        self.on_new_data(data, peer)

    def on_new_data(self, data, peer):
        """
        Deals with a datagram received on the rendezvous socket: decodes and
        validates the request, then spawns the transfer built by the handler
        registered for its opcode. Nothing is ever sent back from here.
        """
        if len(data) >= constants.MAX_PACKET_SIZE:
            logging.error(
                "Received %d bytes from %s, possibly truncated, ignoring"
                % (len(data), peer)
            )
            self._server_stats.increment_counter("malformed_count")
            return
        try:
            request = packet.decode_request(data)
        except PacketError as e:
            logging.error("Received malformed packet from %s, ignoring: %s" % (peer, e))
            self._server_stats.increment_counter("malformed_count")
            return

        if request.mode.lower() not in constants.ACCEPTED_MODES:
            logging.warning(
                "Unknown mode %r requested by %s, ignoring" % (request.mode, peer)
            )
            self._server_stats.increment_counter("rejected_mode_count")
            return

        handler = self._handlers.get(request.opcode)
        if handler is None:
            logging.warning(
                "No handler for opcode %s, not serving the request from %s"
                % (request.opcode.name, peer)
            )
            self._server_stats.increment_counter("unhandled_opcode_count")
            return

        logging.info(
            "%s for `%s` from %s" % (request.opcode.name, request.filename, peer)
        )
        if not self._slots.acquire(blocking=False):
            logging.warning(
                "Too many transfers in flight, dropping the request from %s" % (peer,)
            )
            self._server_stats.increment_counter("busy_count")
            return
        try:
            transfer = handler(self._server_addr, peer, request.filename)
        except Exception as e:
            self._slots.release()
            logging.error(
                "creating a handler for %r raised an exception %s"
                % (request.filename, e)
            )
            logging.error(traceback.format_exc())
            return
        if transfer is None:
            self._slots.release()
            logging.warning(
                "The handler is null! Not serving the request from %s" % (peer,)
            )
            return
        self._spawn(transfer)
        self._server_stats.increment_counter("transfer_count")

    def _spawn(self, transfer):
        thread = threading.Thread(target=self._run_transfer, args=(transfer,))
        thread.daemon = True
        with self._transfers_lock:
            self._transfers[thread] = transfer
        thread.start()

    def _run_transfer(self, transfer):
        try:
            transfer.run()
        except Exception as e:
            logging.exception("Transfer raised an exception: %s" % e)
        finally:
            with self._transfers_lock:
                self._transfers.pop(threading.current_thread(), None)
            self._slots.release()

    def active_transfers(self):
        """Returns the transfers currently running."""
        with self._transfers_lock:
            return list(self._transfers.values())

    def join(self, timeout=None):
        """
        Waits for the running transfers to finish, and for the serving loop
        too when it was started with `start()` and has been told to stop.

        Args:
            timeout (float): overall seconds to wait, `None` waits forever.

        Returns:
            bool: True if nothing is running anymore.
        """
        deadline = None if timeout is None else time.time() + timeout
        with self._transfers_lock:
            threads = list(self._transfers)
        if self._thread is not None and self._should_stop:
            threads.append(self._thread)
        for thread in threads:
            if deadline is None:
                thread.join()
            else:
                thread.join(max(0, deadline - time.time()))
        return not any(thread.is_alive() for thread in threads)

    def cancel(self):
        """Stops the serving loop and asks every running transfer to stop."""
        self.close()
        for transfer in self.active_transfers():
            transfer.cancel()

    def close(self):
        """
        Stops the listener, by setting a boolean flag which will be picked by
        the main while loop. Running transfers are left alone.
        """
        self._should_stop = True


def start_listener(
    port=constants.DEFAULT_PORT,
    address="0.0.0.0",
    root="",
    timeout=None,
    max_transfers=constants.DEFAULT_MAX_TRANSFERS,
    stats_callback=None,
    readonly=False,
):
    """
    Binds a static file server and runs it on a background thread.

    Returns:
        Listener: the running listener, use `close()`/`cancel()` and `join()`
            to stop it.
    """
    handlers = default_handlers(
        root, timeout=timeout, stats_callback=stats_callback, readonly=readonly
    )
    listener = Listener(address, port, handlers, max_transfers=max_transfers)
    return listener.start()
