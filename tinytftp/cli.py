#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import argparse
import logging

from . import constants
from .client import run_transfer
from .handlers import default_handlers
from .packet import OpCode
from .server import Listener

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def print_session_stats(stats):
    logging.info("Stats: for %r requesting %r" % (stats.peer, stats.file_path))
    logging.info("Error: %r" % stats.error)
    logging.info("Time spent: %dms" % (stats.duration() * 1e3))
    logging.info("Packets sent: %d" % stats.packets_sent)
    logging.info("Packets ACKed: %d" % stats.packets_acked)
    logging.info("Bytes sent: %d" % stats.bytes_sent)
    logging.info("Bytes received: %d" % stats.bytes_received)


def print_server_stats(stats):
    """
    Print server stats - see the ServerStats class
    """
    counters = stats.get_and_reset_all_counters()
    logging.info("Server stats after %ds: %r" % (stats.duration(), counters))


def _timeout(value):
    """0 means wait forever."""
    value = float(value)
    if value < 0:
        raise argparse.ArgumentTypeError("timeout can't be negative")
    return value or None


def parse_host_port(value):
    """
    Splits `host:port`, IPv6 hosts are written `[::1]:69`.

    Returns:
        tuple: (host, port)
    """
    host, sep, port = value.rpartition(":")
    if not sep:
        raise argparse.ArgumentTypeError("expected host:port, got %r" % value)
    host = host.strip("[]")
    if not host:
        raise argparse.ArgumentTypeError("host can't be blank")
    if not port:
        raise argparse.ArgumentTypeError("port can't be blank")
    try:
        port = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid port %r" % port) from None
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError("port out of range: %d" % port)
    return host, port


def get_server_arguments(argv=None):
    parser = argparse.ArgumentParser(description="Serve files over TFTP")
    parser.add_argument(
        "--ip", type=str, default="0.0.0.0", help="IP address to bind to"
    )
    parser.add_argument(
        "--port", type=int, default=constants.DEFAULT_PORT, help="port to bind to"
    )
    parser.add_argument(
        "--root", type=str, default="", help="root of the static filesystem"
    )
    parser.add_argument(
        "--timeout_s",
        type=_timeout,
        default=constants.DEFAULT_TIMEOUT_SECONDS,
        help="seconds to wait for every packet, 0 waits forever",
    )
    parser.add_argument(
        "--max_transfers",
        type=int,
        default=constants.DEFAULT_MAX_TRANSFERS,
        help="maximum number of concurrent transfers",
    )
    parser.add_argument(
        "--readonly", action="store_true", help="refuse write requests"
    )
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser.parse_args(argv)


def get_client_arguments(argv=None):
    parser = argparse.ArgumentParser(description="Transfer a file over TFTP")
    parser.add_argument("command", choices=["get", "put"])
    parser.add_argument("address", type=parse_host_port, help="server host:port")
    parser.add_argument("filename", help="name of the file on the server")
    parser.add_argument(
        "--local", type=str, default=None, help="local file, defaults to filename"
    )
    parser.add_argument(
        "--mode",
        type=str.lower,
        default=constants.MODE_BINARY,
        choices=sorted(constants.ACCEPTED_MODES),
    )
    parser.add_argument(
        "--timeout_s",
        type=_timeout,
        default=constants.DEFAULT_TIMEOUT_SECONDS,
        help="seconds to wait for every packet, 0 waits forever",
    )
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser.parse_args(argv)


def _setup_logging(debug):
    logging.basicConfig(
        format=LOG_FORMAT, level=logging.DEBUG if debug else logging.INFO
    )


def server_main(argv=None):
    args = get_server_arguments(argv)
    _setup_logging(args.debug)
    handlers = default_handlers(
        args.root,
        timeout=args.timeout_s,
        stats_callback=print_session_stats,
        readonly=args.readonly,
    )
    server = Listener(args.ip, args.port, handlers, max_transfers=args.max_transfers)
    try:
        server.run()
    except KeyboardInterrupt:
        server.cancel()
        server.join(timeout=constants.DEFAULT_TIMEOUT_SECONDS)
    print_server_stats(server.stats)


def client_main(argv=None):
    args = get_client_arguments(argv)
    _setup_logging(args.debug)
    opcode = OpCode.RRQ if args.command == "get" else OpCode.WRQ
    stats = run_transfer(
        opcode,
        args.address,
        args.filename,
        local_path=args.local,
        mode=args.mode,
        timeout=args.timeout_s,
        stats_callback=print_session_stats if args.debug else None,
    )
    if stats.error:
        logging.error(
            "%s of %s failed: %s"
            % (args.command, args.filename, stats.error["error_message"])
        )
        return 1
    return 0

