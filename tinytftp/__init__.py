#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from .channel import MemoryChannel, PacketChannel, UDPChannel
from .client import run_transfer
from .handlers import default_handlers
from .packet import OpCode
from .server import Listener, ServerStats, start_listener
from .storage import AccessViolation, DataSink, DataSource
from .transfer import ReceiveTransfer, SendTransfer, TransferStats

__all__ = [
    "AccessViolation",
    "DataSink",
    "DataSource",
    "Listener",
    "MemoryChannel",
    "OpCode",
    "PacketChannel",
    "ReceiveTransfer",
    "SendTransfer",
    "ServerStats",
    "TransferStats",
    "UDPChannel",
    "default_handlers",
    "run_transfer",
    "start_listener",
]
