#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import functools
import os
import types

from .packet import OpCode
from .storage import AccessViolation, FileSink, FileSource
from .transfer import ReceiveTransfer, SendTransfer


def resolve_path(root, path):
    """
    Joins a requested filename to `root`. Symlinks and `..` are resolved
    first, names ending up outside of `root` (absolute ones included) raise
    `AccessViolation`.
    """
    root = os.path.realpath(root)
    full_path = os.path.realpath(os.path.join(root, path))
    if os.path.commonpath([root, full_path]) != root:
        raise AccessViolation("%r resolves outside of %s" % (path, root))
    return full_path


class FileSendTransfer(SendTransfer):
    """Serves a read request from a file under `root`."""

    def __init__(self, local_addr, peer, path, root, **kwargs):
        self._root = root
        super().__init__(local_addr, peer, path, **kwargs)

    def get_source(self):
        return FileSource(resolve_path(self._root, self._path))


class FileReceiveTransfer(ReceiveTransfer):
    """Serves a write request into a file under `root`."""

    def __init__(self, local_addr, peer, path, root, **kwargs):
        self._root = root
        super().__init__(local_addr, peer, path, **kwargs)

    def get_sink(self):
        return FileSink(resolve_path(self._root, self._path))


def default_handlers(root, timeout=None, stats_callback=None, readonly=False):
    """
    Builds the opcode to handler table of a static file server.

    Every handler is a callable `(local_addr, peer, filename)` returning a
    transfer ready to `run()`.

    Args:
        root (str): directory files are read from and written to.
        timeout (float): per-packet wait of every transfer, `None` waits
            forever.
        stats_callback (callable): passed to every transfer.
        readonly (bool): leave write requests without a handler.

    Returns:
        mappingproxy: the read-only table.
    """
    handlers = {
        OpCode.RRQ: functools.partial(
            FileSendTransfer,
            root=root,
            timeout=timeout,
            stats_callback=stats_callback,
        )
    }
    if not readonly:
        handlers[OpCode.WRQ] = functools.partial(
            FileReceiveTransfer,
            root=root,
            timeout=timeout,
            stats_callback=stats_callback,
        )
    return types.MappingProxyType(handlers)
