#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import io
import logging
import os
import tempfile


class AccessViolation(Exception):
    """Raised when a requested file lies outside of what may be served."""


class DataSource:
    """A base class representing a readable file-like object"""

    def read(self, n):
        """Returns up to `n` bytes, an empty bytes object at end of stream."""
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()


class DataSink:
    """
    A base class representing a writable file-like object.

    `finalize` is called exactly once, when the transfer succeeded. `close` is
    called on every exit path, also after `finalize`, so it must tolerate
    being called on an already finalized sink.
    """

    def write(self, data):
        raise NotImplementedError()

    def finalize(self):
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()


class BytesSource(DataSource):
    """
    A convenience subclass of `DataSource` that serves an in-memory buffer.
    Strings are encoded as latin-1.
    """

    def __init__(self, data):
        if isinstance(data, str):
            data = data.encode("latin-1")
        self._reader = io.BytesIO(data)

    def read(self, n):
        return self._reader.read(n)

    def close(self):
        pass


class BytesSink(DataSink):
    def __init__(self):
        self._buffer = io.BytesIO()
        self.finalized = False

    def write(self, data):
        return self._buffer.write(data)

    def finalize(self):
        self.finalized = True

    def close(self):
        pass

    def getvalue(self):
        return self._buffer.getvalue()


class FileSource(DataSource):
    def __init__(self, path):
        self._reader = open(path, "rb")

    def read(self, n):
        return self._reader.read(n)

    def close(self):
        self._reader.close()


class FileSink(DataSink):
    def __init__(self, path):
        self._path = path
        self._writer = open(path, "wb")

    def write(self, data):
        return self._writer.write(data)

    def finalize(self):
        self._writer.flush()
        os.fsync(self._writer.fileno())
        self._writer.close()
        logging.debug("Synced %s to disk" % self._path)

    def close(self):
        self._writer.close()


class AtomicFileSink(DataSink):
    """
    Writes into a temporary file next to `path`. The temporary file replaces
    `path` when the sink is finalized and is removed if it is closed
    before, so an existing `path` is left untouched by a failed transfer.
    """

    def __init__(self, path):
        self._path = path
        fd, self._tmp_path = tempfile.mkstemp(
            prefix=".%s." % os.path.basename(path),
            dir=os.path.dirname(path) or ".",
        )
        self._writer = os.fdopen(fd, "wb")
        self._finalized = False

    def write(self, data):
        return self._writer.write(data)

    def finalize(self):
        self._writer.flush()
        os.fsync(self._writer.fileno())
        self._writer.close()
        os.replace(self._tmp_path, self._path)
        self._finalized = True
        logging.debug("Moved %s to %s" % (self._tmp_path, self._path))

    def close(self):
        self._writer.close()
        if not self._finalized and os.path.exists(self._tmp_path):
            logging.debug("Removing incomplete file %s" % self._tmp_path)
            os.remove(self._tmp_path)
