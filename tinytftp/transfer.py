#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import logging
import socket
import time

from . import constants, packet
from .channel import UDPChannel
from .packet import OpCode, PacketError
from .storage import AccessViolation


class TransferStats:
    """
    TransferStats represents a digest of what happened during a transfer.
    Data inside the object gets populated while the transfer runs, it is
    complete when it gets passed to the stats callback and when `run()`
    returns it.

    An empty `error` dictionary means the transfer succeeded, otherwise it
    holds `error_code` and `error_message`.
    """

    def __init__(self, local_addr, peer, file_path):
        self.peer = peer
        self.local_addr = local_addr
        self.file_path = file_path
        self.error = {}
        self.start_time = time.time()
        self.packets_sent = 0
        self.packets_acked = 0
        self.bytes_sent = 0
        self.bytes_received = 0

    def duration(self):
        return time.time() - self.start_time


class BaseTransfer:
    # clients only learn the peer's transfer port from its first reply
    _peer_locked = True
    # whether local storage failures are reported to the peer
    _report_storage_errors = True

    def __init__(
        self, local_addr, peer, path, timeout=None, stats_callback=None, channel=None
    ):
        """
        Class that deals with one file transfer with a single peer, over a
        channel private to this transfer.

        Note:
            Do not use this class directly, use `SendTransfer` or
            `ReceiveTransfer`.

        Args:
            local_addr (tuple): (ip, port) of the local end. The private
                channel is bound to the same ip on an ephemeral port.

            peer (tuple): (ip, port) of the peer.

            path (string): requested file.

            timeout (float): seconds to wait for the next packet before giving
                up on the transfer. `None` waits forever.

            stats_callback (callable): executed at the end of the transfer
                with the `TransferStats` instance.

            channel (PacketChannel): an already bound channel to use instead
                of binding a new UDP socket.
        """
        self._local_addr = local_addr
        self._peer = peer
        self._path = path
        self._timeout = timeout
        self._stats_callback = stats_callback
        self._channel = channel
        self._should_stop = False
        self._cancelled = False
        self._completed = False
        self._reset_timeout()
        self._stats = TransferStats(local_addr, peer, path)

    @property
    def stats(self):
        return self._stats

    def _get_channel(self):
        if self._channel is None:
            self._channel = UDPChannel(str(self._local_addr[0]), 0)
        return self._channel

    def _reset_timeout(self):
        """Pushes the expiry timestamp `timeout` seconds in the future."""
        if self._timeout is None:
            self._expire_ts = None
        else:
            self._expire_ts = time.time() + self._timeout

    def cancel(self):
        """
        Asks the transfer to stop. It is noticed the next time a receive
        wakes up, within `constants.POLL_INTERVAL_SECONDS`.
        """
        self._cancelled = True
        self._should_stop = True

    def run(self):
        """This is the main loop, it returns the `TransferStats`."""
        logging.info(
            "Starting %s of `%s` with peer `%s`"
            % (self.__class__.__name__, self._path, self._peer)
        )
        try:
            if self._open():
                self._start()
                while not self._should_stop:
                    self.run_once()
        except (KeyboardInterrupt, SystemExit):
            logging.info("Caught KeyboardInterrupt/SystemExit exception. Will exit.")
            self._cancelled = True
        finally:
            if self._cancelled and not self._completed and not self._stats.error:
                self._set_error(constants.ERR_UNDEFINED, "transfer cancelled")
            self._close()
        return self._stats

    def run_once(self):
        """The main body of the transfer loop."""
        self.on_new_data()
        if (
            not self._should_stop
            and self._expire_ts is not None
            and time.time() > self._expire_ts
        ):
            self._handle_timeout()

    def _open(self):
        try:
            self._get_channel()
        except OSError as e:
            logging.error("Unable to bind a transfer socket: %s" % e)
            self._set_error(constants.ERR_UNDEFINED, str(e))
            return False
        return self._open_storage()

    def _open_storage(self):
        raise NotImplementedError()

    def _start(self):
        raise NotImplementedError()

    def _handle_packet(self, opcode, data):
        raise NotImplementedError()

    def _close_storage(self):
        raise NotImplementedError()

    def on_new_data(self):
        """
        Waits for the next datagram on the private channel, checks where it
        comes from and hands it to `_handle_packet`.
        """
        try:
            data, peer = self._get_channel().receive(
                constants.MAX_PACKET_SIZE, constants.POLL_INTERVAL_SECONDS
            )
        except socket.timeout:
            return
        except OSError as e:
            logging.error("Error receiving from %s: %s" % (self._peer, e))
            self._set_error(constants.ERR_UNDEFINED, str(e))
            self._should_stop = True
            return
        if not self._peer_locked:
            self._peer = peer
            self._stats.peer = peer
            self._peer_locked = True
        elif peer != self._peer:
            logging.warning("Unexpected peer: %s, expected %s" % (peer, self._peer))
            self._reject_peer(peer)
            return
        try:
            opcode = packet.decode_opcode(data)
        except PacketError as e:
            self._protocol_error("Undecodable packet from %s: %s" % (peer, e))
            return
        if opcode == OpCode.ERROR:
            self._handle_remote_error(data)
            return
        self._handle_packet(opcode, data)

    def _handle_remote_error(self, data):
        try:
            error = packet.decode_error(data)
        except PacketError as e:
            self._protocol_error("Bad ERROR packet from %s: %s" % (self._peer, e))
            return
        self._set_error(error.error_code, error.message)
        logging.error("Error reported from %s: %s" % (self._peer, error.message))
        self._should_stop = True

    def _handle_timeout(self):
        # there is no retransmission, an expired transfer is over
        message = "timeout after %ss waiting for %s" % (self._timeout, self._peer)
        logging.error(message)
        self._set_error(constants.ERR_UNDEFINED, message)
        self._should_stop = True

    def _protocol_error(self, message):
        logging.error(message)
        self._set_error(constants.ERR_ILLEGAL_OPERATION, message)
        self._should_stop = True

    def _complete(self):
        logging.info("Transfer of `%s` with %s completed" % (self._path, self._peer))
        self._completed = True
        self._should_stop = True

    def _set_error(self, error_code, error_message):
        self._stats.error = {"error_code": error_code, "error_message": error_message}

    def _transmit(self, data):
        self._get_channel().send(data, self._peer)
        self._stats.packets_sent += 1

    def _transmit_error(self, error_code, error_message):
        """Transmits an error to the peer, which terminates the exchange."""
        self._set_error(error_code, error_message)
        try:
            self._transmit(packet.encode_error(error_code, error_message))
        except OSError as e:
            logging.error("Unable to send ERROR to %s: %s" % (self._peer, e))

    def _storage_error(self, error_code, error_message):
        if self._report_storage_errors:
            self._transmit_error(error_code, error_message)
        else:
            self._set_error(error_code, error_message)

    def _reject_peer(self, peer):
        """Answers a stray datagram, the transfer itself goes on."""
        try:
            self._get_channel().send(
                packet.encode_error(
                    constants.ERR_UNKNOWN_TRANSFER_ID, constants.MSG_UNKNOWN_TRANSFER_ID
                ),
                peer,
            )
        except OSError as e:
            logging.error("Unable to send ERROR to %s: %s" % (peer, e))

    def _on_close(self):
        if self._stats_callback is not None:
            self._stats_callback(self._stats)

    def _close(self):
        """
        Calls the stats callback then releases the storage object and the
        private channel. Runs on every exit path.
        """
        try:
            self._on_close()
        except Exception as e:
            logging.exception("Exception raised when calling _on_close: %s" % e)
        finally:
            logging.debug("Closing storage object")
            try:
                self._close_storage()
            except Exception as e:
                logging.exception("Exception raised while closing storage: %s" % e)
            logging.debug("Closing socket")
            if self._channel is not None:
                self._channel.close()


class SendTransfer(BaseTransfer):
    """
    Sends a file to the peer: DATA blocks of `constants.BLOCK_SIZE` bytes,
    each one waiting for its ACK. The first short block (possibly empty) is
    the last one.

    Subclasses override `get_source`.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._source = None
        self._last_block_sent = 0
        self._current_block = None
        self._waiting_last_ack = False

    def get_source(self):
        """
        This method has to be overridden and must return an object of type
        `DataSource`. Raising `FileNotFoundError` reports "File not found" to
        the peer, raising `storage.AccessViolation` reports "Access violation".
        """
        raise NotImplementedError()

    def _open_storage(self):
        try:
            self._source = self.get_source()
        except FileNotFoundError as e:
            logging.warning(str(e))
            self._storage_error(
                constants.ERR_FILE_NOT_FOUND, constants.MSG_FILE_NOT_FOUND
            )
            return False
        except AccessViolation as e:
            logging.warning(str(e))
            self._storage_error(
                constants.ERR_ACCESS_VIOLATION, constants.MSG_ACCESS_VIOLATION
            )
            return False
        except Exception as e:
            logging.exception("Caught exception: %s." % e)
            self._storage_error(constants.ERR_UNDEFINED, str(e))
            return False
        return True

    def _close_storage(self):
        if self._source is not None:
            self._source.close()

    def _start(self):
        self._next_block()
        if not self._should_stop:
            self._transmit_data()

    def _handle_packet(self, opcode, data):
        try:
            ack = packet.decode_ack(data)
        except PacketError as e:
            self._protocol_error("Expected an ACK from %s: %s" % (self._peer, e))
            return
        self._handle_ack(ack.block_number)

    def _handle_ack(self, block_number):
        if block_number != self._last_block_sent:
            self._protocol_error(
                "ACK for block %d does not match block %d sent to %s"
                % (block_number, self._last_block_sent, self._peer)
            )
            return
        self._reset_timeout()
        if self._current_block is not None:
            self._stats.packets_acked += 1
        if self._waiting_last_ack:
            self._complete()
            return
        self._next_block()
        if not self._should_stop:
            self._transmit_data()

    def _next_block(self):
        """
        Reads the next block from the source, reading again after a partial
        read until the block is full or the source is exhausted. If there are
        problems reading from it, an error will be reported to the peer.
        """
        self._last_block_sent += 1
        if self._last_block_sent > constants.MAX_BLOCK_NUMBER:
            self._last_block_sent = 0  # Wrap around the block counter.
        try:
            block = bytes(self._source.read(constants.BLOCK_SIZE) or b"")
            while block and len(block) < constants.BLOCK_SIZE:
                more = self._source.read(constants.BLOCK_SIZE - len(block))
                if not more:
                    break
                block += bytes(more)
            self._current_block = block
        except Exception as e:
            logging.exception("Error while reading from source: %s" % e)
            self._storage_error(
                constants.ERR_UNDEFINED, "Error while reading from source"
            )
            self._should_stop = True

    def _transmit_data(self):
        """Method that deals with sending a block to the wire."""
        try:
            self._transmit(
                packet.encode_data(self._last_block_sent, self._current_block)
            )
        except OSError as e:
            logging.error(
                "Error sending block %d to %s: %s"
                % (self._last_block_sent, self._peer, e)
            )
            self._transmit_error(constants.ERR_UNDEFINED, str(e))
            self._should_stop = True
            return
        self._stats.bytes_sent += len(self._current_block)
        if len(self._current_block) < constants.BLOCK_SIZE:
            self._waiting_last_ack = True


class ReceiveTransfer(BaseTransfer):
    """
    Receives a file from the peer: every DATA block must carry the next block
    number and is acknowledged after it has been written. A short block ends
    the transfer and finalizes the sink.

    Subclasses override `get_sink`.
    """

    # the server acknowledges a WRQ with ACK 0, a client reading a file does
    # not acknowledge its own RRQ
    _acknowledge_request = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._sink = None
        self._last_block_acked = 0

    def get_sink(self):
        """
        This method has to be overridden and must return an object of type
        `DataSink`.
        """
        raise NotImplementedError()

    def _open_storage(self):
        try:
            self._sink = self.get_sink()
        except AccessViolation as e:
            logging.warning(str(e))
            self._storage_error(
                constants.ERR_ACCESS_VIOLATION, constants.MSG_ACCESS_VIOLATION
            )
            return False
        except Exception as e:
            logging.exception("Caught exception: %s." % e)
            self._storage_error(constants.ERR_UNDEFINED, str(e))
            return False
        return True

    def _close_storage(self):
        if self._sink is not None:
            self._sink.close()

    def _start(self):
        if self._acknowledge_request:
            self._transmit_ack(0)

    def _transmit_ack(self, block_number):
        try:
            self._transmit(packet.encode_ack(block_number))
        except OSError as e:
            logging.error(
                "Error sending ACK %d to %s: %s" % (block_number, self._peer, e)
            )
            self._set_error(constants.ERR_UNDEFINED, str(e))
            self._should_stop = True
            return False
        return True

    def _handle_packet(self, opcode, data):
        if opcode != OpCode.DATA:
            self._protocol_error(
                "Expected a DATA opcode from %s, got: %s" % (self._peer, opcode.name)
            )
            return
        try:
            block = packet.decode_data(data)
        except PacketError as e:
            self._protocol_error("Bad DATA packet from %s: %s" % (self._peer, e))
            return
        expected = (self._last_block_acked + 1) % (constants.MAX_BLOCK_NUMBER + 1)
        if block.block_number != expected:
            logging.error(
                "Expected block %d from %s, got %d"
                % (expected, self._peer, block.block_number)
            )
            self._transmit_error(
                constants.ERR_UNKNOWN_TRANSFER_ID, constants.MSG_UNKNOWN_TRANSFER_ID
            )
            self._should_stop = True
            return
        try:
            self._sink.write(block.payload)
        except Exception as e:
            # local storage is gone, nothing the peer can do about it
            logging.exception("Error while writing to sink: %s" % e)
            self._set_error(constants.ERR_UNDEFINED, str(e))
            self._should_stop = True
            return
        self._reset_timeout()
        self._last_block_acked = expected
        self._stats.bytes_received += len(block.payload)
        if not self._transmit_ack(expected):
            return
        self._stats.packets_acked += 1
        if len(block.payload) < constants.BLOCK_SIZE:
            try:
                self._sink.finalize()
            except Exception as e:
                logging.exception("Error while finalizing sink: %s" % e)
                self._set_error(constants.ERR_UNDEFINED, str(e))
                self._should_stop = True
                return
            self._complete()
