# MIT License
#
# Copyright (c) 2025 btchat Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.


"""
Transport abstraction for the chat link.

This module defines the interface between ChatService and a concrete
connection-oriented Bluetooth transport (RFCOMM on every platform we care
about). ChatService never talks to sockets directly; it only sees the three
types below.

BLOCKING CONTRACT:
- ListeningEndpoint.accept() blocks until a peer connects
- Channel.connect() blocks until the outbound attempt resolves
- Channel.read() blocks until data, end-of-stream (b"") or an error

CANCELLATION CONTRACT:
- close() is the only way to unblock any of the calls above
- close() must be idempotent and must not block
- a call blocked on a closed resource raises (any Exception)

SERVICE IDENTIFIERS:
Two fixed SDP records distinguish the "secure" and "insecure" variants of the
chat service. The UUIDs and names match the Android BluetoothChat sample so
that phones running it can talk to us.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Tuple


class TransportError(OSError):
    """Raised by transport adapters for radio/socket level failures."""


@dataclass(frozen=True)
class ServiceIdentifier:
    """Identifies which variant of the chat service an endpoint publishes."""
    name: str
    uuid: str
    secure: bool

    def __str__(self):
        return self.name


SERVICE_SECURE = ServiceIdentifier(
    name="BluetoothChatSecure",
    uuid="fa87c0d0-afac-11de-8a39-0800200c9a66",
    secure=True,
)

SERVICE_INSECURE = ServiceIdentifier(
    name="BluetoothChatInsecure",
    uuid="8ce255c0-200a-11e0-ac64-0800200c9a66",
    secure=False,
)


class Channel(ABC):
    """
    An opened (or about to be opened) bidirectional byte stream to one peer.

    Channels returned by ListeningEndpoint.accept() are already connected.
    Channels returned by ChatTransportInterface.open_channel() must be
    connected with connect() before use.
    """

    @property
    @abstractmethod
    def peer(self) -> str:
        """Address of the remote device."""
        pass

    @abstractmethod
    def connect(self):
        """Blocking outbound connect. Raises on failure or when closed."""
        pass

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Blocking read of up to size bytes. Returns b"" at end-of-stream."""
        pass

    @abstractmethod
    def write(self, data: bytes):
        """Blocking write of all of data. Raises on failure."""
        pass

    @abstractmethod
    def close(self):
        """Close the channel. Idempotent."""
        pass


class ListeningEndpoint(ABC):
    """A bound, published server endpoint."""

    @abstractmethod
    def accept(self) -> Tuple[Channel, str]:
        """Block until a peer connects. Returns (channel, peer_address)."""
        pass

    @abstractmethod
    def close(self):
        """Stop listening and unpublish the service record. Idempotent."""
        pass


class ChatTransportInterface(ABC):
    """
    Factory for endpoints and channels on one local adapter.

    Implementations: RFCOMMTransport (PyBluez). Tests use an in-memory mock.
    """

    @abstractmethod
    def listen(self, service: ServiceIdentifier) -> ListeningEndpoint:
        """Bind and publish a listening endpoint. Raises on bind failure."""
        pass

    @abstractmethod
    def open_channel(self, peer: str, service: ServiceIdentifier) -> Channel:
        """
        Allocate an unconnected channel to peer for service.

        Must not block. The returned channel is what a cancelling caller
        closes to abort the subsequent connect().
        """
        pass

    def cancel_discovery(self):
        """
        Stop any inquiry scan in progress.

        Discovery slows down connection setup considerably, so the connector
        calls this before every outbound attempt. Adapters without a
        discovery API leave it as a no-op.
        """
        pass
