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
RFCOMM transport for ChatService using PyBluez.

Server side binds an RFCOMM socket on any free channel and publishes an SDP
record carrying the service name and UUID, so the peer can find the channel
number by UUID. Client side resolves the peer's channel with an SDP query
and connects to it.

Secure vs insecure: the variant selects which SDP record is published or
looked up, and on Linux also the socket security level (authenticated link
for the secure record, no link-level security for the insecure one).

UNBLOCKING:
On Linux, close() alone does not reliably wake a thread blocked in accept()
or recv() on the same socket, so close() always shuts the socket down first.
The SDP lookup in connect() cannot be interrupted; a channel closed during
the lookup fails as soon as the lookup returns.

DEPENDENCIES:
- PyBluez (pip install "btchat[rfcomm]")
"""

import socket
import struct
import threading

import RNS

from .bluetooth_transport import (
    Channel,
    ChatTransportInterface,
    ListeningEndpoint,
    TransportError,
)

try:
    import bluetooth
    HAS_PYBLUEZ = True
except ImportError:
    bluetooth = None
    HAS_PYBLUEZ = False

# <bluetooth/bluetooth.h>
SOL_BLUETOOTH = 274
BT_SECURITY = 4
BT_SECURITY_LOW = 1
BT_SECURITY_MEDIUM = 2


def _set_security(sock, secure):
    level = BT_SECURITY_MEDIUM if secure else BT_SECURITY_LOW
    try:
        sock.setsockopt(SOL_BLUETOOTH, BT_SECURITY, struct.pack("BB", level, 0))
    except Exception as e:
        # Not supported on every platform/backend; the SDP record still differs
        RNS.log(f"RFCOMM could not set security level {level}: {type(e).__name__}: {e}", RNS.LOG_DEBUG)


def _shutdown_and_close(sock):
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except Exception:
        # Not connected / already shut down
        pass
    sock.close()


class RFCOMMChannel(Channel):
    """A PyBluez RFCOMM stream socket to one peer."""

    def __init__(self, sock, peer, service=None, connected=False):
        self.sock = sock
        self._peer = peer
        self.service = service
        self.connected = connected
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def peer(self):
        return self._peer

    @property
    def closed(self):
        return self._closed

    def connect(self):
        if self.connected:
            return
        if self.service is None:
            raise TransportError(f"no service to connect to on {self._peer}")

        try:
            matches = bluetooth.find_service(uuid=self.service.uuid, address=self._peer)
        except bluetooth.BluetoothError as e:
            raise TransportError(f"SDP lookup of {self.service} on {self._peer} failed: {e}") from e

        if not matches:
            raise TransportError(f"{self._peer} does not publish {self.service}")
        if self._closed:
            raise TransportError(f"channel to {self._peer} closed during SDP lookup")

        port = matches[0]["port"]
        RNS.log(f"RFCOMM {self.service} on {self._peer} is channel {port}", RNS.LOG_DEBUG)

        try:
            self.sock.connect((self._peer, port))
        except (bluetooth.BluetoothError, OSError) as e:
            raise TransportError(f"RFCOMM connect to {self._peer}:{port} failed: {e}") from e

        self.connected = True

    def read(self, size):
        try:
            return self.sock.recv(size)
        except (bluetooth.BluetoothError, OSError) as e:
            raise TransportError(f"RFCOMM read from {self._peer} failed: {e}") from e

    def write(self, data):
        try:
            self.sock.sendall(data)
        except (bluetooth.BluetoothError, OSError) as e:
            raise TransportError(f"RFCOMM write to {self._peer} failed: {e}") from e

    def close(self):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        _shutdown_and_close(self.sock)

    def __str__(self):
        return f"RFCOMMChannel[{self._peer}]"


class RFCOMMListeningEndpoint(ListeningEndpoint):
    """A listening RFCOMM socket with a published SDP record."""

    def __init__(self, sock, service, port):
        self.sock = sock
        self.service = service
        self.port = port
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def closed(self):
        return self._closed

    def accept(self):
        try:
            client_sock, client_info = self.sock.accept()
        except (bluetooth.BluetoothError, OSError) as e:
            raise TransportError(f"RFCOMM accept on channel {self.port} failed: {e}") from e

        peer = client_info[0]
        return RFCOMMChannel(client_sock, peer, self.service, connected=True), peer

    def close(self):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        try:
            bluetooth.stop_advertising(self.sock)
        except Exception as e:
            RNS.log(f"RFCOMM could not unpublish {self.service}: {type(e).__name__}: {e}", RNS.LOG_DEBUG)
        _shutdown_and_close(self.sock)


class RFCOMMTransport(ChatTransportInterface):
    """
    ChatTransportInterface backed by PyBluez on the default local adapter.
    """

    def __init__(self, backlog=1):
        if not HAS_PYBLUEZ:
            raise ImportError(
                "RFCOMMTransport requires PyBluez. "
                "Install it with: pip install \"btchat[rfcomm]\""
            )
        self.backlog = backlog

    def listen(self, service):
        sock = bluetooth.BluetoothSocket(bluetooth.RFCOMM)
        try:
            _set_security(sock, service.secure)
            sock.bind(("", bluetooth.PORT_ANY))
            sock.listen(self.backlog)
            port = sock.getsockname()[1]
            bluetooth.advertise_service(
                sock,
                service.name,
                service_id=service.uuid,
                service_classes=[service.uuid, bluetooth.SERIAL_PORT_CLASS],
                profiles=[bluetooth.SERIAL_PORT_PROFILE],
            )
        except (bluetooth.BluetoothError, OSError) as e:
            sock.close()
            raise TransportError(f"could not publish {service}: {e}") from e

        RNS.log(f"RFCOMM published {service} on channel {port}", RNS.LOG_INFO)
        return RFCOMMListeningEndpoint(sock, service, port)

    def open_channel(self, peer, service):
        sock = bluetooth.BluetoothSocket(bluetooth.RFCOMM)
        _set_security(sock, service.secure)
        return RFCOMMChannel(sock, peer, service)

    def __str__(self):
        return "RFCOMMTransport"
