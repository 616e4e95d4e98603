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
ChatWorkers - background workers for the chat link

Each worker is a plain function run on its own daemon thread. It receives the
handle that owns its resource plus everything else it needs as arguments, and
reports outcomes through callbacks supplied by ChatService. Workers never
touch ChatService state and never talk to each other.

WORKERS:
- listen_loop:     bind, then accept channels until cancelled
- connect_attempt: one outbound connect to a peer
- session_loop:    read from an established channel until it dies

CANCELLATION:
The only way to unblock accept()/connect()/read() is to close the resource
blocked on. WorkerHandle.cancel() does exactly that, synchronously. A handle
cancelled before its worker has obtained the resource remembers it, and
attach() closes the resource the moment the worker hands it over.
"""

import threading

import RNS

from .errors import BindFailure, ConnectFailure, IoFailure


def close_quietly(resource, owner=""):
    """Close an endpoint or channel, logging (not raising) on failure."""
    if resource is None:
        return
    try:
        resource.close()
    except Exception as e:
        RNS.log(f"{owner} close of {type(resource).__name__} failed: {type(e).__name__}: {e}", RNS.LOG_DEBUG)


class WorkerHandle:
    """
    Owns one worker thread and the OS resource it blocks on.
    """

    kind = "Worker"

    def __init__(self, service):
        self.service = service
        self.thread = None
        self._resource = None
        self._resource_lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    @property
    def resource(self):
        with self._resource_lock:
            return self._resource

    def start(self, target, *args):
        """Run target(self, *args) on a new daemon thread."""
        self.thread = threading.Thread(target=target, args=(self,) + args, daemon=True, name=str(self))
        self.thread.start()

    def is_alive(self):
        return self.thread is not None and self.thread.is_alive()

    def join(self, timeout=None):
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout)

    def attach(self, resource):
        """
        Take ownership of resource.

        Returns:
            bool: False if the handle was already cancelled, in which case the
                  resource has been closed and the worker must exit
        """
        with self._resource_lock:
            if not self._cancelled.is_set():
                self._resource = resource
                return True

        close_quietly(resource, str(self))
        return False

    def release(self):
        """Give up ownership without closing (the resource moved elsewhere)."""
        with self._resource_lock:
            resource = self._resource
            self._resource = None
        return resource

    def cancel(self):
        """
        Mark cancelled and close the owned resource.

        When this returns the resource is closed; the worker thread may still
        be unwinding from the call that close() interrupted.
        """
        with self._resource_lock:
            self._cancelled.set()
            resource = self._resource

        if resource is not None:
            RNS.log(f"{self} cancelling, closing {type(resource).__name__}", RNS.LOG_DEBUG)
            close_quietly(resource, str(self))

    def wait(self, timeout):
        """Sleep for timeout seconds or until cancelled. Returns True if cancelled."""
        return self._cancelled.wait(timeout)

    def __str__(self):
        return f"{self.kind}[{self.service}]"


class ListenerHandle(WorkerHandle):
    kind = "ListenerWorker"


class ConnectorHandle(WorkerHandle):
    kind = "ConnectorWorker"

    def __init__(self, service, peer):
        super().__init__(service)
        self.peer = peer

    def __str__(self):
        return f"{self.kind}[{self.peer}/{self.service}]"


class SessionHandle(WorkerHandle):
    """
    Owns the established channel.

    Unlike the other handles the resource exists at construction time, so it
    is attached immediately.
    """

    kind = "SessionWorker"

    def __init__(self, service, peer, channel):
        super().__init__(service)
        self.peer = peer
        self.channel = channel
        self.attach(channel)

    def write(self, data):
        """
        Blocking write on the session channel.

        A failed write raises IoFailure but leaves the read loop running;
        only the read side decides that the connection is dead.
        """
        if self.cancelled:
            raise IoFailure(self.peer, "write", ConnectionError("session closed"))

        try:
            self.channel.write(data)
        except Exception as e:
            RNS.log(f"{self} exception during write of {len(data)} bytes: {type(e).__name__}: {e}", RNS.LOG_ERROR)
            raise IoFailure(self.peer, "write", e) from e

        RNS.log(f"{self} TX: {len(data)} bytes", RNS.LOG_EXTREME)

    def __str__(self):
        return f"{self.kind}[{self.peer}/{self.service}]"


def listen_loop(handle, transport, service, on_accepted, on_failed, retry_delay):
    """
    Listener worker body.

    Args:
        handle: ListenerHandle owning the endpoint
        transport: ChatTransportInterface to bind with
        service: ServiceIdentifier to publish
        on_accepted: callable(handle, channel, peer) -> bool, False if the
                     channel lost promotion (it has already been closed)
        on_failed: callable(handle, BindFailure)
        retry_delay: seconds to wait after a spurious accept failure
    """
    RNS.log(f"{handle} binding listening endpoint", RNS.LOG_DEBUG)
    try:
        endpoint = transport.listen(service)
    except Exception as e:
        if handle.cancelled:
            return
        RNS.log(f"{handle} listen failed: {type(e).__name__}: {e}", RNS.LOG_ERROR)
        on_failed(handle, BindFailure(service, e))
        return

    if not handle.attach(endpoint):
        RNS.log(f"{handle} cancelled while binding, endpoint closed", RNS.LOG_DEBUG)
        return

    RNS.log(f"{handle} listening", RNS.LOG_INFO)

    while not handle.cancelled:
        try:
            channel, peer = endpoint.accept()
        except Exception as e:
            if handle.cancelled:
                break
            RNS.log(f"{handle} accept failed: {type(e).__name__}: {e}, retrying in {retry_delay}s", RNS.LOG_WARNING)
            handle.wait(retry_delay)
            continue

        RNS.log(f"{handle} accepted channel from {peer}", RNS.LOG_INFO)
        if not on_accepted(handle, channel, peer):
            RNS.log(f"{handle} channel from {peer} not promoted", RNS.LOG_DEBUG)

    RNS.log(f"{handle} accept loop ended", RNS.LOG_DEBUG)


def connect_attempt(handle, transport, peer, service, on_connected, on_failed):
    """
    Connector worker body: exactly one blocking connect attempt.

    Args:
        handle: ConnectorHandle owning the outbound channel
        transport: ChatTransportInterface to connect with
        peer: address of the remote device
        service: ServiceIdentifier to connect to
        on_connected: callable(handle, channel, peer) -> bool
        on_failed: callable(handle, ConnectFailure)
    """
    try:
        transport.cancel_discovery()
    except Exception as e:
        RNS.log(f"{handle} could not cancel discovery: {type(e).__name__}: {e}", RNS.LOG_DEBUG)

    try:
        channel = transport.open_channel(peer, service)
    except Exception as e:
        if not handle.cancelled:
            RNS.log(f"{handle} could not create channel: {type(e).__name__}: {e}", RNS.LOG_ERROR)
            on_failed(handle, ConnectFailure(peer, e))
        return

    if not handle.attach(channel):
        return

    RNS.log(f"{handle} connecting", RNS.LOG_INFO)
    try:
        channel.connect()
    except Exception as e:
        close_quietly(channel, str(handle))
        if handle.cancelled:
            RNS.log(f"{handle} attempt cancelled", RNS.LOG_DEBUG)
            return
        RNS.log(f"{handle} connect failed: {type(e).__name__}: {e}", RNS.LOG_WARNING)
        on_failed(handle, ConnectFailure(peer, e))
        return

    RNS.log(f"{handle} connected", RNS.LOG_INFO)
    on_connected(handle, channel, peer)


def session_loop(handle, buffer_size, on_data, on_closed):
    """
    Session worker body: read until end-of-stream or error.

    Args:
        handle: SessionHandle owning the channel
        buffer_size: maximum bytes per read
        on_data: callable(handle, bytes)
        on_closed: callable(handle, IoFailure)
    """
    channel = handle.channel
    RNS.log(f"{handle} transfer started", RNS.LOG_DEBUG)

    while True:
        try:
            data = channel.read(buffer_size)
        except Exception as e:
            if not handle.cancelled:
                RNS.log(f"{handle} read failed: {type(e).__name__}: {e}", RNS.LOG_WARNING)
            reason = IoFailure(handle.peer, "read", e)
            break

        if not data:
            RNS.log(f"{handle} peer closed the channel", RNS.LOG_INFO)
            reason = IoFailure(handle.peer, "read")
            break

        RNS.log(f"{handle} RX: {len(data)} bytes", RNS.LOG_EXTREME)
        on_data(handle, bytes(data))

    close_quietly(channel, str(handle))
    on_closed(handle, reason)
