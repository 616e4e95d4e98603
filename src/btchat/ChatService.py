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
ChatService - single-peer Bluetooth chat link

Manages one logical bidirectional connection over an RFCOMM-like transport.
The service can be discovered and connected to (server role) and can connect
out to a previously discovered peer (client role). Whichever side obtains a
channel first turns it into the one active session.

Key features:
- Listen, connect and transfer run on independent threads
- Exactly one remote peer at a time
- Raw byte stream; framing is left to the caller
- Every failure ends in IDLE and is reported to the caller
"""

import threading
from enum import Enum

import RNS

from .bluetooth_transport import SERVICE_INSECURE, SERVICE_SECURE
from .ChatWorkers import (
    ConnectorHandle,
    ListenerHandle,
    SessionHandle,
    close_quietly,
    connect_attempt,
    listen_loop,
    session_loop,
)
from .config import get_config_obj, parse_bool
from .errors import NotConnected
from .notifications import NotificationDispatcher


class ConnectionState(Enum):
    IDLE = 0
    LISTENING = 1
    CONNECTING = 2
    IN_SESSION = 3


class ChatService:
    """
    Connection coordinator for the chat link.

    STATE MACHINE:
    - IDLE -> LISTENING                      start_listening()
    - IDLE|LISTENING|IN_SESSION -> CONNECTING connect_to(peer)
    - LISTENING -> IN_SESSION                inbound channel accepted
    - CONNECTING -> IN_SESSION               outbound connect succeeded
    - CONNECTING -> IDLE                     outbound connect failed (no retry)
    - LISTENING -> IDLE                      listening endpoint could not be bound
    - IN_SESSION -> IDLE                     session channel closed or failed
    - any -> IDLE                            shutdown()

    THREADING MODEL:
    - One lock (state_lock) guards the state and the three worker handles
    - The lock is only held for bookkeeping, never across accept/connect/read
    - Superseded workers are detached under the lock and cancelled (their
      socket closed) after it is released, before the call returns
    - At most one of listener/connector/session is alive at any time
    - Notifications are queued under the lock and delivered on a separate
      thread, so callbacks may call back into the service

    CALLBACKS (assign before use, all optional):
    - on_state_changed(state)
    - on_peer_connected(peer, service)
    - on_data_received(data)
    - on_data_sent(data)
    - on_connection_failed(reason)
    - on_connection_lost()
    """

    READ_BUFFER_SIZE = 1024
    ACCEPT_RETRY_DELAY = 0.5

    def __init__(self, transport, configuration=None):
        """
        Initialize the chat service.

        Args:
            transport: ChatTransportInterface for the local adapter
            configuration: dict, ConfigObj section, path to config file, or None
        """
        c = get_config_obj(configuration)

        self.name = c.get("name", "ChatService")
        self.transport = transport

        # Listener variant is fixed for the lifetime of the service. Outbound
        # attempts always target the secure record.
        self.secure = parse_bool(c.get("secure", True))
        self.listen_service = SERVICE_SECURE if self.secure else SERVICE_INSECURE
        self.connect_service = SERVICE_SECURE

        self.read_buffer_size = int(c.get("read_buffer_size", ChatService.READ_BUFFER_SIZE))
        if self.read_buffer_size <= 0:
            raise ValueError(f"read_buffer_size must be positive, got {self.read_buffer_size}")
        self.accept_retry_delay = float(c.get("accept_retry_delay", ChatService.ACCEPT_RETRY_DELAY))

        self.state_lock = threading.Lock()
        self._state = ConnectionState.IDLE
        self._listener = None
        self._connector = None
        self._session = None

        self.on_state_changed = None
        self.on_peer_connected = None
        self.on_data_received = None
        self.on_data_sent = None
        self.on_connection_failed = None
        self.on_connection_lost = None

        self.notifier = NotificationDispatcher(self.name)

        RNS.log(f"{self} initialized, listening as {self.listen_service} ({self.listen_service.uuid})", RNS.LOG_INFO)

    # --- Observers ---

    @property
    def state(self):
        with self.state_lock:
            return self._state

    @property
    def connected_peer(self):
        """Address of the session peer, or None when not in a session."""
        with self.state_lock:
            return self._session.peer if self._session is not None else None

    def live_workers(self):
        """Names of the worker handles currently registered (for diagnostics)."""
        with self.state_lock:
            return [h.kind for h in (self._listener, self._connector, self._session) if h is not None]

    def wait_for_notifications(self, timeout=None):
        """Block until every queued notification has been delivered."""
        return self.notifier.drain(timeout)

    # --- Public operations ---

    def start_listening(self):
        """
        Publish the service and wait for an inbound connection.

        Supersedes an established session or an outbound attempt. Calling it
        while already listening changes nothing.
        """
        listener = None
        with self.state_lock:
            stale = self._detach_session() + self._detach_connector()
            self._set_state(ConnectionState.LISTENING)
            if self._listener is None:
                listener = ListenerHandle(self.listen_service)
                self._listener = listener

        self._cancel_all(stale)

        if listener is not None:
            RNS.log(f"{self} starting listener for {self.listen_service}", RNS.LOG_INFO)
            listener.start(
                listen_loop,
                self.transport,
                self.listen_service,
                self._promote,
                self._listener_failed,
                self.accept_retry_delay,
            )
        else:
            RNS.log(f"{self} already listening", RNS.LOG_DEBUG)

    def connect_to(self, peer):
        """
        Start an outbound connection attempt to peer.

        Cancels any session, listener or previous attempt first. The result
        is reported through on_state_changed / on_connection_failed.
        """
        connector = ConnectorHandle(self.connect_service, peer)
        with self.state_lock:
            stale = self._detach_session() + self._detach_connector() + self._detach_listener()
            self._connector = connector
            self._set_state(ConnectionState.CONNECTING)

        self._cancel_all(stale)

        RNS.log(f"{self} connecting to {peer}", RNS.LOG_INFO)
        connector.start(
            connect_attempt,
            self.transport,
            peer,
            self.connect_service,
            self._promote,
            self._connect_failed,
        )

    def send(self, data):
        """
        Write data to the connected peer.

        Raises:
            NotConnected: no session is established
            IoFailure: the write failed (the session stays up)
        """
        data = bytes(data)
        with self.state_lock:
            session = self._session if self._state == ConnectionState.IN_SESSION else None

        if session is None:
            raise NotConnected(f"{self} cannot send, state is {self.state.name}")

        session.write(data)
        self.notifier.post(self.on_data_sent, data)

    def shutdown(self):
        """Stop every worker and return to IDLE. Safe to call in any state."""
        with self.state_lock:
            stale = self._detach_session() + self._detach_connector() + self._detach_listener()
            self._set_state(ConnectionState.IDLE)

        if stale:
            RNS.log(f"{self} shutting down {len(stale)} worker(s)", RNS.LOG_INFO)
        self._cancel_all(stale)

    def detach(self):
        """Shut down and stop notification delivery. The service is unusable afterwards."""
        RNS.log(f"{self} detaching", RNS.LOG_INFO)
        self.shutdown()
        self.notifier.stop()
        RNS.log(f"{self} detached", RNS.LOG_DEBUG)

    # --- Worker callbacks ---

    def _promote(self, origin, channel, peer):
        """
        Turn a channel obtained by origin into the active session.

        Called from the listener or connector thread. Only the worker that is
        still registered for the current state may promote; anything else
        (superseded worker, second channel after a session already won) gets
        its channel closed without being read or written.

        Returns:
            bool: True if channel became the session
        """
        session = None
        stale = []
        with self.state_lock:
            if (origin is self._listener and self._state == ConnectionState.LISTENING) or \
               (origin is self._connector and self._state == ConnectionState.CONNECTING):
                if origin is self._connector:
                    # Channel ownership moves to the session
                    self._connector.release()
                    self._connector = None
                stale = self._detach_listener() + self._detach_connector()

                session = SessionHandle(origin.service, peer, channel)
                self._session = session
                self._set_state(ConnectionState.IN_SESSION)
                self.notifier.post(self.on_peer_connected, peer, origin.service)
            else:
                state = self._state

        if session is None:
            RNS.log(f"{self} {origin} lost promotion in state {state.name}, closing channel from {peer}", RNS.LOG_DEBUG)
            close_quietly(channel, str(self))
            return False

        self._cancel_all(stale)

        RNS.log(f"{self} session established with {peer} ({origin.service})", RNS.LOG_INFO)
        session.start(session_loop, self.read_buffer_size, self._session_data, self._session_closed)
        return True

    def _listener_failed(self, listener, error):
        with self.state_lock:
            if listener is not self._listener:
                return
            self._listener = None
            self._set_state(ConnectionState.IDLE)
            self.notifier.post(self.on_connection_failed, error)

        RNS.log(f"{self} {error}", RNS.LOG_ERROR)

    def _connect_failed(self, connector, error):
        with self.state_lock:
            if connector is not self._connector:
                return
            self._connector = None
            self._set_state(ConnectionState.IDLE)
            self.notifier.post(self.on_connection_failed, error)

        RNS.log(f"{self} {error}", RNS.LOG_WARNING)

    def _session_data(self, session, data):
        with self.state_lock:
            if session is not self._session:
                return
            self.notifier.post(self.on_data_received, data)

    def _session_closed(self, session, reason):
        with self.state_lock:
            if session is not self._session:
                return
            self._session = None
            self._set_state(ConnectionState.IDLE)
            self.notifier.post(self.on_connection_lost)

        RNS.log(f"{self} connection lost: {reason}", RNS.LOG_WARNING)

    # --- Internal (call with state_lock held) ---

    def _set_state(self, state):
        if state == self._state:
            return
        RNS.log(f"{self} state {self._state.name} -> {state.name}", RNS.LOG_DEBUG)
        self._state = state
        self.notifier.post(self.on_state_changed, state)

    def _detach_listener(self):
        listener, self._listener = self._listener, None
        return [listener] if listener is not None else []

    def _detach_connector(self):
        connector, self._connector = self._connector, None
        return [connector] if connector is not None else []

    def _detach_session(self):
        session, self._session = self._session, None
        return [session] if session is not None else []

    # --- Internal (call without state_lock) ---

    def _cancel_all(self, handles):
        for handle in handles:
            handle.cancel()

    def __str__(self):
        return f"ChatService[{self.name}]"
