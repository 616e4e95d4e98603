#!/usr/bin/env python3
"""
Two-Device Chat Simulator

Runs two ChatService instances in one process, wired together through an
in-memory loopback "radio" built from socket pairs. Useful for watching the
state machine and notifications without any Bluetooth hardware.

Scenario:
- Node A listens
- Node B connects to A
- Both exchange a few messages
- A shuts down, B sees the connection drop

What this DOES test:
- Listen / connect / session transitions
- Notification ordering
- Cancellation of blocked accept() and read()

What this DOES NOT test:
- SDP lookup or RFCOMM channel allocation
- Link-level security
- Real radio behaviour

Usage:
    python3 examples/two_device_simulator.py
"""

import os
import queue
import socket
import sys
import threading
import time

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
src_dir = os.path.join(project_root, 'src')
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)

import RNS

from btchat import (
    Channel,
    ChatService,
    ChatTransportInterface,
    ListeningEndpoint,
    TransportError,
)

_CLOSED = object()


class LoopbackRadio:
    """Shared medium: maps (address, service uuid) to a listening endpoint."""

    def __init__(self):
        self.lock = threading.Lock()
        self.endpoints = {}


class LoopbackChannel(Channel):

    def __init__(self, radio, local_address, peer, service=None, sock=None):
        self.radio = radio
        self.local_address = local_address
        self._peer = peer
        self.service = service
        self.sock = sock
        self._closed = False

    @property
    def peer(self):
        return self._peer

    def connect(self):
        if self.sock is not None:
            return
        with self.radio.lock:
            endpoint = self.radio.endpoints.get((self._peer, self.service.uuid))
        if endpoint is None:
            raise TransportError(f"{self._peer} does not publish {self.service}")
        if self._closed:
            raise TransportError(f"channel to {self._peer} closed")

        ours, theirs = socket.socketpair()
        self.sock = ours
        endpoint.pending.put((LoopbackChannel(self.radio, self._peer, self.local_address, self.service, theirs), self.local_address))

    def read(self, size):
        try:
            return self.sock.recv(size)
        except OSError as e:
            raise TransportError(f"read from {self._peer} failed: {e}") from e

    def write(self, data):
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise TransportError(f"write to {self._peer} failed: {e}") from e

    def close(self):
        self._closed = True
        if self.sock is not None:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.sock.close()


class LoopbackEndpoint(ListeningEndpoint):

    def __init__(self, radio, key):
        self.radio = radio
        self.key = key
        self.pending = queue.Queue()

    def accept(self):
        item = self.pending.get()
        if item is _CLOSED:
            raise TransportError("endpoint closed")
        return item

    def close(self):
        with self.radio.lock:
            if self.radio.endpoints.get(self.key) is self:
                del self.radio.endpoints[self.key]
        self.pending.put(_CLOSED)


class LoopbackTransport(ChatTransportInterface):
    """One simulated adapter with its own address on the shared radio."""

    def __init__(self, radio, address):
        self.radio = radio
        self.address = address

    def listen(self, service):
        key = (self.address, service.uuid)
        with self.radio.lock:
            if key in self.radio.endpoints:
                raise TransportError(f"{service} already published on {self.address}")
            endpoint = LoopbackEndpoint(self.radio, key)
            self.radio.endpoints[key] = endpoint
        return endpoint

    def open_channel(self, peer, service):
        return LoopbackChannel(self.radio, self.address, peer, service)


def attach_printer(label, service):
    service.on_state_changed = lambda state: print(f"[{label}] state -> {state.name}")
    service.on_peer_connected = lambda peer, svc: print(f"[{label}] connected to {peer} via {svc}")
    service.on_data_received = lambda data: print(f"[{label}] received: {data.decode()}")
    service.on_data_sent = lambda data: print(f"[{label}] sent: {data.decode()}")
    service.on_connection_failed = lambda reason: print(f"[{label}] connection failed: {reason}")
    service.on_connection_lost = lambda: print(f"[{label}] connection lost")


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def main():
    RNS.loglevel = RNS.LOG_INFO

    radio = LoopbackRadio()
    node_a = ChatService(LoopbackTransport(radio, "AA:AA:AA:AA:AA:01"), {"name": "NodeA"})
    node_b = ChatService(LoopbackTransport(radio, "BB:BB:BB:BB:BB:02"), {"name": "NodeB"})
    attach_printer("A", node_a)
    attach_printer("B", node_b)

    print("=" * 60)
    print("Two-Device Chat Simulator")
    print("=" * 60)

    node_a.start_listening()
    wait_for(lambda: radio.endpoints)

    node_b.connect_to("AA:AA:AA:AA:AA:01")
    if not wait_for(lambda: node_a.connected_peer and node_b.connected_peer):
        print("Nodes never connected")
        return 1

    node_b.send(b"hello from B")
    node_a.send(b"hello back from A")
    node_b.send(b"bye")
    time.sleep(0.5)

    node_a.shutdown()
    wait_for(lambda: node_b.connected_peer is None)

    node_a.detach()
    node_b.detach()
    print("=" * 60)
    print("Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
