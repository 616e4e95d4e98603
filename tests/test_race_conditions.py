"""
Tests for promotion races and the one-worker invariant.

ChatService has three kinds of worker that can report back concurrently. The
state lock must make sure that:

1. **Promotion happens exactly once**
   - two channels arriving together produce one session
   - the losing channel is closed without a single read or write

2. **Superseded workers cannot promote**
   - an inbound channel accepted by a listener that connect_to() has
     already cancelled is dropped, even if the outbound attempt is slower;
     the most recent request wins

3. **At most one worker is registered, and it matches the state**
   - checked after every step of random operation sequences
"""

import random
import threading

import pytest

from btchat import ConnectionState, TransportError
from btchat.ChatWorkers import ListenerHandle
from tests.mock_transport import MockChannel, wait_until

TIMEOUT = 2.0

EXPECTED_WORKERS = {
    ConnectionState.IDLE: [],
    ConnectionState.LISTENING: ["ListenerWorker"],
    ConnectionState.CONNECTING: ["ConnectorWorker"],
    ConnectionState.IN_SESSION: ["SessionWorker"],
}


def snapshot(service):
    """State and registered workers read atomically under the service lock."""
    with service.state_lock:
        workers = [h.kind for h in (service._listener, service._connector, service._session) if h is not None]
        return service._state, workers


def assert_invariant(service):
    state, workers = snapshot(service)
    assert len(workers) <= 1, f"more than one worker alive: {workers}"
    assert workers == EXPECTED_WORKERS[state], f"{state.name} with workers {workers}"


class TestPromotionExactlyOnce:
    """Concurrent promotions resolve to exactly one session."""

    def test_two_channels_promoted_concurrently(self, service, transport, sample_peers):
        service.connect_to(sample_peers["a"])
        outbound = transport.wait_for_channel()
        assert outbound.connect_started.wait(TIMEOUT)
        connector = service._connector

        first = MockChannel(sample_peers["a"], connected=True)
        second = MockChannel(sample_peers["b"], connected=True)
        barrier = threading.Barrier(2)
        results = {}

        def promote(channel):
            barrier.wait(TIMEOUT)
            results[channel.peer] = service._promote(connector, channel, channel.peer)

        threads = [threading.Thread(target=promote, args=(c,)) for c in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(TIMEOUT)

        assert sorted(results.values()) == [False, True]
        winner, loser = (first, second) if results[first.peer] else (second, first)

        assert service.state == ConnectionState.IN_SESSION
        assert service.connected_peer == winner.peer
        assert not winner.closed

        assert loser.closed
        assert loser.read_calls == 0
        assert loser.write_calls == 0

        assert_invariant(service)
        # The blocked attempt's own channel was released to nobody; clean it up
        outbound.close()

    def test_promotion_from_unknown_worker_is_rejected(self, service, transport, recorder):
        service.start_listening()
        transport.wait_for_endpoint()

        stranger = ListenerHandle(service.listen_service)
        channel = MockChannel("AA:BB:CC:DD:EE:FF")

        assert service._promote(stranger, channel, channel.peer) is False
        assert channel.closed
        assert service.state == ConnectionState.LISTENING
        recorder.settle()
        assert recorder.of("on_peer_connected") == []

    def test_second_inbound_after_session_is_closed(self, service, transport):
        service.start_listening()
        endpoint = transport.wait_for_endpoint()
        listener = service._listener

        first = MockChannel("AA:AA:AA:AA:AA:01")
        endpoint.simulate_inbound(first)
        assert wait_until(lambda: service.state == ConnectionState.IN_SESSION)

        late = MockChannel("BB:BB:BB:BB:BB:02", connected=True)
        assert service._promote(listener, late, late.peer) is False
        assert late.closed
        assert late.read_calls == 0 and late.write_calls == 0
        assert service.connected_peer == first.peer


class TestSupersededWorkers:
    """Workers replaced by a newer request cannot take over."""

    def test_inbound_accept_after_connect_requested_is_dropped(self, service, transport, recorder, monkeypatch, sample_peers):
        """
        The listener accepts a channel but reaches the lock only after
        connect_to() has replaced it. Latest request wins.
        """
        original = service._promote
        arrived = threading.Event()
        gate = threading.Event()

        def gated(origin, channel, peer):
            if isinstance(origin, ListenerHandle):
                arrived.set()
                gate.wait(TIMEOUT)
            return original(origin, channel, peer)

        monkeypatch.setattr(service, "_promote", gated)

        service.start_listening()
        endpoint = transport.wait_for_endpoint()
        inbound = MockChannel(sample_peers["b"])
        endpoint.simulate_inbound(inbound)
        assert arrived.wait(TIMEOUT)

        transport.connect_results[sample_peers["a"]] = None
        service.connect_to(sample_peers["a"])
        assert endpoint.closed
        assert wait_until(lambda: service.state == ConnectionState.IN_SESSION)

        gate.set()

        assert inbound.wait_closed(TIMEOUT)
        assert inbound.read_calls == 0
        assert inbound.write_calls == 0
        assert service.connected_peer == sample_peers["a"]

        recorder.settle()
        assert recorder.of("on_peer_connected") == [(sample_peers["a"], service.connect_service)]

    def test_superseded_attempt_success_is_dropped(self, service, transport, recorder, sample_peers):
        service.connect_to(sample_peers["a"])
        first = transport.wait_for_channel()
        assert first.connect_started.wait(TIMEOUT)

        service.connect_to(sample_peers["b"])
        second = transport.wait_for_channel(index=1)

        # Too late: the first attempt was cancelled and its channel closed
        first.complete_connect()
        second.complete_connect()

        assert wait_until(lambda: service.state == ConnectionState.IN_SESSION)
        assert service.connected_peer == sample_peers["b"]
        assert first.closed
        assert first.read_calls == 0

    def test_superseded_session_data_is_not_delivered(self, service, transport, recorder, sample_peers):
        service.start_listening()
        endpoint = transport.wait_for_endpoint()
        channel = MockChannel(sample_peers["a"])
        endpoint.simulate_inbound(channel)
        assert wait_until(lambda: service.state == ConnectionState.IN_SESSION)
        session = service._session

        service.connect_to(sample_peers["b"])

        # A chunk read just before the close raced the cancellation
        service._session_data(session, b"stale")
        service._session_closed(session, None)

        recorder.settle()
        assert recorder.of("on_data_received") == []
        assert recorder.of("on_connection_lost") == []
        assert service.state == ConnectionState.CONNECTING


class TestOneWorkerInvariant:
    """Random operation sequences never leave two workers registered."""

    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    def test_random_sequences(self, service, transport, seed):
        rng = random.Random(seed)
        peers = ["AA:00:00:00:00:%02X" % i for i in range(4)]
        for i, peer in enumerate(peers):
            # Mix of instant success, instant failure and blocking attempts
            if i == 0:
                transport.connect_results[peer] = None
            elif i == 1:
                transport.connect_results[peer] = TransportError("refused")

        for _ in range(40):
            op = rng.choice(["listen", "connect", "shutdown", "inbound"])
            if op == "listen":
                service.start_listening()
            elif op == "connect":
                service.connect_to(rng.choice(peers))
            elif op == "shutdown":
                service.shutdown()
            else:
                listener = service._listener
                if listener is not None and listener.resource is not None:
                    listener.resource.simulate_inbound(MockChannel(rng.choice(peers)))
            assert_invariant(service)

        service.shutdown()
        assert_invariant(service)
        assert service.state == ConnectionState.IDLE

        assert wait_until(lambda: all(e.closed for e in transport.endpoints))
        assert wait_until(lambda: all(c.closed for c in transport.channels))

    def test_concurrent_callers(self, service, transport, sample_peers):
        transport.connect_results[sample_peers["a"]] = None
        errors = []

        def hammer(action):
            try:
                for _ in range(50):
                    action()
            except Exception as e:
                errors.append(e)

        actions = [
            service.start_listening,
            lambda: service.connect_to(sample_peers["a"]),
            lambda: service.connect_to(sample_peers["b"]),
            service.shutdown,
        ]
        threads = [threading.Thread(target=hammer, args=(a,), daemon=True) for a in actions]
        for t in threads:
            t.start()

        while any(t.is_alive() for t in threads):
            assert_invariant(service)

        for t in threads:
            t.join(TIMEOUT)

        assert errors == []
        service.shutdown()
        assert_invariant(service)
        assert wait_until(lambda: all(e.closed for e in transport.endpoints))
        assert wait_until(lambda: all(c.closed for c in transport.channels))
