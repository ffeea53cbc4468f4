from __future__ import annotations

import time
from types import SimpleNamespace

import pytest

from session_tracker.broker import BackoffPolicy, BrokerConnection, ConnectionState
from session_tracker.config import BackoffSettings, BrokerSettings
from session_tracker.errors import BrokerUnavailableError
from session_tracker.system_log import SystemLog


class _FakeClient:
    """Mimics the parts of the paho client used by the connection."""

    def __init__(self, *, refuse: bool = False) -> None:
        self.refuse = refuse
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.connected_to: tuple[str, int] | None = None
        self.subscriptions: list = []
        self.published: list[tuple[str, str]] = []
        self.loop_running = False

    def connect(self, host, port, keepalive=60):
        if self.refuse:
            raise ConnectionRefusedError(111, "Connection refused")
        self.connected_to = (host, port)

    def loop_start(self):
        self.loop_running = True
        self.on_connect(self, None, {}, 0, None)

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        return None

    def subscribe(self, topics):
        self.subscriptions.append(topics)

    def publish(self, topic, payload):
        self.published.append((topic, payload))


class _Factory:
    def __init__(self, refusals: int) -> None:
        self.refusals = refusals
        self.clients: list[_FakeClient] = []

    def __call__(self, settings, client_id):
        client = _FakeClient(refuse=len(self.clients) < self.refusals)
        self.clients.append(client)
        return client


class _WaitRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, delay: float) -> bool:
        self.delays.append(delay)
        return False


def _connection(factory, *, backoff=None, messages=None, system_log=None):
    received = messages if messages is not None else []
    waits = _WaitRecorder()
    connection = BrokerConnection(
        BrokerSettings(host="broker.local", port=1883, topics=("zigbee2mqtt/#",)),
        lambda message: received.append((message.topic, message.payload)),
        backoff=backoff,
        client_factory=factory,
        wait=waits,
        system_log=system_log,
    )
    return connection, waits


def test_backoff_schedule_is_capped():
    policy = BackoffPolicy(BackoffSettings(initial_delay=1, factor=2, max_delay=5, max_attempts=6))
    assert policy.schedule() == [1.0, 2.0, 4.0, 5.0, 5.0, 5.0]
    assert policy.delay(0) == 0.0


def test_unreachable_broker_gives_up_after_five_attempts(tmp_path):
    factory = _Factory(refusals=100)
    log = SystemLog(tmp_path / "log.jsonl")
    connection, waits = _connection(factory, system_log=log)

    assert connection.connect_with_backoff() is False

    assert len(factory.clients) == 5
    assert connection.attempts == 5
    assert connection.state is ConnectionState.UNAVAILABLE
    # Waits only happen between attempts.
    assert waits.delays == [1.0, 2.0, 4.0, 8.0]
    assert all(later >= earlier for earlier, later in zip(waits.delays, waits.delays[1:]))
    assert connection.status()["last_error"]
    assert log.tail(category="broker")[-1].event == "unavailable"


def test_delays_never_exceed_the_cap():
    factory = _Factory(refusals=100)
    connection, waits = _connection(
        factory,
        backoff=BackoffSettings(initial_delay=1, factor=3, max_delay=4, max_attempts=5),
    )

    connection.connect_with_backoff()
    assert waits.delays == [1.0, 3.0, 4.0, 4.0]
    assert connection.delays == waits.delays


def test_connects_after_transient_failures():
    factory = _Factory(refusals=2)
    connection, waits = _connection(factory)

    assert connection.connect_with_backoff() is True

    assert connection.state is ConnectionState.CONNECTED
    assert connection.attempts == 3
    assert waits.delays == [1.0, 2.0]
    client = factory.clients[-1]
    assert client.connected_to == ("broker.local", 1883)
    assert client.subscriptions == [[("zigbee2mqtt/#", 0)]]
    # The device list is requested as soon as the subscription is in place.
    assert client.published == [("zigbee2mqtt/bridge/request/devices", "")]
    connection.stop()


def test_messages_are_forwarded_to_the_handler():
    received: list = []
    factory = _Factory(refusals=0)
    connection, _ = _connection(factory, messages=received)
    connection.connect_with_backoff()

    client = factory.clients[-1]
    client.on_message(client, None, SimpleNamespace(topic="zigbee2mqtt/door", payload=b'{"contact": true}'))

    assert received == [("zigbee2mqtt/door", b'{"contact": true}')]
    assert connection.status()["messages"] == 1
    connection.stop()


def test_handler_errors_do_not_escape_the_network_loop():
    factory = _Factory(refusals=0)

    def _boom(message):
        raise RuntimeError("handler failed")

    connection = BrokerConnection(
        BrokerSettings(),
        _boom,
        client_factory=factory,
        wait=_WaitRecorder(),
    )
    connection.connect_with_backoff()
    client = factory.clients[-1]
    client.on_message(client, None, SimpleNamespace(topic="zigbee2mqtt/door", payload=b"{}"))
    assert connection.state is ConnectionState.CONNECTED
    connection.stop()


def test_refused_connack_counts_as_failure():
    class _RejectingClient(_FakeClient):
        def loop_start(self):
            self.on_connect(self, None, {}, 5, None)

    clients: list = []

    def factory(settings, client_id):
        client = _RejectingClient()
        clients.append(client)
        return client

    connection, waits = _connection(factory, backoff=BackoffSettings(max_attempts=2))
    assert connection.connect_with_backoff() is False
    assert len(clients) == 2
    assert "refused" in connection.status()["last_error"]


def test_request_devices_requires_connection():
    connection, _ = _connection(_Factory(refusals=0))
    with pytest.raises(BrokerUnavailableError):
        connection.request_devices()


def test_manual_reconnect_after_giving_up():
    factory = _Factory(refusals=5)
    connection, _ = _connection(factory)
    assert connection.connect_with_backoff() is False
    assert connection.state is ConnectionState.UNAVAILABLE

    assert connection.reconnect() is True

    deadline = time.monotonic() + 5
    while connection.state is not ConnectionState.CONNECTED and time.monotonic() < deadline:
        time.sleep(0.01)
    assert connection.state is ConnectionState.CONNECTED
    assert connection.attempts == 1

    connection.request_devices()
    assert factory.clients[-1].published[-1] == ("zigbee2mqtt/bridge/request/devices", "")

    connection.stop()
    assert connection.state is ConnectionState.STOPPED
