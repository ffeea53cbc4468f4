"""Owned MQTT connection with capped exponential backoff."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .config import BackoffSettings, BrokerSettings
from .errors import BrokerUnavailableError
from .system_log import SystemLog
from .topics import TelemetryMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[TelemetryMessage], Any]
ClientFactory = Callable[[BrokerSettings, str], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    UNAVAILABLE = "unavailable"
    STOPPED = "stopped"


class BackoffPolicy:
    """Delay schedule between connection attempts."""

    def __init__(self, settings: BackoffSettings | None = None) -> None:
        self._settings = settings or BackoffSettings()

    @property
    def max_attempts(self) -> int:
        return self._settings.max_attempts

    def delay(self, failures: int) -> float:
        """Return the wait after ``failures`` consecutive failed attempts."""

        if failures < 1:
            return 0.0
        value = self._settings.initial_delay * (self._settings.factor ** (failures - 1))
        return float(min(value, self._settings.max_delay))

    def schedule(self) -> list[float]:
        return [self.delay(failure) for failure in range(1, self._settings.max_attempts + 1)]


def default_client_factory(settings: BrokerSettings, client_id: str) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        transport=settings.transport,
    )
    if settings.username:
        client.username_pw_set(settings.username, settings.password)
    return client


def _is_failure(reason_code: Any) -> bool:
    flag = getattr(reason_code, "is_failure", None)
    if isinstance(flag, bool):
        return flag
    try:
        return int(reason_code) != 0
    except (TypeError, ValueError):
        return True


class BrokerConnection:
    """Single long-lived broker connection driven by a supervisor thread.

    After ``max_attempts`` consecutive failures the connection settles in
    :attr:`ConnectionState.UNAVAILABLE` and stays there until
    :meth:`reconnect` is called.
    """

    def __init__(
        self,
        settings: BrokerSettings,
        on_message: MessageHandler,
        *,
        backoff: BackoffSettings | None = None,
        client_factory: ClientFactory | None = None,
        wait: Callable[[float], bool] | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        self._settings = settings
        self._on_message = on_message
        self._policy = BackoffPolicy(backoff)
        self._client_factory = client_factory or default_client_factory
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._system_log = system_log
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._client: Any | None = None
        self._thread: threading.Thread | None = None
        self._connack = threading.Event()
        self._connack_error: str | None = None
        self._lost = threading.Event()
        self._attempts = 0
        self._delays: list[float] = []
        self._last_error: str | None = None
        self._connected_at: datetime | None = None
        self._messages = 0

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    @property
    def delays(self) -> list[float]:
        with self._lock:
            return list(self._delays)

    def status(self) -> dict[str, object]:
        with self._lock:
            return {
                "state": self._state.value,
                "connected": self._state is ConnectionState.CONNECTED,
                "host": self._settings.host,
                "port": self._settings.port,
                "attempts": self._attempts,
                "max_attempts": self._policy.max_attempts,
                "delays": list(self._delays),
                "last_error": self._last_error,
                "connected_at": self._connected_at.isoformat() if self._connected_at else None,
                "messages": self._messages,
            }

    # ------------------------------ lifecycle ------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._supervise, name="broker-supervisor", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._lost.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._teardown_client()
        self._set_state(ConnectionState.STOPPED, "Broker connection stopped")

    def update_settings(self, settings: BrokerSettings) -> None:
        """Use ``settings`` from the next connection attempt on."""

        with self._lock:
            self._settings = settings

    def reconnect(self) -> bool:
        """Manually restart connecting; returns ``False`` if already running."""

        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            if running and self._state is ConnectionState.CONNECTED:
                self._lost.set()
                return True
            if running:
                return False
            self._attempts = 0
            self._delays = []
        logger.info("Manual reconnect requested for %s:%s", self._settings.host, self._settings.port)
        self.start()
        return True

    def connect_with_backoff(self) -> bool:
        """Try to connect until success, ``max_attempts`` failures or stop."""

        with self._lock:
            self._attempts = 0
            self._delays = []
        while not self._stop.is_set():
            with self._lock:
                self._attempts += 1
                attempt = self._attempts
            self._set_state(ConnectionState.CONNECTING)
            try:
                self._connect_once()
            except (OSError, ConnectionError, TimeoutError, ValueError) as exc:
                self._teardown_client()
                with self._lock:
                    self._last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Broker connection attempt %d/%d to %s:%s failed: %s",
                    attempt,
                    self._policy.max_attempts,
                    self._settings.host,
                    self._settings.port,
                    exc,
                )
                if attempt >= self._policy.max_attempts:
                    self._set_state(
                        ConnectionState.UNAVAILABLE,
                        f"Gave up after {attempt} attempts; manual reconnect required",
                    )
                    return False
                delay = self._policy.delay(attempt)
                with self._lock:
                    self._delays.append(delay)
                self._set_state(ConnectionState.BACKOFF)
                if self._wait(delay):
                    return False
                continue
            with self._lock:
                self._connected_at = datetime.now(timezone.utc)
                self._last_error = None
            self._set_state(
                ConnectionState.CONNECTED,
                f"Connected to {self._settings.host}:{self._settings.port}",
            )
            return True
        return False

    def request_devices(self) -> None:
        """Ask the bridge to publish its device list."""

        with self._lock:
            client = self._client
            connected = self._state is ConnectionState.CONNECTED
        if client is None or not connected:
            raise BrokerUnavailableError("Broker is not connected")
        client.publish(self._settings.device_request_topic, "")
        logger.debug("Requested device list on %s", self._settings.device_request_topic)

    # ----------------------------- implementation --------------------------
    def _supervise(self) -> None:
        while not self._stop.is_set():
            if not self.connect_with_backoff():
                return
            self._lost.clear()
            while not self._stop.is_set():
                if self._lost.wait(self._settings.device_refresh_interval):
                    break
                try:
                    self.request_devices()
                except BrokerUnavailableError:
                    break
            self._teardown_client()
            if not self._stop.is_set():
                self._set_state(ConnectionState.DISCONNECTED, "Broker connection lost")

    def _connect_once(self) -> None:
        client_id = f"{self._settings.client_id_prefix}-{uuid.uuid4().hex[:8]}"
        client = self._client_factory(self._settings, client_id)
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_message = self._handle_message
        self._connack.clear()
        self._connack_error = None
        with self._lock:
            self._client = client
        client.connect(self._settings.host, self._settings.port, keepalive=self._settings.keepalive)
        client.loop_start()
        if not self._connack.wait(self._settings.connect_timeout):
            raise TimeoutError(f"No CONNACK within {self._settings.connect_timeout:.0f}s")
        if self._connack_error is not None:
            raise ConnectionError(self._connack_error)

    def _teardown_client(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client is None:
            return
        client.on_disconnect = None
        try:
            client.disconnect()
        except Exception:  # pragma: no cover - best effort shutdown
            logger.debug("Ignoring error while disconnecting", exc_info=True)
        try:
            client.loop_stop()
        except Exception:  # pragma: no cover - best effort shutdown
            logger.debug("Ignoring error while stopping network loop", exc_info=True)

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if _is_failure(reason_code):
            self._connack_error = f"Broker refused connection: {reason_code}"
            self._connack.set()
            return
        client.subscribe([(topic, 0) for topic in self._settings.topics])
        client.publish(self._settings.device_request_topic, "")
        logger.info("Subscribed to %d topic patterns", len(self._settings.topics))
        self._connack.set()

    def _handle_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        logger.warning("Broker connection dropped: %s", reason_code)
        with self._lock:
            self._last_error = f"Disconnected: {reason_code}"
        self._lost.set()

    def _handle_message(self, client, userdata, msg) -> None:
        with self._lock:
            self._messages += 1
        try:
            self._on_message(TelemetryMessage(msg.topic, msg.payload, datetime.now(timezone.utc)))
        except Exception:
            logger.exception("Message handler failed for %s", getattr(msg, "topic", "?"))

    def _set_state(self, state: ConnectionState, message: str | None = None) -> None:
        with self._lock:
            previous = self._state
            self._state = state
        if previous is state or message is None:
            return
        logger.info("Broker %s -> %s: %s", previous.value, state.value, message)
        if self._system_log is not None:
            self._system_log.record(
                "broker",
                state.value,
                message,
                metadata={"host": self._settings.host, "port": self._settings.port, "error": self._last_error},
            )


__all__ = [
    "BackoffPolicy",
    "BrokerConnection",
    "ConnectionState",
    "default_client_factory",
]
