"""MQTT live-change source, parsing, and runtime helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from mandisync.config import SyncConfig
from mandisync.exceptions import RecordValidationError, SubscriptionFailure
from mandisync.ingestion.apply import to_live_update
from mandisync.models.record import Record
from mandisync.models.results import LiveUpdate
from mandisync.sources.base import ChangeCallback, ErrorCallback, RecordSource, Unsubscribe

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MqttBroker:
    """Broker connection details."""

    host: str
    port: int = 1883
    keepalive: int = 60
    tls: bool = False
    topic_prefix: str = "mandisync"

    @classmethod
    def from_config(cls, config: SyncConfig) -> MqttBroker:
        return cls(
            host=config.mqtt_host,
            port=config.mqtt_port,
            keepalive=config.mqtt_keepalive,
            tls=config.mqtt_tls,
            topic_prefix=config.mqtt_topic_prefix,
        )

    def topic_for(self, path: str) -> str:
        return f"{self.topic_prefix.rstrip('/')}/{path.strip('/')}"


def decode_live_message(payload: bytes) -> LiveUpdate:
    """Decode an MQTT payload into a :class:`LiveUpdate`.

    Raises
    ------
    RecordValidationError
        The payload is not UTF-8 JSON shaped like a change set.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise RecordValidationError(f"live message is not JSON: {exc}") from exc
    return to_live_update(parsed)


class MqttSubscriptionRuntime:
    """Threaded paho-mqtt runtime feeding one topic onto an asyncio loop.

    Changes and failures are marshalled with ``call_soon_threadsafe``;
    nothing is delivered after :meth:`close` or :meth:`stop`.  :meth:`start`
    and :meth:`stop` block and belong in an executor thread.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        broker: MqttBroker,
        path: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
        client_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._broker = broker
        self._path = path
        self._topic = broker.topic_for(path)
        self._on_change = on_change
        self._on_error = on_error
        self._client_id = client_id or f"mandisync_{secrets.token_hex(6)}"
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._running = False
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is active."""
        return self._running

    # ------------------------------------------------------------------
    # Delivery (event loop thread)
    # ------------------------------------------------------------------

    def _deliver_change(self, update: LiveUpdate) -> None:
        if not self._closed:
            self._on_change(update)

    def _deliver_error(self, exc: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_error(exc)

    def fail(self, message: str) -> None:
        """Report a lost or refused connection from any thread."""
        failure = SubscriptionFailure(message, path=self._path)
        self._loop.call_soon_threadsafe(self._deliver_error, failure)

    def handle_payload(self, payload: bytes) -> None:
        """Decode *payload* and hand it to the loop (safe from any thread)."""
        try:
            update = decode_live_message(payload)
        except RecordValidationError:
            self._logger.debug("MQTT payload parse failure topic=%s", self._topic, exc_info=True)
            return
        self._logger.debug(
            "MQTT change set topic=%s changes=%d snapshot=%s",
            self._topic,
            len(update.changes),
            update.snapshot,
        )
        self._loop.call_soon_threadsafe(self._deliver_change, update)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Connect and subscribe; connection failures go to ``on_error``."""
        if self._closed:
            return
        self._logger.debug(
            "MQTT subscription start host=%s port=%s topic=%s client_id=%s",
            self._broker.host,
            self._broker.port,
            self._topic,
            self._client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if self._broker.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self.fail(f"MQTT connect refused for {self._topic}: {reason_code}")
                return
            self._logger.debug("MQTT connected reason=%s, subscribing topic=%s", reason_code, self._topic)
            c.subscribe(self._topic, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self.handle_payload(msg.payload)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)
                self.fail(f"MQTT connection lost for {self._topic}: {reason_code}")

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(self._broker.host, self._broker.port, keepalive=self._broker.keepalive)
        except OSError as exc:
            self._logger.warning("MQTT connect to %s:%s failed: %s", self._broker.host, self._broker.port, exc)
            self.fail(f"MQTT connect to {self._broker.host}:{self._broker.port} failed: {exc}")
            return
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def close(self) -> None:
        """Stop delivering to the callbacks.  Non-blocking; see :meth:`stop`."""
        self._closed = True

    def stop(self) -> None:
        """Stop and disconnect.  Blocks on the network thread; safe to call repeatedly."""
        self._closed = True
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested topic=%s", self._topic)
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")


class MqttRecordSource:
    """Record source that fetches through *fetcher* and pushes changes over MQTT.

    Each :meth:`subscribe` call opens its own broker connection on topic
    ``{topic_prefix}/{path}``.  Messages may be a JSON list (the complete
    collection), a change set ``{"changes": [...], "snapshot": bool}``, or a
    single changed object.
    """

    def __init__(
        self,
        fetcher: RecordSource,
        broker: MqttBroker,
        *,
        runtime_factory: Callable[..., MqttSubscriptionRuntime] = MqttSubscriptionRuntime,
    ) -> None:
        self._fetcher = fetcher
        self._broker = broker
        self._runtime_factory = runtime_factory

    async def fetch_collection(self, path: str) -> list[Record]:
        return await self._fetcher.fetch_collection(path)

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        """Open a live feed for *path* and return its unsubscribe callable.

        Connecting and tearing down block on sockets and the paho network
        thread, so both run in the loop's default executor.  Unsubscribing
        silences the callbacks immediately; the disconnect follows once the
        connect attempt has finished.
        """
        loop = asyncio.get_running_loop()
        runtime = self._runtime_factory(
            loop=loop,
            broker=self._broker,
            path=path,
            on_change=on_change,
            on_error=on_error,
        )
        started = loop.run_in_executor(None, runtime.start)

        def _on_started(future: asyncio.Future[None]) -> None:
            if future.cancelled() or future.exception() is None:
                return
            _logger.warning("MQTT runtime start failed for path=%s", path, exc_info=future.exception())
            runtime.fail(f"MQTT runtime start failed for {path}: {future.exception()}")

        def _on_stopped(future: asyncio.Future[None]) -> None:
            if not future.cancelled() and future.exception() is not None:
                _logger.debug("MQTT runtime stop failed for path=%s", path, exc_info=future.exception())

        def _stop_after_start(_future: asyncio.Future[None]) -> None:
            loop.run_in_executor(None, runtime.stop).add_done_callback(_on_stopped)

        started.add_done_callback(_on_started)
        released = False

        def _unsubscribe() -> None:
            nonlocal released
            if released:
                return
            released = True
            runtime.close()
            started.add_done_callback(_stop_after_start)

        return _unsubscribe
