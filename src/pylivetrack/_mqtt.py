"""Internal MQTT bridge: topic helpers, ping parsing and threaded runtime."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pylivetrack.config import MqttSettings
from pylivetrack.exceptions import LiveTrackError

PING_EVENT = "ping"


@dataclass(frozen=True)
class MqttEndpoint:
    """Resolved broker connection details."""

    host: str
    port: int
    client_id: str
    username: str | None
    password: str | None
    tls: bool
    topic_prefix: str

    @property
    def ping_topic(self) -> str:
        """Wildcard subscription matching inbound pings for every job."""
        return f"{self.topic_prefix}/+/{PING_EVENT}"


@dataclass(frozen=True)
class MqttPing:
    """Position ping received over MQTT."""

    job_id: str
    lat: float
    lng: float
    topic: str
    polyline: str | None = None
    off_route_hint: bool | None = None


def _parse_broker(raw_broker: str, *, tls: bool = False) -> tuple[str, int]:
    value = raw_broker.strip()
    if not value:
        raise ValueError("Broker value is empty")

    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port)
    return value, 8883 if tls else 1883


def resolve_endpoint(settings: MqttSettings) -> MqttEndpoint:
    """Build broker details from settings.

    ``settings.host`` may carry a scheme and port (``mqtts://broker:8883``);
    an embedded port wins over ``settings.port``.
    """
    host, port = _parse_broker(settings.host, tls=settings.tls)
    if ":" not in settings.host.split("://", 1)[-1]:
        port = settings.port
    return MqttEndpoint(
        host=host,
        port=port,
        client_id=settings.client_id,
        username=settings.username,
        password=settings.password,
        tls=settings.tls,
        topic_prefix=settings.topic_prefix.strip("/"),
    )


def event_topic(prefix: str, job_id: str, event: str) -> str:
    return f"{prefix}/{job_id}/{event}"


def job_id_from_topic(topic: str, prefix: str) -> str | None:
    """Extract the job id from ``{prefix}/{jobId}/ping``; ``None`` if no match."""
    head = f"{prefix}/"
    tail = f"/{PING_EVENT}"
    if not topic.startswith(head) or not topic.endswith(tail):
        return None
    job_id = topic[len(head) : -len(tail)]
    if not job_id or "/" in job_id:
        return None
    return job_id


def decode_ping(topic: str, payload: bytes, prefix: str) -> MqttPing:
    """Parse an inbound ping message.

    Raises
    ------
    LiveTrackError
        If the topic or payload does not describe a position.
    """
    job_id = job_id_from_topic(topic, prefix)
    if job_id is None:
        raise LiveTrackError(f"Topic {topic!r} is not a ping topic")

    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise LiveTrackError("Ping payload is not JSON") from exc
    if not isinstance(parsed, dict):
        raise LiveTrackError("Ping payload is not an object")

    try:
        lat = float(parsed["lat"])
        lng = float(parsed["lng"])
    except (KeyError, TypeError, ValueError) as exc:
        raise LiveTrackError("Ping payload is missing lat/lng") from exc

    polyline = parsed.get("polyline")
    hint = parsed.get("isOffRoute")
    return MqttPing(
        job_id=job_id,
        lat=lat,
        lng=lng,
        topic=topic,
        polyline=polyline if isinstance(polyline, str) and polyline else None,
        off_route_hint=hint if isinstance(hint, bool) else None,
    )


class MqttRuntime:
    """Threaded paho-mqtt runtime that emits parsed pings onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        on_ping: Callable[[MqttPing], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._endpoint = resolve_endpoint(settings)
        self._keepalive = settings.keepalive
        self._on_ping = on_ping
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def topic_prefix(self) -> str:
        return self._endpoint.topic_prefix

    def start(self) -> None:
        """Connect and subscribe to ping topics."""
        self.stop()
        endpoint = self._endpoint
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s topic=%s client_id=%s",
            endpoint.host,
            endpoint.port,
            endpoint.ping_topic,
            endpoint.client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=endpoint.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if endpoint.username:
            client.username_pw_set(endpoint.username, endpoint.password)
        if endpoint.tls:
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
                return
            self._logger.debug("MQTT connected, subscribing topic=%s", endpoint.ping_topic)
            c.subscribe(endpoint.ping_topic, qos=0)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                ping = decode_ping(msg.topic, msg.payload, endpoint.topic_prefix)
            except LiveTrackError:
                self._logger.debug("MQTT ping parse failure topic=%s", msg.topic, exc_info=True)
                return
            self._loop.call_soon_threadsafe(self._on_ping, ping)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(endpoint.host, endpoint.port, keepalive=self._keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Queue *payload* as JSON on *topic* (no-op while stopped)."""
        client = self._client
        if client is None or not self._running:
            return
        client.publish(topic, json.dumps(payload, separators=(",", ":")), qos=0)

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")


class MqttTopicConnection:
    """Broadcaster connection that republishes room messages to MQTT.

    Each message lands on ``{prefix}/{jobId}/{event}``, so one instance can
    join any number of rooms.
    """

    def __init__(self, publish: Callable[[str, dict[str, Any]], None], topic_prefix: str) -> None:
        self._publish = publish
        self._prefix = topic_prefix.strip("/")

    @property
    def connection_id(self) -> str:
        return f"mqtt:{self._prefix}"

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        job_id = payload.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            raise LiveTrackError(f"Cannot route {event} message without jobId")
        self._publish(event_topic(self._prefix, job_id, event), payload)
