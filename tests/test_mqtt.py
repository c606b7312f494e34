from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from pylivetrack._mqtt import (
    MqttPing,
    MqttRuntime,
    MqttTopicConnection,
    _parse_broker,
    decode_ping,
    job_id_from_topic,
    resolve_endpoint,
)
from pylivetrack.broadcast import TrackingBroadcaster
from pylivetrack.config import MqttSettings, TrackerConfig
from pylivetrack.exceptions import LiveTrackError
from pylivetrack.tracker import LiveTracker


class _FakeReasonCode:
    value = 0


class _FakeMessage:
    def __init__(self, topic: str, payload: dict[str, Any] | bytes) -> None:
        self.topic = topic
        self.payload = payload if isinstance(payload, bytes) else json.dumps(payload).encode()


class _FakePahoClient:
    instances: list[_FakePahoClient] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.credentials: tuple[str, str | None] | None = None
        self.tls = False
        self.connected_to: tuple[str, int] | None = None
        self.subscriptions: list[str] = []
        self.published: list[tuple[str, str]] = []
        self.loop_running = False
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None
        _FakePahoClient.instances.append(self)

    def enable_logger(self, logger: Any) -> None:
        pass

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        self.tls = True

    def connect(self, host: str, port: int, keepalive: int = 60) -> None:
        self.connected_to = (host, port)

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        pass

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscriptions.append(topic)

    def publish(self, topic: str, payload: str, qos: int = 0) -> None:
        self.published.append((topic, payload))


@pytest.fixture
def fake_paho(monkeypatch: pytest.MonkeyPatch) -> type[_FakePahoClient]:
    _FakePahoClient.instances = []
    monkeypatch.setattr("pylivetrack._mqtt.mqtt.Client", _FakePahoClient)
    return _FakePahoClient


# ------------------------------------------------------------------
# Topic and payload helpers
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "tls", "expected"),
    [
        ("broker.local", False, ("broker.local", 1883)),
        ("broker.local", True, ("broker.local", 8883)),
        ("mqtts://broker.local:8884/path", True, ("broker.local", 8884)),
        ("10.0.0.5:1884", False, ("10.0.0.5", 1884)),
    ],
)
def test_parse_broker(raw: str, tls: bool, expected: tuple[str, int]) -> None:
    assert _parse_broker(raw, tls=tls) == expected


def test_parse_broker_rejects_empty() -> None:
    with pytest.raises(ValueError):
        _parse_broker("  ")


def test_resolve_endpoint_prefers_embedded_port() -> None:
    assert resolve_endpoint(MqttSettings(host="broker", port=2883)).port == 2883
    endpoint = resolve_endpoint(MqttSettings(host="mqtt://broker:1999", port=2883, topic_prefix="/fleet/"))
    assert (endpoint.host, endpoint.port) == ("broker", 1999)
    assert endpoint.ping_topic == "fleet/+/ping"


def test_job_id_from_topic() -> None:
    assert job_id_from_topic("tracking/job-1/ping", "tracking") == "job-1"
    assert job_id_from_topic("tracking/job-1/location_update", "tracking") is None
    assert job_id_from_topic("other/job-1/ping", "tracking") is None
    assert job_id_from_topic("tracking/a/b/ping", "tracking") is None


def test_decode_ping() -> None:
    ping = decode_ping(
        "tracking/job-1/ping",
        json.dumps({"lat": "1.1258", "lng": 104.0515, "isOffRoute": True, "polyline": "m{zEcqazRfzCfyA"}).encode(),
        "tracking",
    )
    assert ping == MqttPing(
        job_id="job-1",
        lat=1.1258,
        lng=104.0515,
        topic="tracking/job-1/ping",
        polyline="m{zEcqazRfzCfyA",
        off_route_hint=True,
    )


@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"lat": 1.0}', b'{"lat": "x", "lng": 1}'])
def test_decode_ping_rejects_bad_payloads(payload: bytes) -> None:
    with pytest.raises(LiveTrackError):
        decode_ping("tracking/job-1/ping", payload, "tracking")


@pytest.mark.asyncio
async def test_topic_connection_republishes_room_messages() -> None:
    published: list[tuple[str, dict[str, Any]]] = []
    connection = MqttTopicConnection(lambda topic, payload: published.append((topic, payload)), "tracking")
    broadcaster = TrackingBroadcaster()

    await broadcaster.join("job-1", connection)

    assert broadcaster.room_size("job-1") == 1
    assert published[0][0] == "tracking/job-1/joined_tracking"
    with pytest.raises(LiveTrackError):
        await connection.send("location_update", {"location": {}})


# ------------------------------------------------------------------
# Runtime
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_runtime_subscribes_and_marshals_pings(fake_paho: type[_FakePahoClient]) -> None:
    received: list[MqttPing] = []
    runtime = MqttRuntime(
        loop=asyncio.get_running_loop(),
        settings=MqttSettings(host="broker", username="svc", password="pw", tls=True),
        on_ping=received.append,
    )

    runtime.start()
    [client] = fake_paho.instances
    assert runtime.is_running
    assert client.connected_to == ("broker", 1883)
    assert client.credentials == ("svc", "pw")
    assert client.tls

    client.on_connect(client, None, None, _FakeReasonCode(), None)
    assert client.subscriptions == ["tracking/+/ping"]

    client.on_message(client, None, _FakeMessage("tracking/job-1/ping", {"lat": 1.0, "lng": 2.0}))
    client.on_message(client, None, _FakeMessage("tracking/job-1/ping", b"garbage"))
    await asyncio.sleep(0)
    assert [(p.job_id, p.lat, p.lng) for p in received] == [("job-1", 1.0, 2.0)]

    runtime.publish("tracking/job-1/location_update", {"jobId": "job-1"})
    assert client.published == [("tracking/job-1/location_update", '{"jobId":"job-1"}')]

    runtime.stop()
    assert not runtime.is_running
    assert not client.loop_running
    runtime.publish("tracking/job-1/location_update", {"jobId": "job-1"})
    assert len(client.published) == 1


@pytest.mark.asyncio
async def test_tracker_bridges_mqtt(fake_paho: type[_FakePahoClient]) -> None:
    config = TrackerConfig(mqtt_enabled=True)
    async with LiveTracker(config) as tracker:
        [client] = fake_paho.instances
        await tracker.start_session("job-1", [(1.1258, 104.0515), (1.1009, 104.0371)], 5.2, 15)

        client.on_message(client, None, _FakeMessage("tracking/job-1/ping", {"lat": 1.1258, "lng": 104.0515}))
        for _ in range(5):
            await asyncio.sleep(0)

        live = await tracker.get_current_location("job-1")
        assert live is not None
        assert (live.lat, live.lng) == (1.1258, 104.0515)
        topics = [topic for topic, _ in client.published]
        assert "tracking/job-1/joined_tracking" in topics
        assert "tracking/job-1/location_update" in topics

    assert not client.loop_running
