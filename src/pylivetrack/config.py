"""Tracker configuration for pylivetrack."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pylivetrack._constants import (
    DEFAULT_ARRIVAL_ETA_MINUTES,
    DEFAULT_ARRIVAL_RADIUS_KM,
    DEFAULT_OFF_ROUTE_THRESHOLD_M,
    DEFAULT_PROVIDER_TIMEOUT_S,
    DEFAULT_REROUTE_COOLDOWN_S,
    DEFAULT_ROUTE_LOG_CAPACITY,
    DEFAULT_SIMULATION_INTERVAL_S,
    GOOGLE_DIRECTIONS_URL,
)
from pylivetrack.exceptions import ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker settings for the optional MQTT fan-out bridge."""

    host: str = "localhost"
    port: int = 1883
    client_id: str = "pylivetrack"
    username: str | None = None
    password: str | None = None
    tls: bool = False
    keepalive: int = 60
    topic_prefix: str = "tracking"


@dataclasses.dataclass(frozen=True)
class TrackerConfig:
    """Tracker configuration.

    Parameters
    ----------
    off_route_threshold_m : float
        Distance from the route (meters) beyond which a position is
        considered off-route.
    reroute_cooldown_s : float
        Minimum seconds between two successful reroutes of the same job.
    route_log_capacity : int
        Number of route changes kept per job (oldest evicted first).
    provider_timeout_s : float
        Hard timeout for a single routing provider call.
    arrival_eta_minutes : int
        ETA (minutes) at or below which the agent is treated as arrived.
    arrival_radius_km : float
        Arrival distance used when the trip has no usable average speed.
    google_maps_api_key : str or None
        Key for the Google Directions provider.  Without it, rerouting is
        disabled unless a provider is injected.
    directions_url : str
        Directions endpoint URL.
    redis_url : str or None
        Redis connection URL.  Without it an in-process cache is used.
    cache_ttl_s : int or None
        Expiry applied to every cached session key.
    simulation_interval_s : float
        Default seconds between simulated pings.
    mqtt_enabled : bool
        Mirror broadcast updates to an MQTT broker.
    mqtt : MqttSettings
        Broker settings.
    """

    off_route_threshold_m: float = DEFAULT_OFF_ROUTE_THRESHOLD_M
    reroute_cooldown_s: float = DEFAULT_REROUTE_COOLDOWN_S
    route_log_capacity: int = DEFAULT_ROUTE_LOG_CAPACITY
    provider_timeout_s: float = DEFAULT_PROVIDER_TIMEOUT_S
    arrival_eta_minutes: int = DEFAULT_ARRIVAL_ETA_MINUTES
    arrival_radius_km: float = DEFAULT_ARRIVAL_RADIUS_KM
    google_maps_api_key: str | None = None
    directions_url: str = GOOGLE_DIRECTIONS_URL
    redis_url: str | None = None
    cache_ttl_s: int | None = None
    simulation_interval_s: float = DEFAULT_SIMULATION_INTERVAL_S
    mqtt_enabled: bool = False
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if self.off_route_threshold_m <= 0:
            raise ConfigError("off_route_threshold_m must be positive")
        if self.reroute_cooldown_s < 0:
            raise ConfigError("reroute_cooldown_s must not be negative")
        if self.route_log_capacity < 1:
            raise ConfigError("route_log_capacity must be at least 1")
        if self.provider_timeout_s <= 0:
            raise ConfigError("provider_timeout_s must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackerConfig:
        """Create configuration from environment variables.

        Reads ``LIVETRACK_*`` variables plus ``GOOGLE_MAPS_API_KEY`` and
        ``REDIS_URL``.  Explicit keyword arguments override environment
        values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TrackerConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "LIVETRACK_MQTT_HOST": ("host", str),
            "LIVETRACK_MQTT_PORT": ("port", int),
            "LIVETRACK_MQTT_CLIENT_ID": ("client_id", str),
            "LIVETRACK_MQTT_USERNAME": ("username", str),
            "LIVETRACK_MQTT_PASSWORD": ("password", str),
            "LIVETRACK_MQTT_KEEPALIVE": ("keepalive", int),
            "LIVETRACK_MQTT_TOPIC_PREFIX": ("topic_prefix", str),
        }
        for env_key, (field_name, parse) in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = parse(val)
        tls_env = env.get("LIVETRACK_MQTT_TLS")
        if tls_env is not None:
            mqtt_kwargs["tls"] = _env_bool(tls_env, False)

        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}

        _ENV_CONFIG_MAP = {
            "LIVETRACK_OFF_ROUTE_THRESHOLD_M": ("off_route_threshold_m", float),
            "LIVETRACK_REROUTE_COOLDOWN_S": ("reroute_cooldown_s", float),
            "LIVETRACK_ROUTE_LOG_CAPACITY": ("route_log_capacity", int),
            "LIVETRACK_PROVIDER_TIMEOUT_S": ("provider_timeout_s", float),
            "LIVETRACK_ARRIVAL_ETA_MINUTES": ("arrival_eta_minutes", int),
            "LIVETRACK_ARRIVAL_RADIUS_KM": ("arrival_radius_km", float),
            "LIVETRACK_DIRECTIONS_URL": ("directions_url", str),
            "LIVETRACK_CACHE_TTL_S": ("cache_ttl_s", int),
            "LIVETRACK_SIMULATION_INTERVAL_S": ("simulation_interval_s", float),
            "GOOGLE_MAPS_API_KEY": ("google_maps_api_key", str),
            "REDIS_URL": ("redis_url", str),
        }
        for env_key, (field_name, parse) in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = parse(val)
            except ValueError as exc:
                raise ConfigError(f"Invalid value for {env_key}: {val!r}") from exc

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("LIVETRACK_MQTT_ENABLED"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
