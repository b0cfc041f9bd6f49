from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from enum import Enum
import json
import logging
import ssl
import threading
import time
from typing import Any

import paho.mqtt.client as mqtt

from board_tap.config import MqttConfig
from board_tap.converter import Value
from board_tap.pipeline import CollectionResult, utc_now
from board_tap.registry import Module

CONNECTION_READING = "info.connection"


class Quality(str, Enum):
    GOOD = "good"
    STALE = "stale"
    UNAVAILABLE = "unavailable"

    def __str__(self) -> str:
        return self.value


class Publisher(ABC):
    """Destination for readings. Implementations must be thread-safe."""

    @abstractmethod
    def publish(
        self,
        name: str,
        value: Value | None,
        unit: str,
        timestamp: datetime,
        quality: Quality,
    ) -> bool:
        ...

    def connect(self) -> None:
        pass

    def disconnect(self) -> None:
        pass

    def publish_status(self, status: str) -> bool:
        return True


class DryRunPublisher(Publisher):
    """Logs readings instead of sending them anywhere."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)

    def publish(self, name, value, unit, timestamp, quality) -> bool:
        self.logger.info(
            "%s = %s%s [%s] @ %s",
            name,
            value,
            f" {unit}" if unit else "",
            quality,
            timestamp.isoformat(),
        )
        return True

    def publish_status(self, status: str) -> bool:
        self.logger.info("status = %s", status)
        return True


class MqttPublisher(Publisher):
    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False
        self._lock = threading.Lock()

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(
                ca_certs=config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )

        # Last Will so the broker marks the device offline if we vanish
        self.client.will_set(
            self._availability_topic,
            payload="offline",
            qos=1,
            retain=True,
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def _availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def connected(self) -> bool:
        return self._connected

    def topic_for(self, name: str) -> str:
        return f"{self.config.base_topic}/{name.replace('.', '/')}"

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if reason_code.is_failure:
            self._connected = False
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)
            return
        self._connected = True
        self.logger.info(
            "Connected to MQTT broker %s:%s", self.config.host, self.config.port
        )
        self.client.publish(
            self._availability_topic,
            payload="online",
            qos=1,
            retain=True,
        )

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        self._connected = False
        if reason_code.is_failure:
            self.logger.warning(
                "Unexpectedly disconnected from MQTT broker (%s). "
                "Will attempt to reconnect.",
                reason_code,
            )
        else:
            self.logger.info("Disconnected from MQTT broker (clean)")

    def connect(self) -> None:
        self.logger.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )
        # connect_async lets the network loop keep retrying if the broker is down
        self.client.connect_async(
            self.config.host,
            self.config.port,
            keepalive=self.config.keepalive,
        )
        self.client.loop_start()

    def disconnect(self) -> None:
        if self._connected:
            self.client.publish(
                self._availability_topic,
                payload="offline",
                qos=1,
                retain=True,
            )
        self.client.disconnect()
        self.client.loop_stop()
        self.logger.info("Disconnected from MQTT broker")

    def publish_status(self, status: str) -> bool:
        """Publish a custom status (e.g. "online", "sleeping") to the availability topic."""
        self.logger.info("Publishing status '%s' to %s", status, self._availability_topic)
        with self._lock:
            result = self.client.publish(
                self._availability_topic,
                payload=status,
                qos=1,
                retain=True,
            )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish status, error code: %s", result.rc)
            return False
        return True

    def publish(self, name, value, unit, timestamp, quality) -> bool:
        topic = self.topic_for(name)
        payload = json.dumps(
            {
                "value": value,
                "unit": unit or None,
                "ts": timestamp.isoformat(),
                "quality": str(quality),
            }
        )
        self.logger.debug("Publishing %s to %s", payload, topic)
        with self._lock:
            result = self.client.publish(
                topic,
                payload=payload,
                qos=self.config.qos,
                retain=self.config.retain,
            )
        if result.rc == mqtt.MQTT_ERR_NO_CONN:
            self.logger.debug("Not connected to MQTT broker, dropped %s", topic)
            return False
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish %s, error code: %s", topic, result.rc)
            return False
        return True


class ResultPublisher:
    """Turns collection results into individual publish calls.

    Successful readings are published as good. When a module fails, every
    reading it is known to produce is published as unavailable rather than
    left at its last value; known readings include the statically named ones
    and the per-record ones seen in earlier successful runs. Per-record
    readings that disappear from a successful run (an interface that went
    away) are published as unavailable once and then forgotten.
    """

    def __init__(self, publisher: Publisher) -> None:
        self.publisher = publisher
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._known: dict[str, dict[str, str]] = {}

    def _known_for(self, module: Module) -> dict[str, str]:
        known = self._known.get(module.id)
        if known is None:
            known = {t.name: t.unit for t in module.targets if not t.is_templated}
            self._known[module.id] = known
        return known

    def known_readings(self, module: Module) -> dict[str, str]:
        with self._lock:
            return dict(self._known_for(module))

    def handle(self, module: Module, result: CollectionResult) -> None:
        ts = result.timestamp
        static_names = set(module.static_reading_names())
        with self._lock:
            known = self._known_for(module)
            if not result.ok:
                unavailable = dict(known)
                for failure in result.failures:
                    unavailable.setdefault(failure.name, failure.unit)
                outgoing = [
                    (name, None, unit, Quality.UNAVAILABLE)
                    for name, unit in unavailable.items()
                ]
            else:
                outgoing = [
                    (r.name, r.value, r.unit, Quality.GOOD) for r in result.readings
                ]
                outgoing += [
                    (f.name, None, f.unit, Quality.UNAVAILABLE) for f in result.failures
                ]
                current = {r.name for r in result.readings} | {f.name for f in result.failures}
                for name in [n for n in known if n not in current and n not in static_names]:
                    outgoing.append((name, None, known.pop(name), Quality.UNAVAILABLE))
                for reading in result.readings:
                    known[reading.name] = reading.unit
                for failure in result.failures:
                    known.setdefault(failure.name, failure.unit)

        for name, value, unit, quality in outgoing:
            self.publisher.publish(name, value, unit, ts, quality)

    def mark_stale(self, module: Module, timestamp: datetime | None = None) -> None:
        """Publish every known reading of a module as stale (module disabled)."""
        ts = timestamp or utc_now()
        for name, unit in self.known_readings(module).items():
            self.publisher.publish(name, None, unit, ts, Quality.STALE)


class ConnectivityMonitor:
    """Aggregate liveness: did at least one core module succeed recently."""

    def __init__(
        self,
        publisher: Publisher,
        window_s: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.publisher = publisher
        self.window_s = window_s
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._last_success: float | None = None
        self._published: bool | None = None

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._is_connected()

    def _is_connected(self) -> bool:
        return (
            self._last_success is not None
            and self.clock() - self._last_success <= self.window_s
        )

    def record(self, module: Module, result: CollectionResult) -> None:
        if module.core and result.ok:
            with self._lock:
                self._last_success = self.clock()
        self.refresh()

    def refresh(self) -> None:
        """Publish the connection reading if it changed since last time."""
        with self._lock:
            connected = self._is_connected()
            previous = self._published
            if connected == previous:
                return
            self._published = connected
            if connected:
                self.logger.info("Core modules reporting; connection up")
            elif previous is not None:
                self.logger.warning(
                    "No core module succeeded in %ss; connection down", self.window_s
                )
            self.publisher.publish(CONNECTION_READING, connected, "", utc_now(), Quality.GOOD)
