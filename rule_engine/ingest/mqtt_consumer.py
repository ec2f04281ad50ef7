"""
MQTT consumer for feeding signals into the rule engine.

Signals are published on ``rules/<agency_id>/signals`` as JSON objects with
the same shape as the HTTP ``POST /api/v1/signals`` body. The agency in the
topic is authoritative; a payload naming a different agency is rejected.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt

from ..core.auth import CallerContext
from ..core.config import settings
from ..core.db import SessionLocal
from ..core.errors import RuleEngineError, log_exception
from ..services.signal_ingest import ingest_signal


def agency_from_topic(topic: str) -> Optional[str]:
    parts = (topic or "").split("/")
    if len(parts) != 3 or parts[0] != "rules" or parts[2] != "signals":
        return None
    return parts[1].strip() or None


class MQTTConsumer:
    """MQTT subscriber that ingests signals and evaluates rules."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        protocol = (settings.mqtt_protocol or "v311").lower()
        if protocol == "v31":
            mqtt_protocol = mqtt.MQTTv31
        elif protocol == "v5":
            mqtt_protocol = mqtt.MQTTv5
        else:
            mqtt_protocol = mqtt.MQTTv311
        client_id = f"rule-engine-{id(self)}"
        self.logger.info("MQTT client_id=%s protocol=%s", client_id, protocol)
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION1,
            client_id=client_id,
            clean_session=True,
            protocol=mqtt_protocol,
        )
        if settings.mqtt_username:
            self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        self.client.on_connect = self.on_connect  # type: ignore
        self.client.on_message = self.on_message  # type: ignore
        self.client.on_disconnect = self.on_disconnect  # type: ignore
        self.client.reconnect_delay_set(min_delay=1, max_delay=10)
        self._connected = threading.Event()

    def on_connect(self, client: mqtt.Client, userdata, flags, rc) -> None:  # type: ignore
        if rc == 0:
            self.logger.info(
                "Connected to MQTT broker %s:%s",
                settings.mqtt_broker_host,
                settings.mqtt_broker_port,
            )
            client.subscribe(settings.mqtt_signal_topic, qos=1)
            self._connected.set()
        else:
            self.logger.error("Failed to connect to MQTT broker with code %s", rc)

    def on_disconnect(self, client: mqtt.Client, userdata, rc) -> None:  # type: ignore
        self._connected.clear()
        self.logger.warning("MQTT disconnected with return code %s", rc)

    def on_message(self, client: mqtt.Client, userdata, msg) -> None:  # type: ignore
        self.handle_message(getattr(msg, "topic", ""), msg.payload)

    def handle_message(self, topic: str, raw: bytes) -> None:
        agency_id = agency_from_topic(topic)
        if agency_id is None:
            self.logger.warning("Ignoring message on unexpected topic=%s", topic)
            return
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self.logger.warning("Invalid signal payload topic=%s payload_len=%s err=%s", topic, len(raw or b""), exc)
            return
        if isinstance(payload, dict):
            payload.setdefault("agency_id", agency_id)
        caller = CallerContext(agency_id=agency_id, user_id=None, is_super_admin=False, role="SYSTEM")
        with SessionLocal() as db:
            try:
                signal, evaluations = ingest_signal(db, payload, caller)
            except RuleEngineError as exc:
                self.logger.warning("Rejected signal topic=%s err=%s errors=%s", topic, exc.message, exc.errors)
                return
            except Exception as exc:
                log_exception(self.logger, "Failed to ingest signal", extra={"topic": topic}, exc=exc)
                return
            self.logger.info(
                "Signal processed id=%s evaluations=%s matched=%s",
                signal.id,
                len(evaluations),
                sum(1 for e in evaluations if e.matched),
            )

    def start(self) -> None:
        try:
            self.client.connect_async(
                settings.mqtt_broker_host,
                settings.mqtt_broker_port,
                keepalive=60,
            )
            self.client.loop_start()
        except Exception as exc:
            log_exception(
                self.logger,
                "MQTT connection failed",
                extra={"host": settings.mqtt_broker_host, "port": settings.mqtt_broker_port},
                exc=exc,
            )

    def stop(self) -> None:
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as exc:
            log_exception(self.logger, "MQTT shutdown failed", exc=exc)

    def is_connected(self) -> bool:
        return self._connected.is_set()
