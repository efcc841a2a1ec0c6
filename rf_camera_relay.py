#!/usr/bin/env python3
"""
RF camera relay.

Subscribes to an MQTT topic carrying RF receiver telemetry (Tasmota style
"RfReceived" records). For every matching RF code a snapshot is pulled from
the camera and pushed to a Discord webhook and/or a Gotify server.

Configuration comes from environment variables, optionally read from a
.env file next to where the relay is started:

  MQTT_ID, MQTT_HOST, MQTT_PORT, MQTT_USERNAME, MQTT_PASSWORD, MQTT_TOPIC
  DISCORD_URL, GOTIFY_URL, CAMERA_URL, DISCORD_MESSAGE, RF_CODE
  LOG_LEVEL, LOG_FILE, HTTP_TIMEOUT
"""

import argparse
import base64
import json
import logging
import os
import queue
import re
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Iterator, Mapping, Optional

import paho.mqtt.client as mqtt
import requests
from dotenv import load_dotenv

# ----------------------------
# Constants
# ----------------------------
DEFAULT_MQTT_PORT = 1883
MQTT_KEEPALIVE_SECONDS = 5
DEFAULT_HTTP_TIMEOUT = 10.0

GOTIFY_PRIORITY = 5
DISCORD_FILE_FIELD = "files[0]"
DISCORD_FILE_NAME = "files.jpg"

EXIT_SUBSCRIBE_FAILED = 6

# ----------------------------
# Logging (stdout for journalctl, optional file)
# ----------------------------
logger = logging.getLogger("rf_camera_relay")

log_fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> bool:
    """(Re)configure the relay logger. Returns False if `level` is unknown."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    resolved = logging.getLevelName(level.upper())
    known = isinstance(resolved, int)
    logger.setLevel(resolved if known else logging.INFO)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(log_fmt)
    logger.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(log_fmt)
        logger.addHandler(file_handler)

    return known


# ======================================================================
# Configuration
# ======================================================================

class MissingConfig(IntEnum):
    """Missing-requirement cases, valued with the process exit code."""

    NO_WEBHOOK = 2
    NO_CAMERA_OR_MESSAGE = 3
    NO_BROKER = 4
    NO_TOPIC = 5


class ConfigError(Exception):
    def __init__(self, message: str, reason: Optional[MissingConfig] = None):
        super().__init__(message)
        self.reason = reason

    @property
    def exit_code(self) -> int:
        return int(self.reason) if self.reason is not None else 1


class InvalidPortError(ValueError):
    pass


@dataclass(frozen=True)
class MqttSettings:
    client_id: str
    host: str
    topic: str
    port: int = DEFAULT_MQTT_PORT
    username: Optional[str] = None
    password: Optional[str] = None

    def credentials(self):
        """(username, password), or None unless both halves are set."""
        if self.username is None or self.password is None:
            return None
        return self.username, self.password


@dataclass(frozen=True)
class WebhookSettings:
    camera_url: str
    message: str
    discord_url: Optional[str] = None
    gotify_url: Optional[str] = None

    def targets(self):
        return [name for name, url in (("discord", self.discord_url), ("gotify", self.gotify_url)) if url is not None]


@dataclass(frozen=True)
class Settings:
    mqtt: MqttSettings
    webhooks: WebhookSettings
    rf_code: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT


def parse_port(value: str) -> int:
    if not re.fullmatch(r"\+?[0-9]+", value):
        raise InvalidPortError(f"MQTT_PORT should be a number, got {value!r}")
    port = int(value)
    if not 0 <= port <= 65535:
        raise InvalidPortError(f"MQTT_PORT should be a number between 0 and 65535, got {value!r}")
    return port


def parse_timeout(value: str) -> float:
    try:
        timeout = float(value)
    except ValueError:
        raise ConfigError(f"HTTP_TIMEOUT should be a number of seconds, got {value!r}") from None
    if timeout <= 0:
        raise ConfigError(f"HTTP_TIMEOUT should be positive, got {value!r}")
    return timeout


def load_settings(environ: Optional[Mapping[str, str]] = None, env_file: str = ".env") -> Settings:
    """
    Build the relay settings from environment variables.

    When `environ` is None the .env file is loaded first (variables already
    set in the process win) and os.environ is read. A variable counts as
    present as soon as it is set, even to an empty string.

    Raises InvalidPortError for an unparsable MQTT_PORT, and ConfigError for
    missing requirements, checked in this order: webhook URL, camera URL and
    message, broker id and host, topic.
    """
    if environ is None:
        if not load_dotenv(env_file):
            logger.info(f".env file was not found or could not be loaded ({env_file})")
        environ = os.environ

    port = DEFAULT_MQTT_PORT
    if "MQTT_PORT" in environ:
        port = parse_port(environ["MQTT_PORT"])

    http_timeout = DEFAULT_HTTP_TIMEOUT
    if "HTTP_TIMEOUT" in environ:
        http_timeout = parse_timeout(environ["HTTP_TIMEOUT"])

    discord_url = environ.get("DISCORD_URL")
    gotify_url = environ.get("GOTIFY_URL")
    camera_url = environ.get("CAMERA_URL")
    message = environ.get("DISCORD_MESSAGE")
    client_id = environ.get("MQTT_ID")
    host = environ.get("MQTT_HOST")
    topic = environ.get("MQTT_TOPIC")

    if discord_url is None and gotify_url is None:
        raise ConfigError("You are missing either a DISCORD_URL or a GOTIFY_URL!", MissingConfig.NO_WEBHOOK)
    if camera_url is None or message is None:
        raise ConfigError("You need to provide both a CAMERA_URL and a DISCORD_MESSAGE", MissingConfig.NO_CAMERA_OR_MESSAGE)
    if client_id is None or host is None:
        raise ConfigError("You are missing either MQTT_ID or MQTT_HOST for the MQTT connection!", MissingConfig.NO_BROKER)
    if topic is None:
        raise ConfigError("The MQTT_TOPIC is missing", MissingConfig.NO_TOPIC)

    return Settings(
        mqtt=MqttSettings(
            client_id=client_id,
            host=host,
            topic=topic,
            port=port,
            username=environ.get("MQTT_USERNAME"),
            password=environ.get("MQTT_PASSWORD"),
        ),
        webhooks=WebhookSettings(
            camera_url=camera_url,
            message=message,
            discord_url=discord_url,
            gotify_url=gotify_url,
        ),
        rf_code=environ.get("RF_CODE"),
        log_level=environ.get("LOG_LEVEL", "INFO"),
        log_file=environ.get("LOG_FILE") or None,
        http_timeout=http_timeout,
    )


# ======================================================================
# Broker connection
# ======================================================================

class SubscribeError(RuntimeError):
    pass


@dataclass(frozen=True)
class BrokerEvent:
    """One protocol happening, as seen from the paho network thread."""

    kind: str  # connack | suback | publish | disconnect
    payload: bytes = b""
    detail: str = ""
    failed: bool = False


_END = object()


class BrokerStream:
    """
    Single MQTT subscription exposed as a blocking iterator of BrokerEvents.

    paho runs the network I/O on its own thread; callbacks only enqueue.
    The stream ends on the first disconnect, there is no resubscribe.
    """

    def __init__(self, settings: MqttSettings):
        self.settings = settings
        self._queue = queue.Queue()

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            clean_session=True,
            reconnect_on_failure=False,
        )
        credentials = settings.credentials()
        if credentials:
            self.client.username_pw_set(*credentials)

        self.client.on_connect = self._on_connect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect

    def start(self):
        s = self.settings
        logger.info(f"Connecting to MQTT broker {s.host}:{s.port} as {s.client_id}")
        try:
            self.client.connect(s.host, s.port, keepalive=MQTT_KEEPALIVE_SECONDS)
        except (OSError, ValueError) as e:
            raise SubscribeError(f"Could not connect to MQTT broker {s.host}:{s.port}: {e}") from e

        # QoS 0, at most once
        result, _mid = self.client.subscribe(s.topic, qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeError(f"Could not subscribe to {s.topic}: {mqtt.error_string(result)}")

        self.client.loop_start()

    def stop(self):
        self.client.loop_stop()
        self.client.disconnect()

    def events(self) -> Iterator[BrokerEvent]:
        while True:
            item = self._queue.get()
            if item is _END:
                return
            yield item

    # ----------------------------
    # paho callbacks (network thread)
    # ----------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._queue.put(BrokerEvent("connack", detail=str(reason_code), failed=reason_code.is_failure))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        failed = any(rc.is_failure for rc in reason_code_list)
        detail = ", ".join(str(rc) for rc in reason_code_list)
        self._queue.put(BrokerEvent("suback", detail=detail, failed=failed))

    def _on_message(self, client, userdata, msg):
        self._queue.put(BrokerEvent("publish", payload=msg.payload, detail=msg.topic))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._queue.put(BrokerEvent("disconnect", detail=str(reason_code)))
        self._queue.put(_END)


# ======================================================================
# Telemetry decoding and filtering
# ======================================================================

class PayloadError(ValueError):
    pass


@dataclass(frozen=True)
class RfData:
    data: str
    bits: float
    protocol: float
    pulse: float


@dataclass(frozen=True)
class TelemetryEvent:
    time: str
    rf_received: RfData


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_telemetry(payload: bytes) -> TelemetryEvent:
    """
    Decode one payload such as
    {"Time":"2024-02-03T23:16:58","RfReceived":{"Data":"0xE0F118","Bits":24,"Protocol":1,"Pulse":200}}
    """
    try:
        doc = json.loads(payload)
    except ValueError as e:
        raise PayloadError(f"invalid JSON: {e}") from e

    if not isinstance(doc, dict):
        raise PayloadError("expected a JSON object")
    if not isinstance(doc.get("Time"), str):
        raise PayloadError("missing or invalid field `Time`")
    rf = doc.get("RfReceived")
    if not isinstance(rf, dict):
        raise PayloadError("missing or invalid field `RfReceived`")
    if not isinstance(rf.get("Data"), str):
        raise PayloadError("missing or invalid field `RfReceived.Data`")
    for key in ("Bits", "Protocol", "Pulse"):
        if not _is_number(rf.get(key)):
            raise PayloadError(f"missing or invalid field `RfReceived.{key}`")

    return TelemetryEvent(
        time=doc["Time"],
        rf_received=RfData(
            data=rf["Data"],
            bits=rf["Bits"],
            protocol=rf["Protocol"],
            pulse=rf["Pulse"],
        ),
    )


def inbound_publishes(events: Iterable[BrokerEvent]) -> Iterator[bytes]:
    for event in events:
        if event.kind == "publish":
            yield event.payload
        elif event.kind == "connack":
            if event.failed:
                logger.error(f"MQTT connection refused: {event.detail}")
            else:
                logger.info("Connected to MQTT broker")
        elif event.kind == "suback":
            if event.failed:
                logger.error(f"MQTT subscription rejected: {event.detail}")
            else:
                logger.info(f"MQTT subscription granted: {event.detail}")
        elif event.kind == "disconnect":
            logger.warning(f"MQTT disconnected: {event.detail}")


def decode_events(payloads: Iterable[bytes]) -> Iterator[TelemetryEvent]:
    for payload in payloads:
        try:
            yield parse_telemetry(payload)
        except PayloadError as e:
            logger.error(f"Dropping malformed payload: {e}")


def matching_events(events: Iterable[TelemetryEvent], rf_code: Optional[str]) -> Iterator[TelemetryEvent]:
    for event in events:
        if rf_code is None or event.rf_received.data == rf_code:
            yield event


def trigger_events(events: Iterable[BrokerEvent], rf_code: Optional[str]) -> Iterator[TelemetryEvent]:
    return matching_events(decode_events(inbound_publishes(events)), rf_code)


# ======================================================================
# Snapshot + webhooks
# ======================================================================

class SnapshotError(Exception):
    pass


def get_picture(url: str, session: requests.Session, timeout: float = DEFAULT_HTTP_TIMEOUT) -> bytes:
    """
    GET the camera snapshot. The body is returned whatever the status code,
    so an error page would be forwarded as the picture; only a warning is logged.
    """
    try:
        resp = session.get(url, timeout=timeout)
        content = resp.content
    except requests.RequestException as e:
        raise SnapshotError(f"Could not fetch camera snapshot: {e}") from e

    if not resp.ok:
        logger.warning(f"Camera answered with status {resp.status_code}, forwarding body anyway")
    return content


def trigger_discord_hook(url: str, session: requests.Session, message: str, picture: bytes,
                         timeout: float = DEFAULT_HTTP_TIMEOUT) -> requests.Response:
    return session.post(
        url,
        data={"content": message},
        files={DISCORD_FILE_FIELD: (DISCORD_FILE_NAME, picture, "image/jpeg")},
        timeout=timeout,
    )


def build_gotify_payload(message: str, picture: bytes) -> dict:
    data_uri = "data:image/jpg;base64," + base64.b64encode(picture).decode("ascii")
    return {
        "message": f"![]({data_uri})",
        "title": message,
        "priority": GOTIFY_PRIORITY,
        "extras": {
            "client::display": {"contentType": "text/markdown"},
            "client::notification": {"bigImageUrl": data_uri},
        },
    }


def trigger_gotify_hook(url: str, session: requests.Session, message: str, picture: bytes,
                        timeout: float = DEFAULT_HTTP_TIMEOUT) -> requests.Response:
    return session.post(
        url,
        data=json.dumps(build_gotify_payload(message, picture)),
        headers={"Content-Type": "application/json"},
        timeout=timeout,
    )


class Relay:
    """Turns matching telemetry events into webhook notifications."""

    # Discord answers 204 for a plain post, 200 with ?wait=true; Gotify only 200
    SUCCESS_STATUSES = {
        "discord": (200, 204),
        "gotify": (200,),
    }

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.webhooks = settings.webhooks
        self.timeout = settings.http_timeout
        self.session = session or requests.Session()

    def close(self):
        self.session.close()

    def _dispatch(self, name: str, sender, url: str, picture: bytes) -> bool:
        try:
            resp = sender(url, self.session, self.webhooks.message, picture, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"{name} webhook failed: {e}")
            return False

        if resp.status_code not in self.SUCCESS_STATUSES[name]:
            logger.error(f"{name} webhook answered {resp.status_code}: {resp.text[:200]}")
            return False

        logger.info(f"{name} notification sent (status={resp.status_code})")
        return True

    def handle(self, event: TelemetryEvent) -> dict:
        """Fetch one snapshot and fan it out. Returns {target: success} for attempted targets."""
        logger.info(f"RF code {event.rf_received.data} received at {event.time}")

        try:
            picture = get_picture(self.webhooks.camera_url, self.session, timeout=self.timeout)
        except SnapshotError as e:
            logger.error(f"{e}")
            return {}

        results = {}
        if self.webhooks.discord_url is not None:
            results["discord"] = self._dispatch("discord", trigger_discord_hook, self.webhooks.discord_url, picture)
        if self.webhooks.gotify_url is not None:
            results["gotify"] = self._dispatch("gotify", trigger_gotify_hook, self.webhooks.gotify_url, picture)
        return results

    def run(self, events: Iterable[TelemetryEvent]):
        for event in events:
            try:
                self.handle(event)
            except Exception:
                logger.exception("Error processing RF event")


# ----------------------------
# Main
# ----------------------------
def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Forward camera snapshots to Discord/Gotify on RF events received over MQTT")
    ap.add_argument("--env-file", default=".env", help="Path to a .env file (default: ./.env)")
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging()

    try:
        settings = load_settings(env_file=args.env_file)
    except ConfigError as e:
        logger.error(f"{e}")
        sys.exit(e.exit_code)

    if not setup_logging(settings.log_level, settings.log_file):
        logger.warning(f"Unknown LOG_LEVEL {settings.log_level!r}, using INFO")

    m = settings.mqtt
    logger.info(
        f"Broker {m.host}:{m.port}, topic={m.topic}, "
        f"credentials={'yes' if m.credentials() else 'no'}, "
        f"webhooks={','.join(settings.webhooks.targets())}, "
        f"rf_code={settings.rf_code or '(any)'}"
    )

    stream = BrokerStream(m)
    try:
        stream.start()
    except SubscribeError as e:
        logger.error(f"{e}")
        sys.exit(EXIT_SUBSCRIBE_FAILED)

    logger.info("Connected to the MQTT server successfully")

    relay = Relay(settings)
    try:
        relay.run(trigger_events(stream.events(), settings.rf_code))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        stream.stop()
        relay.close()

    logger.info("MQTT event stream ended")
    return 0


if __name__ == "__main__":
    sys.exit(main())
