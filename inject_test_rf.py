#!/usr/bin/env python3
"""
Inject a test RF telemetry message for the rf-camera-relay.

Examples:
  # Publish the default code (0xE0F118) to MQTT_TOPIC from .env
  ./inject_test_rf.py

  # Publish a code that should be filtered out
  ./inject_test_rf.py --code 0xDEADBEEF

  # Publish to another topic, retained, QoS 1
  ./inject_test_rf.py --topic tele/rfbridge/RESULT --retain --qos 1
"""

import argparse
import json
import os
import sys
from datetime import datetime

import paho.mqtt.client as mqtt
from dotenv import load_dotenv


def load_mqtt_config(env_file: str):
    load_dotenv(env_file)

    host = os.environ.get("MQTT_HOST", "").strip()
    port = int(os.environ.get("MQTT_PORT", "1883"))
    user = os.environ.get("MQTT_USERNAME", "").strip()
    pw = os.environ.get("MQTT_PASSWORD", "").strip()
    topic = os.environ.get("MQTT_TOPIC", "").strip()

    if not host:
        raise RuntimeError("Missing MQTT_HOST")

    return host, port, user, pw, topic


def build_payload(code: str, bits: int = 24, protocol: int = 1, pulse: int = 200, now: datetime = None) -> str:
    # Same shape a Tasmota RF bridge publishes on tele/<device>/RESULT
    now = now or datetime.now()
    return json.dumps({
        "Time": now.strftime("%Y-%m-%dT%H:%M:%S"),
        "RfReceived": {"Data": code, "Bits": bits, "Protocol": protocol, "Pulse": pulse},
    }, separators=(",", ":"))


def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument("--env-file", default=".env", help="Path to a .env file (default: ./.env)")
    ap.add_argument("--code", default="0xE0F118", help="RF code to send (default: 0xE0F118)")
    ap.add_argument("--bits", type=int, default=24, help="Bit count (default: 24)")
    ap.add_argument("--protocol", type=int, default=1, help="RF protocol id (default: 1)")
    ap.add_argument("--pulse", type=int, default=200, help="Pulse width (default: 200)")
    ap.add_argument("--topic", help="Topic to publish on (default: MQTT_TOPIC)")
    ap.add_argument("--retain", action="store_true", help="Publish a retained message")
    ap.add_argument("--qos", type=int, default=0, choices=[0, 1, 2], help="MQTT QoS (default: 0)")

    args = ap.parse_args(argv)

    host, port, user, pw, env_topic = load_mqtt_config(args.env_file)
    topic = args.topic or env_topic
    if not topic:
        raise RuntimeError("No topic given and MQTT_TOPIC is not set")

    payload = build_payload(args.code, args.bits, args.protocol, args.pulse)

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
    if user and pw:
        client.username_pw_set(user, pw)

    client.connect(host, port, 60)
    client.loop_start()

    print(f"Publishing {topic} = {payload}, retain={args.retain}, qos={args.qos}")
    info = client.publish(topic, payload=payload, qos=args.qos, retain=args.retain)
    info.wait_for_publish(timeout=5)

    client.disconnect()
    client.loop_stop()
    print("Done.")


def cli():
    try:
        main()
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
