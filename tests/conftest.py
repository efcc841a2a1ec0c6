"""Shared pytest fixtures for the RF camera relay tests."""

import logging
from unittest.mock import MagicMock

import pytest

from rf_camera_relay import load_settings

BASE_ENV = {
    "MQTT_ID": "rf-relay",
    "MQTT_HOST": "broker.local",
    "MQTT_TOPIC": "tele/rfbridge/RESULT",
    "DISCORD_URL": "https://discord.example/api/webhooks/1/abc",
    "GOTIFY_URL": "https://gotify.example/message?token=xyz",
    "CAMERA_URL": "http://camera.local/snapshot.jpg",
    "DISCORD_MESSAGE": "Someone rang the doorbell",
}

MATCHING_PAYLOAD = b'{"Time":"2024-02-03T23:16:58","RfReceived":{"Data":"0xE0F118","Bits":24,"Protocol":1,"Pulse":200}}'

JPEG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00fake-jpeg-body\xff\xd9"


@pytest.fixture(autouse=True)
def reset_relay_logger():
    yield
    relay_logger = logging.getLogger("rf_camera_relay")
    for handler in list(relay_logger.handlers):
        relay_logger.removeHandler(handler)
        handler.close()
    relay_logger.setLevel(logging.NOTSET)


@pytest.fixture
def env():
    return dict(BASE_ENV)


@pytest.fixture
def settings(env):
    return load_settings(env)


@pytest.fixture
def make_response():
    def _make(status_code=200, content=b"", text=""):
        resp = MagicMock()
        resp.status_code = status_code
        resp.content = content
        resp.text = text
        resp.ok = status_code < 400
        return resp
    return _make


@pytest.fixture
def session(make_response):
    """requests.Session double: camera GET returns JPEG, every POST answers 200."""
    sess = MagicMock()
    sess.get.return_value = make_response(200, content=JPEG)
    sess.post.return_value = make_response(200)
    return sess
