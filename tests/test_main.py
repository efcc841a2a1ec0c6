"""Tests for the command line entry point and its exit codes."""

import os
from unittest.mock import patch

import pytest

from rf_camera_relay import EXIT_SUBSCRIBE_FAILED, BrokerEvent, InvalidPortError, SubscribeError, main
from tests.conftest import BASE_ENV, MATCHING_PAYLOAD


@pytest.fixture
def no_env_file(tmp_path):
    return ["--env-file", str(tmp_path / "absent.env")]


@pytest.fixture
def broker_stream():
    with patch("rf_camera_relay.BrokerStream") as stream_cls:
        yield stream_cls


def without(*names):
    return {k: v for k, v in BASE_ENV.items() if k not in names}


class TestStartupFailures:
    """Configuration problems exit before any network connection."""

    @pytest.mark.parametrize(
        "environ, code",
        [
            ({}, 2),
            (without("DISCORD_URL", "GOTIFY_URL"), 2),
            (without("CAMERA_URL"), 3),
            (without("DISCORD_MESSAGE"), 3),
            (without("MQTT_ID"), 4),
            (without("MQTT_HOST"), 4),
            (without("MQTT_TOPIC"), 5),
        ],
    )
    def test_missing_config_exit_codes(self, environ, code, monkeypatch, no_env_file, broker_stream, capsys):
        monkeypatch.setattr(os, "environ", dict(environ))

        with pytest.raises(SystemExit) as exc_info:
            main(no_env_file)

        assert exc_info.value.code == code
        broker_stream.assert_not_called()
        assert "ERROR" in capsys.readouterr().out

    def test_invalid_port_aborts(self, monkeypatch, no_env_file, broker_stream):
        monkeypatch.setattr(os, "environ", dict(BASE_ENV, MQTT_PORT="mqtt"))

        with pytest.raises(InvalidPortError):
            main(no_env_file)
        broker_stream.assert_not_called()

    def test_subscribe_failure_exit_code(self, monkeypatch, no_env_file, broker_stream):
        monkeypatch.setattr(os, "environ", dict(BASE_ENV))
        broker_stream.return_value.start.side_effect = SubscribeError("no broker")

        with pytest.raises(SystemExit) as exc_info:
            main(no_env_file)

        assert exc_info.value.code == EXIT_SUBSCRIBE_FAILED == 6


class TestRun:
    """The relay runs until the broker stream ends."""

    def test_stream_end_returns_zero(self, monkeypatch, no_env_file, broker_stream, session):
        monkeypatch.setattr(os, "environ", dict(BASE_ENV, RF_CODE="0xE0F118"))
        stream = broker_stream.return_value
        stream.events.return_value = iter([
            BrokerEvent("connack", detail="Success"),
            BrokerEvent("publish", payload=MATCHING_PAYLOAD, detail="tele/rfbridge/RESULT"),
            BrokerEvent("publish", payload=MATCHING_PAYLOAD.replace(b"0xE0F118", b"0xDEADBEEF")),
            BrokerEvent("disconnect", detail="Unspecified error"),
        ])

        with patch("rf_camera_relay.requests.Session", return_value=session):
            assert main(no_env_file) == 0

        stream.start.assert_called_once_with()
        stream.stop.assert_called_once_with()
        session.close.assert_called_once_with()
        assert session.get.call_count == 1
        assert session.post.call_count == 2

    def test_unknown_log_level_falls_back(self, monkeypatch, no_env_file, broker_stream, capsys):
        monkeypatch.setattr(os, "environ", dict(BASE_ENV, LOG_LEVEL="chatty"))
        broker_stream.return_value.events.return_value = iter([])

        assert main(no_env_file) == 0
        assert "Unknown LOG_LEVEL 'chatty'" in capsys.readouterr().out

    def test_log_file(self, monkeypatch, no_env_file, broker_stream, tmp_path):
        log_file = tmp_path / "relay.log"
        monkeypatch.setattr(os, "environ", dict(BASE_ENV, LOG_FILE=str(log_file)))
        broker_stream.return_value.events.return_value = iter([])

        assert main(no_env_file) == 0
        assert "MQTT event stream ended" in log_file.read_text()


class TestConnectArgumentFailures:
    """Values paho refuses at connect time end with the subscribe exit code."""

    @pytest.mark.parametrize("override", [{"MQTT_PORT": "0"}, {"MQTT_HOST": ""}])
    def test_exit_code(self, override, monkeypatch, no_env_file):
        monkeypatch.setattr(os, "environ", dict(BASE_ENV, **override))

        with pytest.raises(SystemExit) as exc_info:
            main(no_env_file)

        assert exc_info.value.code == EXIT_SUBSCRIBE_FAILED
