"""Tests for the GP51 web API client."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests

from gp51_integrity.config import IntegrityConfig
from gp51_integrity.exceptions import (
    GP51APIError,
    GP51AuthError,
    GP51ConnectionError,
    GP51RateLimitError,
    StoreConnectionError,
)
from gp51_integrity.gp51 import GP51Client, hash_password, normalise_position, parse_positions
from gp51_integrity.realtime import PositionPoller
from gp51_integrity.schemas import GP51ResponseValidator


def _reply(body: object, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.ok = status < 400
    response.status_code = status
    response.headers = {}
    response.text = ""
    response.json.return_value = body
    return response


def _monitor_list(*device_ids: str) -> dict:
    return {
        "status": 0,
        "groups": [
            {"groupid": 1, "groupname": "Fleet", "devices": [
                {"deviceid": d, "devicename": f"Unit {d}", "devicetype": 3} for d in device_ids
            ]},
        ],
    }


@pytest.fixture()
def gp51(integrity_config: IntegrityConfig) -> GP51Client:
    client = GP51Client(integrity_config)
    client.session = MagicMock()
    return client


def _sent(client: GP51Client, index: int = -1) -> tuple[dict, dict]:
    call = client.session.request.call_args_list[index]
    return call.kwargs["params"], call.kwargs["json"]


class TestHelpers:
    def test_hash_password(self) -> None:
        assert hash_password("secret") == hashlib.md5(b"secret").hexdigest()

    def test_normalise_microdegrees(self) -> None:
        position = normalise_position({
            "deviceid": "DEV-001",
            "callat": 6_500_000,
            "callon": 3_400_000,
            "speed": 40,
            "course": 90,
            "updatetime": 1_700_000_000_000,
        })
        assert position["latitude"] == 6.5
        assert position["longitude"] == 3.4
        assert position["timestamp"].startswith("2023-11-14")

    def test_normalise_keeps_degrees(self) -> None:
        position = normalise_position({"deviceid": "DEV-001", "callat": 6.5, "callon": 3.4})
        assert (position["latitude"], position["longitude"]) == (6.5, 3.4)
        assert position["timestamp"] == ""

    def test_parse_positions_rejects_invalid(self) -> None:
        records = [
            {"deviceid": "DEV-001", "callat": 6.5, "callon": 3.4, "updatetime": 1_700_000_000},
            {"deviceid": "DEV-002", "callat": 95.0, "callon": 3.4, "updatetime": 1_700_000_000},
        ]
        positions, rejected = parse_positions(records, GP51ResponseValidator())
        assert [p.deviceid for p in positions] == ["DEV-001"]
        assert rejected == 1


class TestAuthentication:
    def test_login(self, gp51: GP51Client) -> None:
        gp51.session.request.return_value = _reply({"status": 0, "token": "tok-1"})
        result = gp51.authenticate()
        assert result.success
        assert gp51.token == "tok-1"
        assert gp51.token_issued_at is not None
        params, body = _sent(gp51)
        assert params == {"action": "login"}
        assert body == {"username": "operator", "password": hash_password("secret"), "from": "WEB", "type": "USER"}

    def test_login_rejected(self, gp51: GP51Client) -> None:
        gp51.session.request.return_value = _reply({"status": 1, "cause": "bad password"})
        result = gp51.authenticate()
        assert result.success is False
        assert "bad password" in result.error
        assert gp51.token is None

    def test_login_without_token(self, gp51: GP51Client) -> None:
        gp51.session.request.return_value = _reply({"status": 0})
        assert gp51.authenticate().success is False

    def test_missing_credentials(self, integrity_config: IntegrityConfig) -> None:
        client = GP51Client(integrity_config.model_copy(update={"gp51_password": ""}))
        client.session = MagicMock()
        assert client.authenticate().success is False
        client.session.request.assert_not_called()

    def test_ensure_token_raises(self, gp51: GP51Client) -> None:
        gp51.session.request.return_value = _reply({"status": 1, "cause": "locked"})
        with pytest.raises(GP51AuthError):
            gp51.ensure_token()

    def test_ensure_token_reuses(self, gp51: GP51Client) -> None:
        gp51.token = "cached"
        assert gp51.ensure_token() == "cached"
        gp51.session.request.assert_not_called()

    def test_call_requires_token(self, gp51: GP51Client) -> None:
        with pytest.raises(GP51AuthError):
            gp51._call("querymonitorlist")

    def test_call_non_zero_status(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.return_value = _reply({"status": 1, "cause": "denied"})
        with pytest.raises(GP51APIError) as excinfo:
            gp51._call("querymonitorlist")
        assert excinfo.value.status == 1
        assert excinfo.value.cause == "denied"
        assert gp51.token == "tok"

    def test_http_error_maps_to_api_error(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.return_value = _reply({}, status=502)
        with pytest.raises(GP51APIError):
            gp51._call("querymonitorlist")

    def test_logout_clears_token(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.return_value = _reply({"status": 0})
        gp51.logout()
        assert gp51.token is None
        params, _ = _sent(gp51)
        assert params == {"action": "logout", "token": "tok"}


class TestDevices:
    def test_query_monitor_list(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.return_value = _reply(_monitor_list("DEV-001", "DEV-002"))
        result = gp51.query_monitor_list()
        assert result.success
        assert [d["deviceid"] for d in result.devices] == ["DEV-001", "DEV-002"]
        assert len(result.groups) == 1
        params, body = _sent(gp51)
        assert params == {"action": "querymonitorlist", "token": "tok"}
        assert body == {"username": "operator"}

    def test_query_monitor_list_failure_is_returned(self, gp51: GP51Client) -> None:
        gp51.session.request.return_value = _reply({"status": 1, "cause": "denied"})
        result = gp51.query_monitor_list()
        assert result.success is False
        assert result.error

    def test_get_devices_with_positions(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.side_effect = [
            _reply(_monitor_list("DEV-001", "DEV-002")),
            _reply({
                "status": 0,
                "lastquerypositiontime": 1_700_000_100_000,
                "records": [{
                    "deviceid": "DEV-001",
                    "callat": 6_500_000,
                    "callon": 3_400_000,
                    "speed": 55,
                    "course": 180,
                    "updatetime": 1_700_000_000_000,
                }],
            }),
        ]
        result = gp51.get_devices(include_positions=True)
        first, second = result.devices
        assert (first["lat"], first["lng"], first["speed"]) == (6.5, 3.4, 55)
        assert first["lastupdate"]
        assert "lat" not in second
        _, body = _sent(gp51)
        assert body == {"deviceids": ["DEV-001", "DEV-002"], "lastquerypositiontime": 0}

    def test_get_devices_position_failure_keeps_devices(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.side_effect = [
            _reply(_monitor_list("DEV-001")),
            _reply({"status": 1, "cause": "busy"}),
        ]
        result = gp51.get_devices(include_positions=True)
        assert result.success
        assert "lat" not in result.devices[0]

    def test_query_last_positions_returns_cursor(self, gp51: GP51Client) -> None:
        gp51.token = "tok"
        gp51.session.request.side_effect = [
            _reply({"status": 0, "lastquerypositiontime": 100, "records": [{"deviceid": "DEV-001"}]}),
            _reply({"status": 0, "records": []}),
        ]
        records, cursor = gp51.query_last_positions(since=0)
        assert records == [{"deviceid": "DEV-001"}]
        assert cursor == 100
        records, cursor = gp51.query_last_positions(since=cursor)
        assert records == []
        assert cursor == 100
        _, body = _sent(gp51)
        assert body["lastquerypositiontime"] == 100

    def test_snapshot_reads_leave_poller_cursor_alone(
        self, gp51: GP51Client, integrity_config: IntegrityConfig
    ) -> None:
        gp51.token = "tok"
        poller = PositionPoller(gp51, integrity_config)
        gp51.session.request.side_effect = [
            _reply({"status": 0, "lastquerypositiontime": 500, "records": []}),
            _reply(_monitor_list("DEV-001")),
            _reply({"status": 0, "lastquerypositiontime": 900, "records": [
                {"deviceid": "DEV-001", "callat": 6.5, "callon": 3.4, "speed": 10},
            ]}),
            _reply({"status": 0, "lastquerypositiontime": 950, "records": []}),
        ]
        poller.poll_once()
        result = gp51.get_devices(include_positions=True)
        poller.poll_once()

        assert result.devices[0]["lat"] == 6.5
        cursors = [c.kwargs["json"]["lastquerypositiontime"] for c in gp51.session.request.call_args_list
                   if c.kwargs["params"]["action"] == "lastposition"]
        assert cursors == [0, 0, 500]
        assert poller.cursor == 950


class TestConnectionHealth:
    def test_healthy(self, gp51: GP51Client) -> None:
        gp51.session.request.side_effect = [
            _reply({"status": 0, "token": "tok"}),
            _reply(_monitor_list("DEV-001", "DEV-002", "DEV-003")),
        ]
        health = gp51.get_connection_health()
        assert health.is_connected and health.token_valid and health.session_valid
        assert health.active_devices == 3
        assert health.response_time_ms is not None

    def test_login_failure(self, gp51: GP51Client) -> None:
        gp51.session.request.return_value = _reply({"status": 1, "cause": "bad password"})
        health = gp51.get_connection_health()
        assert health.is_connected is False
        assert health.error

    def test_rejected_session_drops_token(self, gp51: GP51Client) -> None:
        gp51.token = "stale"
        gp51.session.request.return_value = _reply({"status": 9903, "cause": "token expired"})
        health = gp51.get_connection_health()
        assert health.is_connected is True
        assert health.session_valid is False
        assert gp51.token is None


class TestTokenRenewal:
    def test_expired_token_status_logs_in_again(self, gp51: GP51Client) -> None:
        gp51.token = "expired"
        gp51.session.request.side_effect = [
            _reply({"status": 9903, "cause": "token expired"}),
            _reply({"status": 0, "token": "fresh"}),
            _reply(_monitor_list("DEV-001")),
        ]
        result = gp51.query_monitor_list()
        assert result.success
        assert [c.kwargs["params"]["action"] for c in gp51.session.request.call_args_list] == [
            "querymonitorlist",
            "login",
            "querymonitorlist",
        ]
        params, _ = _sent(gp51)
        assert params["token"] == "fresh"
        assert gp51.token == "fresh"

    def test_expired_token_is_retried_once(self, gp51: GP51Client) -> None:
        gp51.token = "expired"
        gp51.session.request.side_effect = [
            _reply({"status": 9903, "cause": "token expired"}),
            _reply({"status": 0, "token": "fresh"}),
            _reply({"status": 9903, "cause": "token expired"}),
        ]
        with pytest.raises(GP51APIError):
            gp51._call("querymonitorlist")
        assert gp51.session.request.call_count == 3

    def test_token_near_lifetime_is_renewed(self, gp51: GP51Client) -> None:
        gp51.token = "old"
        gp51.token_issued_at = datetime.now(UTC) - timedelta(hours=23, minutes=58)
        gp51.session.request.return_value = _reply({"status": 0, "token": "renewed"})
        assert gp51.ensure_token() == "renewed"
        params, _ = _sent(gp51)
        assert params == {"action": "login"}
        assert gp51.token_issued_at > datetime.now(UTC) - timedelta(minutes=1)

    def test_recent_token_is_kept(self, gp51: GP51Client) -> None:
        gp51.token = "recent"
        gp51.token_issued_at = datetime.now(UTC) - timedelta(hours=1)
        assert gp51.ensure_token() == "recent"
        gp51.session.request.assert_not_called()

    def test_token_expired_boundaries(self, gp51: GP51Client) -> None:
        issued = datetime(2024, 1, 1, tzinfo=UTC)
        gp51.token = "tok"
        gp51.token_issued_at = issued
        assert gp51.token_expired(issued + timedelta(hours=23, minutes=54)) is False
        assert gp51.token_expired(issued + timedelta(hours=23, minutes=55)) is True
        gp51.token = None
        assert gp51.token_expired(issued) is True


class TestTransportErrors:
    def test_connection_failure_is_a_gp51_error(self, gp51: GP51Client, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("gp51_integrity.client.time.sleep", lambda _: None)
        gp51.token = "tok"
        gp51.session.request.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(GP51ConnectionError) as excinfo:
            gp51._call("querymonitorlist")
        assert not isinstance(excinfo.value, StoreConnectionError)
        assert gp51.session.request.call_count == gp51.max_retries + 1

    def test_rate_limit_is_a_gp51_error(self, gp51: GP51Client, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("gp51_integrity.client.time.sleep", lambda _: None)
        gp51.token = "tok"
        gp51.session.request.return_value = _reply({}, status=429)
        with pytest.raises(GP51RateLimitError):
            gp51._call("querymonitorlist")
