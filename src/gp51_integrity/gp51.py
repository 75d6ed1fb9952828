"""Client for the GP51 tracking platform web API.

Every GP51 call is a POST to ``{base_url}?action=<name>&token=<token>`` with a
JSON body; the reply carries ``status`` (0 on success) and ``cause``. The
client logs in lazily with the configured credentials and renews the token
before its 24 hour lifetime runs out or when GP51 reports it expired. Position
cursors belong to the caller.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import requests
from pydantic import BaseModel, Field

from gp51_integrity.client import BaseHTTPClient
from gp51_integrity.config import IntegrityConfig
from gp51_integrity.exceptions import (
    GP51APIError,
    GP51AuthError,
    GP51ConnectionError,
    GP51RateLimitError,
    IntegrityError,
)
from gp51_integrity.schemas import GP51Position, GP51ResponseValidator, parse_timestamp

logger = logging.getLogger(__name__)

# GP51 reports some coordinates as integer micro-degrees.
_MICRODEGREES = 1_000_000

# GP51 answers with this status when the token has expired or was revoked.
TOKEN_EXPIRED_STATUS = 9903
TOKEN_LIFETIME = timedelta(hours=24)
TOKEN_RENEWAL_MARGIN = timedelta(minutes=5)


class AuthResult(BaseModel):
    success: bool
    token: str | None = None
    error: str | None = None


class DeviceListResult(BaseModel):
    success: bool
    devices: list[dict[str, Any]] = Field(default_factory=list)
    groups: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None


class ConnectionHealth(BaseModel):
    is_connected: bool
    response_time_ms: int | None = None
    token_valid: bool = False
    session_valid: bool = False
    active_devices: int = 0
    error: str | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def hash_password(password: str) -> str:
    """GP51 expects the MD5 hex digest of the plain password."""
    return hashlib.md5(password.encode("utf-8")).hexdigest()


def _degrees(value: Any) -> Any:
    if isinstance(value, int | float) and abs(value) > 180:
        return value / _MICRODEGREES
    return value


def normalise_position(record: dict[str, Any]) -> dict[str, Any]:
    """Map a raw ``lastposition`` record onto the GP51Position field names."""
    stamp = parse_timestamp(record.get("updatetime") or record.get("devicetime"))
    return {
        "deviceid": record.get("deviceid"),
        "latitude": _degrees(record.get("callat", record.get("latitude"))),
        "longitude": _degrees(record.get("callon", record.get("longitude"))),
        "speed": record.get("speed", 0),
        "course": record.get("course", 0),
        "timestamp": stamp.isoformat() if stamp else "",
        "gsm": record.get("rxlevel"),
        "gps": record.get("gpsvalidnum"),
        "temperature": record.get("temp1"),
    }


def parse_positions(
    records: Iterable[dict[str, Any]],
    validator: GP51ResponseValidator,
) -> tuple[list[GP51Position], int]:
    """Validate raw position records. Returns the valid positions and the rejected count."""
    positions: list[GP51Position] = []
    rejected = 0
    for record in records:
        result = validator.validate_with_business_rules(normalise_position(record), "position")
        if result.success:
            positions.append(result.data)
        else:
            rejected += 1
            logger.debug(
                "Dropping position for device %s: %s",
                record.get("deviceid"),
                [e.code for e in result.errors],
            )
    return positions, rejected



class GP51Client(BaseHTTPClient):
    """Synchronous GP51 API client with lazy login and token renewal.

    One instance may be shared by scheduler threads: calls are serialised on
    a lock because the underlying session and the token are shared.
    """

    connection_error = GP51ConnectionError
    rate_limit_error = GP51RateLimitError

    def __init__(self, config: IntegrityConfig, validator: GP51ResponseValidator | None = None) -> None:
        super().__init__(
            config.gp51_base_url,
            timeout=config.gp51_timeout,
            max_retries=config.gp51_max_retries,
        )
        self.config = config
        self.validator = validator or GP51ResponseValidator()
        self.username: str = config.gp51_username
        self.token: str | None = None
        self.token_issued_at: datetime | None = None
        self._password: str = config.gp51_password
        self._lock = threading.RLock()

    def _raise_for_status(self, response: requests.Response) -> None:
        if response.ok or response.status_code == 429:
            super()._raise_for_status(response)
            return
        raise GP51APIError(
            f"GP51 HTTP error {response.status_code}",
            details={"http_status": response.status_code, "raw": response.text[:500]},
        )

    def _call(self, action: str, payload: dict[str, Any] | None = None, with_token: bool = True) -> dict[str, Any]:
        """Invoke one GP51 action and return the decoded reply.

        A token GP51 reports as expired is dropped and the call is retried
        once after logging in again.

        Raises:
            GP51AuthError: If a token is required and none is held or renewal fails.
            GP51APIError: If GP51 answers with a non-zero status or a non-object body.
        """
        with self._lock:
            try:
                return self._send(action, payload, with_token)
            except GP51APIError as exc:
                if not with_token or action == "logout" or exc.status != TOKEN_EXPIRED_STATUS:
                    raise
                logger.info("GP51 rejected the token during %s, logging in again", action)
                self._drop_token()
            self.ensure_token()
            return self._send(action, payload, with_token)

    def _send(self, action: str, payload: dict[str, Any] | None, with_token: bool) -> dict[str, Any]:
        params: dict[str, str] = {"action": action}
        if with_token:
            if not self.token:
                raise GP51AuthError(f"GP51 action {action} requires a login token")
            params["token"] = self.token

        response = self._request("POST", self.base_url, params=params, json=payload or {})
        try:
            data = response.json()
        except ValueError as exc:
            raise GP51APIError(f"GP51 {action} returned invalid JSON", details={"raw": response.text[:500]}) from exc
        if not isinstance(data, dict):
            raise GP51APIError(f"GP51 {action} returned an unexpected body", details={"body": data})

        status = data.get("status")
        if status != 0:
            cause = data.get("cause")
            raise GP51APIError(
                f"GP51 {action} failed: {cause or status}",
                status=status,
                cause=cause,
                details={"action": action},
            )
        return data

    def _drop_token(self) -> None:
        self.token = None
        self.token_issued_at = None

    def token_expired(self, now: datetime | None = None) -> bool:
        """True once the token is within the renewal margin of its lifetime.

        A token without a recorded issue time is kept until GP51 rejects it.
        """
        if not self.token:
            return True
        if self.token_issued_at is None:
            return False
        now = now or datetime.now(UTC)
        return now >= self.token_issued_at + TOKEN_LIFETIME - TOKEN_RENEWAL_MARGIN

    def authenticate(self, username: str | None = None, password: str | None = None) -> AuthResult:
        """Log in and keep the returned token. Never raises."""
        username = username or self.config.gp51_username
        password = password or self.config.gp51_password
        if not username or not password:
            return AuthResult(success=False, error="GP51 credentials are not configured")

        payload = {
            "username": username,
            "password": hash_password(password),
            "from": "WEB",
            "type": "USER",
        }
        try:
            data = self._call("login", payload, with_token=False)
        except IntegrityError as exc:
            logger.error("GP51 login for %s failed: %s", username, exc)
            return AuthResult(success=False, error=str(exc))

        result = self.validator.validate_auth_response(data)
        if not result.success or not result.data.token:
            logger.error("GP51 login for %s returned no token", username)
            return AuthResult(success=False, error="GP51 login returned no token")

        with self._lock:
            self.username = username
            self._password = password
            self.token = result.data.token
            self.token_issued_at = datetime.now(UTC)
        logger.info("Authenticated with GP51 as %s", username)
        return AuthResult(success=True, token=self.token)

    def ensure_token(self) -> str:
        """Return a live token, logging in again when none is held or it is about to expire.

        Raises:
            GP51AuthError: If login fails.
        """
        with self._lock:
            if not self.token_expired():
                return self.token  # type: ignore[return-value]
            if self.token:
                logger.info("GP51 token issued at %s is due for renewal", self.token_issued_at)
                self._drop_token()
            auth = self.authenticate(self.username, self._password)
            if not auth.success or not auth.token:
                raise GP51AuthError(auth.error or "GP51 login failed")
            return auth.token

    def query_monitor_list(self) -> DeviceListResult:
        """Fetch the account's device tree. Failures are returned, not raised."""
        try:
            self.ensure_token()
            data = self._call("querymonitorlist", {"username": self.username})
        except IntegrityError as exc:
            logger.error("GP51 querymonitorlist failed: %s", exc)
            return DeviceListResult(success=False, error=str(exc))

        groups = data.get("groups") or []
        devices = [device for group in groups for device in (group.get("devices") or [])]
        logger.info("Fetched %d GP51 devices in %d groups", len(devices), len(groups))
        return DeviceListResult(success=True, devices=devices, groups=groups)

    def get_devices(self, include_positions: bool = False) -> DeviceListResult:
        """Current full device list, optionally merged with last known positions."""
        result = self.query_monitor_list()
        if not include_positions or not result.success or not result.devices:
            return result

        try:
            records = self.get_last_positions([str(d.get("deviceid")) for d in result.devices])
        except IntegrityError as exc:
            logger.warning("Returning devices without positions: %s", exc)
            return result

        latest = {str(r.get("deviceid")): normalise_position(r) for r in records}
        for device in result.devices:
            position = latest.get(str(device.get("deviceid")))
            if position is None:
                continue
            device.update({
                "lat": position["latitude"],
                "lng": position["longitude"],
                "speed": position["speed"],
                "course": position["course"],
                "lastupdate": position["timestamp"] or None,
            })
        return result

    def query_last_positions(
        self,
        device_ids: Iterable[str] | None = None,
        since: int | str = 0,
    ) -> tuple[list[dict[str, Any]], int | str]:
        """Raw ``lastposition`` records newer than ``since`` and the cursor for the next call.

        ``since=0`` returns the latest known record of every device.

        Raises:
            GP51AuthError: If no token can be obtained.
            GP51APIError: If GP51 rejects the request.
        """
        self.ensure_token()
        data = self._call("lastposition", {
            "deviceids": list(device_ids or []),
            "lastquerypositiontime": since,
        })
        return data.get("records") or [], data.get("lastquerypositiontime", since)

    def get_last_positions(self, device_ids: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Latest known raw record per device, independent of any polling cursor."""
        records, _ = self.query_last_positions(device_ids)
        return records

    def get_positions(self, device_ids: Iterable[str] | None = None) -> list[GP51Position]:
        """Validated latest positions. Records failing validation are dropped."""
        positions, _ = parse_positions(self.get_last_positions(device_ids), self.validator)
        return positions

    def get_connection_health(self) -> ConnectionHealth:
        """Check login and the device list. Never raises."""
        started = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            self.ensure_token()
        except GP51AuthError as exc:
            return ConnectionHealth(is_connected=False, response_time_ms=elapsed(), error=str(exc))

        try:
            data = self._call("querymonitorlist", {"username": self.username})
        except (GP51APIError, GP51AuthError) as exc:
            # Reachable, but the session was rejected.
            self._drop_token()
            return ConnectionHealth(is_connected=True, response_time_ms=elapsed(), error=str(exc))
        except IntegrityError as exc:
            return ConnectionHealth(
                is_connected=False,
                response_time_ms=elapsed(),
                token_valid=True,
                error=str(exc),
            )

        groups = data.get("groups") or []
        active = sum(len(g.get("devices") or []) for g in groups)
        return ConnectionHealth(
            is_connected=True,
            response_time_ms=elapsed(),
            token_valid=True,
            session_valid=True,
            active_devices=active,
        )

    def logout(self) -> None:
        if not self.token:
            return
        try:
            self._call("logout", {})
        except IntegrityError as exc:
            logger.warning("GP51 logout failed: %s", exc)
        finally:
            self._drop_token()
            logger.info("Logged out of GP51")
