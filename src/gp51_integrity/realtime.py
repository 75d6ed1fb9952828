"""Position polling with listener fan-out and alert derivation.

A PositionPoller pulls new ``lastposition`` records on a schedule and keeps
its own ``lastquerypositiontime`` cursor, so snapshot reads through the same
client never skip records. Each batch is validated, turned into alerts from
the raw flags and handed to every subscribed listener.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from gp51_integrity.config import IntegrityConfig
from gp51_integrity.gp51 import GP51Client, parse_positions
from gp51_integrity.models import Severity
from gp51_integrity.scheduler import PeriodicTask
from gp51_integrity.schemas import GP51Position, parse_timestamp

logger = logging.getLogger(__name__)

AlertType = Literal["overspeed", "alarm", "low_battery", "abnormal_temperature", "offline"]

_TEMPERATURE_KEYS = ("temp1", "temp2", "temp3", "temp4", "temperature")


class PositionAlert(BaseModel):
    device_id: str
    alert_type: AlertType
    severity: Severity
    message: str
    value: Any = None
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PositionUpdate(BaseModel):
    """One polling batch as delivered to listeners."""

    positions: list[GP51Position] = Field(default_factory=list)
    alerts: list[PositionAlert] = Field(default_factory=list)
    rejected: int = 0
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


PositionListener = Callable[[PositionUpdate], None]


def derive_alerts(record: dict[str, Any], config: IntegrityConfig, now: datetime | None = None) -> list[PositionAlert]:
    """Alerts implied by one raw position record."""
    now = now or datetime.now(UTC)
    device_id = str(record.get("deviceid"))
    alerts: list[PositionAlert] = []

    speed = record.get("speed")
    if record.get("currentoverspeedstate") == 1 or (
        isinstance(speed, int | float) and speed > config.overspeed_limit_kmh
    ):
        alerts.append(PositionAlert(
            device_id=device_id,
            alert_type="overspeed",
            severity="high",
            message=f"Speed {speed} km/h exceeds {config.overspeed_limit_kmh} km/h",
            value=speed,
            detected_at=now,
        ))

    if record.get("alarm"):
        alerts.append(PositionAlert(
            device_id=device_id,
            alert_type="alarm",
            severity="critical",
            message=record.get("stralarmsen") or record.get("stralarm") or "Device alarm raised",
            value=record.get("alarm"),
            detected_at=now,
        ))

    battery = record.get("voltagepercent")
    if isinstance(battery, int | float) and 0 <= battery < config.low_battery_percent:
        alerts.append(PositionAlert(
            device_id=device_id,
            alert_type="low_battery",
            severity="medium",
            message=f"Battery at {battery}%",
            value=battery,
            detected_at=now,
        ))

    temperatures = [record[k] for k in _TEMPERATURE_KEYS if isinstance(record.get(k), int | float)]
    abnormal = [t for t in temperatures if not config.temperature_min_c <= t <= config.temperature_max_c]
    if abnormal:
        alerts.append(PositionAlert(
            device_id=device_id,
            alert_type="abnormal_temperature",
            severity="medium",
            message=f"Temperature {abnormal[0]} C outside {config.temperature_min_c}..{config.temperature_max_c} C",
            value=abnormal[0],
            detected_at=now,
        ))

    last_seen = parse_timestamp(record.get("updatetime") or record.get("devicetime"))
    if last_seen is not None and now - last_seen > timedelta(hours=config.offline_alert_hours):
        alerts.append(PositionAlert(
            device_id=device_id,
            alert_type="offline",
            severity="medium",
            message=f"No report since {last_seen.isoformat()}",
            value=last_seen.isoformat(),
            detected_at=now,
        ))

    return alerts


class PositionPoller:
    """Polls GP51 for new positions and fans each batch out to listeners."""

    def __init__(self, client: GP51Client, config: IntegrityConfig) -> None:
        self.client = client
        self.config = config
        self._listeners: list[PositionListener] = []
        self._lock = threading.Lock()
        self._task: PeriodicTask | None = None
        # GP51 lastquerypositiontime of the previous poll
        self.cursor: int | str = 0

    def subscribe(self, listener: PositionListener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def poll_once(self) -> PositionUpdate:
        records, self.cursor = self.client.query_last_positions(since=self.cursor)
        positions, rejected = parse_positions(records, self.client.validator)
        now = datetime.now(UTC)
        alerts = [alert for record in records for alert in derive_alerts(record, self.config, now)]
        update = PositionUpdate(positions=positions, alerts=alerts, rejected=rejected, received_at=now)
        if alerts:
            logger.warning("%d position alerts in latest batch", len(alerts))

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(update)
            except Exception:
                logger.exception("Position listener %r failed", listener)
        return update

    def start(self, interval_seconds: float | None = None) -> PeriodicTask:
        if self._task is not None and self._task.is_running:
            return self._task
        interval = interval_seconds or self.config.position_poll_seconds
        self._task = PeriodicTask("gp51-position-poll", self.poll_once, interval)
        return self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()
            self._task = None
