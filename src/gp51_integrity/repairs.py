"""Repair handlers executed by reconciliation rules.

Each handler has the signature ``(store, remote, config) -> RepairOutcome``
and only touches records that currently show the defect it targets, so a
second run against repaired data fixes nothing. A store error on one record
is counted as a failed record and the batch continues. A failed GP51 fetch
fails the whole metadata batch. Anything else escapes to the reconciliation
service, which records the rule as failed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import requests

from gp51_integrity.config import IntegrityConfig
from gp51_integrity.exceptions import IntegrityError, ManualReviewRequired
from gp51_integrity.models import RepairOutcome
from gp51_integrity.schemas import metadata_last_update
from gp51_integrity.store import USERS_TABLE, VEHICLES_TABLE, SupabaseStore

logger = logging.getLogger(__name__)

RepairHandler = Callable[[SupabaseStore, Any, IntegrityConfig], RepairOutcome]

_EMPTY_METADATA = "(gp51_metadata.is.null,gp51_metadata.eq.{})"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def fix_orphaned_vehicles(store: SupabaseStore, remote: Any, config: IntegrityConfig) -> RepairOutcome:
    """Link each ownerless vehicle to the user sharing its GP51 username."""
    orphans = store.select(
        VEHICLES_TABLE,
        columns="id,device_id,gp51_username",
        filters={"envio_user_id": "is.null", "gp51_username": "not.is.null"},
    )
    outcome = RepairOutcome(records_processed=len(orphans))
    linked: list[dict] = []
    unmatched: list[Any] = []

    for vehicle in orphans:
        username = vehicle.get("gp51_username")
        try:
            owners = store.select(
                USERS_TABLE,
                columns="id",
                filters={"gp51_username": f"eq.{username}"},
                limit=1,
            ) if username else []
            if not owners:
                outcome.records_failed += 1
                unmatched.append(vehicle.get("id"))
                continue
            store.update(
                VEHICLES_TABLE,
                {"envio_user_id": owners[0]["id"], "updated_at": _now()},
                {"id": f"eq.{vehicle['id']}", "envio_user_id": "is.null"},
            )
        except IntegrityError as exc:
            logger.warning("Could not link vehicle %s: %s", vehicle.get("id"), exc)
            outcome.records_failed += 1
            continue
        outcome.records_fixed += 1
        linked.append({"vehicle_id": vehicle["id"], "user_id": owners[0]["id"]})

    outcome.details = {"linked": linked, "unmatched_vehicle_ids": unmatched}
    return outcome


def fix_username_mismatches(store: SupabaseStore, remote: Any, config: IntegrityConfig) -> RepairOutcome:
    """Copy the owner's GP51 username onto each linked vehicle that disagrees."""
    users = store.select(USERS_TABLE, columns="id,gp51_username")
    usernames = {u.get("id"): u.get("gp51_username") for u in users}
    vehicles = store.select(
        VEHICLES_TABLE,
        columns="id,envio_user_id,gp51_username",
        filters={"envio_user_id": "not.is.null"},
    )

    mismatched = [
        (v, usernames[v["envio_user_id"]])
        for v in vehicles
        if usernames.get(v.get("envio_user_id")) and v.get("gp51_username") != usernames[v["envio_user_id"]]
    ]
    outcome = RepairOutcome(records_processed=len(mismatched))
    updated: list[dict] = []

    for vehicle, expected in mismatched:
        try:
            store.update(
                VEHICLES_TABLE,
                {"gp51_username": expected, "updated_at": _now()},
                {"id": f"eq.{vehicle['id']}"},
            )
        except IntegrityError as exc:
            logger.warning("Could not update username on vehicle %s: %s", vehicle.get("id"), exc)
            outcome.records_failed += 1
            continue
        outcome.records_fixed += 1
        updated.append({"vehicle_id": vehicle["id"], "from": vehicle.get("gp51_username"), "to": expected})

    outcome.details = {"updated": updated}
    return outcome


def update_missing_metadata(store: SupabaseStore, remote: Any, config: IntegrityConfig) -> RepairOutcome:
    """Fill empty metadata from one GP51 device-list fetch, a bounded batch at a time."""
    vehicles = store.select(
        VEHICLES_TABLE,
        columns="id,device_id,gp51_metadata",
        filters={"or": _EMPTY_METADATA},
        order="id.asc",
        limit=config.metadata_batch_size,
    )
    candidates = [v for v in vehicles if not v.get("gp51_metadata")]
    outcome = RepairOutcome(records_processed=len(candidates))
    if not candidates:
        return outcome

    error: str | None = None
    devices: list[dict] = []
    if remote is None:
        error = "No GP51 client configured"
    else:
        try:
            listing = remote.get_devices(include_positions=True)
        except (IntegrityError, requests.RequestException) as exc:
            error = str(exc)
        else:
            if listing.success:
                devices = listing.devices
            else:
                error = listing.error or "GP51 device list unavailable"

    if error is not None:
        logger.error("Metadata refresh skipped for %d vehicles: %s", len(candidates), error)
        outcome.records_failed = len(candidates)
        outcome.details = {"remote_error": error}
        return outcome

    by_device_id = {str(d.get("deviceid")): d for d in devices}
    refreshed: list[Any] = []
    not_found: list[Any] = []
    for vehicle in candidates:
        device = by_device_id.get(str(vehicle.get("device_id")))
        if device is None:
            outcome.records_failed += 1
            not_found.append(vehicle.get("device_id"))
            continue
        reconciled_at = _now()
        try:
            store.update(
                VEHICLES_TABLE,
                {"gp51_metadata": {**device, "reconciled_at": reconciled_at}, "updated_at": reconciled_at},
                {"id": f"eq.{vehicle['id']}"},
            )
        except IntegrityError as exc:
            logger.warning("Could not store metadata for vehicle %s: %s", vehicle.get("id"), exc)
            outcome.records_failed += 1
            continue
        outcome.records_fixed += 1
        refreshed.append(vehicle.get("device_id"))

    outcome.details = {"refreshed_device_ids": refreshed, "not_found_device_ids": not_found}
    return outcome


def fix_inactive_with_activity(store: SupabaseStore, remote: Any, config: IntegrityConfig) -> RepairOutcome:
    """Reactivate inactive vehicles whose metadata shows a recent update."""
    cutoff = datetime.now(UTC) - timedelta(hours=config.recent_activity_hours)
    inactive = store.select(
        VEHICLES_TABLE,
        columns="id,device_id,gp51_metadata",
        filters={"is_active": "eq.false"},
    )
    active_again = [
        v for v in inactive
        if (stamp := metadata_last_update(v.get("gp51_metadata"))) is not None and stamp >= cutoff
    ]
    outcome = RepairOutcome(records_processed=len(active_again))
    reactivated: list[Any] = []

    for vehicle in active_again:
        now = _now()
        metadata = {
            **vehicle["gp51_metadata"],
            "reactivated_at": now,
            "reactivated_by_reconciliation": True,
        }
        try:
            store.update(
                VEHICLES_TABLE,
                {"is_active": True, "gp51_metadata": metadata, "updated_at": now},
                {"id": f"eq.{vehicle['id']}", "is_active": "eq.false"},
            )
        except IntegrityError as exc:
            logger.warning("Could not reactivate vehicle %s: %s", vehicle.get("id"), exc)
            outcome.records_failed += 1
            continue
        outcome.records_fixed += 1
        reactivated.append(vehicle["id"])

    outcome.details = {"reactivated_vehicle_ids": reactivated}
    return outcome


def resolve_duplicate_devices(store: SupabaseStore, remote: Any, config: IntegrityConfig) -> RepairOutcome:
    """Duplicate device ids are never merged automatically.

    Raises:
        ManualReviewRequired: While any device id is shared by several vehicles.
    """
    duplicates = store.rpc("find_duplicate_device_ids") or []
    if not duplicates:
        return RepairOutcome()
    raise ManualReviewRequired(
        f"{len(duplicates)} duplicate device ids require manual resolution",
        details={"requires_manual_review": True, "duplicates": duplicates},
    )


DEFAULT_HANDLERS: dict[str, RepairHandler] = {
    "fix_orphaned_vehicles": fix_orphaned_vehicles,
    "fix_username_mismatches": fix_username_mismatches,
    "update_missing_metadata": update_missing_metadata,
    "resolve_duplicate_devices": resolve_duplicate_devices,
    "fix_inactive_with_activity": fix_inactive_with_activity,
}
