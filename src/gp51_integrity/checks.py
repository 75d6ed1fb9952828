"""Consistency check categories run by the verifier.

Each category is a plain function ``(store, validator, config)`` returning
zero or more ConsistencyCheck findings. Categories only read from the store.
Store failures propagate to the verifier, which turns them into a single
failed/critical finding for the category.
"""

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any

from gp51_integrity.config import IntegrityConfig
from gp51_integrity.models import ConsistencyCheck
from gp51_integrity.schemas import GP51ResponseValidator, metadata_last_update
from gp51_integrity.store import USERS_TABLE, VEHICLES_TABLE, SupabaseStore

VEHICLE_COLUMNS = "id,device_id,name,envio_user_id,gp51_username,is_active,gp51_metadata"

_MIN_DEVICE_ID_LENGTH = 3
_MAX_DEVICE_ID_LENGTH = 50


def _sample(rows: list[dict], size: int) -> list[dict]:
    """Compact copies of the first ``size`` offending rows for diagnostics."""
    keys = ("id", "device_id", "name", "gp51_username", "envio_user_id")
    return [{k: row.get(k) for k in keys if k in row} for row in rows[:size]]


def _has_coordinates(metadata: Any) -> bool:
    if not isinstance(metadata, dict):
        return False
    lat = metadata.get("lat", metadata.get("latitude"))
    lng = metadata.get("lng", metadata.get("longitude"))
    if lat is None or lng is None:
        return False
    return not (lat == 0 and lng == 0)


def check_user_vehicle_consistency(
    store: SupabaseStore,
    validator: GP51ResponseValidator,
    config: IntegrityConfig,
) -> list[ConsistencyCheck]:
    """Ownership links between vehicles and users."""
    checks: list[ConsistencyCheck] = []

    orphans = store.select(
        VEHICLES_TABLE,
        columns="id,device_id,name,gp51_username",
        filters={"envio_user_id": "is.null"},
    )
    if orphans:
        checks.append(ConsistencyCheck(
            name="orphaned_vehicles",
            check_type="user_vehicle_link",
            status="failed",
            message=f"{len(orphans)} vehicles have no assigned user",
            severity="high",
            auto_fixable=True,
            details={"count": len(orphans), "sample": _sample(orphans, config.sample_size)},
        ))
    else:
        checks.append(ConsistencyCheck(
            name="orphaned_vehicles",
            check_type="user_vehicle_link",
            status="passed",
            message="All vehicles have an assigned user",
        ))

    users = store.select(USERS_TABLE, columns=f"id,name,gp51_username,{config.imported_user_flag}")
    linked = store.select(
        VEHICLES_TABLE,
        columns="id,envio_user_id,gp51_username",
        filters={"envio_user_id": "not.is.null"},
    )

    owners_with_vehicles = {v.get("envio_user_id") for v in linked}
    idle_imported = [
        u for u in users
        if u.get(config.imported_user_flag) and u.get("id") not in owners_with_vehicles
    ]
    if idle_imported:
        checks.append(ConsistencyCheck(
            name="imported_users_without_vehicles",
            check_type="user_vehicle_link",
            status="warning",
            message=f"{len(idle_imported)} imported users have no assigned vehicles",
            severity="medium",
            auto_fixable=False,
            details={
                "count": len(idle_imported),
                "sample": [{"id": u.get("id"), "gp51_username": u.get("gp51_username")}
                           for u in idle_imported[:config.sample_size]],
            },
        ))

    usernames = {u.get("id"): u.get("gp51_username") for u in users}
    mismatches = []
    for vehicle in linked:
        owner_id = vehicle.get("envio_user_id")
        if owner_id not in usernames:
            continue
        expected = usernames[owner_id]
        if expected and vehicle.get("gp51_username") != expected:
            mismatches.append({
                "vehicle_id": vehicle.get("id"),
                "user_id": owner_id,
                "vehicle_username": vehicle.get("gp51_username"),
                "user_username": expected,
            })
    if mismatches:
        checks.append(ConsistencyCheck(
            name="username_mismatches",
            check_type="user_vehicle_link",
            status="failed",
            message=f"{len(mismatches)} vehicles store a username different from their owner's",
            severity="critical",
            auto_fixable=True,
            details={"count": len(mismatches), "sample": mismatches[:config.sample_size]},
        ))

    return checks


def check_vehicle_data_integrity(
    store: SupabaseStore,
    validator: GP51ResponseValidator,
    config: IntegrityConfig,
) -> list[ConsistencyCheck]:
    """Coordinates, duplicate device ids, device id format and metadata presence."""
    checks: list[ConsistencyCheck] = []
    vehicles = store.select(VEHICLES_TABLE, columns=VEHICLE_COLUMNS)

    with_metadata = [v for v in vehicles if v.get("gp51_metadata")]
    bad_coordinates = [v for v in with_metadata if not _has_coordinates(v["gp51_metadata"])]
    if bad_coordinates:
        checks.append(ConsistencyCheck(
            name="missing_coordinates",
            check_type="data_integrity",
            status="warning",
            message=f"{len(bad_coordinates)} vehicles have missing or zero coordinates",
            severity="medium",
            auto_fixable=False,
            details={"count": len(bad_coordinates), "sample": _sample(bad_coordinates, config.sample_size)},
        ))

    duplicates = store.rpc("find_duplicate_device_ids") or []
    if duplicates:
        checks.append(ConsistencyCheck(
            name="duplicate_device_ids",
            check_type="data_integrity",
            status="failed",
            message=f"{len(duplicates)} device ids are shared by more than one vehicle",
            severity="critical",
            auto_fixable=False,
            details={"count": len(duplicates), "duplicates": duplicates[:config.sample_size]},
        ))

    invalid_ids = [
        v for v in vehicles
        if not v.get("device_id")
        or not _MIN_DEVICE_ID_LENGTH <= len(str(v["device_id"])) <= _MAX_DEVICE_ID_LENGTH
    ]
    if invalid_ids:
        checks.append(ConsistencyCheck(
            name="invalid_device_ids",
            check_type="data_integrity",
            status="warning",
            message=f"{len(invalid_ids)} vehicles have a missing or malformed device id",
            severity="medium",
            auto_fixable=False,
            details={"count": len(invalid_ids), "sample": _sample(invalid_ids, config.sample_size)},
        ))

    missing_metadata = [v for v in vehicles if not v.get("gp51_metadata")]
    if missing_metadata:
        checks.append(ConsistencyCheck(
            name="missing_metadata",
            check_type="data_integrity",
            status="warning",
            message=f"{len(missing_metadata)} vehicles have no GP51 metadata",
            severity="medium",
            auto_fixable=True,
            details={"count": len(missing_metadata), "sample": _sample(missing_metadata, config.sample_size)},
        ))

    return checks


def check_referential_integrity(
    store: SupabaseStore,
    validator: GP51ResponseValidator,
    config: IntegrityConfig,
) -> list[ConsistencyCheck]:
    """Foreign-key check: vehicles.envio_user_id -> envio_users.id."""
    violations = store.rpc("check_referential_integrity", {
        "source_table": VEHICLES_TABLE,
        "source_column": "envio_user_id",
        "target_table": USERS_TABLE,
        "target_column": "id",
    }) or []

    if violations:
        return [ConsistencyCheck(
            name="vehicle_owner_reference",
            check_type="referential_integrity",
            status="failed",
            message=f"{len(violations)} vehicles reference users that do not exist",
            severity="critical",
            auto_fixable=True,
            details={"count": len(violations), "sample": violations[:config.sample_size]},
        )]
    return [ConsistencyCheck(
        name="vehicle_owner_reference",
        check_type="referential_integrity",
        status="passed",
        message="All vehicle owner references are valid",
    )]


def check_data_format_consistency(
    store: SupabaseStore,
    validator: GP51ResponseValidator,
    config: IntegrityConfig,
) -> list[ConsistencyCheck]:
    """Every stored metadata blob must validate as a GP51 vehicle."""
    vehicles = store.select(
        VEHICLES_TABLE,
        columns="id,device_id,gp51_metadata",
        filters={"gp51_metadata": "not.is.null"},
    )

    failures: list[dict] = []
    for vehicle in vehicles:
        result = validator.validate_vehicle(vehicle.get("gp51_metadata"))
        if not result.success:
            failures.append({
                "vehicle_id": vehicle.get("id"),
                "device_id": vehicle.get("device_id"),
                "errors": [e.model_dump(include={"field", "code"}) for e in result.errors],
            })

    if failures:
        return [ConsistencyCheck(
            name="metadata_format",
            check_type="data_integrity",
            status="warning",
            message=f"{len(failures)} of {len(vehicles)} metadata blobs fail GP51 validation",
            severity="medium",
            auto_fixable=True,
            details={"count": len(failures), "checked": len(vehicles), "sample": failures[:config.sample_size]},
        )]
    return [ConsistencyCheck(
        name="metadata_format",
        check_type="data_integrity",
        status="passed",
        message=f"All {len(vehicles)} metadata blobs are well formed",
        details={"checked": len(vehicles)},
    )]


def check_business_rule_consistency(
    store: SupabaseStore,
    validator: GP51ResponseValidator,
    config: IntegrityConfig,
) -> list[ConsistencyCheck]:
    """Activity flags that contradict telemetry and unusually large fleets."""
    checks: list[ConsistencyCheck] = []

    cutoff = datetime.now(UTC) - timedelta(hours=config.recent_activity_hours)
    inactive = store.select(
        VEHICLES_TABLE,
        columns="id,device_id,name,gp51_metadata",
        filters={"is_active": "eq.false"},
    )
    recently_active = [
        v for v in inactive
        if (stamp := metadata_last_update(v.get("gp51_metadata"))) is not None and stamp >= cutoff
    ]
    if recently_active:
        checks.append(ConsistencyCheck(
            name="inactive_with_recent_activity",
            check_type="data_integrity",
            status="warning",
            message=(
                f"{len(recently_active)} inactive vehicles reported activity "
                f"in the last {config.recent_activity_hours}h"
            ),
            severity="medium",
            auto_fixable=True,
            details={"count": len(recently_active), "sample": _sample(recently_active, config.sample_size)},
        ))

    owned = store.select(
        VEHICLES_TABLE,
        columns="id,envio_user_id",
        filters={"envio_user_id": "not.is.null"},
    )
    per_user = Counter(v.get("envio_user_id") for v in owned)
    large_fleets = {uid: n for uid, n in per_user.items() if n > config.max_vehicles_per_user}
    if large_fleets:
        checks.append(ConsistencyCheck(
            name="users_with_excessive_vehicles",
            check_type="data_integrity",
            status="warning",
            message=(
                f"{len(large_fleets)} users own more than "
                f"{config.max_vehicles_per_user} vehicles"
            ),
            severity="low",
            auto_fixable=False,
            details={"count": len(large_fleets), "users": dict(list(large_fleets.items())[:config.sample_size])},
        ))

    return checks
