"""Reconciliation rule catalog and the registry that holds it at runtime."""

from __future__ import annotations

import logging
import threading
from typing import Any

from gp51_integrity.exceptions import DuplicateRuleError, UnknownRuleError
from gp51_integrity.models import ReconciliationRule

logger = logging.getLogger(__name__)

DEFAULT_RULES: tuple[ReconciliationRule, ...] = (
    ReconciliationRule(
        id="fix_orphaned_vehicles",
        name="Fix Orphaned Vehicles",
        description="Link vehicles without an owner to the user with the same GP51 username",
        check_type="user_vehicle_link",
        severity=("high", "critical"),
        auto_execute=True,
        strategy="merge",
    ),
    ReconciliationRule(
        id="fix_username_mismatches",
        name="Fix Username Mismatches",
        description="Overwrite a vehicle's stored GP51 username with its owner's",
        check_type="user_vehicle_link",
        severity=("critical",),
        auto_execute=True,
        strategy="overwrite_local",
    ),
    ReconciliationRule(
        id="update_missing_metadata",
        name="Update Missing Metadata",
        description="Refresh empty vehicle metadata from the GP51 device list",
        check_type="data_integrity",
        severity=("medium", "high"),
        auto_execute=False,
        strategy="overwrite_local",
    ),
    ReconciliationRule(
        id="resolve_duplicate_devices",
        name="Resolve Duplicate Devices",
        description="Duplicate device ids need a human to choose the authoritative vehicle",
        check_type="data_integrity",
        severity=("critical",),
        auto_execute=False,
        strategy="manual_review",
    ),
    ReconciliationRule(
        id="fix_inactive_with_activity",
        name="Fix Inactive Vehicles With Activity",
        description="Reactivate vehicles flagged inactive that reported recently",
        check_type="data_integrity",
        severity=("medium",),
        auto_execute=True,
        strategy="overwrite_local",
    ),
)


class RuleRegistry:
    """Ordered rule catalog. Readers always see a complete tuple snapshot."""

    def __init__(self, rules: tuple[ReconciliationRule, ...] | list[ReconciliationRule] = DEFAULT_RULES) -> None:
        self._rules: tuple[ReconciliationRule, ...] = tuple(rules)
        self._write_lock = threading.Lock()

    def all(self) -> tuple[ReconciliationRule, ...]:
        return self._rules

    def get(self, rule_id: str) -> ReconciliationRule:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        raise UnknownRuleError(f"Unknown reconciliation rule: {rule_id}", details={"rule_id": rule_id})

    def __contains__(self, rule_id: object) -> bool:
        return any(rule.id == rule_id for rule in self._rules)

    def add(self, rule: ReconciliationRule) -> ReconciliationRule:
        with self._write_lock:
            if rule.id in self:
                raise DuplicateRuleError(f"Rule already registered: {rule.id}", details={"rule_id": rule.id})
            self._rules = (*self._rules, rule)
        logger.info("Registered reconciliation rule %s", rule.id)
        return rule

    def update(self, rule_id: str, **changes: Any) -> ReconciliationRule:
        """Replace a rule with a copy carrying ``changes``. The id cannot change."""
        if "id" in changes and changes["id"] != rule_id:
            raise ValueError("A rule's id cannot be changed")
        with self._write_lock:
            current = self.get(rule_id)
            # model_copy(update=...) would skip validation.
            updated = ReconciliationRule.model_validate({**current.model_dump(), **changes})
            self._rules = tuple(updated if r.id == rule_id else r for r in self._rules)
        logger.info("Updated reconciliation rule %s: %s", rule_id, sorted(changes))
        return updated
