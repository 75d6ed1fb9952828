"""Consistency scoring, data-health derivation and advisory recommendations.

Passed checks count fully, warnings count half and failures count nothing
toward a 0-100 score. Any critical failure forces the health to 'critical'
whatever the score.
"""

from __future__ import annotations

import math

from gp51_integrity.models import ConsistencyCheck, DataHealth


class ConsistencyScorer:
    """Turns a list of checks into a score, a health grade and recommendations."""

    STATUS_WEIGHTS: dict[str, float] = {
        "passed": 1.0,
        "warning": 0.5,
        "failed": 0.0,
    }

    HEALTH_THRESHOLDS: list[tuple[int, DataHealth]] = [
        (95, "excellent"),
        (85, "good"),
        (70, "fair"),
    ]

    def calculate_score(self, checks: list[ConsistencyCheck]) -> int:
        """Weighted pass rate as an integer percentage. No checks scores 100."""
        if not checks:
            return 100
        earned = sum(self.STATUS_WEIGHTS[c.status] for c in checks)
        # Half-up rounding, not banker's rounding.
        return math.floor(100 * earned / len(checks) + 0.5)

    def derive_health(self, score: int, checks: list[ConsistencyCheck]) -> DataHealth:
        if any(c.status == "failed" and c.severity == "critical" for c in checks):
            return "critical"
        for threshold, health in self.HEALTH_THRESHOLDS:
            if score >= threshold:
                return health
        return "poor"

    def build_recommendations(self, checks: list[ConsistencyCheck]) -> list[str]:
        """Advisory text derived from the findings. Order is deterministic."""
        recommendations: list[str] = []
        problems = [c for c in checks if c.status != "passed"]

        critical = [c for c in problems if c.status == "failed" and c.severity == "critical"]
        if critical:
            recommendations.append(
                f"Address {len(critical)} critical issue(s) immediately to prevent data corruption"
            )

        fixable = [c for c in problems if c.auto_fixable]
        if fixable:
            recommendations.append(
                f"{len(fixable)} issue(s) can be repaired automatically by running reconciliation"
            )

        names = {c.name for c in problems}
        if "orphaned_vehicles" in names:
            recommendations.append("Link orphaned vehicles to the users that own them in GP51")
        if "username_mismatches" in names:
            recommendations.append("Align vehicle usernames with their owners; the user record is authoritative")
        if "imported_users_without_vehicles" in names:
            recommendations.append("Review imported users without vehicles; their GP51 devices may not be imported yet")
        if "duplicate_device_ids" in names:
            recommendations.append("Resolve duplicate device ids manually and keep one authoritative vehicle per device")

        if not problems:
            recommendations.append("Data consistency is excellent. Continue regular monitoring.")

        return recommendations
