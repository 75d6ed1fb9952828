"""GP51 Data Integrity - consistency verification and reconciliation for GP51 fleet data."""

__version__ = "0.1.0"

from gp51_integrity.config import IntegrityConfig, get_config
from gp51_integrity.exceptions import (
    DuplicateRuleError,
    GP51APIError,
    GP51AuthError,
    GP51ConnectionError,
    GP51Error,
    GP51RateLimitError,
    IntegrityError,
    ManualReviewRequired,
    StoreAPIError,
    StoreAuthError,
    StoreConnectionError,
    StoreNotFoundError,
    StorePermissionError,
    StoreRateLimitError,
    UnknownRuleError,
)
from gp51_integrity.models import (
    CheckStatus,
    CheckType,
    ConsistencyCheck,
    ConsistencyReport,
    DataHealth,
    ReconciliationJob,
    ReconciliationResult,
    ReconciliationRule,
    RepairOutcome,
    RuleStrategy,
    Severity,
)
from gp51_integrity.reconciliation import ReconciliationService
from gp51_integrity.verifier import ConsistencyVerifier

__all__ = [
    "__version__",
    "IntegrityConfig",
    "get_config",
    "IntegrityError",
    "StoreConnectionError",
    "StoreAuthError",
    "StoreNotFoundError",
    "StorePermissionError",
    "StoreRateLimitError",
    "StoreAPIError",
    "GP51Error",
    "GP51ConnectionError",
    "GP51RateLimitError",
    "GP51AuthError",
    "GP51APIError",
    "ManualReviewRequired",
    "UnknownRuleError",
    "DuplicateRuleError",
    "CheckType",
    "CheckStatus",
    "Severity",
    "DataHealth",
    "RuleStrategy",
    "ConsistencyCheck",
    "ConsistencyReport",
    "ReconciliationRule",
    "RepairOutcome",
    "ReconciliationResult",
    "ReconciliationJob",
    "ConsistencyVerifier",
    "ReconciliationService",
]
