"""Tests for the exception hierarchy."""

from __future__ import annotations

from gp51_integrity.exceptions import (
    DuplicateRuleError,
    GP51APIError,
    GP51AuthError,
    GP51Error,
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


class TestExceptionHierarchy:
    def test_base_error(self) -> None:
        exc = IntegrityError("base error")
        assert str(exc) == "base error"
        assert exc.details == {}

    def test_base_error_with_details(self) -> None:
        exc = IntegrityError("err", details={"key": "val"})
        assert exc.details == {"key": "val"}

    def test_store_errors_are_integrity_errors(self) -> None:
        for cls in (StoreConnectionError, StoreAuthError, StoreNotFoundError, StorePermissionError):
            exc = cls("boom")
            assert isinstance(exc, IntegrityError)
            assert str(exc) == "boom"

    def test_rate_limit_error_with_retry_after(self) -> None:
        exc = StoreRateLimitError("slow down", retry_after=30)
        assert isinstance(exc, IntegrityError)
        assert exc.retry_after == 30

    def test_rate_limit_error_no_retry_after(self) -> None:
        exc = StoreRateLimitError("slow down")
        assert exc.retry_after is None

    def test_api_error_with_status_code(self) -> None:
        exc = StoreAPIError("server error", status_code=500)
        assert exc.status_code == 500

    def test_api_error_no_status_code(self) -> None:
        assert StoreAPIError("unknown").status_code is None


class TestGP51Errors:
    def test_gp51_family(self) -> None:
        assert issubclass(GP51Error, IntegrityError)
        assert issubclass(GP51AuthError, GP51Error)
        assert issubclass(GP51APIError, GP51Error)

    def test_api_error_carries_status_and_cause(self) -> None:
        exc = GP51APIError("login failed", status=1, cause="bad password")
        assert exc.status == 1
        assert exc.cause == "bad password"
        assert exc.details == {}


class TestReconciliationErrors:
    def test_manual_review_keeps_details(self) -> None:
        exc = ManualReviewRequired("needs a human", details={"duplicates": [{"device_id": "D1"}]})
        assert isinstance(exc, IntegrityError)
        assert exc.details["duplicates"][0]["device_id"] == "D1"

    def test_rule_errors(self) -> None:
        assert isinstance(UnknownRuleError("x"), IntegrityError)
        assert isinstance(DuplicateRuleError("x"), IntegrityError)
