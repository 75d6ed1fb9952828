"""Shared HTTP plumbing with retry logic and error mapping.

The local store client and the GP51 client both build on BaseHTTPClient:
exponential backoff on transient failures and structured exception mapping
of HTTP status codes. Subclasses name the exception classes raised for
unreachable backends and rate limiting.
"""

from __future__ import annotations

import logging
import time

import requests

from gp51_integrity.exceptions import (
    IntegrityError,
    StoreAPIError,
    StoreAuthError,
    StoreConnectionError,
    StoreNotFoundError,
    StorePermissionError,
    StoreRateLimitError,
)

logger = logging.getLogger(__name__)


class BaseHTTPClient:
    """requests.Session wrapper used by the store and GP51 clients."""

    connection_error: type[IntegrityError] = StoreConnectionError
    rate_limit_error: type[IntegrityError] = StoreRateLimitError

    def __init__(self, base_url: str, timeout: int, max_retries: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        self.timeout = timeout
        self.max_retries = max_retries

    def _request(self, method: str, url: str, **kwargs: object) -> requests.Response:
        """Execute an HTTP request with retry logic and error mapping.

        The initial attempt plus up to ``max_retries`` retries are made,
        giving a total of ``max_retries + 1`` attempts. Transport failures
        other than connection errors and timeouts are not retried.
        """
        attempts = self.max_retries + 1
        last_exception: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.request(
                    method,
                    url,
                    timeout=self.timeout,
                    **kwargs,  # type: ignore[arg-type]
                )
                self._raise_for_status(response)
                return response
            except self.rate_limit_error as exc:
                last_exception = exc
                wait = getattr(exc, "retry_after", None) or (2 ** (attempt - 1))
                logger.warning("Rate limited by %s, retrying in %ds (attempt %d/%d)", url, wait, attempt, attempts)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_exception = self.connection_error(
                    f"Connection failed: {exc}",
                    details={"url": url, "attempt": attempt},
                )
                wait = 2 ** (attempt - 1)
                logger.warning("Connection error on %s, retrying in %ds (attempt %d/%d)", url, wait, attempt, attempts)
            except requests.RequestException as exc:
                raise self.connection_error(
                    f"Request failed: {exc}",
                    details={"url": url, "error_type": type(exc).__name__},
                ) from exc
            if attempt < attempts:
                time.sleep(wait)
        raise last_exception  # type: ignore[misc]

    def _raise_for_status(self, response: requests.Response) -> None:
        """Map HTTP status codes to typed exceptions."""
        if response.ok:
            return
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:500]}
        if not isinstance(body, dict):
            body = {"body": body}

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise self.rate_limit_error(
                "Rate limit exceeded",
                retry_after=int(retry_after) if retry_after else None,
                details=body,
            )
        if status == 401:
            raise StoreAuthError("Authentication failed", details=body)
        if status == 403:
            raise StorePermissionError("Permission denied", details=body)
        if status == 404:
            raise StoreNotFoundError("Resource not found", details=body)
        raise StoreAPIError(
            f"API error: HTTP {status}",
            status_code=status,
            details=body,
        )
