"""
billing_services.vendor_client -- minimal vendor REST client for lookups.

Responsibility:
    ``GET {base_url}/{resource}/{object_id}`` with a tenant's bearer token,
    translating HTTP outcomes into the billing error hierarchy so callers
    can retry exactly what is retryable.

Architecture position:
    Services -- outermost I/O edge, used by the credential prober.
    Authentication flows and pagination belong to the vendor sync jobs,
    not here.

Response mapping:
    200                  -> parsed JSON object
    404                  -> None (object not visible to this credential)
    401 / 403            -> None (credential cannot see the object)
    429                  -> RateLimitedError (Retry-After honoured)
    5xx, timeouts,
    connection errors    -> TransientIOError
    anything else        -> requests.HTTPError
"""

from __future__ import annotations

import threading
from typing import Any

import requests

from billing_kernel.exceptions import RateLimitedError, TransientIOError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.vendor_client")

_NOT_VISIBLE = frozenset({401, 403, 404})


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class VendorApiClient:
    """
    Thin lookup client.  One ``requests.Session`` per thread so the
    prober's worker pool can share a client.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 15.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._local = threading.local()

    def _http(self) -> requests.Session:
        http = getattr(self._local, "session", None)
        if http is None:
            http = requests.Session()
            http.headers.update({"Accept": "application/json"})
            self._local.session = http
        return http

    def url_for(self, resource: str, object_id: str) -> str:
        return f"{self._base_url}/{resource}/{object_id}"

    def lookup(self, resource: str, object_id: str, token: str) -> dict[str, Any] | None:
        """Fetch one vendor object, or None if this credential cannot see it."""
        operation = f"GET {resource}/{object_id}"
        try:
            response = self._http().get(
                self.url_for(resource, object_id),
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientIOError(operation, str(exc)) from exc

        status = response.status_code
        if status == 200:
            return response.json()
        if status in _NOT_VISIBLE:
            return None
        if status == 429:
            retry_after = _retry_after(response)
            logger.warning(
                "vendor_rate_limited",
                extra={"operation": operation, "retry_after": retry_after},
            )
            raise RateLimitedError(operation, retry_after)
        if status >= 500:
            raise TransientIOError(operation, f"HTTP {status}")
        response.raise_for_status()
        return None
