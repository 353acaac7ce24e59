"""
billing_services.credential_prober -- strategy 4 of attribution.

Responsibility:
    For a transaction whose vendor reference has no local entity, ask the
    vendor API for the object once per tenant credential, in deterministic
    tenant order, stopping at the first credential that can see it.

Architecture position:
    Services -- imperative shell.  Returns ``ProbeAttempt`` records; the
    decision is made by ``billing_engines.attribution.resolve_from_probes``.

Invariants enforced:
    - Every attempt is recorded with an explicit outcome: found, not_found,
      or error (retries exhausted, credential missing, unexpected HTTP).
    - Tenants are tried in ``probe_order`` (sorted tenant id).
    - All calls share one token-bucket RateLimiter; transient failures are
      retried with bounded exponential backoff honouring Retry-After.
    - At most ``workers`` subjects are probed concurrently.  Worker threads
      never touch the database session.
"""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config.schema import BillingSettings
from billing_engines.attribution import ProbeAttempt, probe_order
from billing_kernel.domain.types import ProbeOutcome, ReferenceKind
from billing_kernel.exceptions import MissingTenantCredentialError, TransientIOError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.tenant import Tenant, TenantCredential
from billing_kernel.utils.retry import RateLimiter, retry_transient
from billing_services.vendor_client import VendorApiClient

logger = get_logger("services.credential_prober")


@dataclass(frozen=True)
class ProbeRequest:
    key: str
    reference_kind: ReferenceKind
    object_id: str


def load_tenant_tokens(
    session: Session,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Resolve each active tenant's credential from its environment variable.

    Tenants without a usable credential are logged and left out; probing
    simply never tries them.
    """
    env = os.environ if environ is None else environ
    rows = session.execute(
        select(TenantCredential.tenant_id, TenantCredential.token_env_var)
        .join(Tenant, Tenant.id == TenantCredential.tenant_id)
        .where(Tenant.is_active.is_(True))
        .where(TenantCredential.is_active.is_(True))
    ).all()

    tokens: dict[str, str] = {}
    for tenant_id, env_var in rows:
        token = env.get(env_var) if env_var else None
        if not token:
            exc = MissingTenantCredentialError(tenant_id)
            logger.warning(
                "tenant_credential_missing",
                extra={"tenant_id": tenant_id, "error_code": exc.code, "env_var": env_var},
            )
            continue
        tokens[tenant_id] = token
    return tokens


class CredentialProber:
    def __init__(
        self,
        client: VendorApiClient,
        tokens: Mapping[str, str],
        *,
        rate_limiter: RateLimiter,
        workers: int = 4,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._tokens = dict(tokens)
        self._limiter = rate_limiter
        self._workers = max(1, workers)
        self._attempts = retry_attempts
        self._base_delay = retry_base_delay
        self._max_delay = retry_max_delay
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        session: Session,
        settings: BillingSettings,
        environ: Mapping[str, str] | None = None,
    ) -> "CredentialProber | None":
        """Build a prober from configuration, or None when no vendor API is configured."""
        api = settings.vendor_api
        if api is None:
            return None
        return cls(
            VendorApiClient(api.base_url, api.timeout_seconds),
            load_tenant_tokens(session, environ),
            rate_limiter=RateLimiter(api.requests_per_second),
            workers=settings.attribution.probe_workers,
            retry_attempts=api.retry_attempts,
            retry_base_delay=api.retry_base_delay,
            retry_max_delay=api.retry_max_delay,
        )

    @property
    def tenant_ids(self) -> list[str]:
        return probe_order(self._tokens)

    def _call(self, resource: str, object_id: str, token: str):
        self._limiter.acquire()
        return self._client.lookup(resource, object_id, token)

    def _attempt(self, tenant_id: str, resource: str, object_id: str) -> ProbeAttempt:
        token = self._tokens[tenant_id]
        try:
            found = retry_transient(
                lambda: self._call(resource, object_id, token),
                operation=f"probe {resource}/{object_id}",
                attempts=self._attempts,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                sleep=self._sleep,
            )
        except TransientIOError as exc:
            return ProbeAttempt(tenant_id, resource, object_id, ProbeOutcome.ERROR, exc.code)
        except requests.HTTPError as exc:
            return ProbeAttempt(tenant_id, resource, object_id, ProbeOutcome.ERROR, str(exc))

        outcome = ProbeOutcome.FOUND if found is not None else ProbeOutcome.NOT_FOUND
        return ProbeAttempt(tenant_id, resource, object_id, outcome)

    def probe(self, request: ProbeRequest) -> list[ProbeAttempt]:
        """Try each tenant credential in order until one finds the object."""
        resource = request.reference_kind.probe_resource
        if resource is None:
            return []

        attempts: list[ProbeAttempt] = []
        for tenant_id in self.tenant_ids:
            attempt = self._attempt(tenant_id, resource, request.object_id)
            attempts.append(attempt)
            logger.debug(
                "probe_attempt",
                extra={
                    "key": request.key,
                    "tenant_id": tenant_id,
                    "resource": resource,
                    "outcome": attempt.outcome.value,
                },
            )
            if attempt.outcome is ProbeOutcome.FOUND:
                break
        return attempts

    def probe_many(self, requests_: Iterable[ProbeRequest]) -> dict[str, list[ProbeAttempt]]:
        pending = list(requests_)
        if not pending:
            return {}
        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="probe") as pool:
            results = list(pool.map(self.probe, pending))

        by_key = {req.key: attempts for req, attempts in zip(pending, results)}
        logger.info(
            "probes_completed",
            extra={
                "subjects": len(pending),
                "attempts": sum(len(a) for a in results),
                "found": sum(
                    1 for a in results if any(x.outcome is ProbeOutcome.FOUND for x in a)
                ),
            },
        )
        return by_key
