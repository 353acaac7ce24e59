"""
Tracing for pure engine calls.

``@traced_engine`` writes one DEBUG ``billing_engine_trace`` record per
call: the engine name, a fingerprint of the keyword inputs that decide the
result, and the elapsed time.  Two calls with the same fingerprint priced
the same inputs, which is what an auditor needs to tie a billed amount
back to the call that produced it.
"""

from __future__ import annotations

import functools
import hashlib
import time
from collections.abc import Callable
from typing import Any

from billing_kernel.logging_config import get_logger

_logger = get_logger("engines.trace")


def input_fingerprint(kwargs: dict[str, Any], fields: tuple[str, ...]) -> str:
    """First 16 hex chars of SHA-256 over ``name=value`` pairs of ``fields``."""
    text = "|".join(f"{name}={kwargs.get(name)}" for name in fields)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def traced_engine(engine_name: str, fingerprint_fields: tuple[str, ...] = ()) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            result = func(*args, **kwargs)
            _logger.debug(
                "billing_engine_trace",
                extra={
                    "engine_name": engine_name,
                    "function": func.__qualname__,
                    "input_fingerprint": input_fingerprint(kwargs, fingerprint_fields),
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                },
            )
            return result

        return wrapper

    return decorator
