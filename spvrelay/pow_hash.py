from __future__ import annotations

from dataclasses import replace
from typing import Callable

from .models import U256_LIMIT, Header, sha256_int


def fingerprint_of(header: Header) -> int:
    return sha256_int(header.header_bytes())


def meets_threshold(fingerprint: int, threshold: int) -> bool:
    return fingerprint < threshold


def grind_nonce(
    header: Header,
    threshold: int,
    max_attempts: int | None = None,
    stop_requested: Callable[[], bool] | None = None,
) -> Header:
    """Search pow_nonce values, starting at header.pow_nonce, until the fingerprint meets threshold.

    Raises RuntimeError if max_attempts is exhausted or stop_requested() turns true.
    """
    if threshold <= 0:
        raise ValueError("Threshold must be positive")

    candidate = header
    attempts = 0
    while True:
        if stop_requested and stop_requested():
            raise RuntimeError("Nonce search interrupted")
        if meets_threshold(fingerprint_of(candidate), threshold):
            return candidate
        attempts += 1
        if max_attempts is not None and attempts >= max_attempts:
            raise RuntimeError(f"No nonce found within {max_attempts} attempts")
        candidate = replace(candidate, pow_nonce=(candidate.pow_nonce + 1) % U256_LIMIT)
