"""
Fork choice for the relayed header chain.

The rule is longest chain by height. A header only moves the canonical tip
when it is strictly higher than the current best height, so among headers of
equal height the first one submitted keeps its place. When the new tip sits on
a different branch, the canonical bindings below it are rewritten back to the
fork point and no further.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import ValidationError
from .models import Header, fingerprint_hex
from .store import CanonicalIndex, HeaderStore


@dataclass(frozen=True)
class ForkChoiceResult:
    extended: bool
    best_height: int
    fork_height: int | None = None
    # (height, previously canonical fingerprint, newly canonical fingerprint)
    rebound: tuple[tuple[int, int, int], ...] = field(default_factory=tuple)

    @property
    def depth(self) -> int:
        return len(self.rebound)


def plan_rebinding(
    store: HeaderStore,
    index: CanonicalIndex,
    parent_fingerprint: int,
    genesis_height: int,
) -> tuple[list[tuple[int, int, int | None]], int]:
    """Walk parent links from parent_fingerprint until a canonical header is met.

    Returns the (height, fingerprint, previous binding) triples to apply and the
    height of the canonical ancestor the walk converged on.
    """
    plan: list[tuple[int, int, int | None]] = []
    cursor = parent_fingerprint
    while True:
        header = store.get(cursor)
        if header is None:
            raise ValidationError(f"Broken parent link at {fingerprint_hex(cursor)}")
        if header.height < genesis_height:
            raise ValidationError(f"Walk passed below genesis height {genesis_height}")
        current = index.get(header.height)
        if current == cursor:
            return plan, header.height
        plan.append((header.height, cursor, current))
        cursor = header.parent_fingerprint


def adopt_if_longer(
    store: HeaderStore,
    index: CanonicalIndex,
    fingerprint: int,
    header: Header,
    best_height: int,
    genesis_height: int,
) -> ForkChoiceResult:
    if header.height <= best_height:
        return ForkChoiceResult(extended=False, best_height=best_height)

    # Plan first so a broken link leaves the index untouched.
    plan, fork_height = plan_rebinding(store, index, header.parent_fingerprint, genesis_height)

    index.bind(header.height, fingerprint)
    rebound: list[tuple[int, int, int]] = []
    for height, new_fp, old_fp in plan:
        index.bind(height, new_fp)
        if old_fp is not None:
            rebound.append((height, old_fp, new_fp))

    rebound.sort()
    return ForkChoiceResult(
        extended=True,
        best_height=header.height,
        fork_height=fork_height,
        rebound=tuple(rebound),
    )


def verify_canonical_path(
    store: HeaderStore,
    index: CanonicalIndex,
    genesis_height: int,
    best_height: int,
) -> None:
    """Raise ValidationError unless genesis..best forms one unbroken parent-linked path."""
    previous_fp: int | None = None
    for height in range(genesis_height, best_height + 1):
        fingerprint = index.get(height)
        if fingerprint is None:
            raise ValidationError(f"No canonical header bound at height {height}")
        header = store.get(fingerprint)
        if header is None:
            raise ValidationError(f"Canonical header at height {height} is not stored")
        if header.height != height:
            raise ValidationError(f"Canonical header at height {height} claims height {header.height}")
        if previous_fp is not None and header.parent_fingerprint != previous_fp:
            raise ValidationError(f"Canonical path broken at height {height}")
        previous_fp = fingerprint

    for height, _fingerprint in index.items():
        if height < genesis_height or height > best_height:
            raise ValidationError(f"Canonical binding outside [{genesis_height}, {best_height}]: {height}")
