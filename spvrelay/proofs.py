from __future__ import annotations

from typing import Callable

from .models import U256_LIMIT, Header, MerkleProof, StateClaim, sha256_int
from .store import CanonicalIndex, HeaderStore


ProofOracle = Callable[[int, MerkleProof, int], bool]


def stub_oracle(claim_fingerprint: int, proof: MerkleProof, root: int) -> bool:
    return bool(proof.verifies)


def tx_claim_fingerprint(tx_id: int) -> int:
    if isinstance(tx_id, bool) or not isinstance(tx_id, int) or not 0 <= tx_id < U256_LIMIT:
        raise ValueError("Transaction id must be an unsigned 256-bit integer")
    return tx_id


def state_claim_fingerprint(claim: StateClaim) -> int:
    return sha256_int(claim.claim_bytes())


class ProofVerifier:
    """Decides whether a claim is proven under a canonical, sufficiently buried header."""

    def __init__(self, oracle: ProofOracle = stub_oracle, state_claims_use_tx_root: bool = False) -> None:
        self.oracle = oracle
        self.state_claims_use_tx_root = state_claims_use_tx_root

    def reference_root(self, header: Header, state_claim: bool) -> int:
        if state_claim and not self.state_claims_use_tx_root:
            return header.storage_root
        return header.tx_root

    def check(
        self,
        store: HeaderStore,
        index: CanonicalIndex,
        best_height: int,
        claim_fingerprint: int,
        header_fingerprint: int,
        min_depth: int,
        proof: MerkleProof,
        state_claim: bool = False,
    ) -> tuple[bool, str]:
        """Return (proven, reason). Reasons are for logging only."""
        if min_depth < 0:
            raise ValueError("min_depth must be >= 0")

        header = store.get(header_fingerprint)
        if header is None:
            return False, "unknown header"
        if not index.is_canonical(header_fingerprint, header):
            return False, "header not canonical"
        if best_height - header.height < min_depth:
            return False, f"only {best_height - header.height} confirmations, need {min_depth}"

        root = self.reference_root(header, state_claim)
        if not self.oracle(claim_fingerprint, proof, root):
            return False, "merkle proof rejected"
        return True, "ok"
