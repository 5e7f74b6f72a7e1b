from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any


U256_LIMIT = 1 << 256


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def sha256_int(data: bytes) -> int:
    return int.from_bytes(hashlib.sha256(data).digest(), "big")


def fingerprint_hex(value: int) -> str:
    return f"{value:064x}"


def parse_fingerprint(text: str) -> int:
    value = int(text, 16)
    if not 0 <= value < U256_LIMIT:
        raise ValueError(f"Fingerprint out of range: {text}")
    return value


def is_u256(value: Any) -> bool:
    # bool is an int subclass but never a valid field value.
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < U256_LIMIT


@dataclass(frozen=True)
class Header:
    height: int
    parent_fingerprint: int
    storage_root: int
    tx_root: int
    pow_nonce: int

    def fields(self) -> tuple[int, int, int, int, int]:
        return (self.height, self.parent_fingerprint, self.storage_root, self.tx_root, self.pow_nonce)

    def is_empty(self) -> bool:
        return not any(self.fields())

    def header_dict(self) -> dict[str, Any]:
        return {
            "height": self.height,
            "parent_fingerprint": str(self.parent_fingerprint),
            "storage_root": str(self.storage_root),
            "tx_root": str(self.tx_root),
            "pow_nonce": str(self.pow_nonce),
        }

    def header_bytes(self) -> bytes:
        return canonical_json(self.header_dict()).encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        return self.header_dict()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Header":
        return cls(
            height=int(data["height"]),
            parent_fingerprint=int(data["parent_fingerprint"]),
            storage_root=int(data["storage_root"]),
            tx_root=int(data["tx_root"]),
            pow_nonce=int(data["pow_nonce"]),
        )


@dataclass(frozen=True)
class StateClaim:
    """A claim that `key` holds `value` in the source chain's key/value storage."""

    key: int
    value: int

    def claim_bytes(self) -> bytes:
        return canonical_json({"key": str(self.key), "value": str(self.value)}).encode("utf-8")


@dataclass(frozen=True)
class MerkleProof:
    """Opaque inclusion proof.

    The relay never looks inside a proof; it only hands it to the configured
    oracle. `verifies` is what the bundled stub oracle reports.
    """

    verifies: bool


@dataclass(frozen=True)
class HeaderSubmitted:
    fingerprint: int
    height: int
    submitter: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "HeaderSubmitted",
            "fingerprint": fingerprint_hex(self.fingerprint),
            "height": self.height,
            "submitter": self.submitter,
        }


@dataclass(frozen=True)
class ChainReorganized:
    old_tip: int
    new_tip: int
    fork_height: int
    depth: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "ChainReorganized",
            "old_tip": fingerprint_hex(self.old_tip),
            "new_tip": fingerprint_hex(self.new_tip),
            "fork_height": self.fork_height,
            "depth": self.depth,
        }


@dataclass(frozen=True)
class ProofVerified:
    claim_fingerprint: int
    header_fingerprint: int
    recipient: str
    amount: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "ProofVerified",
            "claim_fingerprint": fingerprint_hex(self.claim_fingerprint),
            "header_fingerprint": fingerprint_hex(self.header_fingerprint),
            "recipient": self.recipient,
            "amount": self.amount,
        }


Event = HeaderSubmitted | ChainReorganized | ProofVerified


def event_from_dict(data: dict[str, Any]) -> Event:
    kind = data.get("event")
    if kind == "HeaderSubmitted":
        return HeaderSubmitted(
            fingerprint=parse_fingerprint(data["fingerprint"]),
            height=int(data["height"]),
            submitter=str(data["submitter"]),
        )
    if kind == "ChainReorganized":
        return ChainReorganized(
            old_tip=parse_fingerprint(data["old_tip"]),
            new_tip=parse_fingerprint(data["new_tip"]),
            fork_height=int(data["fork_height"]),
            depth=int(data["depth"]),
        )
    if kind == "ProofVerified":
        return ProofVerified(
            claim_fingerprint=parse_fingerprint(data["claim_fingerprint"]),
            header_fingerprint=parse_fingerprint(data["header_fingerprint"]),
            recipient=str(data["recipient"]),
            amount=int(data["amount"]),
        )
    raise ValueError(f"Unknown event kind: {kind!r}")
