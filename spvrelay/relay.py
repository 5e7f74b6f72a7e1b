from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from .config import CONFIG, RelayConfig
from .errors import (
    DuplicateHeader,
    InvalidHeader,
    InvalidHeight,
    NotInitialized,
    PayoutError,
    ProofOfWorkNotMet,
    UnknownParent,
    ValidationError,
)
from .fees import AccountBook, FeeLedger, Payer
from .fork_choice import ForkChoiceResult, adopt_if_longer, verify_canonical_path
from .models import (
    ChainReorganized,
    Event,
    Header,
    HeaderSubmitted,
    MerkleProof,
    ProofVerified,
    StateClaim,
    event_from_dict,
    fingerprint_hex,
    is_u256,
    parse_fingerprint,
)
from .pow_hash import fingerprint_of, meets_threshold
from .proofs import ProofOracle, ProofVerifier, state_claim_fingerprint, stub_oracle, tx_claim_fingerprint
from .store import CanonicalIndex, HeaderStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitReceipt:
    fingerprint: int
    height: int
    events: tuple[Event, ...] = ()

    def __iter__(self) -> Iterator[int]:
        # Allows `fingerprint, height = relay.submit_header(...)`.
        return iter((self.fingerprint, self.height))


class Relay:
    """On-ledger SPV client for a foreign proof-of-work chain.

    Relayers submit source-chain headers, which are admitted after structural
    and proof-of-work checks and fed to the fork choice. Verifiers then ask
    whether a transaction or a storage entry was included under a canonical
    header with enough confirmations; a successful verification pays the
    verify fee to whoever relayed that header.

    Every public call either completes or leaves the relay unchanged.
    """

    def __init__(
        self,
        data_dir: str | Path | None = None,
        config: RelayConfig = CONFIG,
        payer: Payer | None = None,
        oracle: ProofOracle = stub_oracle,
    ) -> None:
        self.config = config
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.state_path: Path | None = None
        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.state_path = self.data_dir / self.config.state_file_name

        self.payer: Payer = payer if payer is not None else AccountBook()
        self.verifier = ProofVerifier(oracle=oracle, state_claims_use_tx_root=self.config.state_claims_use_tx_root)

        self.headers = HeaderStore()
        self.canonical = CanonicalIndex()
        self.fees = FeeLedger()
        self.events: list[Event] = []
        self.genesis_height: int | None = None
        self.best_height = 0
        self.difficulty_threshold = self.config.difficulty_threshold
        self.relay_fee = self.config.relay_fee
        self.verify_fee = self.config.verify_fee

    @property
    def initialized(self) -> bool:
        return self.genesis_height is not None

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise NotInitialized("Relay not initialized")

    @staticmethod
    def fingerprint_of(header: Header) -> int:
        return fingerprint_of(header)

    @staticmethod
    def _validate_header_fields(header: Header) -> None:
        if not isinstance(header, Header):
            raise InvalidHeader("Expected a Header")
        for name, value in zip(("height", "parent_fingerprint", "storage_root", "tx_root", "pow_nonce"), header.fields()):
            if not is_u256(value):
                raise InvalidHeader(f"Header field '{name}' must be an unsigned 256-bit integer")
        if header.is_empty():
            raise InvalidHeader("All-zero header is not a valid header")

    # -- initialization -------------------------------------------------

    def initialize(
        self,
        genesis_header: Header,
        difficulty: int | None = None,
        relay_fee: int | None = None,
        verify_fee: int | None = None,
        *,
        deployer: str,
    ) -> int:
        if self.initialized:
            raise ValidationError("Relay is already initialized")

        difficulty = self.config.difficulty_threshold if difficulty is None else difficulty
        relay_fee = self.config.relay_fee if relay_fee is None else relay_fee
        verify_fee = self.config.verify_fee if verify_fee is None else verify_fee

        self._validate_header_fields(genesis_header)
        if not is_u256(difficulty) or difficulty == 0:
            raise ValidationError("Difficulty threshold must be a positive 256-bit integer")
        if not isinstance(relay_fee, int) or relay_fee < 0:
            raise ValidationError("Relay fee must be >= 0")
        if not isinstance(verify_fee, int) or verify_fee < 0:
            raise ValidationError("Verify fee must be >= 0")
        if not deployer:
            raise ValidationError("Deployer account must be set")

        # The checkpoint is trusted as-is and skips admission checks.
        fingerprint = fingerprint_of(genesis_header)
        self.headers.insert(fingerprint, genesis_header)
        self.canonical.bind(genesis_header.height, fingerprint)
        self.fees.record_recipient(fingerprint, deployer)

        self.genesis_height = genesis_header.height
        self.best_height = genesis_header.height
        self.difficulty_threshold = difficulty
        self.relay_fee = relay_fee
        self.verify_fee = verify_fee
        self.save()

        logger.info(
            "Relay initialized at height %d with checkpoint %s (deployer %s)",
            genesis_header.height,
            fingerprint_hex(fingerprint),
            deployer,
        )
        return fingerprint

    # -- header admission -----------------------------------------------

    def submit_header(self, header: Header, submitter: str, paid_fee: int) -> SubmitReceipt:
        self._require_initialized()
        self.fees.require_fee(paid_fee, self.relay_fee, "relay")
        self._validate_header_fields(header)

        fingerprint = fingerprint_of(header)
        if fingerprint in self.headers:
            raise DuplicateHeader(f"Header {fingerprint_hex(fingerprint)} already submitted")

        parent = self.headers.get(header.parent_fingerprint)
        if parent is None:
            raise UnknownParent(f"Parent {fingerprint_hex(header.parent_fingerprint)} is not known")
        if header.height != parent.height + 1:
            raise InvalidHeight(f"Header height {header.height} does not follow parent height {parent.height}")
        if not meets_threshold(fingerprint, self.difficulty_threshold):
            raise ProofOfWorkNotMet(f"Header {fingerprint_hex(fingerprint)} does not satisfy difficulty threshold")

        assert self.genesis_height is not None
        old_best = self.best_height
        old_tip = self.canonical.get(old_best)
        # Fork choice plans its walk before touching the index, so nothing
        # is written until every check above has passed.
        result = adopt_if_longer(
            self.headers,
            self.canonical,
            fingerprint,
            header,
            best_height=self.best_height,
            genesis_height=self.genesis_height,
        )
        self.headers.insert(fingerprint, header)
        self.fees.record_recipient(fingerprint, submitter)
        self.fees.burn(paid_fee)
        self.best_height = result.best_height

        emitted: list[Event] = [HeaderSubmitted(fingerprint=fingerprint, height=header.height, submitter=submitter)]
        if result.rebound and old_tip is not None:
            emitted.append(
                ChainReorganized(
                    old_tip=old_tip,
                    new_tip=fingerprint,
                    fork_height=result.fork_height if result.fork_height is not None else old_best,
                    depth=result.depth,
                )
            )
        self.events.extend(emitted)
        self.save()

        self._log_admission(fingerprint, header, submitter, old_best, result)
        return SubmitReceipt(fingerprint=fingerprint, height=header.height, events=tuple(emitted))

    @staticmethod
    def _log_admission(
        fingerprint: int,
        header: Header,
        submitter: str,
        old_best: int,
        result: ForkChoiceResult,
    ) -> None:
        if not result.extended:
            logger.info(
                "Side-branch header %s at height %d stored (best height %d)",
                fingerprint_hex(fingerprint),
                header.height,
                old_best,
            )
            return
        logger.info("Header %s admitted at height %d by %s", fingerprint_hex(fingerprint), header.height, submitter)
        if result.rebound:
            logger.info(
                "Canonical chain reorganized: fork at height %s, %d height(s) rebound",
                result.fork_height,
                result.depth,
            )

    # -- queries ----------------------------------------------------------

    def is_header_known(self, fingerprint: int) -> bool:
        return fingerprint in self.headers

    def is_canonical(self, fingerprint: int) -> bool:
        return self.canonical.is_canonical(fingerprint, self.headers.get(fingerprint))

    def get_header(self, fingerprint: int) -> Header | None:
        return self.headers.get(fingerprint)

    def canonical_at(self, height: int) -> int | None:
        return self.canonical.get(height)

    def canonical_chain(self) -> list[int]:
        if not self.initialized:
            return []
        assert self.genesis_height is not None
        return [self.canonical.get(h) for h in range(self.genesis_height, self.best_height + 1)]  # type: ignore[misc]

    def confirmations(self, fingerprint: int) -> int | None:
        header = self.headers.get(fingerprint)
        if not self.canonical.is_canonical(fingerprint, header):
            return None
        assert header is not None
        return self.best_height - header.height

    def fee_recipient(self, fingerprint: int) -> str | None:
        return self.fees.recipient_of(fingerprint)

    @property
    def tip(self) -> int | None:
        return self.canonical.get(self.best_height) if self.initialized else None

    def verify_canonical_path(self) -> None:
        self._require_initialized()
        assert self.genesis_height is not None
        verify_canonical_path(self.headers, self.canonical, self.genesis_height, self.best_height)

    # -- proof verification -----------------------------------------------

    def verify_transaction_inclusion(
        self,
        tx_id: int,
        header_fingerprint: int,
        min_depth: int,
        proof: MerkleProof,
        verifier: str,
        paid_fee: int,
    ) -> bool:
        self._require_initialized()
        self.fees.require_fee(paid_fee, self.verify_fee, "verify")
        return self._verify_claim(
            tx_claim_fingerprint(tx_id),
            header_fingerprint,
            min_depth,
            proof,
            verifier,
            paid_fee,
            state_claim=False,
        )

    def verify_state_inclusion(
        self,
        claim: StateClaim,
        header_fingerprint: int,
        min_depth: int,
        proof: MerkleProof,
        verifier: str,
        paid_fee: int,
    ) -> bool:
        self._require_initialized()
        self.fees.require_fee(paid_fee, self.verify_fee, "verify")
        return self._verify_claim(
            state_claim_fingerprint(claim),
            header_fingerprint,
            min_depth,
            proof,
            verifier,
            paid_fee,
            state_claim=True,
        )

    def _verify_claim(
        self,
        claim_fingerprint: int,
        header_fingerprint: int,
        min_depth: int,
        proof: MerkleProof,
        verifier: str,
        paid_fee: int,
        state_claim: bool,
    ) -> bool:
        proven, reason = self.verifier.check(
            self.headers,
            self.canonical,
            self.best_height,
            claim_fingerprint,
            header_fingerprint,
            min_depth,
            proof,
            state_claim=state_claim,
        )
        if not proven:
            # The fee is kept even when nothing is proven.
            self.fees.retain(paid_fee)
            self.save()
            logger.debug(
                "Claim %s against %s not proven for %s: %s",
                fingerprint_hex(claim_fingerprint),
                fingerprint_hex(header_fingerprint),
                verifier,
                reason,
            )
            return False

        totals = self.fees.totals()
        event_count = len(self.events)
        try:
            recipient = self.fees.pay_out(header_fingerprint, paid_fee, self.payer)
            self.events.append(
                ProofVerified(
                    claim_fingerprint=claim_fingerprint,
                    header_fingerprint=header_fingerprint,
                    recipient=recipient,
                    amount=paid_fee,
                )
            )
        except PayoutError as exc:
            self.fees.restore_totals(totals)
            del self.events[event_count:]
            logger.warning(
                "Payout for header %s failed, verification aborted: %s",
                fingerprint_hex(header_fingerprint),
                exc,
            )
            raise

        self.save()
        logger.info(
            "Claim %s proven against %s; paid %d to %s",
            fingerprint_hex(claim_fingerprint),
            fingerprint_hex(header_fingerprint),
            paid_fee,
            recipient,
        )
        return True

    # -- persistence ------------------------------------------------------

    def exists(self) -> bool:
        return self.state_path is not None and self.state_path.exists()

    def snapshot(self) -> dict[str, Any]:
        return {
            "config": {
                "source_chain_id": self.config.source_chain_id,
                "state_claims_use_tx_root": self.config.state_claims_use_tx_root,
            },
            "genesis_height": self.genesis_height,
            "best_height": self.best_height,
            "difficulty_threshold": str(self.difficulty_threshold),
            "relay_fee": self.relay_fee,
            "verify_fee": self.verify_fee,
            "headers": {fingerprint_hex(fp): header.to_dict() for fp, header in self.headers},
            "canonical": {str(height): fingerprint_hex(fp) for height, fp in self.canonical.items()},
            "fees": self.fees.to_dict(),
            "events": [event.to_dict() for event in self.events] if self.config.persist_events else [],
        }

    def save(self) -> None:
        if self.state_path is None:
            return
        data = self.snapshot()
        temp_path = self.state_path.with_suffix(".json.tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, self.state_path)

    def _validate_state_config(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            raise ValidationError("State file has no config section")
        chain_id = raw.get("source_chain_id")
        if chain_id != self.config.source_chain_id:
            raise ValidationError(
                f"State config mismatch for 'source_chain_id': file={chain_id} runtime={self.config.source_chain_id}"
            )
        use_tx_root = raw.get("state_claims_use_tx_root")
        if bool(use_tx_root) != self.config.state_claims_use_tx_root:
            raise ValidationError(
                "State config mismatch for 'state_claims_use_tx_root': "
                f"file={use_tx_root} runtime={self.config.state_claims_use_tx_root}"
            )

    def load(self) -> None:
        if self.state_path is None:
            raise ValidationError("Relay has no data directory")
        if not self.state_path.exists():
            raise FileNotFoundError(f"State file not found: {self.state_path}")

        with self.state_path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"State file is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError("State file root must be an object")

        self._validate_state_config(data.get("config"))
        try:
            genesis_height = int(data["genesis_height"])
            best_height = int(data["best_height"])
            difficulty = int(data["difficulty_threshold"])
            relay_fee = int(data["relay_fee"])
            verify_fee = int(data["verify_fee"])

            headers = HeaderStore()
            for fp_hex, raw_header in data["headers"].items():
                fingerprint = parse_fingerprint(fp_hex)
                header = Header.from_dict(raw_header)
                self._validate_header_fields(header)
                if fingerprint_of(header) != fingerprint:
                    raise ValidationError(f"Stored fingerprint {fp_hex} does not match header contents")
                headers.insert(fingerprint, header)

            canonical = CanonicalIndex()
            for height, fp_hex in data["canonical"].items():
                canonical.bind(int(height), parse_fingerprint(fp_hex))

            fees = FeeLedger.from_dict(data["fees"])
            events = [event_from_dict(item) for item in data.get("events", [])]
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise ValidationError(f"Corrupt state file: {exc}") from exc

        self._validate_loaded_headers(headers, fees, genesis_height, difficulty)
        verify_canonical_path(headers, canonical, genesis_height, best_height)

        self.headers = headers
        self.canonical = canonical
        self.fees = fees
        self.events = events
        self.genesis_height = genesis_height
        self.best_height = best_height
        self.difficulty_threshold = difficulty
        self.relay_fee = relay_fee
        self.verify_fee = verify_fee
        logger.info("Relay state loaded: %d headers, best height %d", len(headers), best_height)

    @staticmethod
    def _validate_loaded_headers(headers: HeaderStore, fees: FeeLedger, genesis_height: int, difficulty: int) -> None:
        genesis_seen = 0
        for fingerprint, header in headers:
            if fees.recipient_of(fingerprint) is None:
                raise ValidationError(f"No fee recipient for stored header {fingerprint_hex(fingerprint)}")
            if header.height == genesis_height and headers.get(header.parent_fingerprint) is None:
                genesis_seen += 1
                continue
            parent = headers.get(header.parent_fingerprint)
            if parent is None:
                raise ValidationError(f"Stored header {fingerprint_hex(fingerprint)} has unknown parent")
            if header.height != parent.height + 1:
                raise ValidationError(f"Stored header {fingerprint_hex(fingerprint)} has invalid height")
            if not meets_threshold(fingerprint, difficulty):
                raise ValidationError(f"Stored header {fingerprint_hex(fingerprint)} does not satisfy difficulty")
        if genesis_seen != 1:
            raise ValidationError(f"Expected exactly one checkpoint header, found {genesis_seen}")

    # -- reporting --------------------------------------------------------

    def status(self) -> dict[str, Any]:
        tip = self.tip
        canonical_count = len(self.canonical)
        return {
            "source_chain_id": self.config.source_chain_id,
            "initialized": self.initialized,
            "genesis_height": self.genesis_height,
            "best_height": self.best_height if self.initialized else None,
            "tip_fingerprint": fingerprint_hex(tip) if tip is not None else None,
            "header_count": len(self.headers),
            "side_branch_headers": len(self.headers) - canonical_count,
            "difficulty_threshold": self.difficulty_threshold,
            "relay_fee": self.relay_fee,
            "verify_fee": self.verify_fee,
            "state_claim_root": "tx_root" if self.config.state_claims_use_tx_root else "storage_root",
            "fees": self.fees.totals(),
            "event_count": len(self.events),
        }
