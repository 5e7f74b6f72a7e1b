from dataclasses import dataclass


@dataclass(frozen=True)
class RelayConfig:
    # Identifies the foreign chain being tracked; a state file written for a
    # different source chain is refused on load.
    source_chain_id: str = "spv-source-main"
    # Constant PoW target. Header fingerprints must be strictly below it.
    # No retargeting: the relay trusts one target for its whole lifetime.
    difficulty_threshold: int = 2**240
    # Paid by relayers on every header submission and retired forever.
    relay_fee: int = 10
    # Paid by verifiers and forwarded to the submitter of the referenced header.
    verify_fee: int = 5
    state_file_name: str = "relay_state.json"
    # Legacy behaviour: check state claims against the transaction root.
    # Off by default, state claims are checked against the storage root.
    state_claims_use_tx_root: bool = False
    persist_events: bool = True


CONFIG = RelayConfig()
