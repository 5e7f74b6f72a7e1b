from __future__ import annotations

from collections import defaultdict
from typing import Any, Iterable, Protocol

from .errors import InsufficientFee, PayoutError, ValidationError
from .models import fingerprint_hex, parse_fingerprint


class Payer(Protocol):
    def pay(self, amount: int, recipient: str) -> None: ...


class AccountBook:
    """In-memory payer that credits recipients; listed accounts refuse incoming funds."""

    def __init__(self, rejecting: Iterable[str] = ()) -> None:
        self.balances: dict[str, int] = defaultdict(int)
        self.rejecting: set[str] = set(rejecting)

    def pay(self, amount: int, recipient: str) -> None:
        if amount < 0:
            raise ValueError("Payout amount must be >= 0")
        if recipient in self.rejecting:
            raise PayoutError(f"Account {recipient} cannot receive funds")
        self.balances[recipient] += amount

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)


class FeeLedger:
    def __init__(self) -> None:
        self.recipients: dict[int, str] = {}
        self.burned = 0
        self.retained = 0
        self.paid_out = 0

    @staticmethod
    def require_fee(paid: int, required: int, kind: str) -> None:
        if isinstance(paid, bool) or not isinstance(paid, int):
            raise InsufficientFee(f"Invalid {kind} fee: {paid!r} is not an integer amount")
        if paid < 0 or paid < required:
            raise InsufficientFee(f"Insufficient {kind} fee: paid {paid}, required {required}")

    def record_recipient(self, fingerprint: int, account: str) -> None:
        if fingerprint in self.recipients:
            raise ValidationError(f"Fee recipient already recorded for {fingerprint_hex(fingerprint)}")
        self.recipients[fingerprint] = account

    def recipient_of(self, fingerprint: int) -> str | None:
        return self.recipients.get(fingerprint)

    def burn(self, amount: int) -> None:
        self.burned += amount

    def retain(self, amount: int) -> None:
        self.retained += amount

    def pay_out(self, fingerprint: int, amount: int, payer: Payer) -> str:
        recipient = self.recipients.get(fingerprint)
        if recipient is None:
            raise PayoutError(f"No fee recipient on file for {fingerprint_hex(fingerprint)}")
        payer.pay(amount, recipient)
        self.paid_out += amount
        return recipient

    def totals(self) -> dict[str, int]:
        return {"burned": self.burned, "retained": self.retained, "paid_out": self.paid_out}

    def restore_totals(self, totals: dict[str, int]) -> None:
        self.burned = int(totals["burned"])
        self.retained = int(totals["retained"])
        self.paid_out = int(totals["paid_out"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipients": {fingerprint_hex(fp): account for fp, account in self.recipients.items()},
            "totals": self.totals(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeeLedger":
        ledger = cls()
        for fp_hex, account in data.get("recipients", {}).items():
            ledger.record_recipient(parse_fingerprint(fp_hex), str(account))
        ledger.restore_totals(data.get("totals", {"burned": 0, "retained": 0, "paid_out": 0}))
        return ledger
