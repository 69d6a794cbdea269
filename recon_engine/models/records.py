"""Record models consumed and produced by the reconciliation engine."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Iterable

from ..exceptions import InvalidInput
from .enums import Direction, EntryKind, EntryStatus, SourceType


def to_decimal(value: Any) -> Decimal:
    """Coerce an amount to Decimal. Floats go through str() to keep their printed value."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidInput(f"Amount must be numeric, got {value!r}")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidInput(f"Amount is not a number: {value!r}") from e


def to_date(value: Any) -> date:
    """Coerce ISO strings and datetimes to a plain date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise InvalidInput(f"Invalid date: {value!r}") from e


@dataclass(frozen=True)
class BankTransaction:
    """
    Bank transaction as imported by the banking collaborator.
    Immutable: the core never changes bank truth.
    """
    id: str
    date: date
    amount: Decimal  # Signed: negative for money out
    description: str = ""
    direction: Direction = Direction.DEBIT
    source_account: str = ""

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "date", to_date(self.date))
        object.__setattr__(self, "direction", Direction(self.direction))

    @property
    def magnitude(self) -> Decimal:
        return abs(self.amount)

    def problems(self) -> List[str]:
        errors = []
        if not self.id or not str(self.id).strip():
            errors.append("transaction id is empty")
        if not self.amount.is_finite():
            errors.append(f"transaction {self.id}: amount is not finite")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "amount": str(self.amount),
            "description": self.description,
            "direction": self.direction.value,
            "source_account": self.source_account,
        }


@dataclass
class LedgerEntry:
    """
    Accounting entry. The amount is a magnitude; the sign is conveyed by kind.
    Mutated by the classifier (category, confidence, status) and the resolver
    (amount corrections, status).
    """
    id: str
    date: date
    amount: Decimal
    description: str = ""
    kind: EntryKind = EntryKind.EXPENSE
    category: Optional[str] = None
    confidence: float = 0.0
    status: EntryStatus = EntryStatus.UNCLASSIFIED

    # Last automatic suggestion, kept for precision statistics
    suggested_category: Optional[str] = None

    counterparty: Optional[str] = None
    client: Optional[str] = None

    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.date = to_date(self.date)
        self.kind = EntryKind(self.kind)
        self.status = EntryStatus(self.status)

    @property
    def magnitude(self) -> Decimal:
        return abs(self.amount)

    @property
    def is_active(self) -> bool:
        return self.status != EntryStatus.IGNORED

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def problems(self) -> List[str]:
        errors = []
        if not self.id or not str(self.id).strip():
            errors.append("entry id is empty")
        if not self.amount.is_finite():
            errors.append(f"entry {self.id}: amount is not finite")
        if not 0.0 <= self.confidence <= 1.0:
            errors.append(f"entry {self.id}: confidence {self.confidence} outside [0, 1]")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "amount": str(self.amount),
            "description": self.description,
            "kind": self.kind.value,
            "category": self.category,
            "confidence": self.confidence,
            "status": self.status.value,
            "suggested_category": self.suggested_category,
            "counterparty": self.counterparty,
            "client": self.client,
        }


@dataclass(frozen=True)
class SourceRecord:
    """
    A record pulled from one ingestion source (OCR, ERP, open banking, fiscal API).
    `key` is an exact join key such as an invoice number.
    """
    id: str
    source: SourceType
    date: date
    amount: Decimal
    description: str = ""
    key: Optional[str] = None
    currency: str = "BRL"
    counterparty: Optional[str] = None
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "date", to_date(self.date))
        object.__setattr__(self, "source", SourceType(self.source))

    def problems(self) -> List[str]:
        errors = []
        if not self.id or not str(self.id).strip():
            errors.append(f"{self.source.value} record id is empty")
        if not self.amount.is_finite():
            errors.append(f"{self.source.value} record {self.id}: amount is not finite")
        return errors


def ensure_valid(
    transactions: Iterable[BankTransaction] = (),
    entries: Iterable[LedgerEntry] = (),
) -> None:
    """
    Reject a malformed batch before any processing.

    Raises:
        InvalidInput: with every problem found listed in `details`
    """
    errors: List[str] = []

    seen = set()
    for txn in transactions:
        errors.extend(txn.problems())
        if txn.id in seen:
            errors.append(f"duplicate transaction id {txn.id}")
        seen.add(txn.id)

    seen = set()
    for entry in entries:
        errors.extend(entry.problems())
        if entry.id in seen:
            errors.append(f"duplicate entry id {entry.id}")
        seen.add(entry.id)

    if errors:
        raise InvalidInput(
            f"Batch rejected: {len(errors)} invalid record(s)",
            details=errors,
        )
