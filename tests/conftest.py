"""
Shared fixtures for the engine tests.
"""

from datetime import date
from decimal import Decimal

import pytest

from recon_engine.classification import Classifier, ClassifierModel
from recon_engine.config import Settings
from recon_engine.models import (
    BankTransaction,
    Direction,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    SourceRecord,
    SourceType,
)
from recon_engine.reconciliation import (
    AutonomousResolver,
    Matcher,
    ReconciliationBook,
    ResolutionJournal,
)


@pytest.fixture
def make_transaction():
    def _make(
        id="t1",
        day=date(2024, 3, 10),
        amount="-1500.00",
        description="Pagamento Fornecedor ABC",
        direction=Direction.DEBIT,
        source_account="acc-1",
    ):
        return BankTransaction(
            id=id,
            date=day,
            amount=Decimal(amount),
            description=description,
            direction=direction,
            source_account=source_account,
        )
    return _make


@pytest.fixture
def make_entry():
    def _make(
        id="e1",
        day=date(2024, 3, 10),
        amount="1500.00",
        description="Pagamento Fornecedor ABC 45",
        kind=EntryKind.EXPENSE,
        confidence=0.0,
        status=EntryStatus.UNCLASSIFIED,
        category=None,
    ):
        return LedgerEntry(
            id=id,
            date=day,
            amount=Decimal(amount),
            description=description,
            kind=kind,
            confidence=confidence,
            status=status,
            category=category,
        )
    return _make


@pytest.fixture
def make_source_record():
    def _make(
        id,
        source=SourceType.ERP,
        day=date(2024, 3, 10),
        amount="1000.00",
        description="Nota fiscal 123",
        key=None,
        currency="BRL",
        counterparty=None,
        category=None,
    ):
        return SourceRecord(
            id=id,
            source=source,
            date=day,
            amount=Decimal(amount),
            description=description,
            key=key,
            currency=currency,
            counterparty=counterparty,
            category=category,
        )
    return _make


@pytest.fixture
def model():
    return ClassifierModel.seeded()


@pytest.fixture
def classifier():
    return Classifier()


@pytest.fixture
def matcher():
    return Matcher()


@pytest.fixture
def book():
    return ReconciliationBook()


@pytest.fixture
def journal():
    return ResolutionJournal()


@pytest.fixture
def resolver(classifier, model):
    return AutonomousResolver(classifier, model)


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with no retry waits."""
    return Settings(
        _env_file=None,
        fetch_retry_attempts=2,
        fetch_retry_wait_seconds=0,
        fetch_retry_max_wait_seconds=0,
        reports_dir=tmp_path / "reports",
    )
