"""
FastAPI application exposing the reconciliation engine.

State is kept in memory: one classifier model, one reconciliation book,
one resolution journal, one pattern learner, the transactions seen so far
and the results of past runs.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .classification import Classifier, ClassifierModel
from .config import get_settings
from .exceptions import (
    ConcurrencyConflict,
    ConfigurationConflict,
    InvalidInput,
    SourceUnavailable,
)
from .logging_config import setup_logging
from .models import (
    BankTransaction,
    Direction,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    PipelineBatch,
    PipelineResult,
    PipelineScope,
    ResolutionConfig,
    SourceRecord,
    SourceType,
)
from .reconciliation import (
    Matcher,
    PatternLearner,
    ProcessingPipeline,
    ReconciliationBook,
    ResolutionJournal,
    ScopeGuard,
)
from .repositories import (
    InMemoryBankingGateway,
    InMemoryLedgerRepository,
    InMemorySourceRecordProvider,
)
from .review import InMemoryReviewQueue

logger = structlog.get_logger()
settings = get_settings()

# In-memory storage
model = ClassifierModel.seeded()
classifier = Classifier()
ledger = InMemoryLedgerRepository()
book = ReconciliationBook()
journal = ResolutionJournal()
patterns = PatternLearner()
matcher = Matcher()
guard = ScopeGuard()
review_queue = InMemoryReviewQueue()
results: dict[str, PipelineResult] = {}
transactions: dict[str, BankTransaction] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging(settings)
    logger.info("Starting reconciliation engine API", env=settings.app_env)
    yield
    logger.info("Shutting down reconciliation engine API")


app = FastAPI(
    title="Reconciliation Engine",
    description="Classification, matching, cross-validation and autonomous resolution",
    version="1.0.0",
    lifespan=lifespan,
)


# Error mapping
def _error_response(status_code: int, exc: Exception, details: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": str(exc), "details": details},
    )


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return _error_response(400, exc, exc.details)


@app.exception_handler(ConfigurationConflict)
async def configuration_conflict_handler(request: Request, exc: ConfigurationConflict):
    return _error_response(400, exc, exc.details)


@app.exception_handler(ConcurrencyConflict)
async def concurrency_conflict_handler(request: Request, exc: ConcurrencyConflict):
    return _error_response(409, exc)


@app.exception_handler(SourceUnavailable)
async def source_unavailable_handler(request: Request, exc: SourceUnavailable):
    return _error_response(503, exc, {"source": exc.source})


# Request/Response models
class TransactionIn(BaseModel):
    id: str
    date: date
    amount: Decimal
    description: str = ""
    direction: Direction = Direction.DEBIT
    source_account: str = ""


class EntryIn(BaseModel):
    id: str
    date: date
    amount: Decimal
    description: str = ""
    kind: EntryKind = EntryKind.EXPENSE
    category: Optional[str] = None
    confidence: float = 0.0
    status: EntryStatus = EntryStatus.UNCLASSIFIED
    counterparty: Optional[str] = None


class SourceRecordIn(BaseModel):
    id: str
    date: date
    amount: Decimal
    description: str = ""
    key: Optional[str] = None
    currency: str = "BRL"
    counterparty: Optional[str] = None
    category: Optional[str] = None


class RunRequest(BaseModel):
    client: str
    account: str = ""
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    transactions: List[TransactionIn] = Field(default_factory=list)
    entries: List[EntryIn] = Field(default_factory=list)
    source_records: Dict[SourceType, List[SourceRecordIn]] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    id: str
    status: str
    stages: Dict[str, str]
    match: Optional[Dict[str, int]] = None
    resolution: Optional[Dict[str, int]] = None
    review_items: int
    warnings: List[str]
    errors: List[str]


class ReclassifyRequest(BaseModel):
    entry_id: str
    category: str


class ReconcileRequest(BaseModel):
    transaction_id: str
    entry_id: str


def _period(request: RunRequest) -> tuple[date, date]:
    dates = [t.date for t in request.transactions] + [e.date for e in request.entries]
    start = request.period_start or (min(dates) if dates else date.today())
    end = request.period_end or (max(dates) if dates else start)
    return start, end


def _job_response(result: PipelineResult) -> JobResponse:
    return JobResponse(
        id=result.run_id,
        status=result.status.value,
        stages={s.stage.value: s.status.value for s in result.stages},
        match=result.match_result.summary() if result.match_result else None,
        resolution=result.outcome.counts if result.outcome else None,
        review_items=len(result.review_items),
        warnings=result.warnings,
        errors=result.errors,
    )


# API Endpoints
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/reconciliation/run", response_model=JobResponse)
async def run_reconciliation(request: RunRequest):
    """Run the pipeline over the posted batch."""
    config = ResolutionConfig.from_mapping(request.config)
    period_start, period_end = _period(request)

    batch_transactions = [BankTransaction(**t.model_dump()) for t in request.transactions]
    entries = [
        LedgerEntry(**e.model_dump(), client=request.client)
        for e in request.entries
    ]
    source_records = {
        source: [SourceRecord(source=source, **r.model_dump()) for r in records]
        for source, records in request.source_records.items()
    }

    scope = PipelineScope(
        client=request.client,
        account=request.account,
        period_start=period_start,
        period_end=period_end,
        sources=tuple(source_records),
    )

    pipeline = ProcessingPipeline(
        ledger=ledger,
        banking=InMemoryBankingGateway(batch_transactions),
        sources=InMemorySourceRecordProvider(source_records),
        review_queue=review_queue,
        classifier=classifier,
        model=model,
        settings=settings,
        book=book,
        journal=journal,
        guard=guard,
        patterns=patterns,
    )

    batch = PipelineBatch(
        scope=scope,
        transactions=batch_transactions,
        entries=entries,
        source_records=source_records,
    )
    result = await pipeline.run(batch, config)
    results[result.run_id] = result
    transactions.update((t.id, t) for t in batch_transactions)

    logger.info("Reconciliation job finished", job_id=result.run_id, status=result.status.value)
    return _job_response(result)


@app.get("/api/reconciliation/{job_id}/result")
async def get_result(job_id: str):
    """Full result of a finished run."""
    if job_id not in results:
        raise HTTPException(404, "Job not found")
    return results[job_id].to_dict()


@app.post("/api/actions/{action_id}/undo")
async def undo_action(action_id: str):
    """Revert a single autonomous action."""
    if journal.get(action_id) is None:
        raise HTTPException(404, "Action not found")

    action = journal.undo(action_id, ledger.entries.values(), book)
    if action.entry_id and action.entry_id in ledger.entries:
        await ledger.persist_ledger_entry(ledger.entries[action.entry_id])
    return action.to_dict()


@app.post("/api/classifier/reclassify")
async def reclassify_entry(request: ReclassifyRequest):
    """Manual reclassification, used as a training signal."""
    entry = ledger.entries.get(request.entry_id)
    if entry is None:
        raise HTTPException(404, "Entry not found")

    trained = classifier.reclassify(entry, request.category, model)
    await ledger.persist_ledger_entry(entry)
    return {"entry": entry.to_dict(), "trained": trained}


@app.get("/api/classifier/statistics")
async def classifier_statistics():
    """Trained example counts and estimated precision."""
    return classifier.statistics(model).to_dict()


@app.post("/api/reconciliation/reconcile")
async def reconcile_pair(request: ReconcileRequest):
    """Manual pairing, learned by the pattern learner as an accepted pairing."""
    transaction = transactions.get(request.transaction_id)
    entry = ledger.entries.get(request.entry_id)
    if transaction is None or entry is None:
        raise HTTPException(404, "Transaction or entry not found")

    record = matcher.reconcile_manually(transaction, entry, book)
    learning = patterns.learn(accepted=[(transaction, entry)])
    await ledger.persist_ledger_entry(entry)
    await ledger.persist_reconciliation_record(record)
    return {"record": record.to_dict(), "learned_mappings": [m.id for m in learning.learned]}


@app.post("/api/records/{record_id}/unreconcile")
async def unreconcile_record(record_id: str):
    """Undo a pairing, counted as a failure of the mappings it fits."""
    record = book.get(record_id)
    if record is None:
        raise HTTPException(404, "Record not found")

    entry = ledger.entries.get(record.entry_id)
    record = matcher.unreconcile(record_id, book, entry)
    transaction = transactions.get(record.transaction_id)
    if transaction is not None and entry is not None:
        patterns.learn(undone=[(transaction, entry)])
    if entry is not None:
        await ledger.persist_ledger_entry(entry)
    await ledger.persist_reconciliation_record(record)
    return record.to_dict()


@app.get("/api/patterns")
async def pattern_statistics():
    """Learned mappings and recurring descriptions among the transactions seen so far."""
    stats = patterns.statistics()
    stats["recurring"] = [p.to_dict() for p in patterns.detect(transactions.values())]
    return stats
