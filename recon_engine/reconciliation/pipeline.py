"""
Processing Pipeline - asynchronous batch orchestrator.

Runs one batch through the stages:
1. Classify (unclassified entries)
2. Match (transactions against entries, then learned mappings)
3. Cross-validate (independently fetched source records)
4. Resolve (autonomous resolution)
5. Persist (entries and records through the ledger repository)
6. Notify (review queue)

A failing stage becomes a failed StageReport; the output of earlier stages
is kept and stages that depend on the failed one are skipped. A cancellation
event is checked before each stage, so the stage already running always
completes. Runs over overlapping scopes are rejected.
"""

import asyncio
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..audit import AuditLogger
from ..classification import Classifier, ClassifierModel
from ..config import Settings, get_settings
from ..exceptions import ConcurrencyConflict, ConfigurationConflict, SourceUnavailable
from ..models import (
    AuditAction,
    MatcherConfig,
    CrossValidationConfig,
    MatchResult,
    PipelineBatch,
    PipelineResult,
    PipelineScope,
    PipelineStatus,
    ReconciliationRecord,
    ResolutionConfig,
    ReviewItem,
    ReviewReason,
    SourceRecord,
    SourceType,
    StageName,
    StageReport,
    StageStatus,
    ValidationStatus,
    ensure_valid,
)
from ..repositories import BankingGateway, LedgerRepository, ReviewQueue, SourceRecordProvider
from .book import ReconciliationBook
from .cross_validation import CrossValidator
from .journal import ResolutionJournal
from .matcher import Matcher
from .patterns import PatternLearner
from .resolver import AutonomousResolver, audit_entries_for

logger = structlog.get_logger()

STAGE_ORDER = (
    StageName.CLASSIFY,
    StageName.MATCH,
    StageName.CROSS_VALIDATE,
    StageName.RESOLVE,
    StageName.PERSIST,
    StageName.NOTIFY,
)

# A stage is skipped when a stage it depends on did not complete
STAGE_DEPENDENCIES: Dict[StageName, Tuple[StageName, ...]] = {
    StageName.CLASSIFY: (),
    StageName.MATCH: (),
    StageName.CROSS_VALIDATE: (),
    StageName.RESOLVE: (StageName.MATCH,),
    StageName.PERSIST: (StageName.RESOLVE,),
    StageName.NOTIFY: (),
}

RETRYABLE_FETCH_ERRORS = (SourceUnavailable, ConnectionError, TimeoutError)

_DONE = {StageStatus.COMPLETED, StageStatus.PARTIAL}


def _fold_suggestions(match_result: MatchResult, suggested: List[ReconciliationRecord]) -> None:
    """Move suggested pairings from the unmatched lists into matched."""
    if not suggested:
        return
    transaction_ids = {r.transaction_id for r in suggested}
    entry_ids = {r.entry_id for r in suggested}
    match_result.matched.extend(suggested)
    match_result.unmatched_transactions = [
        t for t in match_result.unmatched_transactions if t.id not in transaction_ids
    ]
    match_result.unmatched_entries = [
        e for e in match_result.unmatched_entries if e.id not in entry_ids
    ]


class ScopeGuard:
    """Registry of running scopes. Overlapping scopes are rejected."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, PipelineScope] = {}

    def acquire(self, run_id: str, scope: PipelineScope) -> None:
        with self._lock:
            for other_run, other in self._active.items():
                if scope.overlaps(other):
                    raise ConcurrencyConflict(
                        f"Scope {scope.client}/{scope.account} "
                        f"{scope.period_start}..{scope.period_end} overlaps run {other_run}",
                        scope=scope,
                    )
            self._active[run_id] = scope

    def release(self, run_id: str) -> None:
        with self._lock:
            self._active.pop(run_id, None)

    @contextmanager
    def hold(self, run_id: str, scope: PipelineScope):
        self.acquire(run_id, scope)
        try:
            yield
        finally:
            self.release(run_id)

    @property
    def active(self) -> List[PipelineScope]:
        with self._lock:
            return list(self._active.values())


class _RunContext:
    """Mutable state shared by the stages of one run."""

    def __init__(self, batch: PipelineBatch, config: ResolutionConfig, result: PipelineResult):
        self.batch = batch
        self.config = config
        self.result = result
        self.audit = AuditLogger(result.run_id)
        self.review_items: Dict[str, ReviewItem] = {}

    def review(self, item: ReviewItem) -> None:
        self.review_items.setdefault(item.id, item)


class ProcessingPipeline:
    """
    Cancellable orchestrator over the engine components and the collaborators.

    The reconciliation book, the resolution journal and the pattern learner
    are kept across runs so that resolutions stay idempotent and individually
    reversible and mappings keep learning.
    """

    def __init__(
        self,
        ledger: LedgerRepository,
        banking: BankingGateway,
        sources: SourceRecordProvider,
        review_queue: ReviewQueue,
        classifier: Optional[Classifier] = None,
        model: Optional[ClassifierModel] = None,
        settings: Optional[Settings] = None,
        matcher_config: Optional[MatcherConfig] = None,
        cross_validation_config: Optional[CrossValidationConfig] = None,
        book: Optional[ReconciliationBook] = None,
        journal: Optional[ResolutionJournal] = None,
        guard: Optional[ScopeGuard] = None,
        patterns: Optional[PatternLearner] = None,
    ):
        self.ledger = ledger
        self.banking = banking
        self.sources = sources
        self.review_queue = review_queue
        self.classifier = classifier or Classifier()
        self.model = model if model is not None else ClassifierModel.seeded()
        self.settings = settings or get_settings()
        self.matcher = Matcher(matcher_config)
        self.cross_validator = CrossValidator(cross_validation_config)
        self.resolver = AutonomousResolver(self.classifier, self.model)
        self.book = book if book is not None else ReconciliationBook()
        self.journal = journal if journal is not None else ResolutionJournal()
        self.guard = guard or ScopeGuard()
        self.patterns = patterns if patterns is not None else PatternLearner()

        self._stages: Dict[StageName, Callable[[_RunContext], Awaitable[StageReport]]] = {
            StageName.CLASSIFY: self._classify,
            StageName.MATCH: self._match,
            StageName.CROSS_VALIDATE: self._cross_validate,
            StageName.RESOLVE: self._resolve,
            StageName.PERSIST: self._persist,
            StageName.NOTIFY: self._notify,
        }

    async def run(
        self,
        batch: PipelineBatch,
        config: Union[ResolutionConfig, Mapping, None] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """
        Run a batch through every stage.

        Raises:
            ConfigurationConflict: invalid configuration, before any stage
            InvalidInput: malformed batch, before any stage
            ConcurrencyConflict: another run holds an overlapping scope
        """
        config = self._resolution_config(config)
        ensure_valid(batch.transactions, batch.entries)

        result = PipelineResult(scope=batch.scope)
        with self.guard.hold(result.run_id, batch.scope):
            return await self._execute(batch, config, result, cancel_event)

    async def run_scope(
        self,
        scope: PipelineScope,
        config: Union[ResolutionConfig, Mapping, None] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """
        Fetch the scope's transactions and entries, then run them.

        Raises:
            SourceUnavailable: if the banking or ledger fetch fails after retries
        """
        config = self._resolution_config(config)
        result = PipelineResult(scope=scope)

        with self.guard.hold(result.run_id, scope):
            transactions, entries = await asyncio.gather(
                self._with_retry(
                    "banking",
                    partial(self.banking.fetch_transactions, scope.account, scope.period_start, scope.period_end),
                ),
                self._with_retry(
                    "ledger",
                    partial(self.ledger.fetch_ledger_entries, scope.client, scope.period_start, scope.period_end),
                ),
            )
            batch = PipelineBatch(scope=scope, transactions=list(transactions), entries=list(entries))
            ensure_valid(batch.transactions, batch.entries)
            return await self._execute(batch, config, result, cancel_event)

    async def _execute(
        self,
        batch: PipelineBatch,
        config: ResolutionConfig,
        result: PipelineResult,
        cancel_event: Optional[asyncio.Event],
    ) -> PipelineResult:
        ctx = _RunContext(batch, config, result)
        result.status = PipelineStatus.PROCESSING

        ctx.audit.record(
            AuditAction.BATCH_RECEIVED,
            f"Received {len(batch.transactions)} transactions and {len(batch.entries)} entries",
            details={"scope": batch.scope.to_dict()},
        )
        logger.info(
            "Starting pipeline run",
            run_id=result.run_id,
            client=batch.scope.client,
            account=batch.scope.account,
            transactions=len(batch.transactions),
            entries=len(batch.entries),
        )

        reports: Dict[StageName, StageReport] = {}
        cancelled = False

        for stage in STAGE_ORDER:
            if cancelled or (cancel_event is not None and cancel_event.is_set()):
                cancelled = True
                reports[stage] = StageReport(stage=stage, status=StageStatus.CANCELLED, message="Run cancelled")
                continue

            blocked = [d for d in STAGE_DEPENDENCIES[stage] if reports[d].status not in _DONE]
            if blocked:
                reports[stage] = StageReport(
                    stage=stage,
                    status=StageStatus.SKIPPED,
                    message=f"skipped: {', '.join(d.value for d in blocked)} did not complete",
                )
                continue

            reports[stage] = await self._run_stage(stage, ctx)

        result.stages = [reports[s] for s in STAGE_ORDER]
        result.review_items = list(ctx.review_items.values())
        result.audit_log = list(ctx.audit.entries)
        result.status = self._overall_status(result.stages, cancelled)
        result.completed_at = datetime.now(timezone.utc)

        logger.info(
            "Pipeline run finished",
            run_id=result.run_id,
            status=result.status.value,
            stages={r.stage.value: r.status.value for r in result.stages},
            review_items=len(result.review_items),
        )
        return result

    async def _run_stage(self, stage: StageName, ctx: _RunContext) -> StageReport:
        started = time.perf_counter()
        try:
            report = await self._stages[stage](ctx)
        except Exception as e:
            logger.exception("Pipeline stage failed", run_id=ctx.result.run_id, stage=stage.value)
            ctx.audit.record(
                AuditAction.STAGE_FAILED,
                f"Stage {stage.value} failed",
                stage=stage,
                success=False,
                error_message=str(e),
            )
            ctx.result.errors.append(f"{stage.value}: {e}")
            report = StageReport(
                stage=stage,
                status=StageStatus.FAILED,
                message=f"{type(e).__name__}: {e}",
                error=type(e).__name__,
            )
        report.duration_ms = (time.perf_counter() - started) * 1000
        return report

    # Stages

    async def _classify(self, ctx: _RunContext) -> StageReport:
        loop = asyncio.get_running_loop()
        outcome = await loop.run_in_executor(
            None, self.classifier.classify_batch, ctx.batch.entries, self.model
        )
        ctx.result.classified_count = len(outcome.classified)
        ctx.audit.log_many(outcome.audit_entries)

        by_id = {e.id: e for e in ctx.batch.entries}
        for entry_id in outcome.pending_review:
            entry = by_id[entry_id]
            ctx.review(ReviewItem(
                reason=ReviewReason.LOW_CONFIDENCE_CLASSIFICATION,
                entry_id=entry_id,
                score=entry.confidence,
                message=f"Suggested category {entry.suggested_category} needs confirmation",
                details={"suggested_category": entry.suggested_category},
            ))

        return StageReport(
            stage=StageName.CLASSIFY,
            message=(
                f"{len(outcome.classified)} classified, {len(outcome.pending_review)} pending review, "
                f"{len(outcome.unclassified)} unclassified"
            ),
        )

    async def _match(self, ctx: _RunContext) -> StageReport:
        loop = asyncio.get_running_loop()
        match_result = await loop.run_in_executor(
            None, self.matcher.match, ctx.batch.transactions, ctx.batch.entries, self.book
        )
        suggested = await loop.run_in_executor(
            None,
            self.patterns.suggest,
            match_result.unmatched_transactions,
            match_result.unmatched_entries,
        )
        _fold_suggestions(match_result, suggested)

        applied = self.matcher.apply(match_result, ctx.batch.entries, self.book)
        ctx.result.match_result = match_result
        ctx.audit.log_many(applied.audit_entries)

        suggested_ids = {r.id for r in suggested}
        for record in match_result.assisted:
            ctx.review(ReviewItem(
                reason=ReviewReason.ASSISTED_MATCH,
                transaction_id=record.transaction_id,
                entry_id=record.entry_id,
                score=record.score,
                message=(
                    "Pairing suggested by a learned mapping needs confirmation"
                    if record.id in suggested_ids
                    else "Assisted match needs confirmation"
                ),
            ))
        for record in suggested:
            ctx.audit.record(
                AuditAction.PATTERN_SUGGESTED,
                f"Learned mapping suggested {record.transaction_id} <-> {record.entry_id}",
                stage=StageName.MATCH,
                transaction_ids=[record.transaction_id],
                entry_ids=[record.entry_id],
                details={"score": round(record.score, 4), "record_id": record.id},
            )

        transactions = {t.id: t for t in ctx.batch.transactions}
        entries = {e.id: e for e in ctx.batch.entries}
        learning = self.patterns.learn(
            (transactions[r.transaction_id], entries[r.entry_id])
            for r in match_result.automatic
            if r.transaction_id in transactions and r.entry_id in entries
        )
        ctx.audit.log_many(learning.audit_entries)

        summary = match_result.summary()
        return StageReport(
            stage=StageName.MATCH,
            message=(
                f"{summary['automatic']} automatic, {summary['assisted']} assisted "
                f"({len(suggested)} from learned mappings)"
            ),
        )

    async def _cross_validate(self, ctx: _RunContext) -> StageReport:
        scope = ctx.batch.scope
        wanted = list(dict.fromkeys(scope.sources))
        if len(wanted) < 2:
            return StageReport(stage=StageName.CROSS_VALIDATE, message="fewer than two sources, nothing to validate")

        supplied = {s: list(r) for s, r in ctx.batch.source_records.items() if s in wanted}
        to_fetch = [s for s in wanted if s not in supplied]

        fetched = await asyncio.gather(
            *(self._fetch_source(s, scope) for s in to_fetch),
            return_exceptions=True,
        )

        batches: Dict[SourceType, List[SourceRecord]] = dict(supplied)
        unavailable: Dict[SourceType, str] = {}
        for source, outcome in zip(to_fetch, fetched):
            if isinstance(outcome, SourceUnavailable):
                unavailable[source] = outcome.message
                ctx.result.warnings.append(f"cross-validation skipped: source {source.value} unavailable")
                ctx.audit.record(
                    AuditAction.SOURCE_UNAVAILABLE,
                    f"Source {source.value} unavailable",
                    stage=StageName.CROSS_VALIDATE,
                    success=False,
                    error_message=outcome.message,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                batches[source] = outcome

        loop = asyncio.get_running_loop()
        results = await loop.run_in_executor(
            None, self.cross_validator.validate_all, batches, unavailable
        )
        ctx.result.validation_results = results

        for validation in results:
            for discrepancy in validation.discrepancies:
                ctx.audit.record(
                    AuditAction.DISCREPANCY_FOUND,
                    f"{validation.source.value}/{validation.target_source.value}: {discrepancy.description}",
                    stage=StageName.CROSS_VALIDATE,
                    details=discrepancy.to_dict(),
                )

        skipped = [r for r in results if r.status == ValidationStatus.UNAVAILABLE]
        if skipped:
            return StageReport(
                stage=StageName.CROSS_VALIDATE,
                status=StageStatus.PARTIAL,
                message=f"{len(results) - len(skipped)} pair(s) validated, {len(skipped)} skipped",
                error=SourceUnavailable.__name__,
            )
        return StageReport(stage=StageName.CROSS_VALIDATE, message=f"{len(results)} pair(s) validated")

    async def _resolve(self, ctx: _RunContext) -> StageReport:
        loop = asyncio.get_running_loop()
        outcome = await loop.run_in_executor(
            None,
            partial(
                self.resolver.resolve,
                ctx.batch.transactions,
                ctx.batch.entries,
                self.book,
                ctx.config,
                self.journal,
                validation_results=ctx.result.validation_results,
                run_id=ctx.result.run_id,
            ),
        )
        ctx.result.outcome = outcome
        ctx.batch.entries.extend(outcome.created_entries)
        ctx.audit.log_many(audit_entries_for(outcome))
        for item in outcome.pending:
            ctx.review(item)

        return StageReport(
            stage=StageName.RESOLVE,
            message=", ".join(f"{k}={v}" for k, v in outcome.counts.items()),
        )

    async def _persist(self, ctx: _RunContext) -> StageReport:
        transaction_ids = {t.id for t in ctx.batch.transactions}
        records = [r for r in self.book.active_records() if r.transaction_id in transaction_ids]

        for entry in ctx.batch.entries:
            await self.ledger.persist_ledger_entry(entry)
        for record in records:
            await self.ledger.persist_reconciliation_record(record)

        ctx.result.persisted_entries = len(ctx.batch.entries)
        ctx.result.persisted_records = len(records)
        return StageReport(
            stage=StageName.PERSIST,
            message=f"{len(ctx.batch.entries)} entries, {len(records)} records persisted",
        )

    async def _notify(self, ctx: _RunContext) -> StageReport:
        items = list(ctx.review_items.values())
        delivered = await asyncio.gather(*(self.review_queue.notify(i) for i in items))
        ctx.result.notified_items = sum(1 for ok in delivered if ok)

        failed = len(items) - ctx.result.notified_items
        if failed:
            return StageReport(
                stage=StageName.NOTIFY,
                status=StageStatus.PARTIAL,
                message=f"{ctx.result.notified_items} delivered, {failed} not delivered",
            )
        return StageReport(stage=StageName.NOTIFY, message=f"{len(items)} review item(s) delivered")

    # Helpers

    async def _fetch_source(self, source: SourceType, scope: PipelineScope) -> List[SourceRecord]:
        return await self._with_retry(
            source.value,
            partial(
                self.sources.fetch_source_records,
                source,
                scope.client,
                (scope.period_start, scope.period_end),
            ),
        )

    async def _with_retry(self, source: str, fetch: Callable[[], Awaitable]):
        """
        Call a collaborator fetch with bounded exponential retry.

        Raises:
            SourceUnavailable: when retries are exhausted or the error is not transient
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.fetch_retry_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.fetch_retry_wait_seconds,
                    min=0,
                    max=self.settings.fetch_retry_max_wait_seconds,
                ),
                retry=retry_if_exception_type(RETRYABLE_FETCH_ERRORS),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying fetch",
                            source=source,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    return await fetch()
        except SourceUnavailable:
            raise
        except Exception as e:
            logger.error("Fetch failed", source=source, error=str(e))
            raise SourceUnavailable(f"{source} fetch failed: {e}", source=source) from e

    @staticmethod
    def _resolution_config(config: Union[ResolutionConfig, Mapping, None]) -> ResolutionConfig:
        if config is None:
            return ResolutionConfig()
        if isinstance(config, ResolutionConfig):
            return config
        if isinstance(config, Mapping):
            return ResolutionConfig.from_mapping(config)
        raise ConfigurationConflict(f"Unsupported resolution config: {type(config).__name__}")

    @staticmethod
    def _overall_status(stages: List[StageReport], cancelled: bool) -> PipelineStatus:
        if cancelled:
            return PipelineStatus.CANCELLED
        statuses = [s.status for s in stages]
        if all(s == StageStatus.COMPLETED for s in statuses):
            return PipelineStatus.COMPLETED
        if all(s in (StageStatus.FAILED, StageStatus.SKIPPED) for s in statuses):
            return PipelineStatus.FAILED
        return PipelineStatus.PARTIAL
