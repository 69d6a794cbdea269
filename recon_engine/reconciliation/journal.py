"""
ResolutionJournal - reversible log of autonomous mutations.

Nothing the resolver does is a hard delete: every change is a
ResolutionAction that can be reverted on its own, without replaying the run.
A reverted action is remembered so the resolver leaves that item for a human.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog

from ..models import (
    ActionKind,
    EntryStatus,
    LedgerEntry,
    ResolutionAction,
)
from .book import ReconciliationBook

logger = structlog.get_logger()

Subject = Tuple[ActionKind, Optional[str], Optional[str]]


class ResolutionJournal:
    """Append-only list of resolution actions with per-action undo."""

    def __init__(self, actions: Iterable[ResolutionAction] = ()):
        self._actions: Dict[str, ResolutionAction] = {}
        for action in actions:
            self.record(action)

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self):
        return iter(self._actions.values())

    def record(self, action: ResolutionAction) -> ResolutionAction:
        self._actions[action.id] = action
        return action

    def get(self, action_id: str) -> Optional[ResolutionAction]:
        return self._actions.get(action_id)

    def actions(self, run_id: Optional[str] = None) -> List[ResolutionAction]:
        if run_id is None:
            return list(self._actions.values())
        return [a for a in self._actions.values() if a.run_id == run_id]

    def applied_subjects(self) -> Set[Subject]:
        return {a.subject for a in self._actions.values() if not a.is_reverted}

    def reverted_subjects(self) -> Set[Subject]:
        return {a.subject for a in self._actions.values() if a.is_reverted}

    def ignored_transaction_ids(self) -> Set[str]:
        """Transactions currently ignored by an action that has not been reverted."""
        return {
            a.transaction_id
            for a in self._actions.values()
            if a.kind == ActionKind.IGNORE_TRANSACTION and not a.is_reverted
        }

    def was_reverted(
        self,
        kind: ActionKind,
        transaction_id: Optional[str] = None,
        entry_id: Optional[str] = None,
    ) -> bool:
        return (kind, transaction_id, entry_id) in self.reverted_subjects()

    def undo(
        self,
        action_id: str,
        entries: Iterable[LedgerEntry],
        book: ReconciliationBook,
    ) -> ResolutionAction:
        """
        Revert one action.

        Restores the entry fields recorded in `before`, releases the records
        the action created and restores the ones it released. A fabricated
        entry is marked ignored, never deleted. Reverting twice is a no-op.

        Raises:
            KeyError: if the action id is unknown
        """
        action = self._actions.get(action_id)
        if action is None:
            raise KeyError(action_id)
        if action.is_reverted:
            return action

        by_id = {e.id: e for e in entries}
        entry = by_id.get(action.entry_id) if action.entry_id else None

        for record_id in action.created_record_ids:
            if book.get(record_id) is not None:
                book.release(record_id)

        if action.kind == ActionKind.CREATE_ENTRY:
            if entry is not None:
                entry.status = EntryStatus.IGNORED
                entry.touch()
        elif entry is not None:
            if "amount" in action.before:
                entry.amount = Decimal(str(action.before["amount"]))
            if "status" in action.before:
                entry.status = EntryStatus(action.before["status"])
            entry.touch()

        for record_id in action.released_record_ids:
            record = book.get(record_id)
            if record is not None and not record.is_active:
                book.add(record)
                restored = by_id.get(record.entry_id)
                if restored is not None and restored.status != EntryStatus.IGNORED:
                    restored.status = EntryStatus.RECONCILED

        kept_id = action.after.get("kept_entry_id")
        if kept_id and action.created_record_ids:
            kept = by_id.get(kept_id)
            if kept is not None and book.active_for_entry(kept_id) is None:
                kept.status = EntryStatus(action.before.get("kept_entry_status", EntryStatus.CLASSIFIED.value))
                kept.touch()

        action.reverted_at = datetime.now(timezone.utc)
        logger.info(
            "Resolution action reverted",
            action_id=action.id,
            kind=action.kind.value,
            transaction_id=action.transaction_id,
            entry_id=action.entry_id,
        )
        return action
