"""
Tests for the pattern learner: learned mappings, suggestions and recurring patterns.
"""

import pytest
from datetime import date, timedelta

from recon_engine.exceptions import ConfigurationConflict
from recon_engine.models import EntryStatus, PatternConfig, PatternKind, ResolvedBy
from recon_engine.reconciliation import PatternLearner
from recon_engine.reconciliation.patterns import common_terms, key_terms, pattern_kind

CLEANING = {"enviado", "limpeza", "brilho"}
CLEANING_ENTRY = {"serviços", "limpeza", "brilho"}
MONTHS = ["janeiro", "fevereiro", "março", "abril", "maio"]


@pytest.fixture
def cleaning_pair(make_transaction, make_entry):
    def _make(n, day=None, amount="450.00"):
        day = day or date(2024, 1, 10) + timedelta(days=30 * n)
        transaction = make_transaction(
            id=f"t{n}",
            day=day,
            amount=f"-{amount}",
            description=f"PIX ENVIADO LIMPEZA BRILHO {1000 + n}",
        )
        entry = make_entry(
            id=f"e{n}",
            day=day,
            amount=amount,
            description=f"Serviços de limpeza Brilho {MONTHS[n % len(MONTHS)]}",
        )
        return transaction, entry
    return _make


@pytest.fixture
def trained(cleaning_pair):
    learner = PatternLearner()
    learner.learn(accepted=[cleaning_pair(n) for n in range(3)])
    return learner


class TestKeyTerms:
    """Description terms used to group and fit pairings."""

    def test_short_words_and_numbers_are_dropped(self):
        assert key_terms("PIX ENVIADO LIMPEZA BRILHO 0421", 4) == CLEANING

    def test_common_terms_need_two_descriptions(self):
        assert common_terms(["Serviços de limpeza"], 4) == frozenset()
        assert common_terms(
            ["Serviços de limpeza Brilho março", "Serviços de limpeza Brilho abril"], 4
        ) == CLEANING_ENTRY


class TestLearning:
    """Mappings from accepted and undone pairings."""

    def test_mapping_needs_min_occurrences(self, cleaning_pair):
        learner = PatternLearner()

        first = learner.learn(accepted=[cleaning_pair(0), cleaning_pair(1)])
        second = learner.learn(accepted=[cleaning_pair(2)])

        assert first.learned == []
        [mapping] = second.learned
        assert mapping.transaction_terms == CLEANING
        assert mapping.entry_terms == CLEANING_ENTRY
        assert mapping.successes == 3
        assert mapping.confidence == pytest.approx(0.8)
        assert second.audit_entries[0].action.value == "mapping_learned"
        assert learner.statistics()["pooled_pairs"] == 0

    def test_fitting_pairs_count_as_successes(self, trained, cleaning_pair):
        outcome = trained.learn(accepted=[cleaning_pair(3)])

        [mapping] = trained.mappings
        assert outcome.successes == 1
        assert mapping.successes == 4
        assert mapping.confidence == pytest.approx(5 / 6)
        assert mapping.last_used is not None

    def test_undone_pairs_count_as_failures(self, trained, cleaning_pair):
        outcome = trained.learn(undone=[cleaning_pair(3)])

        [mapping] = trained.mappings
        assert outcome.failures == 1
        assert mapping.failures == 1
        assert mapping.confidence < trained.config.min_confidence
        assert trained.active_mappings() == []

    def test_entries_without_shared_terms_learn_nothing(self, make_transaction, make_entry):
        learner = PatternLearner()
        pairs = [
            (
                make_transaction(id=f"t{n}", description="PIX ENVIADO LIMPEZA BRILHO"),
                make_entry(id=f"e{n}", description=description),
            )
            for n, description in enumerate(["Faxina", "Conservação predial", "Zeladoria"])
        ]

        outcome = learner.learn(accepted=pairs)

        assert outcome.learned == []
        assert learner.statistics()["pooled_pairs"] == 3

    def test_invalid_config_is_rejected(self):
        with pytest.raises(ConfigurationConflict):
            PatternConfig(min_confidence=2)
        with pytest.raises(ConfigurationConflict):
            PatternConfig.from_mapping({"min_occurrences": 0})


class TestSuggestions:
    """Assisted pairings from active mappings."""

    def test_active_mapping_suggests_assisted_pair(self, trained, make_transaction, make_entry):
        transaction = make_transaction(
            id="t9", day=date(2024, 4, 10), amount="-450.00",
            description="PIX ENVIADO LIMPEZA BRILHO 7777",
        )
        entries = [
            make_entry(id="e8", day=date(2024, 4, 10), amount="450.00", description="Aluguel sala"),
            make_entry(
                id="e9", day=date(2024, 4, 12), amount="450.00",
                description="Serviços de limpeza Brilho abril",
            ),
        ]

        [record] = trained.suggest([transaction], entries)

        assert (record.transaction_id, record.entry_id) == ("t9", "e9")
        assert record.automatic is False
        assert record.resolved_by == ResolvedBy.ASSISTED
        assert record.score == pytest.approx(0.8)

    def test_inactive_mapping_suggests_nothing(self, trained, cleaning_pair):
        trained.learn(undone=[cleaning_pair(3)])
        transaction, entry = cleaning_pair(4)

        assert trained.suggest([transaction], [entry]) == []

    def test_amount_and_date_must_be_close(self, trained, make_transaction, make_entry):
        transaction = make_transaction(
            id="t9", day=date(2024, 4, 10), amount="-450.00",
            description="PIX ENVIADO LIMPEZA BRILHO",
        )
        far = make_entry(
            id="e9", day=date(2024, 4, 19), amount="480.00",
            description="Serviços de limpeza Brilho abril",
        )

        assert trained.pair_score(transaction, far) == 0.0
        assert trained.suggest([transaction], [far]) == []

    def test_each_entry_is_suggested_once(self, trained, cleaning_pair, make_transaction):
        first, entry = cleaning_pair(4)
        second = make_transaction(
            id="t5", day=first.date, amount="-450.00", description=first.description,
        )

        suggestions = trained.suggest([second, first], [entry])

        assert [(r.transaction_id, r.entry_id) for r in suggestions] == [("t4", "e4")]

    def test_reconciled_entries_are_not_candidates(self, trained, cleaning_pair):
        transaction, entry = cleaning_pair(4)
        entry.status = EntryStatus.RECONCILED

        assert trained.suggest([transaction], [entry]) == []


class TestRecurringPatterns:
    """detect() and cadence classification."""

    def test_monthly_descriptions_are_recurring(self, make_transaction):
        transactions = [
            make_transaction(id=f"t{i}", day=day, description="Mensalidade Software Contábil")
            for i, day in enumerate([date(2024, 1, 10), date(2024, 2, 10), date(2024, 3, 11)])
        ]
        transactions.append(make_transaction(id="t9", description="Compra avulsa"))

        [pattern] = PatternLearner().detect(transactions)

        assert pattern.kind == PatternKind.RECURRING
        assert pattern.occurrences == 3
        assert pattern.transaction_ids == ("t0", "t1", "t2")
        assert pattern.first_seen == date(2024, 1, 10)
        assert pattern.confidence == pytest.approx(0.75)

    @pytest.mark.parametrize("gaps,expected", [
        ([31, 29, 30], PatternKind.RECURRING),
        ([91, 90], PatternKind.RECURRING),
        ([365, 366], PatternKind.SEASONAL),
        ([7, 7, 8], PatternKind.PERIODIC),
        ([1, 40], PatternKind.SINGULAR),
        ([], PatternKind.SINGULAR),
    ])
    def test_pattern_kind(self, gaps, expected):
        dates = [date(2023, 1, 1)]
        for gap in gaps:
            dates.append(dates[-1] + timedelta(days=gap))

        assert pattern_kind(dates) == expected
