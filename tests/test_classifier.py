"""
Tests for the classifier and its frequency model.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor

from recon_engine.classification import Classifier, ClassifierModel
from recon_engine.classification.keywords import SEED_RULES
from recon_engine.exceptions import ConfigurationConflict, InvalidInput
from recon_engine.models import ClassifierConfig, EntryKind, EntryStatus


class TestPrediction:
    """Voting and confidence."""

    def test_all_tokens_agree_classifies(self, classifier, model, make_entry):
        entry = make_entry(description="Fornecedor material")

        status = classifier.classify(entry, model)

        assert status == EntryStatus.CLASSIFIED
        assert entry.category == "Fornecedores"
        assert entry.confidence == pytest.approx(1.0)

    def test_partial_coverage_goes_to_review(self, classifier, model, make_entry):
        # "pagamento" is a revenue keyword and is filtered out for an expense
        entry = make_entry(description="Pagamento fornecedor material")

        status = classifier.classify(entry, model)

        assert status == EntryStatus.PENDING_REVIEW
        assert entry.category is None
        assert entry.suggested_category == "Fornecedores"
        assert 0.0 < entry.confidence < 0.75

    def test_kind_filters_categories(self, classifier, model, make_entry):
        expense = make_entry(id="e-exp", description="Juros", kind=EntryKind.EXPENSE)
        revenue = make_entry(id="e-rev", description="Juros", kind=EntryKind.REVENUE)

        classifier.classify(expense, model)
        classifier.classify(revenue, model)

        assert expense.category == "Despesas Financeiras"
        assert revenue.category == "Rendimentos"

    def test_tie_leaves_entry_unclassified(self, classifier, model, make_entry):
        entry = make_entry(description="Juros", kind=EntryKind.TRANSFER)

        status = classifier.classify(entry, model)

        assert status == EntryStatus.UNCLASSIFIED
        assert entry.category is None
        assert entry.confidence == 0.0

    def test_unknown_tokens_leave_entry_unclassified(self, classifier, model, make_entry):
        entry = make_entry(description="xyzzy qwerty")

        assert classifier.classify(entry, model) == EntryStatus.UNCLASSIFIED

    def test_only_unclassified_entries_are_touched(self, classifier, model, make_entry):
        entry = make_entry(
            description="Fornecedor material",
            status=EntryStatus.RECONCILED,
            category="Aluguel",
            confidence=1.0,
        )

        assert classifier.classify(entry, model) == EntryStatus.RECONCILED
        assert entry.category == "Aluguel"

    def test_classify_batch_stats(self, classifier, model, make_entry):
        entries = [
            make_entry(id="e1", description="Fornecedor material"),
            make_entry(id="e2", description="Pagamento fornecedor material"),
            make_entry(id="e3", description="xyzzy"),
        ]

        result = classifier.classify_batch(entries, model)

        assert result.classified == ["e1"]
        assert result.pending_review == ["e2"]
        assert result.unclassified == ["e3"]
        assert result.stats["total_entries"] == 3
        assert len(result.audit_entries) == 2

    def test_invalid_display_threshold(self):
        with pytest.raises(ConfigurationConflict):
            ClassifierConfig(display_threshold=1.5)


class TestReclassify:
    """Manual reclassification as the training signal."""

    def test_pending_entry_becomes_classified(self, classifier, model, make_entry):
        entry = make_entry(description="Pagamento fornecedor material")
        classifier.classify(entry, model)

        trained = classifier.reclassify(entry, "Fornecedores", model)

        assert trained is True
        assert entry.status == EntryStatus.CLASSIFIED
        assert entry.category == "Fornecedores"
        assert entry.confidence == 1.0

    def test_same_category_twice_is_idempotent(self, classifier, model, make_entry):
        entry = make_entry(description="Mensalidade academia")

        assert classifier.reclassify(entry, "Benefícios", model) is True
        snapshot = model.snapshot
        assert classifier.reclassify(entry, "Benefícios", model) is False

        assert model.snapshot is snapshot
        assert classifier.statistics(model).trained_example_count == 1

    def test_counts_never_decrease(self, classifier, model, make_entry):
        entry = make_entry(description="Mensalidade academia")
        classifier.reclassify(entry, "Benefícios", model)
        before = dict(model.snapshot.token_counts["academia"])

        classifier.reclassify(entry, "Outros", model)

        after = model.snapshot.token_counts["academia"]
        for category, count in before.items():
            assert after[category] >= count
        assert after["Outros"] == 1

    def test_training_changes_future_predictions(self, classifier, make_entry):
        model = ClassifierModel()
        classifier.reclassify(make_entry(id="e1", description="Mensalidade academia"), "Benefícios", model)

        entry = make_entry(id="e2", description="Mensalidade academia março")
        classifier.classify(entry, model)

        assert entry.suggested_category == "Benefícios"

    def test_empty_category_rejected(self, classifier, model, make_entry):
        with pytest.raises(InvalidInput):
            classifier.reclassify(make_entry(), "  ", model)

    def test_reconciled_entry_keeps_status(self, classifier, model, make_entry):
        entry = make_entry(status=EntryStatus.RECONCILED)

        classifier.reclassify(entry, "Fornecedores", model)

        assert entry.status == EntryStatus.RECONCILED
        assert entry.category == "Fornecedores"


class TestModel:
    """Snapshot isolation and statistics."""

    def test_seeds_are_not_trained_examples(self, classifier, model):
        stats = classifier.statistics(model)

        assert stats.trained_example_count == 0
        assert stats.estimated_precision is None
        assert stats.per_category_counts == {}

    def test_every_seed_keyword_survives_tokenization(self, classifier):
        keywords = [
            keyword
            for categories in SEED_RULES.values()
            for words in categories.values()
            for keyword in words
        ]

        assert [k for k in keywords if classifier.tokens(k) != [k]] == []

    def test_snapshot_is_not_mutated_by_training(self, classifier, model, make_entry):
        snapshot = model.snapshot
        classifier.reclassify(make_entry(description="Mensalidade academia"), "Benefícios", model)

        assert "academia" not in snapshot.token_counts
        assert "academia" in model.snapshot.token_counts
        assert model.snapshot.version == snapshot.version + 1

    def test_estimated_precision(self, classifier, model, make_entry):
        agreed = make_entry(id="e1", description="Pagamento fornecedor material")
        disagreed = make_entry(id="e2", description="Pagamento fornecedor material")
        classifier.classify(agreed, model)
        classifier.classify(disagreed, model)

        classifier.reclassify(agreed, "Fornecedores", model)
        classifier.reclassify(disagreed, "Aluguel", model)

        stats = classifier.statistics(model)
        assert stats.reviewed_count == 2
        assert stats.estimated_precision == pytest.approx(0.5)
        assert stats.per_category_counts == {"Fornecedores": 1, "Aluguel": 1}

    def test_concurrent_training_loses_no_example(self, make_entry):
        model = ClassifierModel()
        classifier = Classifier()
        entries = [make_entry(id=f"e{i}", description=f"Compra item {i}") for i in range(50)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda e: classifier.reclassify(e, "Fornecedores", model), entries))

        stats = classifier.statistics(model)
        assert stats.trained_example_count == 50
        assert model.snapshot.token_counts["compra"]["Fornecedores"] == 50
