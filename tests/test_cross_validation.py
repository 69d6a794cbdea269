"""
Tests for cross-source validation.
"""

import pytest
from datetime import date, timedelta

from recon_engine.models import (
    CrossValidationConfig,
    Discrepancy,
    Severity,
    SourceType,
    ValidationStatus,
)
from recon_engine.reconciliation import CrossValidator


@pytest.fixture
def validator():
    return CrossValidator()


class TestJoin:
    """Exact key join first, then fuzzy date x value join."""

    def test_exact_key_join(self, validator, make_source_record):
        erp = [make_source_record("erp-1", key="NF-123", amount="1000.00")]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR, key=" nf-123 ", amount="5000.00")]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.joined_pairs == [("erp-1", "ocr-1")]
        assert result.match_rate == 1.0

    def test_fuzzy_join_without_key(self, validator, make_source_record):
        erp = [make_source_record("erp-1", description="Nota fiscal 123")]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR, description="Nota fiscal 123")]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.joined_pairs == [("erp-1", "ocr-1")]
        assert result.discrepancies == []
        assert result.status == ValidationStatus.SUCCESS

    def test_fuzzy_join_prefers_highest_similarity(self, validator, make_source_record):
        day = date(2024, 3, 10)
        erp = [make_source_record("erp-1", day=day)]
        ocr = [
            make_source_record("ocr-far", source=SourceType.OCR, day=day + timedelta(days=5)),
            make_source_record("ocr-near", source=SourceType.OCR, day=day),
        ]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.joined_pairs == [("erp-1", "ocr-near")]
        assert result.unmatched_target_ids == ["ocr-far"]

    def test_unmatched_records_are_not_discrepancies(self, validator, make_source_record):
        erp = [
            make_source_record("erp-1"),
            make_source_record("erp-2", amount="7300.00", day=date(2024, 1, 2)),
        ]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR)]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.joined_pairs == [("erp-1", "ocr-1")]
        assert result.unmatched_source_ids == ["erp-2"]
        assert result.discrepancies == []
        assert result.match_rate == 1.0


class TestDiscrepancies:
    """Field-level diffs and their severities."""

    @pytest.mark.parametrize("amount,severity", [
        ("1030.00", Severity.LOW),
        ("1100.00", Severity.MEDIUM),
        ("1300.00", Severity.HIGH),
    ])
    def test_amount_severity(self, validator, make_source_record, amount, severity):
        erp = [make_source_record("erp-1", key="NF-1", amount="1000.00")]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR, key="NF-1", amount=amount)]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        [discrepancy] = result.discrepancies
        assert discrepancy.field == "amount"
        assert discrepancy.severity == severity

    def test_currency_mismatch_is_high(self, validator, make_source_record):
        erp = [make_source_record("erp-1", key="NF-1")]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR, key="NF-1", currency="USD")]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert [d.field for d in result.high_severity] == ["currency"]
        assert result.status == ValidationStatus.ERROR

    def test_cosmetic_description_difference_is_low(self, validator, make_source_record):
        erp = [make_source_record("erp-1", key="NF-1", description="Nota Fiscal 123")]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR, key="NF-1", description="nota fiscal, 123")]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        [discrepancy] = result.discrepancies
        assert discrepancy.field == "description"
        assert discrepancy.distance == 0.0
        assert discrepancy.severity == Severity.LOW
        assert result.status == ValidationStatus.WARNING

    def test_counterparty_compared_only_when_both_present(self, validator, make_source_record):
        erp = [make_source_record("erp-1", key="NF-1", counterparty="ABC Ltda")]
        ocr = [make_source_record("ocr-1", source=SourceType.OCR, key="NF-1")]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.discrepancies == []

    def test_severity_cannot_be_passed_in(self):
        with pytest.raises(TypeError):
            Discrepancy(
                field="amount", source_value=1, target_value=2, distance=0.5, severity=Severity.LOW
            )

    def test_severity_monotonic_in_amount_distance(self, validator, make_source_record):
        ranks = []
        for bump in range(0, 600, 25):
            erp = [make_source_record("erp-1", key="NF-1", amount="1000.00")]
            ocr = [make_source_record("ocr-1", source=SourceType.OCR, key="NF-1", amount=f"{1000 + bump}.00")]
            result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)
            ranks.append(max((d.severity.rank for d in result.discrepancies), default=0))

        assert ranks == sorted(ranks)


class TestStatus:
    """Run status from match rate and severities."""

    def test_both_sides_empty_is_success(self, validator):
        result = validator.validate(SourceType.ERP, [], SourceType.OCR, [])

        assert result.status == ValidationStatus.SUCCESS
        assert result.match_rate == 0.0

    def test_low_match_rate_is_error(self, validator, make_source_record):
        erp = [make_source_record("erp-1"), make_source_record("erp-2", day=date(2024, 1, 1))]
        ocr = [
            make_source_record("ocr-1", source=SourceType.OCR, amount="9000.00"),
            make_source_record("ocr-2", source=SourceType.OCR, amount="4000.00"),
        ]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.match_rate == 0.0
        assert result.status == ValidationStatus.ERROR

    def test_match_rate_in_warning_band(self, make_source_record):
        validator = CrossValidator(CrossValidationConfig(match_threshold=0.9, warning_ratio=0.5))
        erp = [make_source_record("erp-1"), make_source_record("erp-2", amount="300.00")]
        ocr = [
            make_source_record("ocr-1", source=SourceType.OCR),
            make_source_record("ocr-2", source=SourceType.OCR, amount="9000.00"),
        ]

        result = validator.validate(SourceType.ERP, erp, SourceType.OCR, ocr)

        assert result.match_rate == 0.5
        assert result.status == ValidationStatus.WARNING


class TestValidateAll:
    """Every source pair, with failed sources reported apart."""

    def test_all_pairs_in_source_order(self, validator, make_source_record):
        batches = {
            SourceType.ERP: [make_source_record("erp-1")],
            SourceType.OCR: [make_source_record("ocr-1", source=SourceType.OCR)],
            SourceType.API_FISCAL: [make_source_record("fis-1", source=SourceType.API_FISCAL)],
        }

        results = validator.validate_all(batches)

        assert [r.pair for r in results] == [
            (SourceType.OCR, SourceType.ERP),
            (SourceType.OCR, SourceType.API_FISCAL),
            (SourceType.ERP, SourceType.API_FISCAL),
        ]
        assert all(r.status == ValidationStatus.SUCCESS for r in results)

    def test_unavailable_source(self, validator, make_source_record):
        batches = {SourceType.OCR: [make_source_record("ocr-1", source=SourceType.OCR)]}

        [result] = validator.validate_all(batches, unavailable={SourceType.ERP: "timeout"})

        assert result.status == ValidationStatus.UNAVAILABLE
        assert "source unavailable" in result.error
        assert "erp: timeout" in result.error
