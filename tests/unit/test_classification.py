"""
Unit tests for statement line classification.
"""
from decimal import Decimal

import pytest

from gigledger.models.statement import Evidence, LineType
from gigledger.services.classification import (
    ClassificationRule,
    LineClassifier,
    classification_evidence,
    get_line_classifier,
    resolve_metric_key_and_unit,
)


@pytest.fixture
def classifier() -> LineClassifier:
    return LineClassifier()


class TestRuleTable:
    """Tests for the ordered rule table."""

    @pytest.mark.parametrize("description,expected", [
        ("Gross fares", LineType.INCOME),
        ("Tips", LineType.INCOME),
        ("Service Fee", LineType.FEE),
        ("Lyft & 3rd party fees", LineType.FEE),
        ("GST/HST you collected from Riders", LineType.TAX_COLLECTED),
        ("GST/HST you paid to Uber", LineType.ITC),
        ("Input tax credit", LineType.ITC),
        ("Online kilometres", LineType.METRIC),
        ("Acceptance rate", LineType.METRIC),
    ])
    def test_phrases(self, classifier, description, expected):
        """Test phrase rules map descriptions to line types."""
        assert classifier.classify(description).line_type == expected

    def test_itc_wins_over_fee(self, classifier):
        """Test ITC phrases are evaluated before fee phrases."""
        result = classifier.classify("GST/HST paid on Lyft and 3rd party fees")

        assert result.line_type == LineType.ITC
        assert result.rule == "itc_phrase"

    def test_negative_amount_is_fee(self, classifier):
        """Test unknown negative lines fall back to Fee."""
        assert classifier.classify("Adjustment", amount=Decimal("-5")).line_type == LineType.FEE

    def test_positive_amount_is_income(self, classifier):
        """Test unknown positive lines fall back to Income."""
        assert classifier.classify("Adjustment", amount=Decimal("5")).line_type == LineType.INCOME

    def test_tax_only_row(self, classifier):
        """Test a row with only a tax amount is tax collected."""
        result = classifier.classify("Adjustment", tax_amount=Decimal("2"))

        assert result.line_type == LineType.TAX_COLLECTED

    def test_fallback_other(self, classifier):
        """Test nothing matching yields Other."""
        result = classifier.classify("Misc")

        assert result.line_type == LineType.OTHER
        assert result.rule == "fallback"
        assert result.evidence == Evidence.INFERRED


class TestExplicitHints:
    """Tests for raw type hints."""

    def test_hint_wins(self, classifier):
        """Test an explicit type overrides phrase rules."""
        result = classifier.classify("Gross fares", raw_type="Fees")

        assert result.line_type == LineType.FEE
        assert result.evidence == Evidence.EXTRACTED
        assert result.rule == "explicit_hint"

    def test_hint_ignores_spacing(self, classifier):
        """Test 'Tax Collected' matches the taxcollected hint."""
        assert classifier.classify(None, raw_type="Tax Collected").line_type == LineType.TAX_COLLECTED

    def test_evidence_requires_three_characters(self):
        """Test short raw types do not count as extracted evidence."""
        assert classification_evidence("ab") == Evidence.INFERRED
        assert classification_evidence("Fee") == Evidence.EXTRACTED
        assert classification_evidence(None) == Evidence.INFERRED


class TestComposition:
    """Tests for composing provider rules."""

    def test_prepended_rule_runs_first(self, classifier):
        """Test extra rules are evaluated before the defaults."""
        tolls = ClassificationRule("tolls_are_expenses", LineType.EXPENSE, lambda f: "toll" in f.description)
        composed = classifier.with_rules(tolls)

        assert composed.classify("Highway toll").line_type == LineType.EXPENSE
        assert classifier.classify("Highway toll").line_type == LineType.FEE

    def test_with_rules_leaves_original_untouched(self, classifier):
        """Test composition returns a new classifier."""
        composed = classifier.with_rules(
            ClassificationRule("noop", LineType.OTHER, lambda f: False)
        )

        assert len(composed.rules) == len(classifier.rules) + 1

    def test_singleton(self):
        """Test the shared classifier is reused."""
        assert get_line_classifier() is get_line_classifier()


class TestMetricKeys:
    """Tests for canonical metric keys."""

    @pytest.mark.parametrize("description,expected", [
        ("Online kilometres", ("OnlineKilometers", "km")),
        ("Ride distance km", ("RideKilometers", "km")),
        ("Miles driven", ("RideMiles", "mi")),
        ("Total trips", ("Trips", "trips")),
        ("Online hours", ("OnlineHours", "hours")),
        ("Acceptance rate", ("AcceptanceRate", "%")),
        ("Fare", (None, None)),
    ])
    def test_resolve(self, description, expected):
        """Test descriptions resolve to canonical key and unit."""
        assert resolve_metric_key_and_unit(description) == expected
