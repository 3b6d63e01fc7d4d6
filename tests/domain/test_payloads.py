"""Tests for domain payload classification and merge rules."""

import pytest

from concord.domain.context import MISSING
from concord.domain.payloads import (
    AccessibilityLevel,
    CodeSetting,
    DesignToken,
    PerformanceBudget,
    ProjectSetting,
    Removed,
    SectionSetting,
    StructuredValue,
    classify,
    merge_values,
    payload_value,
)


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize(
        "path,value,expected",
        [
            ("/performance/budgets/lcp", 2500, PerformanceBudget("lcp", 2500)),
            ("/accessibility/wcag_level", "AA", AccessibilityLevel("AA")),
            ("/design/colors/primary", "#000", DesignToken("colors/primary", "#000")),
            ("/code/linter", "ruff", CodeSetting("linter", "ruff")),
            ("/project/name", "site", ProjectSetting("name", "site")),
            ("/testing/coverage", 80, SectionSetting("testing", "coverage", 80)),
            ("/design/colors", {"primary": "#000"}, StructuredValue({"primary": "#000"})),
            ("/design/colors", MISSING, Removed("/design/colors")),
        ],
    )
    def test_shapes(self, path, value, expected):
        """Each section maps to its payload shape."""
        assert classify(path, value) == expected

    def test_boolean_budget_is_not_a_number(self):
        """Booleans under budgets are plain section settings."""
        assert isinstance(classify("/performance/budgets/lcp", True), SectionSetting)

    def test_unknown_wcag_level_is_section_setting(self):
        assert isinstance(classify("/accessibility/wcag_level", "AAAA"), SectionSetting)

    def test_payload_value_round_trip(self):
        """payload_value returns the classified value."""
        assert payload_value(classify("/performance/budgets/fid", 90)) == 90
        assert payload_value(Removed("/a")) is MISSING


class TestMergeValues:
    """Tests for merge_values()."""

    def test_stricter_budget_wins(self):
        """Lower performance budgets are stricter."""
        outcome = merge_values("/performance/budgets/lcp", 2500, [2400, 2600])

        assert outcome.mergeable
        assert outcome.value == 2400
        assert outcome.rule == "stricter budget"

    def test_higher_wcag_level_wins(self):
        outcome = merge_values("/accessibility/wcag_level", "A", ["AAA", "AA"])

        assert outcome.mergeable
        assert outcome.value == "AAA"

    def test_three_way_dict_merge(self):
        """Disjoint key edits of an object merge."""
        ancestor = {"primary": "#000", "secondary": "#fff"}
        left = {"primary": "#111", "secondary": "#fff"}
        right = {"primary": "#000", "secondary": "#eee", "accent": "#f00"}

        outcome = merge_values("/design/colors", ancestor, [left, right])

        assert outcome.mergeable
        assert outcome.value == {"primary": "#111", "secondary": "#eee", "accent": "#f00"}

    def test_conflicting_dict_edits_not_mergeable(self):
        ancestor = {"primary": "#000"}

        outcome = merge_values(
            "/design/colors", ancestor, [{"primary": "#111"}, {"primary": "#222"}]
        )

        assert not outcome.mergeable

    def test_design_tokens_not_mergeable(self):
        """Scalar tokens have no merge rule."""
        assert not merge_values("/design/primary", "#000", ["#111", "#222"]).mergeable

    def test_mixed_shapes_not_mergeable(self):
        assert not merge_values("/performance/budgets/lcp", 2500, [2400, MISSING]).mergeable

    def test_no_values(self):
        assert not merge_values("/a", None, []).mergeable
