"""Tests for context tree algorithms."""

import pytest

from concord.domain.context import (
    MISSING,
    Change,
    ChangeOperation,
    analyze_concurrent_write,
    apply_change_set,
    change_for_value,
    compute_checksum,
    diff_trees,
    genesis_change_set,
    get_value,
    parse_path,
    paths_overlap,
)
from concord.domain.exceptions import ValidationError


class TestPaths:
    """Tests for path parsing and overlap."""

    def test_parse_path_splits_segments(self):
        """A path splits into its segments."""
        assert parse_path("/performance/budgets/lcp") == ("performance", "budgets", "lcp")

    @pytest.mark.parametrize("path", ["", "performance", "/", "/a//b", "/a/"])
    def test_parse_path_rejects_malformed(self, path):
        """Paths must start with '/' and have no empty segments."""
        with pytest.raises(ValidationError):
            parse_path(path)

    def test_ancestor_paths_overlap(self):
        """A path overlaps its ancestors and descendants."""
        assert paths_overlap("/performance", "/performance/budgets/lcp")
        assert paths_overlap("/performance/budgets/lcp", "/performance/budgets")

    def test_sibling_paths_do_not_overlap(self):
        """Sibling keys are independent."""
        assert not paths_overlap("/performance/budgets/lcp", "/performance/budgets/fid")

    def test_get_value_missing(self):
        """Absent keys read as MISSING."""
        tree = {"design": {"primary": "#000"}}
        assert get_value(tree, "/design/primary") == "#000"
        assert get_value(tree, "/design/secondary") is MISSING
        assert get_value(tree, "/design/primary/shade") is MISSING


class TestApplyChangeSet:
    """Tests for apply_change_set."""

    def test_returns_copy_and_records_old_values(self):
        """The input tree is untouched and old values are filled in."""
        tree = {"performance": {"budgets": {"lcp": 2500}}}

        result, normalized = apply_change_set(
            tree, [Change.replace("/performance/budgets/lcp", 2400)]
        )

        assert tree["performance"]["budgets"]["lcp"] == 2500
        assert result["performance"]["budgets"]["lcp"] == 2400
        assert normalized[0].old_value == 2500
        assert normalized[0].new_value == 2400

    def test_add_creates_intermediate_objects(self):
        """Adding below a missing object creates it."""
        result, _ = apply_change_set({}, [Change.add("/accessibility/wcag_level", "AA")])

        assert result == {"accessibility": {"wcag_level": "AA"}}

    def test_remove_deletes_key(self):
        """Remove drops the key and records what it held."""
        result, normalized = apply_change_set(
            {"code": {"linter": "ruff"}}, [Change.remove("/code/linter")]
        )

        assert result == {"code": {}}
        assert normalized[0].old_value == "ruff"

    def test_add_existing_key_fails(self):
        """Add does not overwrite."""
        with pytest.raises(ValidationError, match="existing"):
            apply_change_set({"a": 1}, [Change.add("/a", 2)])

    def test_replace_missing_key_fails(self):
        """Replace requires the key to exist."""
        with pytest.raises(ValidationError, match="missing"):
            apply_change_set({}, [Change.replace("/a", 2)])

    def test_crossing_scalar_fails(self):
        """A path cannot descend through a non-object value."""
        with pytest.raises(ValidationError, match="non-object"):
            apply_change_set({"a": 1}, [Change.add("/a/b", 2)])

    def test_genesis_change_set_rebuilds_tree(self):
        """Replaying the genesis change-set over {} yields the tree."""
        tree = {"design": {"primary": "#000"}, "project": {"name": "site"}}

        replayed, _ = apply_change_set({}, genesis_change_set(tree))

        assert replayed == tree


class TestChecksum:
    """Tests for compute_checksum."""

    def test_independent_of_key_order(self):
        """Equal trees have equal checksums regardless of insertion order."""
        assert compute_checksum({"a": 1, "b": {"c": 2}}) == compute_checksum(
            {"b": {"c": 2}, "a": 1}
        )

    def test_changes_with_content(self):
        """Different trees have different checksums."""
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})


class TestDiffTrees:
    """Tests for diff_trees."""

    def test_minimal_changes(self):
        """Nested edits produce one change per leaf."""
        old = {"performance": {"lcp": 2500, "fid": 100}, "design": {"primary": "#000"}}
        new = {"performance": {"lcp": 2400, "fid": 100}, "code": {"linter": "ruff"}}

        changes = diff_trees(old, new)

        assert [(c.path, c.operation) for c in changes] == [
            ("/code", ChangeOperation.ADD),
            ("/design", ChangeOperation.REMOVE),
            ("/performance/lcp", ChangeOperation.REPLACE),
        ]


class TestAnalyzeConcurrentWrite:
    """Tests for the three-way comparison of a stale write."""

    def test_disjoint_write_is_clean(self):
        """A write to a sibling path rebases onto the head."""
        ancestor = {"performance": {"lcp": 2500}}
        head = {"performance": {"lcp": 2400}}

        analysis = analyze_concurrent_write(
            ancestor, head, [Change.add("/performance/fid", 90)]
        )

        assert analysis.clean
        assert analysis.rebased == (Change.add("/performance/fid", 90),)

    def test_same_path_different_value_overlaps(self):
        """Both sides changing one path to different values is an overlap."""
        ancestor = {"performance": {"lcp": 2500}}
        head = {"performance": {"lcp": 2400}}

        analysis = analyze_concurrent_write(
            ancestor, head, [Change.replace("/performance/lcp", 2600)]
        )

        assert not analysis.clean
        overlap = analysis.overlaps[0]
        assert overlap.path == "/performance/lcp"
        assert overlap.ancestor_value == 2500
        assert overlap.head_value == 2400
        assert overlap.write_value == 2600

    def test_identical_change_is_duplicate(self):
        """Repeating the head's change is neither an overlap nor rebased."""
        ancestor = {"performance": {"lcp": 2500}}
        head = {"performance": {"lcp": 2400}}

        analysis = analyze_concurrent_write(
            ancestor, head, [Change.replace("/performance/lcp", 2400)]
        )

        assert analysis.clean
        assert analysis.rebased == ()
        assert len(analysis.duplicates) == 1

    def test_rebase_turns_replace_into_add(self):
        """A replace of a key the head removed becomes an add."""
        ancestor = {"a": {"x": 1}, "b": 1}
        head = {"b": 2}

        analysis = analyze_concurrent_write(ancestor, head, [Change.replace("/c", 3)])

        assert analysis.rebased[0].operation is ChangeOperation.ADD


class TestChangeForValue:
    """Tests for change_for_value."""

    def test_no_change_when_equal(self):
        assert change_for_value("/a", 1, {"a": 1}) is None

    def test_picks_operation(self):
        """Add, replace or remove depending on the current tree."""
        assert change_for_value("/a", 1, {}).operation is ChangeOperation.ADD
        assert change_for_value("/a", 2, {"a": 1}).operation is ChangeOperation.REPLACE
        assert change_for_value("/a", MISSING, {"a": 1}).operation is ChangeOperation.REMOVE
