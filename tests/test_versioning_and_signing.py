"""
Tests for version assignment and the signing gate.

Validates:
- First version is "1", later versions are max + 1
- Unparseable and legacy dotted versions
- Only the exact "complete" token passes the signing gate
"""

from __future__ import annotations

import pytest

from family_compact.charter.schema import SigningStatus
from family_compact.governance.signing import SigningGate, is_complete
from family_compact.governance.versioning import next_version, parse_version


class TestNextVersion:
    """Version numbers for a family's lineage."""

    def test_empty_lineage_starts_at_one(self):
        assert next_version([]) == "1"

    def test_increments_highest_version(self):
        assert next_version(["1", "2"]) == "3"

    def test_order_does_not_matter(self):
        assert next_version(["4", "1", "2"]) == "5"

    def test_drafts_without_version_are_ignored(self):
        assert next_version([None, "1", None]) == "2"

    def test_unparseable_versions_are_ignored(self):
        assert next_version(["draft", "", "1"]) == "2"
        assert next_version(["garbage"]) == "1"

    def test_legacy_dotted_versions(self):
        assert next_version(["1.0", "1.1"]) == "2"

    def test_never_reuses_a_version(self):
        versions: list[str] = []
        for _ in range(5):
            versions.append(next_version(versions))
        assert versions == ["1", "2", "3", "4", "5"]
        assert len(set(versions)) == len(versions)

    def test_parse_version_rejects_non_numbers(self):
        assert parse_version(None) is None
        assert parse_version(True) is None
        assert parse_version("nan") is None
        assert parse_version("-1") is None
        assert parse_version("3") == 3.0


class TestSigningGate:
    """Only a fully signed agreement may be activated."""

    def test_complete_token(self):
        assert is_complete("complete") is True
        assert is_complete(SigningStatus.COMPLETE) is True

    @pytest.mark.parametrize(
        "status",
        [
            None,
            "",
            "pending",
            "parent_signed",
            "child_signed",
            "both_parents_signed",
            "Complete",
            "complete ",
            True,
            1,
            {"status": "complete"},
        ],
    )
    def test_everything_else_is_incomplete(self, status):
        assert is_complete(status) is False

    def test_gate_object_delegates(self):
        gate = SigningGate()
        assert gate.is_complete("complete")
        assert not gate.is_complete("parent_signed")
