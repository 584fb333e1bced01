"""Unit tests for echo-loop detection.

Tests cover:
- The single-field rule (bookkeeping keys ignored, multi-field proceeds)
- Date and user comparisons after normalization
- Fail-open behavior when the current value cannot be read
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.app.sync.field_mapping import TRACKED_BY_SOURCE_FIELD
from src.app.sync.loop_guard import LOOP_PREVENTION, LoopGuard, single_tracked_field

DUE_DATE = TRACKED_BY_SOURCE_FIELD["due_date"]
PROJECT_MANAGER = TRACKED_BY_SOURCE_FIELD["project_manager_id"]


@pytest.fixture
def guard(users) -> LoopGuard:
    return LoopGuard(users)


# ── Single-field rule ────────────────────────────────────────────────────────


class TestSingleTrackedField:
    """Which change-sets are eligible for a loop check."""

    def test_single_tracked_field(self):
        assert single_tracked_field({"due_date": ("2024-01-01", "2024-01-05")}) is DUE_DATE

    def test_bookkeeping_keys_ignored(self):
        changes = {
            "project_manager_id": ("u-alice", "u-bob"),
            "updated_at": (1, 2),
            "updated_by_id": ("u-x", "u-y"),
            "lock_version": (3, 4),
        }
        assert single_tracked_field(changes) is PROJECT_MANAGER

    def test_multi_field_change_set(self):
        changes = {"due_date": ("a", "b"), "title": ("x", "y")}
        assert single_tracked_field(changes) is None

    def test_untracked_single_field(self):
        assert single_tracked_field({"title": ("x", "y")}) is None

    @pytest.mark.parametrize("changes", [None, {}, {"updated_at": (1, 2)}])
    def test_empty_change_sets(self, changes):
        assert single_tracked_field(changes) is None


# ── compare ──────────────────────────────────────────────────────────────────


class TestCompare:
    """Normalized comparisons by field type."""

    def test_same_day_different_formats_skips(self, guard):
        check = guard.compare(DUE_DATE, "2024-12-15", "2024-12-15T05:00:00.000Z")
        assert check.skip is True
        assert check.reason == LOOP_PREVENTION

    def test_different_day_proceeds(self, guard):
        check = guard.compare(DUE_DATE, "2024-12-15", "2024-12-16")
        assert check.skip is False
        assert check.reason is None

    def test_same_person_different_id_formats_skips(self, guard):
        assert guard.compare(PROJECT_MANAGER, "KUAAAA", '"1001"').skip is True

    def test_different_people_proceed(self, guard):
        assert guard.compare(PROJECT_MANAGER, "KUAAAA", "KUBBBB").skip is False

    def test_assignee_sets_compare_without_order(self, guard):
        assert guard.compare(PROJECT_MANAGER, "KUAAAA,KUBBBB", ["u-bob", "u-alice"]).skip is True


# ── check ────────────────────────────────────────────────────────────────────


class TestCheck:
    """Fetch-then-compare, failing open."""

    @pytest.mark.asyncio
    async def test_fetches_and_compares(self, guard):
        fetch = AsyncMock(return_value="2024-12-15")
        check = await guard.check(DUE_DATE, "2024-12-15", fetch)
        fetch.assert_awaited_once()
        assert check.skip is True

    @pytest.mark.asyncio
    async def test_lookup_failure_proceeds(self, guard):
        fetch = AsyncMock(side_effect=RuntimeError("source down"))
        check = await guard.check(DUE_DATE, "2024-12-15", fetch)
        assert check.skip is False
        assert check.field == "due_date"
