"""Tests for reconcile_service: planning and applying entry reconciliation."""

from uuid import uuid4

import pytest
from sqlalchemy import select

from vouchboard.models import Entry, Repository
from vouchboard.schemas import ExistingEntry, TrustEntry
from vouchboard.services.reconcile_service import (
    apply_reconciliation_plan,
    plan_entry_reconciliation,
)

SLUG = "acme/widgets"


def _existing(username, type="vouch", details=None, snapshot_id=None, repo_slug=SLUG):
    return ExistingEntry(
        id=uuid4(),
        platform="github",
        username=username,
        handle=f"github:{username}",
        type=type,
        details=details,
        snapshot_id=snapshot_id,
        repo_slug=repo_slug,
    )


def _fresh(username, type="vouch", details=None):
    return TrustEntry(platform="github", username=username, type=type, details=details)


def _converge(existing, plan, repo_slug, snapshot_id):
    """Apply a plan to an in-memory list the way the store applies it."""
    doomed = set(plan.duplicate_delete_ids) | set(plan.delete_ids)
    rows = {e.id: e for e in existing if e.id not in doomed}
    for planned in plan.patches:
        rows[planned.id] = ExistingEntry(id=planned.id, **planned.patch.model_dump())
    for entry in plan.inserts:
        new_id = uuid4()
        rows[new_id] = ExistingEntry(
            id=new_id,
            platform=entry.platform,
            username=entry.username,
            handle=entry.handle,
            type=entry.type,
            details=entry.details,
            snapshot_id=snapshot_id,
            repo_slug=repo_slug,
        )
    return list(rows.values())


class TestPlanEntryReconciliation:
    def test_first_index_inserts_everything(self):
        snapshot_id = uuid4()
        fresh = [_fresh("alice"), _fresh("bob", "denounce", "note")]

        plan = plan_entry_reconciliation([], fresh, SLUG, snapshot_id)

        assert plan.inserts == fresh
        assert plan.delete_ids == []
        assert plan.patches == []
        assert plan.duplicate_delete_ids == []

    def test_unchanged_entries_produce_empty_plan(self):
        snapshot_id = uuid4()
        existing = [_existing("alice", snapshot_id=snapshot_id)]

        plan = plan_entry_reconciliation(existing, [_fresh("alice")], SLUG, snapshot_id)

        assert plan.is_empty

    def test_missing_handles_are_deleted(self):
        snapshot_id = uuid4()
        alice = _existing("alice", snapshot_id=snapshot_id)
        bob = _existing("bob", snapshot_id=snapshot_id)

        plan = plan_entry_reconciliation([alice, bob], [_fresh("alice")], SLUG, snapshot_id)

        assert plan.delete_ids == [bob.id]
        assert plan.inserts == []

    def test_changed_type_is_patched_in_place(self):
        snapshot_id = uuid4()
        bob = _existing("bob", "denounce", "note", snapshot_id=snapshot_id)

        plan = plan_entry_reconciliation([bob], [_fresh("bob", "vouch", "other")], SLUG, snapshot_id)

        assert len(plan.patches) == 1
        assert plan.patches[0].id == bob.id
        assert plan.patches[0].patch.type == "vouch"
        assert plan.patches[0].patch.details == "other"

    def test_none_and_empty_details_are_equal(self):
        snapshot_id = uuid4()
        existing = [_existing("alice", details="", snapshot_id=snapshot_id)]

        plan = plan_entry_reconciliation(existing, [_fresh("alice")], SLUG, snapshot_id)

        assert plan.patches == []

    def test_new_snapshot_patches_ownership(self):
        old_snapshot, new_snapshot = uuid4(), uuid4()
        alice = _existing("alice", snapshot_id=old_snapshot)

        plan = plan_entry_reconciliation([alice], [_fresh("alice")], SLUG, new_snapshot)

        assert [p.id for p in plan.patches] == [alice.id]
        assert plan.patches[0].patch.snapshot_id == new_snapshot

    def test_legacy_row_without_slug_is_patched(self):
        snapshot_id = uuid4()
        legacy = _existing("alice", snapshot_id=None, repo_slug=None)

        plan = plan_entry_reconciliation([legacy], [_fresh("alice")], SLUG, snapshot_id)

        assert plan.patches[0].patch.repo_slug == SLUG
        assert plan.patches[0].patch.snapshot_id == snapshot_id

    def test_duplicates_keep_first_seen(self):
        snapshot_id = uuid4()
        first = _existing("alice", snapshot_id=snapshot_id)
        second = _existing("alice", "denounce", snapshot_id=snapshot_id)
        third = _existing("alice", snapshot_id=snapshot_id)

        plan = plan_entry_reconciliation(
            [first, second, third], [_fresh("alice")], SLUG, snapshot_id
        )

        assert plan.duplicate_delete_ids == [second.id, third.id]
        assert plan.patches == []
        assert plan.delete_ids == []

    def test_inserts_follow_fresh_order(self):
        snapshot_id = uuid4()
        fresh = [_fresh("carol"), _fresh("alice"), _fresh("bob")]

        plan = plan_entry_reconciliation([_existing("alice", snapshot_id=snapshot_id)], fresh, SLUG, snapshot_id)

        assert [e.username for e in plan.inserts] == ["carol", "bob"]

    def test_applying_plan_converges(self):
        old_snapshot, new_snapshot = uuid4(), uuid4()
        existing = [
            _existing("alice", snapshot_id=old_snapshot),
            _existing("alice", "denounce", snapshot_id=old_snapshot),
            _existing("bob", "denounce", "note", snapshot_id=old_snapshot),
            _existing("dave", repo_slug=None),
        ]
        fresh = [_fresh("alice"), _fresh("bob", "vouch"), _fresh("carol", "denounce", "spam")]

        plan = plan_entry_reconciliation(existing, fresh, SLUG, new_snapshot)
        converged = _converge(existing, plan, SLUG, new_snapshot)

        assert sorted(
            (e.handle, e.type, e.details) for e in converged
        ) == sorted((e.handle, e.type, e.details) for e in fresh)
        assert all(e.snapshot_id == new_snapshot and e.repo_slug == SLUG for e in converged)
        assert plan_entry_reconciliation(converged, fresh, SLUG, new_snapshot).is_empty


class TestApplyReconciliationPlan:
    @pytest.mark.asyncio
    async def test_plan_applied_to_store(self, db):
        repo = Repository(slug=SLUG, owner="acme", name="widgets")
        db.add(repo)
        await db.flush()

        old_snapshot, new_snapshot = uuid4(), uuid4()
        rows = [
            Entry(repository_id=repo.id, snapshot_id=old_snapshot, repo_slug=SLUG,
                  platform="github", username="alice", handle="github:alice", type="vouch"),
            Entry(repository_id=repo.id, snapshot_id=old_snapshot, repo_slug=SLUG,
                  platform="github", username="alice", handle="github:alice", type="vouch"),
            Entry(repository_id=repo.id, snapshot_id=old_snapshot, repo_slug=SLUG,
                  platform="github", username="bob", handle="github:bob", type="denounce"),
            Entry(repository_id=repo.id, snapshot_id=old_snapshot, repo_slug=SLUG,
                  platform="github", username="zed", handle="github:zed", type="vouch"),
        ]
        for row in rows:
            db.add(row)
            await db.flush()

        existing = [ExistingEntry.model_validate(row) for row in rows]
        fresh = [_fresh("alice"), _fresh("bob", "vouch", "changed mind"), _fresh("carol")]
        plan = plan_entry_reconciliation(existing, fresh, SLUG, new_snapshot)

        await apply_reconciliation_plan(db, repo.id, SLUG, new_snapshot, plan)
        await db.commit()

        stored = (
            await db.execute(
                select(Entry.handle, Entry.type, Entry.details, Entry.snapshot_id)
                .where(Entry.repository_id == repo.id)
                .order_by(Entry.handle)
            )
        ).all()
        assert [(h, t, d) for h, t, d, _ in stored] == [
            ("github:alice", "vouch", None),
            ("github:bob", "vouch", "changed mind"),
            ("github:carol", "vouch", None),
        ]
        assert {s for *_, s in stored} == {new_snapshot}
