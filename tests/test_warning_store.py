"""
test_warning_store.py — Validated persistence of warning aggregates.

Covers:
    • create validation (required fields, enums, locations, image URLs)
    • append_update / append_response_action / set_action_status
    • resolve and ACTIVE ↔ MONITORING transitions
    • rejected writes leave no trace (version unchanged)
    • list filters and pagination, active feed, proximity reads

Run with:
    pytest tests/test_warning_store.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.lifecycle.models import (
    ActionStatus,
    ActionType,
    DisasterCategory,
    Severity,
    WarningFilters,
    WarningStatus,
)
from backend.app.lifecycle.store import InMemoryWarningRepository, WarningStore
from tests.fakes import COLOMBO, KANDY, NEAR_COLOMBO, colombo_location, make_draft


@pytest.fixture
def store() -> WarningStore:
    return WarningStore(InMemoryWarningRepository())


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Create
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    @pytest.mark.asyncio
    async def test_new_warning_is_active_version_one(self, store):
        warning = await store.create(make_draft())
        assert warning.status == WarningStatus.ACTIVE
        assert warning.version == 1
        assert warning.id.startswith("WRN-")
        assert warning.disaster_category == DisasterCategory.FLOOD
        assert warning.severity == Severity.HIGH
        assert warning.resolved_at is None
        assert warning.updates == [] and warning.response_actions == []

    @pytest.mark.asyncio
    async def test_persisted_and_readable(self, store):
        warning = await store.create(make_draft())
        loaded = await store.get(warning.id)
        assert loaded.to_dict() == warning.to_dict()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["title", "description", "created_by"])
    async def test_missing_text_field(self, store, field):
        with pytest.raises(ValidationError) as exc:
            await store.create(make_draft(**{field: "   "}))
        assert exc.value.field == field

    @pytest.mark.asyncio
    async def test_unknown_category(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(make_draft(disaster_category="tsunami"))
        assert exc.value.field == "disaster_category"
        assert "flood" in exc.value.details["allowed"]

    @pytest.mark.asyncio
    async def test_missing_severity(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(make_draft(severity=None))
        assert exc.value.field == "severity"

    @pytest.mark.asyncio
    async def test_empty_locations(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(make_draft(affected_locations=[]))
        assert exc.value.field == "affected_locations"

    @pytest.mark.asyncio
    async def test_location_missing_province(self, store):
        location = colombo_location()
        del location["address"]["province"]
        with pytest.raises(ValidationError) as exc:
            await store.create(make_draft(affected_locations=[location]))
        assert exc.value.field == "affected_locations[0].address.province"

    @pytest.mark.asyncio
    async def test_location_without_coordinates_is_accepted(self, store):
        warning = await store.create(make_draft(
            affected_locations=[colombo_location(coordinates=None)],
        ))
        assert warning.coordinates == []
        assert "western" in warning.region_names

    @pytest.mark.asyncio
    async def test_relative_image_url_rejected(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create(make_draft(images=["https://cdn.example.org/a.jpg", "/b.jpg"]))
        assert exc.value.field == "images"
        assert exc.value.details["invalid"] == ["/b.jpg"]

    @pytest.mark.asyncio
    async def test_failed_create_stores_nothing(self, store):
        with pytest.raises(ValidationError):
            await store.create(make_draft(severity="extreme"))
        page = await store.list_warnings()
        assert page.total == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Updates and response actions
# ═══════════════════════════════════════════════════════════════════════════

class TestAppendUpdate:

    @pytest.mark.asyncio
    async def test_appends_and_bumps_version(self, store):
        warning = await store.create(make_draft())
        updated = await store.append_update(warning.id, "Level up 30 cm", author="officer-2")
        assert updated.version == 2
        assert updated.updates[-1].update_text == "Level up 30 cm"
        assert updated.updates[-1].updated_by == "officer-2"
        assert updated.updated_at >= warning.updated_at

    @pytest.mark.asyncio
    async def test_severity_change_overwrites_severity(self, store):
        warning = await store.create(make_draft(severity="medium"))
        updated = await store.append_update(
            warning.id, "Escalating", author="officer-2", severity_change="critical",
        )
        assert updated.severity == Severity.CRITICAL
        assert updated.updates[-1].severity_change == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_invalid_severity_change(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(ValidationError) as exc:
            await store.append_update(warning.id, "x", author="a", severity_change="extreme")
        assert exc.value.field == "severity_change"

    @pytest.mark.asyncio
    async def test_empty_text(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(ValidationError):
            await store.append_update(warning.id, "", author="a")

    @pytest.mark.asyncio
    async def test_unknown_warning(self, store):
        with pytest.raises(NotFoundError):
            await store.append_update("WRN-MISSING", "x", author="a")

    @pytest.mark.asyncio
    async def test_refused_on_resolved_without_trace(self, store):
        warning = await store.create(make_draft())
        resolved = await store.resolve(warning.id, "Receded", actor="officer-1")
        with pytest.raises(InvalidStateError):
            await store.append_update(warning.id, "late update", author="a")
        after = await store.get(warning.id)
        assert after.version == resolved.version
        assert after.updates == []


class TestResponseActions:

    @pytest.mark.asyncio
    async def test_new_action_is_planned(self, store):
        warning = await store.create(make_draft())
        updated, action = await store.append_response_action(
            warning.id, "evacuation", "Move residents to Town Hall", performer="officer-3",
        )
        assert action.status == ActionStatus.PLANNED
        assert action.action_type == ActionType.EVACUATION
        assert updated.response_actions[-1].id == action.id
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(ValidationError) as exc:
            await store.append_response_action(warning.id, "airlift", "x", performer="a")
        assert exc.value.field == "action_type"

    @pytest.mark.asyncio
    async def test_refused_on_resolved(self, store):
        warning = await store.create(make_draft())
        await store.resolve(warning.id, "Done", actor="a")
        with pytest.raises(InvalidStateError):
            await store.append_response_action(warning.id, "rescue", "x", performer="a")

    @pytest.mark.asyncio
    async def test_status_changes_freely(self, store):
        warning = await store.create(make_draft())
        _, action = await store.append_response_action(warning.id, "rescue", "Boats", performer="a")
        _, done = await store.set_action_status(warning.id, action.id, "completed")
        assert done.status == ActionStatus.COMPLETED
        _, back = await store.set_action_status(warning.id, action.id, "planned")
        assert back.status == ActionStatus.PLANNED

    @pytest.mark.asyncio
    async def test_status_change_allowed_after_resolve(self, store):
        warning = await store.create(make_draft())
        _, action = await store.append_response_action(warning.id, "rescue", "Boats", performer="a")
        await store.resolve(warning.id, "Done", actor="a")
        updated, changed = await store.set_action_status(warning.id, action.id, "completed")
        assert changed.status == ActionStatus.COMPLETED
        assert updated.status == WarningStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_unknown_action_id(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(NotFoundError):
            await store.set_action_status(warning.id, "nope", "completed")

    @pytest.mark.asyncio
    async def test_invalid_action_status(self, store):
        warning = await store.create(make_draft())
        _, action = await store.append_response_action(warning.id, "rescue", "Boats", performer="a")
        with pytest.raises(ValidationError):
            await store.set_action_status(warning.id, action.id, "paused")


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Resolve and status transitions
# ═══════════════════════════════════════════════════════════════════════════

class TestResolve:

    @pytest.mark.asyncio
    async def test_resolve_sets_fields(self, store):
        warning = await store.create(make_draft())
        resolved = await store.resolve(warning.id, "Flood waters receded", actor="officer-9")
        assert resolved.status == WarningStatus.RESOLVED
        assert resolved.resolved_by == "officer-9"
        assert resolved.resolved_at is not None
        assert resolved.resolution_notes == "Flood waters receded"

    @pytest.mark.asyncio
    async def test_notes_required(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(ValidationError) as exc:
            await store.resolve(warning.id, "  ", actor="a")
        assert exc.value.field == "resolution_notes"

    @pytest.mark.asyncio
    async def test_resolve_twice(self, store):
        warning = await store.create(make_draft())
        await store.resolve(warning.id, "Done", actor="a")
        with pytest.raises(InvalidStateError):
            await store.resolve(warning.id, "Again", actor="a")

    @pytest.mark.asyncio
    async def test_resolve_from_monitoring(self, store):
        warning = await store.create(make_draft())
        await store.transition_status(warning.id, "monitoring")
        resolved = await store.resolve(warning.id, "Done", actor="a")
        assert resolved.status == WarningStatus.RESOLVED


class TestTransitionStatus:

    @pytest.mark.asyncio
    async def test_active_to_monitoring_and_back(self, store):
        warning = await store.create(make_draft())
        monitoring = await store.transition_status(warning.id, "monitoring")
        assert monitoring.status == WarningStatus.MONITORING
        active = await store.transition_status(warning.id, "active")
        assert active.status == WarningStatus.ACTIVE
        assert active.version == 3

    @pytest.mark.asyncio
    async def test_same_status_is_accepted(self, store):
        warning = await store.create(make_draft())
        same = await store.transition_status(warning.id, "active")
        assert same.status == WarningStatus.ACTIVE
        assert same.version == 2

    @pytest.mark.asyncio
    async def test_resolved_target_refused(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(InvalidStateError):
            await store.transition_status(warning.id, "resolved")

    @pytest.mark.asyncio
    async def test_resolved_is_terminal(self, store):
        warning = await store.create(make_draft())
        await store.resolve(warning.id, "Done", actor="a")
        with pytest.raises(InvalidStateError):
            await store.transition_status(warning.id, "active")

    @pytest.mark.asyncio
    async def test_unknown_status(self, store):
        warning = await store.create(make_draft())
        with pytest.raises(ValidationError):
            await store.transition_status(warning.id, "archived")


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Reads
# ═══════════════════════════════════════════════════════════════════════════

class TestReads:

    @pytest.mark.asyncio
    async def test_get_unknown(self, store):
        with pytest.raises(NotFoundError):
            await store.get("WRN-MISSING")

    @pytest.mark.asyncio
    async def test_pagination_newest_first(self, store):
        ids = [(await store.create(make_draft(title=f"W{i}"))).id for i in range(5)]
        page = await store.list_warnings(page=1, limit=2)
        assert page.total == 5
        assert page.total_pages == 3
        assert [w.id for w in page.items] == [ids[4], ids[3]]
        last = await store.list_warnings(page=3, limit=2)
        assert [w.id for w in last.items] == [ids[0]]

    @pytest.mark.asyncio
    async def test_filters(self, store):
        await store.create(make_draft(disaster_category="flood", severity="low"))
        fire = await store.create(make_draft(
            disaster_category="fire",
            severity="critical",
            affected_locations=[colombo_location(city="Kandy", district="Kandy", province="Central",
                                                 coordinates=KANDY)],
        ))
        by_category = await store.list_warnings(WarningFilters(disaster_category=DisasterCategory.FIRE))
        assert [w.id for w in by_category.items] == [fire.id]
        by_city = await store.list_warnings(WarningFilters(city="kan"))
        assert [w.id for w in by_city.items] == [fire.id]
        by_severity = await store.list_warnings(WarningFilters(severity=Severity.LOW))
        assert by_severity.total == 1

    @pytest.mark.asyncio
    async def test_invalid_page(self, store):
        with pytest.raises(ValidationError):
            await store.list_warnings(page=0)

    @pytest.mark.asyncio
    async def test_active_excludes_resolved(self, store):
        a = await store.create(make_draft())
        b = await store.create(make_draft())
        await store.transition_status(b.id, "monitoring")
        c = await store.create(make_draft())
        await store.resolve(c.id, "Done", actor="x")
        active_ids = {w.id for w in await store.active()}
        assert active_ids == {a.id, b.id}

    @pytest.mark.asyncio
    async def test_near(self, store):
        colombo = await store.create(make_draft())
        await store.create(make_draft(affected_locations=[
            colombo_location(city="Kandy", district="Kandy", province="Central", coordinates=KANDY),
        ]))
        near = await store.near(NEAR_COLOMBO, 20.0)
        assert [w.id for w in near] == [colombo.id]

    @pytest.mark.asyncio
    async def test_near_rejects_non_positive_radius(self, store):
        with pytest.raises(ValidationError):
            await store.near(COLOMBO, 0)

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store):
        warning = await store.create(make_draft())
        loaded = await store.get(warning.id)
        loaded.updates.append("tampered")
        again = await store.get(warning.id)
        assert again.updates == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Per-warning write locks
# ═══════════════════════════════════════════════════════════════════════════

class TestWriteLocks:

    @pytest.mark.asyncio
    async def test_unknown_ids_leave_no_locks_behind(self, store):
        for i in range(1000):
            with pytest.raises(NotFoundError):
                await store.append_update(f"WRN-MISSING-{i}", "x", author="a")
        assert len(store._locks) == 0

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialised_then_lock_freed(self, store):
        warning = await store.create(make_draft())
        await asyncio.gather(*(
            store.append_update(warning.id, f"update {i}", author="a") for i in range(20)
        ))
        after = await store.get(warning.id)
        assert after.version == 21
        assert len(after.updates) == 20
        assert warning.id not in store._locks
        assert len(store._locks) == 0
