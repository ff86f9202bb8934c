"""Tests for the per-work-order equipment allocation store."""

import pytest

from app.errors import ValidationError
from app.models.field_work import AllocationLoadState, ChangeTag
from app.schemas.field_work import SignalResult
from app.services.equipment_allocation import AllocationStore, compute_fingerprint


# =============================================================================
# Loading
# =============================================================================


class TestLoading:
    """Tests for load state transitions."""

    def test_mutation_before_load_is_rejected(self, inventory):
        """Test mutations are refused until inventory has loaded."""
        store = AllocationStore("W100")
        store.begin_load()
        store.slots = {slot.slot_id: slot for slot in inventory.slots}

        assert store.load_state == AllocationLoadState.loading
        with pytest.raises(ValidationError):
            store.assign("S-MODEM", "U-MODEM-1")

    def test_load_marks_removed_units(self, store):
        """Test removed units from inventory land on the removal list."""
        assert store.loaded
        assert [r.unit_id for r in store.removals] == ["R-MODEM"]
        assert store.allocations == {}

    def test_mark_failed(self):
        """Test failed load keeps the error message."""
        store = AllocationStore("W100")
        store.begin_load()
        store.mark_failed("inventory down")

        assert store.load_state == AllocationLoadState.failed
        assert store.load_error == "inventory down"
        assert not store.loaded


# =============================================================================
# Assignment
# =============================================================================


class TestAssign:
    """Tests for assigning stock units to contract slots."""

    def test_assign_tags_new(self, store):
        """Test a fresh assignment is tagged as new equipment."""
        record = store.assign("S-MODEM", "U-MODEM-1", install_location="living room")

        assert record.change_tag == ChangeTag.new
        assert record.install_location == "living room"
        assert store.allocations["S-MODEM"].unit_id == "U-MODEM-1"

    def test_reassign_returns_previous_unit_to_stock(self, store):
        """Test replacing a slot's unit makes the old unit available again."""
        store.assign("S-MODEM", "U-MODEM-1")
        store.assign("S-MODEM", "U-MODEM-2")

        available = [u.unit_id for u in store.available_stock("S-MODEM")]
        assert available == ["U-MODEM-1"]

    def test_unit_cannot_fill_two_slots(self, store, make_slot):
        """Test a unit allocated to one slot cannot be placed in another."""
        store.slots["S-MODEM-2"] = make_slot("S-MODEM-2", "03", "090201")
        store.assign("S-MODEM", "U-MODEM-1")

        with pytest.raises(ValidationError, match="already allocated"):
            store.assign("S-MODEM-2", "U-MODEM-1")

    def test_unknown_unit(self, store):
        """Test units outside the technician stock are rejected."""
        with pytest.raises(ValidationError, match="not in the technician stock"):
            store.assign("S-MODEM", "NOPE")

    def test_category_mismatch(self, store):
        """Test a set-top unit cannot fill a modem slot."""
        with pytest.raises(ValidationError, match="does not match"):
            store.assign("S-MODEM", "U-STB-1")

    def test_unknown_slot(self, store):
        """Test assigning to a missing slot fails."""
        with pytest.raises(ValidationError, match="not found"):
            store.assign("S-NONE", "U-MODEM-1")

    def test_unassign(self, store):
        """Test unassign frees the slot."""
        store.assign("S-MODEM", "U-MODEM-1")
        removed = store.unassign("S-MODEM")

        assert removed.unit_id == "U-MODEM-1"
        assert [s.slot_id for s in store.unallocated_slots()] == ["S-MODEM", "S-STB"]

    def test_available_stock_filters_category(self, store):
        """Test only matching, unallocated units are offered."""
        assert [u.unit_id for u in store.available_stock("S-STB")] == ["U-STB-1"]
        store.assign("S-STB", "U-STB-1")
        assert store.available_stock("S-STB") == []


# =============================================================================
# Recovery and reuse
# =============================================================================


class TestRecovery:
    """Tests for marking units for recovery and reinstalling them."""

    def test_recover_allocated_unit(self, store):
        """Test recovering an allocated unit drops its allocation."""
        store.assign("S-MODEM", "U-MODEM-1")
        record = store.recover("U-MODEM-1")

        assert record.unit_id == "U-MODEM-1"
        assert "S-MODEM" not in store.allocations
        assert "U-MODEM-1" not in [u.unit_id for u in store.available_stock("S-MODEM")]

    def test_recover_installed_unit(self, store):
        """Test a unit installed at the premises can be recovered."""
        store.recover("OLD-STB")

        assert store.installed == []
        assert "OLD-STB" in [r.unit_id for r in store.removals]

    def test_recover_is_idempotent(self, store):
        """Test recovering a unit twice keeps a single removal record."""
        first = store.recover("OLD-STB")
        first.remote_lost = True
        second = store.recover("OLD-STB")

        assert second is first
        assert [r.unit_id for r in store.removals].count("OLD-STB") == 1

    def test_recover_unknown_unit(self, store):
        """Test recovering an unknown unit fails."""
        with pytest.raises(ValidationError):
            store.recover("GHOST")

    def test_reuse_tags_and_discards_flags(self, store):
        """Test reuse moves a removal back into a slot tagged reuse."""
        store.set_removal_flags("R-MODEM", unit_lost=True)
        record = store.reuse("R-MODEM", "S-MODEM")

        assert record.change_tag == ChangeTag.reuse
        assert "R-MODEM" not in [r.unit_id for r in store.removals]
        assert store.reusable_removals("S-MODEM") == []

    def test_reuse_requires_removal(self, store):
        """Test only units on the removal list can be reused."""
        with pytest.raises(ValidationError, match="removal list"):
            store.reuse("U-MODEM-1", "S-MODEM")

    def test_unknown_removal_flag(self, store):
        """Test unknown flags are rejected."""
        with pytest.raises(ValidationError, match="Unknown removal flags"):
            store.set_removal_flags("R-MODEM", battery_lost=True)


# =============================================================================
# Change tracking
# =============================================================================


class TestChangeTracking:
    """Tests for listeners, fingerprint and snapshots."""

    def test_mutation_notifies_listeners_and_clears_signal(self, store):
        """Test every mutation drops the cached signal result and notifies."""
        seen = []
        store.subscribe(lambda s: seen.append(s.fingerprint()))
        store.signal_result = SignalResult(success=True)

        store.assign("S-MODEM", "U-MODEM-1")

        assert store.signal_result is None
        assert seen == ["U-MODEM-1"]

    def test_fingerprint_is_sorted(self, store):
        """Test fingerprint ignores assignment order."""
        store.assign("S-STB", "U-STB-1")
        store.assign("S-MODEM", "U-MODEM-1")

        assert store.fingerprint() == "U-MODEM-1,U-STB-1"
        assert compute_fingerprint(["b", "", "a"]) == "a,b"

    def test_snapshot_is_detached(self, store):
        """Test snapshots are unaffected by later changes."""
        store.assign("S-MODEM", "U-MODEM-1")
        snapshot = store.snapshot()
        store.allocations["S-MODEM"].install_location = "attic"

        assert snapshot.allocations[0].install_location == ""
        assert snapshot.fingerprint == "U-MODEM-1"

    def test_restore_drops_unknown_slots(self, store, make_slot):
        """Test restoring a snapshot skips slots the contract no longer has."""
        store.slots["S-EXTRA"] = make_slot("S-EXTRA", "03", "090201")
        store.assign("S-EXTRA", "U-MODEM-2")
        store.assign("S-STB", "U-STB-1")
        snapshot = store.snapshot()

        del store.slots["S-EXTRA"]
        store.allocations = {}
        store.restore(snapshot)

        assert list(store.allocations) == ["S-STB"]
