"""Per-work-order equipment allocation state.

Holds the contract slots, the technician's stock, committed allocations and
the units marked for recovery. All mutations go through this class so that
derived caches (the activation-signal result) are dropped and change
listeners fire exactly once per mutation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from app.errors import ValidationError
from app.models.field_work import AllocationLoadState, ChangeTag
from app.schemas.field_work import (
    AllocationRecord,
    AllocationSnapshot,
    ContractEquipmentSlot,
    InventorySnapshot,
    RemovalRecord,
    SignalResult,
    StockUnit,
)

logger = logging.getLogger(__name__)

REMOVAL_FLAGS = ("unit_lost", "adapter_lost", "remote_lost", "cable_lost", "cradle_lost")

ChangeListener = Callable[["AllocationStore"], None]


def compute_fingerprint(unit_ids) -> str:
    """Stable identity of an allocation set: sorted unit ids joined by commas."""
    return ",".join(sorted(uid for uid in unit_ids if uid))


class AllocationStore:
    def __init__(self, work_id: str):
        self.work_id = work_id
        self.load_state = AllocationLoadState.idle
        self.load_error: str | None = None
        self.slots: dict[str, ContractEquipmentSlot] = {}
        self.stock: list[StockUnit] = []
        self.installed: list[StockUnit] = []
        self.allocations: dict[str, AllocationRecord] = {}
        self.removals: list[RemovalRecord] = []
        self.signal_result: SignalResult | None = None
        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def begin_load(self) -> None:
        self.load_state = AllocationLoadState.loading
        self.load_error = None

    def load(self, inventory: InventorySnapshot) -> None:
        self.slots = {slot.slot_id: slot for slot in inventory.slots}
        self.stock = list(inventory.stock)
        self.installed = list(inventory.installed)
        self.allocations = {}
        self.removals = [RemovalRecord(unit=unit) for unit in inventory.removed]
        self.signal_result = None
        self.load_state = AllocationLoadState.loaded
        logger.info(
            "allocation_loaded work_id=%s slots=%s stock=%s installed=%s removed=%s",
            self.work_id,
            len(self.slots),
            len(self.stock),
            len(self.installed),
            len(self.removals),
        )

    def mark_failed(self, message: str) -> None:
        self.load_state = AllocationLoadState.failed
        self.load_error = message
        logger.warning("allocation_load_failed work_id=%s error=%s", self.work_id, message)

    @property
    def loaded(self) -> bool:
        return self.load_state == AllocationLoadState.loaded

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        self.signal_result = None
        for listener in list(self._listeners):
            listener(self)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_loaded(self) -> None:
        if not self.loaded:
            raise ValidationError("Equipment information has not been loaded yet")

    def get_slot(self, slot_id: str) -> ContractEquipmentSlot:
        slot = self.slots.get(slot_id)
        if slot is None:
            raise ValidationError(f"Contract equipment slot {slot_id} not found")
        return slot

    def _allocated_ids(self) -> set[str]:
        return {record.unit_id for record in self.allocations.values() if record.unit_id}

    def _removal_ids(self) -> set[str]:
        return {record.unit_id for record in self.removals if record.unit_id}

    def _find_removal(self, unit_id: str) -> RemovalRecord | None:
        for record in self.removals:
            if record.unit_id == unit_id:
                return record
        return None

    def _slot_for_unit(self, unit_id: str) -> str | None:
        for slot_id, record in self.allocations.items():
            if record.unit_id == unit_id:
                return slot_id
        return None

    @staticmethod
    def _matches(slot: ContractEquipmentSlot, unit: StockUnit) -> bool:
        if unit.category_code != slot.category_code:
            return False
        if slot.model_code and unit.model_code and unit.model_code != slot.model_code:
            return False
        return True

    def available_stock(self, slot_id: str) -> list[StockUnit]:
        """Stock units not allocated or marked removed, filtered to the slot."""
        slot = self.get_slot(slot_id)
        taken = self._allocated_ids() | self._removal_ids()
        return [
            unit
            for unit in self.stock
            if unit.unit_id not in taken and self._matches(slot, unit)
        ]

    def reusable_removals(self, slot_id: str) -> list[RemovalRecord]:
        slot = self.get_slot(slot_id)
        return [record for record in self.removals if self._matches(slot, record.unit)]

    def unallocated_slots(self) -> list[ContractEquipmentSlot]:
        return [slot for slot_id, slot in self.slots.items() if slot_id not in self.allocations]

    def records(self) -> list[AllocationRecord]:
        return list(self.allocations.values())

    def fingerprint(self) -> str:
        return compute_fingerprint(record.unit_id for record in self.allocations.values())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def assign(
        self,
        slot_id: str,
        unit_id: str,
        install_location: str = "",
        mac_override: str | None = None,
    ) -> AllocationRecord:
        """Bind a stock unit to a slot, replacing whatever the slot held."""
        self._require_loaded()
        slot = self.get_slot(slot_id)
        unit = next((u for u in self.stock if u.unit_id == unit_id), None)
        if unit is None:
            raise ValidationError(f"Unit {unit_id} is not in the technician stock")
        if unit_id in self._removal_ids():
            raise ValidationError(f"Unit {unit_id} is marked for recovery")
        holder = self._slot_for_unit(unit_id)
        if holder is not None and holder != slot_id:
            raise ValidationError(f"Unit {unit_id} is already allocated to slot {holder}")
        if unit.category_code != slot.category_code:
            raise ValidationError(
                f"Unit {unit_id} does not match the equipment category of {slot.display_name or slot_id}"
            )
        record = AllocationRecord(
            slot=slot,
            unit=unit,
            install_location=install_location,
            mac_override=mac_override,
            change_tag=ChangeTag.new,
        )
        self.allocations[slot_id] = record
        self._changed()
        return record

    def unassign(self, slot_id: str) -> AllocationRecord | None:
        self._require_loaded()
        record = self.allocations.pop(slot_id, None)
        if record is not None:
            self._changed()
        return record

    def recover(self, unit_id: str) -> RemovalRecord:
        """Mark a unit for recovery from the customer premises.

        Drops its allocation when it has one. A unit that is already on the
        removal list is left untouched.
        """
        self._require_loaded()
        existing = self._find_removal(unit_id)
        if existing is not None:
            return existing

        unit: StockUnit | None = None
        slot_id = self._slot_for_unit(unit_id)
        if slot_id is not None:
            unit = self.allocations.pop(slot_id).unit
        else:
            for idx, candidate in enumerate(self.installed):
                if candidate.unit_id == unit_id:
                    unit = self.installed.pop(idx)
                    break
        if unit is None:
            unit = next((u for u in self.stock if u.unit_id == unit_id), None)
        if unit is None:
            raise ValidationError(f"Unit {unit_id} not found")

        record = RemovalRecord(unit=unit)
        self.removals.append(record)
        self._changed()
        return record

    def reuse(self, unit_id: str, slot_id: str) -> AllocationRecord:
        """Reinstall a recovered unit into a slot; its loss flags are discarded."""
        self._require_loaded()
        slot = self.get_slot(slot_id)
        removal = self._find_removal(unit_id)
        if removal is None:
            raise ValidationError(f"Unit {unit_id} is not on the removal list")
        if not self._matches(slot, removal.unit):
            raise ValidationError(
                f"Unit {unit_id} does not match the equipment of {slot.display_name or slot_id}"
            )
        self.removals = [r for r in self.removals if r.unit_id != unit_id]
        record = AllocationRecord(slot=slot, unit=removal.unit, change_tag=ChangeTag.reuse)
        self.allocations[slot_id] = record
        self._changed()
        return record

    def set_removal_flags(self, unit_id: str, **flags: bool) -> RemovalRecord:
        self._require_loaded()
        unknown = set(flags) - set(REMOVAL_FLAGS)
        if unknown:
            raise ValidationError(f"Unknown removal flags: {', '.join(sorted(unknown))}")
        record = self._find_removal(unit_id)
        if record is None:
            raise ValidationError(f"Unit {unit_id} is not on the removal list")
        for name, value in flags.items():
            setattr(record, name, bool(value))
        self._changed()
        return record

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> AllocationSnapshot:
        return AllocationSnapshot(
            allocations=self.records(),
            removals=list(self.removals),
            installed=list(self.installed),
            fingerprint=self.fingerprint(),
        ).model_copy(deep=True)

    def restore(self, snapshot: AllocationSnapshot) -> None:
        """Apply a saved snapshot on top of freshly loaded inventory.

        Records whose slot no longer exists are dropped.
        """
        self._require_loaded()
        snapshot = snapshot.model_copy(deep=True)
        self.allocations = {
            record.slot.slot_id: record
            for record in snapshot.allocations
            if record.slot.slot_id in self.slots
        }
        self.removals = list(snapshot.removals)
        self.installed = list(snapshot.installed)
        self._changed()
