"""Single entry point for field work commands.

``FieldWorkService.execute`` accepts one typed command, runs it against the
active work order and returns a ``StepResult`` carrying a fresh read model.
One service instance serves one technician; opening a different work order
drops the in-memory state of the previous one (its drafts stay persisted).
"""

from __future__ import annotations

from collections.abc import Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.errors import RemoteCallError, ValidationError
from app.logging import get_logger
from app.models.field_work import ChangeTag, DraftKind
from app.schemas import commands as cmd
from app.schemas.field_work import (
    AllocationSnapshot,
    CertificationSession,
    SessionView,
    SignalResult,
)
from app.services import certification_log
from app.services.certification import (
    CertificationOrchestrator,
    resolve_certification_profile,
)
from app.services.certification_client import CertificationClient
from app.services.equipment_allocation import AllocationStore, compute_fingerprint
from app.services.inventory_client import InventoryClient, InventoryClientError
from app.services.signal_priority import build_signal_request, check_signal_preconditions
from app.services.work_drafts import DraftStore, InMemoryDraftStore, SqlDraftStore
from app.services.work_process import ProcessStateMachine
from app.validators.equipment import validate_allocations

logger = get_logger(__name__)


class FieldWorkService:
    def __init__(
        self,
        inventory: InventoryClient,
        certification: CertificationClient,
        drafts: DraftStore | None = None,
        db: Session | None = None,
    ):
        self.inventory = inventory
        self.certification = certification
        self.drafts: DraftStore = drafts or InMemoryDraftStore()
        self.db = db
        self.machine: ProcessStateMachine | None = None
        self._initial_load_complete = False
        self._handlers: dict[str, Callable] = {
            "assign": self._assign,
            "unassign": self._unassign,
            "recover": self._recover,
            "reuse": self._reuse,
            "removal_flags": self._removal_flags,
            "save_equipment": self._save_equipment,
            "send_signal": self._send_signal,
            "navigate": self._navigate,
            "subscribe": self._subscribe,
            "link_directory": self._link_directory,
            "query_line": self._query_line,
            "select_node": self._select_node,
            "select_port": self._select_port,
            "lookup_terminal": self._lookup_terminal,
            "register_line": self._register_line,
            "certify_type": self._certify_type,
            "activate": self._activate,
            "terminate": self._terminate,
            "change_certification": self._change_certification,
            "status": self._status,
            "completion_form": self._completion_form,
            "clear_draft": self._clear_draft,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, command: cmd.Command) -> cmd.StepResult:
        if isinstance(command, cmd.OpenWork):
            return await self._open(command)
        machine = self._require_active(command.work_id)
        handler = self._handlers[command.kind]
        result = await handler(machine, command)
        if result.view is None:
            result.view = self.view()
        return result

    def bind_db(self, db: Session) -> None:
        """Attach the request-scoped session used for call logs and SQL drafts."""
        self.db = db
        if isinstance(self.drafts, SqlDraftStore):
            self.drafts.db = db

    def view(self) -> SessionView:
        machine = self._require_machine()
        store = machine.store
        return SessionView(
            context=machine.context,
            load_state=store.load_state,
            process=machine.state,
            certification=machine.session.certification,
            allocations=store.records(),
            removals=list(store.removals),
            unallocated_slot_ids=[slot.slot_id for slot in store.unallocated_slots()],
            fingerprint=store.fingerprint(),
            signal=store.signal_result,
        )

    def _require_machine(self) -> ProcessStateMachine:
        if self.machine is None:
            raise ValidationError("No work order is open")
        return self.machine

    def _require_active(self, work_id: str) -> ProcessStateMachine:
        machine = self._require_machine()
        if machine.context.work_id != work_id:
            raise ValidationError(f"Work order {work_id} is not the open work order")
        return machine

    def _require_orchestrator(self, machine: ProcessStateMachine) -> CertificationOrchestrator:
        if machine.orchestrator is None:
            raise ValidationError("This product does not use certification")
        return machine.orchestrator

    # ------------------------------------------------------------------
    # Open / drafts
    # ------------------------------------------------------------------

    async def _open(self, command: cmd.OpenWork) -> cmd.StepResult:
        context = command.context
        if context.work_id != command.work_id:
            raise ValidationError("Work id does not match the work context")

        if self.machine is not None and self.machine.context.work_id != context.work_id:
            logger.info(
                "work_switched from=%s to=%s", self.machine.context.work_id, context.work_id
            )
            if self.machine.orchestrator is not None:
                self.machine.orchestrator.abandon()
        self.machine = None
        self._initial_load_complete = False

        if command.detect_certification:
            profile = await resolve_certification_profile(self.certification, context.product_code)
            context = context.model_copy(
                update={
                    "certification_applies": profile.applies,
                    "transport_mode": profile.transport_mode,
                }
            )

        store = AllocationStore(context.work_id)
        store.subscribe(self._on_allocation_change)
        store.begin_load()
        try:
            inventory = await self.inventory.fetch_work_equipment(context, command.technician_id)
        except InventoryClientError as exc:
            store.mark_failed(str(exc))
            raise RemoteCallError(f"Equipment lookup failed: {exc}") from exc
        store.load(inventory)

        draft = self._load_work_draft(context.work_id)
        orchestrator = None
        if context.certification_applies:
            orchestrator = CertificationOrchestrator(
                context,
                store,
                self.certification,
                session=draft.get("certification"),
                recorder=self._recorder(context.work_id, context.contract_id),
            )
        machine = ProcessStateMachine(context, store, orchestrator, status_code=command.status_code)
        machine.session.completion_form = draft.get("completion_form", {})
        step = draft.get("current_step")
        if isinstance(step, int) and 1 <= step <= machine.state.total_steps:
            machine.state.current_step = step
        self.machine = machine

        self._restore_equipment_draft(machine)
        if orchestrator is not None:
            orchestrator.fresh_descriptor()
        self._initial_load_complete = True
        return cmd.StepResult(kind=command.kind, view=self.view())

    def _load_work_draft(self, work_id: str) -> dict:
        raw = self.drafts.get(work_id, DraftKind.work_complete)
        if not raw:
            return {}
        try:
            certification = (
                CertificationSession.model_validate(raw["certification"])
                if raw.get("certification")
                else None
            )
        except PydanticValidationError:
            logger.warning("work_draft_discarded work_id=%s reason=unreadable", work_id)
            self.drafts.delete(work_id, DraftKind.work_complete)
            return {}
        return {
            "certification": certification,
            "completion_form": dict(raw.get("completion_form") or {}),
            "current_step": raw.get("current_step"),
        }

    def _restore_equipment_draft(self, machine: ProcessStateMachine) -> None:
        work_id = machine.context.work_id
        raw = self.drafts.get(work_id, DraftKind.equipment)
        if not raw:
            return
        try:
            snapshot = AllocationSnapshot.model_validate(raw)
        except PydanticValidationError:
            logger.warning("equipment_draft_discarded work_id=%s reason=unreadable", work_id)
            self.drafts.delete(work_id, DraftKind.equipment)
            return

        store = machine.store
        stock_ids = {unit.unit_id for unit in store.stock}
        recorded = compute_fingerprint(record.unit_id for record in snapshot.allocations)
        units_present = all(
            record.unit_id in stock_ids or record.change_tag == ChangeTag.reuse
            for record in snapshot.allocations
        )
        if recorded != snapshot.fingerprint or not units_present:
            logger.info("equipment_draft_discarded work_id=%s reason=stale", work_id)
            self.drafts.delete(work_id, DraftKind.equipment)
            return
        store.restore(snapshot)
        machine.commit_allocations()

    def _on_allocation_change(self, store: AllocationStore) -> None:
        if not self._initial_load_complete:
            return
        self.drafts.set(
            store.work_id,
            DraftKind.equipment,
            store.snapshot().model_dump(mode="json"),
        )

    def _persist_work_draft(self, machine: ProcessStateMachine) -> None:
        if not self._initial_load_complete:
            return
        self.drafts.set(
            machine.context.work_id,
            DraftKind.work_complete,
            {
                "certification": machine.session.certification.model_dump(mode="json"),
                "completion_form": machine.session.completion_form,
                "current_step": machine.state.current_step,
            },
        )

    def _recorder(self, work_id: str, contract_id: str):
        def _record(operation: str, success: bool, code: str, message: str) -> None:
            if self.db is None:
                return
            certification_log.record_call(
                self.db, work_id, contract_id, operation, success, code, message
            )

        return _record

    # ------------------------------------------------------------------
    # Allocation commands
    # ------------------------------------------------------------------

    async def _assign(self, machine, command: cmd.AssignUnit) -> cmd.StepResult:
        machine.ensure_editable()
        record = machine.store.assign(
            command.slot_id,
            command.unit_id,
            install_location=command.install_location,
            mac_override=command.mac_override,
        )
        return cmd.StepResult(kind=command.kind, data={"unit_id": record.unit_id})

    async def _unassign(self, machine, command: cmd.UnassignSlot) -> cmd.StepResult:
        machine.ensure_editable()
        machine.store.unassign(command.slot_id)
        return cmd.StepResult(kind=command.kind)

    async def _recover(self, machine, command: cmd.RecoverUnit) -> cmd.StepResult:
        machine.ensure_editable()
        machine.store.recover(command.unit_id)
        return cmd.StepResult(kind=command.kind)

    async def _reuse(self, machine, command: cmd.ReuseUnit) -> cmd.StepResult:
        machine.ensure_editable()
        machine.store.reuse(command.unit_id, command.slot_id)
        return cmd.StepResult(kind=command.kind)

    async def _removal_flags(self, machine, command: cmd.SetRemovalFlags) -> cmd.StepResult:
        machine.ensure_editable()
        machine.store.set_removal_flags(command.unit_id, **command.flags)
        return cmd.StepResult(kind=command.kind)

    async def _save_equipment(self, machine, command: cmd.SaveEquipment) -> cmd.StepResult:
        machine.ensure_editable()
        validate_allocations(machine.store.records(), machine.context)
        snapshot = machine.commit_allocations()
        return cmd.StepResult(
            kind=command.kind,
            message="Equipment saved",
            data={"fingerprint": snapshot.fingerprint},
        )

    async def _send_signal(self, machine, command: cmd.SendSignal) -> cmd.StepResult:
        context = machine.context
        check_signal_preconditions(context)
        if machine.orchestrator is not None and await machine.orchestrator.signal_blocked():
            raise ValidationError("Activation for this product is issued by the certification backend")
        request = build_signal_request(machine.store.records(), context)
        try:
            response = await self.inventory.send_signal(request, context)
        except InventoryClientError as exc:
            raise RemoteCallError(f"Signal request failed: {exc}") from exc
        result = SignalResult(
            success=response.success,
            message=response.message or response.result,
            request=request,
        )
        machine.store.signal_result = result
        logger.info(
            "signal_sent work_id=%s msg_id=%s success=%s",
            context.work_id,
            request.message_id,
            result.success,
        )
        return cmd.StepResult(kind=command.kind, ok=result.success, message=result.message)

    # ------------------------------------------------------------------
    # Process commands
    # ------------------------------------------------------------------

    async def _navigate(self, machine, command: cmd.Navigate) -> cmd.StepResult:
        if command.action == "next":
            machine.next()
        elif command.action == "previous":
            machine.previous()
        else:
            if command.step is None:
                raise ValidationError("A step number is required")
            machine.jump_to(command.step)
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind)

    async def _status(self, machine, command: cmd.UpdateStatus) -> cmd.StepResult:
        machine.update_status(command.status_code)
        return cmd.StepResult(kind=command.kind, data={"read_only": machine.read_only})

    async def _completion_form(self, machine, command: cmd.SaveCompletionForm) -> cmd.StepResult:
        machine.ensure_editable()
        machine.session.completion_form.update(command.fields)
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind)

    async def _clear_draft(self, machine, command: cmd.ClearDraft) -> cmd.StepResult:
        self.drafts.delete(command.work_id)
        return cmd.StepResult(kind=command.kind)

    # ------------------------------------------------------------------
    # Certification commands
    # ------------------------------------------------------------------

    async def _subscribe(self, machine, command: cmd.Subscribe) -> cmd.StepResult:
        session = await self._require_orchestrator(machine).subscribe(command.request_division_code)
        self._persist_work_draft(machine)
        return cmd.StepResult(
            kind=command.kind,
            data={
                "subscription_no": session.subscription_no,
                "subscription_request_no": session.subscription_request_no,
            },
        )

    async def _link_directory(self, machine, command: cmd.LinkDirectory) -> cmd.StepResult:
        link = await self._require_orchestrator(machine).link_directory()
        self._persist_work_draft(machine)
        message = "Directory linked (no data returned)" if link.empty else "Directory linked"
        return cmd.StepResult(kind=command.kind, message=message)

    async def _query_line(self, machine, command: cmd.QueryLine) -> cmd.StepResult:
        descriptor = await self._require_orchestrator(machine).query_line_info(command.node_id)
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind, data=descriptor.model_dump(mode="json"))

    async def _select_node(self, machine, command: cmd.SelectNode) -> cmd.StepResult:
        ports = await self._require_orchestrator(machine).select_node(command.node_id)
        self._persist_work_draft(machine)
        return cmd.StepResult(
            kind=command.kind, data={"ports": [port.model_dump() for port in ports]}
        )

    async def _select_port(self, machine, command: cmd.SelectPort) -> cmd.StepResult:
        descriptor = self._require_orchestrator(machine).select_port(command.port_no)
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind, data=descriptor.model_dump(mode="json"))

    async def _lookup_terminal(self, machine, command: cmd.LookupTerminal) -> cmd.StepResult:
        descriptor = await self._require_orchestrator(machine).lookup_terminal(
            command.ont_mac, command.ont_serial, command.ap_mac
        )
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind, data=descriptor.model_dump(mode="json"))

    async def _register_line(self, machine, command: cmd.RegisterLine) -> cmd.StepResult:
        try:
            await self._require_orchestrator(machine).register_line()
        finally:
            self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind, message="Line registered")

    async def _certify_type(self, machine, command: cmd.DetermineCertifyType) -> cmd.StepResult:
        certify_type = await self._require_orchestrator(machine).determine_certify_type()
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind, data={"certify_type": certify_type.value})

    async def _activate(self, machine, command: cmd.ActivateService) -> cmd.StepResult:
        code = await self._require_orchestrator(machine).activate_service(command.reason)
        self._persist_work_draft(machine)
        return cmd.StepResult(kind=command.kind, data={"code": code})

    async def _terminate(self, machine, command: cmd.TerminateService) -> cmd.StepResult:
        outcome = await self._require_orchestrator(machine).terminate_service()
        self._persist_work_draft(machine)
        return cmd.StepResult(
            kind=command.kind,
            ok=outcome.success or not outcome.certified,
            message=outcome.message,
            data=outcome.model_dump(),
        )

    async def _change_certification(
        self, machine, command: cmd.ChangeCertification
    ) -> cmd.StepResult:
        outcome = await self._require_orchestrator(machine).change_service(command.reason)
        return cmd.StepResult(
            kind=command.kind, ok=outcome.success, message=outcome.message, data=outcome.model_dump()
        )
