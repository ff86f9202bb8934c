"""Step sequencing for a field work order.

The machine walks a work order through contract review, reception review,
equipment assignment, an optional line-registration step (certification
products only), completion and post-processing. Forward moves past the
equipment step are guarded by allocation and certification state.
"""

from __future__ import annotations

import logging
from typing import Any

from app.errors import GuardViolation, ValidationError
from app.models.field_work import ProcessStep, TransportMode
from app.schemas.field_work import (
    AllocationSnapshot,
    CertificationSession,
    ProcessState,
    WorkContext,
)
from app.services.certification import CertificationOrchestrator
from app.services.equipment_allocation import AllocationStore

logger = logging.getLogger(__name__)

COMPLETED_STATUS = "4"
EDITABLE_STATUSES = {"1", "2"}


def build_steps(certification_applies: bool) -> list[ProcessStep]:
    steps = [
        ProcessStep.contract_review,
        ProcessStep.reception_review,
        ProcessStep.equipment_assignment,
    ]
    if certification_applies:
        steps.append(ProcessStep.line_registration)
    steps.extend([ProcessStep.completion, ProcessStep.post_process])
    return steps


class WorkSession:
    """State shared by the components working on one open work order."""

    def __init__(
        self,
        context: WorkContext,
        store: AllocationStore,
        certification: CertificationSession | None = None,
    ):
        self.context = context
        self.store = store
        self.certification = certification or CertificationSession()
        self.committed: AllocationSnapshot | None = None
        self.completion_form: dict[str, Any] = {}


class ProcessStateMachine:
    def __init__(
        self,
        context: WorkContext,
        store: AllocationStore,
        orchestrator: CertificationOrchestrator | None = None,
        status_code: str = "1",
    ):
        if context.certification_applies and orchestrator is None:
            raise ValueError("Certification products need a certification orchestrator")
        self.orchestrator = orchestrator
        self.session = WorkSession(
            context,
            store,
            orchestrator.session if orchestrator is not None else None,
        )
        self.state = ProcessState(
            steps=build_steps(context.certification_applies),
            status_code=status_code or "1",
        )

    @property
    def context(self) -> WorkContext:
        return self.session.context

    @property
    def store(self) -> AllocationStore:
        return self.session.store

    @property
    def certification_mode(self) -> bool:
        return self.context.certification_applies

    def step_number(self, step: ProcessStep) -> int | None:
        try:
            return self.state.steps.index(step) + 1
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def read_only(self) -> bool:
        return self.state.read_only

    def update_status(self, status_code: str) -> ProcessState:
        """Apply the backend-reported work status."""
        self.state.status_code = status_code
        if status_code == COMPLETED_STATUS:
            post = self.step_number(ProcessStep.post_process)
            self.state.completed[post] = True
            logger.info("work_completed work_id=%s", self.context.work_id)
        return self.state

    def ensure_editable(self) -> None:
        if self.state.status_code not in EDITABLE_STATUSES:
            raise GuardViolation(
                "This work order can no longer be changed",
                details={"status_code": self.state.status_code},
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def commit_allocations(self) -> AllocationSnapshot:
        snapshot = self.store.snapshot()
        self.session.committed = snapshot
        logger.debug(
            "allocations_committed work_id=%s fingerprint=%s",
            self.context.work_id,
            snapshot.fingerprint,
        )
        return snapshot

    def _check_guards(self, target: int) -> None:
        if not self.certification_mode or target < 4:
            return

        missing = self.store.unallocated_slots()
        if missing:
            raise GuardViolation(
                "All contract equipment must be allocated first",
                details={"slot_ids": [slot.slot_id for slot in missing]},
            )

        line_step = self.step_number(ProcessStep.line_registration)
        if (
            self.context.transport_mode == TransportMode.wide_band
            and line_step is not None
            and target >= line_step
            and self.session.certification.directory_link is None
        ):
            raise GuardViolation("Directory link must be completed before line registration")

        completion_step = self.step_number(ProcessStep.completion)
        if target >= completion_step:
            descriptor = self.orchestrator.fresh_descriptor() if self.orchestrator else None
            if descriptor is None or not descriptor.port_no:
                raise GuardViolation("Line registration must be completed first")

    def jump_to(self, target: int) -> ProcessState:
        if target < 1 or target > self.state.total_steps:
            raise ValidationError(f"Step {target} does not exist")
        current = self.state.current_step
        if target == current:
            return self.state

        equipment_step = self.step_number(ProcessStep.equipment_assignment)
        if current == equipment_step:
            self.commit_allocations()

        if target > current:
            self._check_guards(target)
            for step in range(current, target):
                self.state.completed[step] = True

        if self.orchestrator is not None:
            self.orchestrator.abandon()
        self.state.current_step = target
        logger.info(
            "step_changed work_id=%s from=%s to=%s", self.context.work_id, current, target
        )
        return self.state

    def next(self) -> ProcessState:
        if self.state.current_step >= self.state.total_steps:
            raise GuardViolation("Already at the last step")
        return self.jump_to(self.state.current_step + 1)

    def previous(self) -> ProcessState:
        if self.state.current_step <= 1:
            raise GuardViolation("Already at the first step")
        return self.jump_to(self.state.current_step - 1)
