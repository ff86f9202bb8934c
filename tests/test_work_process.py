"""Tests for the work order step machine and its guards."""

from unittest.mock import AsyncMock

import pytest

from app.errors import GuardViolation, ValidationError
from app.models.field_work import ProcessStep
from app.schemas.field_work import DirectoryLinkResult, LineDescriptor
from app.services.certification import CertificationOrchestrator
from app.services.work_process import ProcessStateMachine, build_steps


@pytest.fixture()
def cert_machine(wide_band_context, store):
    orchestrator = CertificationOrchestrator(wide_band_context, store, AsyncMock())
    machine = ProcessStateMachine(wide_band_context, store, orchestrator)
    machine.jump_to(3)
    return machine


def _allocate_all(store):
    store.assign("S-MODEM", "U-MODEM-1")
    store.assign("S-STB", "U-STB-1")


class TestSteps:
    """Tests for the step list."""

    def test_step_counts(self):
        """Test certification adds the line-registration step."""
        assert len(build_steps(False)) == 5
        steps = build_steps(True)
        assert len(steps) == 6
        assert steps[3] == ProcessStep.line_registration

    def test_certification_needs_orchestrator(self, wide_band_context, store):
        """Test certification work refuses to run without an orchestrator."""
        with pytest.raises(ValueError):
            ProcessStateMachine(wide_band_context, store)

    def test_bounds(self, work_context, store):
        """Test moves beyond either end are refused."""
        machine = ProcessStateMachine(work_context, store)

        with pytest.raises(GuardViolation):
            machine.previous()
        with pytest.raises(ValidationError):
            machine.jump_to(6)

        machine.jump_to(5)
        with pytest.raises(GuardViolation):
            machine.next()


class TestGuards:
    """Tests for forward-move guards in certification mode."""

    def test_unallocated_slot_blocks_and_keeps_step(self, cert_machine):
        """Test a missing allocation refuses the move and keeps the step."""
        cert_machine.store.assign("S-MODEM", "U-MODEM-1")

        with pytest.raises(GuardViolation) as exc_info:
            cert_machine.next()

        assert cert_machine.state.current_step == 3
        assert exc_info.value.details == {"slot_ids": ["S-STB"]}

    def test_leaving_equipment_step_commits(self, cert_machine):
        """Test leaving the equipment step commits even when the guard fails."""
        cert_machine.store.assign("S-MODEM", "U-MODEM-1")

        with pytest.raises(GuardViolation):
            cert_machine.next()

        assert cert_machine.session.committed.fingerprint == "U-MODEM-1"

    def test_wide_band_needs_directory_link(self, cert_machine):
        """Test wide-band work needs the directory link before line registration."""
        _allocate_all(cert_machine.store)

        with pytest.raises(GuardViolation, match="Directory link"):
            cert_machine.next()

        cert_machine.session.certification.directory_link = DirectoryLinkResult(empty=True)
        state = cert_machine.next()

        assert state.current_step == 4
        assert state.completed[3] is True

    def test_completion_needs_registered_line(self, cert_machine):
        """Test completion requires a current descriptor with a port."""
        _allocate_all(cert_machine.store)
        cert_machine.session.certification.directory_link = DirectoryLinkResult(empty=True)
        cert_machine.next()

        with pytest.raises(GuardViolation, match="Line registration"):
            cert_machine.next()

        cert_machine.session.certification.descriptor = LineDescriptor(
            port_no="1/1/3", fingerprint=cert_machine.store.fingerprint()
        )
        assert cert_machine.next().current_step == 5

    def test_stale_descriptor_fails_completion(self, cert_machine):
        """Test a descriptor from an older allocation set does not count."""
        _allocate_all(cert_machine.store)
        cert_machine.session.certification.directory_link = DirectoryLinkResult(empty=True)
        cert_machine.session.certification.descriptor = LineDescriptor(
            port_no="1/1/3", fingerprint="U-OLD"
        )

        with pytest.raises(GuardViolation):
            cert_machine.jump_to(5)

        assert cert_machine.session.certification.descriptor is None

    def test_backward_moves_skip_guards(self, cert_machine):
        """Test moving back never checks guards."""
        assert cert_machine.previous().current_step == 2

    def test_transition_abandons_in_flight_calls(self, cert_machine):
        """Test each transition bumps the orchestrator epoch."""
        epoch = cert_machine.orchestrator.epoch
        cert_machine.previous()

        assert cert_machine.orchestrator.epoch == epoch + 1

    def test_no_guards_without_certification(self, work_context, store):
        """Test ordinary work can reach completion with open slots."""
        machine = ProcessStateMachine(work_context, store)

        assert machine.jump_to(4).current == ProcessStep.completion


class TestStatus:
    """Tests for backend work status handling."""

    def test_completed_status_is_read_only(self, work_context, store):
        """Test status 4 marks post-processing done and blocks edits."""
        machine = ProcessStateMachine(work_context, store)
        machine.ensure_editable()

        state = machine.update_status("4")

        assert state.read_only
        assert state.completed[5] is True
        with pytest.raises(GuardViolation):
            machine.ensure_editable()
