"""Tests for the field work command facade."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.errors import GuardViolation, RemoteCallError, ValidationError
from app.models.field_work import AllocationLoadState, CertificationState, DraftKind
from app.schemas import commands as cmd
from app.schemas.certification import SignalResponse, SubscriptionResult
from app.services import certification_log
from app.services.field_work import FieldWorkService
from app.services.inventory_client import InventoryClientError
from app.services.work_drafts import InMemoryDraftStore


@pytest.fixture()
def inventory_client(inventory):
    client = AsyncMock()
    client.fetch_work_equipment.return_value = inventory
    return client


@pytest.fixture()
def certification_client():
    client = AsyncMock()
    client.certification_products.return_value = {"PD100": "N"}
    client.get_contract_line_info.return_value = None
    client.register_subscription.return_value = SubscriptionResult(
        RESULT_CD="Y", ENTR_NO="E1", ENTR_RQST_NO="R1"
    )
    return client


@pytest.fixture()
def drafts():
    return InMemoryDraftStore()


@pytest.fixture()
def service(inventory_client, certification_client, drafts):
    return FieldWorkService(inventory_client, certification_client, drafts=drafts)


async def _open(service, context, **kwargs):
    return await service.execute(cmd.OpenWork(work_id=context.work_id, context=context, **kwargs))


# =============================================================================
# Opening work orders
# =============================================================================


class TestOpenWork:
    """Tests for opening a work order."""

    @pytest.mark.asyncio
    async def test_open_loads_inventory(self, service, work_context, inventory_client):
        """Test opening loads equipment and exposes the view."""
        result = await _open(service, work_context, technician_id="tech-9")

        assert result.view.load_state == AllocationLoadState.loaded
        assert result.view.unallocated_slot_ids == ["S-MODEM", "S-STB"]
        assert result.view.process.total_steps == 5
        inventory_client.fetch_work_equipment.assert_awaited_once_with(work_context, "tech-9")

    @pytest.mark.asyncio
    async def test_inventory_failure(self, service, work_context, inventory_client):
        """Test an inventory failure raises and leaves no work open."""
        inventory_client.fetch_work_equipment.side_effect = InventoryClientError("down")

        with pytest.raises(RemoteCallError, match="Equipment lookup failed"):
            await _open(service, work_context)
        with pytest.raises(ValidationError, match="No work order"):
            service.view()

    @pytest.mark.asyncio
    async def test_detect_certification(self, service, work_context):
        """Test certification detection adds the line registration step."""
        result = await _open(service, work_context, detect_certification=True)

        assert result.view.context.certification_applies is True
        assert result.view.process.total_steps == 6
        assert service.machine.orchestrator is not None

    @pytest.mark.asyncio
    async def test_switching_work_drops_previous(self, service, work_context):
        """Test opening another work order replaces the active one."""
        await _open(service, work_context)
        other = work_context.model_copy(update={"work_id": "W200"})
        await _open(service, other)

        assert service.view().context.work_id == "W200"
        with pytest.raises(ValidationError, match="not the open work order"):
            await service.execute(cmd.SaveEquipment(work_id="W100"))

    @pytest.mark.asyncio
    async def test_context_mismatch(self, service, work_context):
        """Test the command work id must match its context."""
        with pytest.raises(ValidationError):
            await service.execute(cmd.OpenWork(work_id="OTHER", context=work_context))


# =============================================================================
# Drafts
# =============================================================================


class TestDrafts:
    """Tests for draft persistence through the facade."""

    @pytest.mark.asyncio
    async def test_allocation_change_writes_draft(self, service, work_context, drafts):
        """Test each allocation change persists an equipment draft."""
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1"))

        draft = drafts.get("W100", DraftKind.equipment)
        assert draft["fingerprint"] == "U-MODEM-1"

    @pytest.mark.asyncio
    async def test_draft_restored_without_rewrite(
        self, service, work_context, inventory_client, certification_client, drafts
    ):
        """Test reopening restores the draft and does not write during load."""
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1"))

        watched = MagicMock(wraps=drafts)
        reopened = FieldWorkService(inventory_client, certification_client, drafts=watched)
        result = await _open(reopened, work_context)

        assert result.view.fingerprint == "U-MODEM-1"
        assert reopened.machine.session.committed.fingerprint == "U-MODEM-1"
        watched.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_draft_discarded(
        self, service, work_context, inventory, inventory_client, certification_client, drafts
    ):
        """Test a draft naming units no longer in stock is discarded."""
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1"))

        changed = inventory.model_copy(deep=True)
        changed.stock = [unit for unit in changed.stock if unit.unit_id != "U-MODEM-1"]
        inventory_client.fetch_work_equipment.return_value = changed
        reopened = FieldWorkService(inventory_client, certification_client, drafts=drafts)
        result = await _open(reopened, work_context)

        assert result.view.allocations == []
        assert drafts.get("W100", DraftKind.equipment) is None

    @pytest.mark.asyncio
    async def test_step_and_form_resume(
        self, service, work_context, inventory_client, certification_client, drafts
    ):
        """Test the current step and completion form survive a reopen."""
        await _open(service, work_context)
        await service.execute(cmd.Navigate(work_id="W100", action="jump", step=3))
        await service.execute(
            cmd.SaveCompletionForm(work_id="W100", fields={"memo": "back door"})
        )

        reopened = FieldWorkService(inventory_client, certification_client, drafts=drafts)
        await _open(reopened, work_context)

        assert reopened.machine.state.current_step == 3
        assert reopened.machine.session.completion_form == {"memo": "back door"}

    @pytest.mark.asyncio
    async def test_clear_draft(self, service, work_context, drafts):
        """Test clearing removes every draft of the work order."""
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1"))
        await service.execute(cmd.Navigate(work_id="W100", action="next"))

        await service.execute(cmd.ClearDraft(work_id="W100"))

        assert drafts.get("W100", DraftKind.equipment) is None
        assert drafts.get("W100", DraftKind.work_complete) is None


# =============================================================================
# Equipment commands
# =============================================================================


class TestEquipmentCommands:
    """Tests for allocation, validation and signalling commands."""

    @pytest.mark.asyncio
    async def test_save_equipment_validates(self, service, work_context, inventory):
        """Test saving runs validation before committing."""
        inventory.stock[2].customer_owned = True
        inventory.stock[2].mac_address = None
        inventory.stock[2].item_code = "IT-1"
        inventory.stock[2].owner_type = "C"
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-STB", unit_id="U-STB-1"))

        with pytest.raises(ValidationError, match="mac address"):
            await service.execute(cmd.SaveEquipment(work_id="W100"))
        assert service.machine.session.committed is None

    @pytest.mark.asyncio
    async def test_save_equipment_commits(self, service, work_context):
        """Test a valid allocation set is committed."""
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1"))
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-STB", unit_id="U-STB-1"))

        result = await service.execute(cmd.SaveEquipment(work_id="W100"))

        assert result.data == {"fingerprint": "U-MODEM-1,U-STB-1"}

    @pytest.mark.asyncio
    async def test_send_signal_caches_result(self, service, work_context, inventory_client):
        """Test the signal result is cached until the allocations change."""
        inventory_client.send_signal.return_value = SignalResponse(CODE="SUCCESS", MESSAGE="sent")
        await _open(service, work_context)
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1"))
        await service.execute(cmd.AssignUnit(work_id="W100", slot_id="S-STB", unit_id="U-STB-1"))

        result = await service.execute(cmd.SendSignal(work_id="W100"))

        assert result.ok
        assert result.view.signal.request.unit_ids == ["U-MODEM-1"]
        assert result.view.signal.request.etc_1 == "U-STB-1"

        changed = await service.execute(cmd.UnassignSlot(work_id="W100", slot_id="S-STB"))
        assert changed.view.signal is None

    @pytest.mark.asyncio
    async def test_signal_blocked_for_certified_branch(
        self, service, work_context, certification_client, inventory_client
    ):
        """Test certification work in an eligible branch cannot signal directly."""
        certification_client.eligible_branches.return_value = {"SO1"}
        await _open(service, work_context, detect_certification=True)

        with pytest.raises(ValidationError, match="certification backend"):
            await service.execute(cmd.SendSignal(work_id="W100"))
        inventory_client.send_signal.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_completed_work_is_read_only(self, service, work_context):
        """Test completed work refuses allocation changes."""
        await _open(service, work_context)
        result = await service.execute(cmd.UpdateStatus(work_id="W100", status_code="4"))

        assert result.data == {"read_only": True}
        with pytest.raises(GuardViolation):
            await service.execute(
                cmd.AssignUnit(work_id="W100", slot_id="S-MODEM", unit_id="U-MODEM-1")
            )


# =============================================================================
# Certification commands
# =============================================================================


class TestCertificationCommands:
    """Tests for certification commands through the facade."""

    @pytest.mark.asyncio
    async def test_plain_product_rejects_certification(self, service, work_context):
        """Test certification commands need a certification product."""
        await _open(service, work_context)

        with pytest.raises(ValidationError, match="does not use certification"):
            await service.execute(cmd.Subscribe(work_id="W100"))

    @pytest.mark.asyncio
    async def test_subscription_survives_reopen(
        self, service, work_context, inventory_client, certification_client, drafts
    ):
        """Test the certification session is restored from the work draft."""
        await _open(service, work_context, detect_certification=True)
        result = await service.execute(cmd.Subscribe(work_id="W100"))
        assert result.data["subscription_no"] == "E1"

        reopened = FieldWorkService(inventory_client, certification_client, drafts=drafts)
        view = (await _open(reopened, work_context, detect_certification=True)).view

        assert view.certification.subscription_no == "E1"
        assert view.certification.state == CertificationState.subscribed

    @pytest.mark.asyncio
    async def test_calls_are_logged(
        self, inventory_client, certification_client, work_context, db_session
    ):
        """Test certification calls are recorded when a session is bound."""
        service = FieldWorkService(inventory_client, certification_client, db=db_session)
        await _open(service, work_context, detect_certification=True)

        await service.execute(cmd.Subscribe(work_id="W100"))

        calls = certification_log.list_calls(db_session, "W100")
        assert [call.operation for call in calls] == ["subscription"]
        assert calls[0].result_code == "Y"
