"""Selection of the unit(s) that carry an activation signal.

Pure functions over an allocation set and its work context. Nothing here
touches the network; callers send the resulting request.
"""

from __future__ import annotations

from collections.abc import Sequence

from app.errors import ValidationError
from app.models.field_work import EquipmentCategory
from app.schemas.field_work import AllocationRecord, SignalRequest, WorkContext

INTERNET_GROUP = "I"
NETWORK_CLASS_GROUP = "A"
WIRELESS_AP_GROUP = "C"
VOIP_GROUP = "V"

VOIP_MESSAGE_ID = "SMR60"
DEFAULT_MESSAGE_ID = "SMR03"

SET_TOP_CLASS_PREFIX = "0904"
MODEM_CLASS_PREFIX = "0902"

_Category = EquipmentCategory


def _first(records: Sequence[AllocationRecord], category: EquipmentCategory) -> AllocationRecord | None:
    for record in records:
        if record.category_code == category.value:
            return record
    return None


def _unit_id(records: Sequence[AllocationRecord], category: EquipmentCategory) -> str:
    record = _first(records, category)
    return record.unit_id if record else ""


def priority_order(context: WorkContext) -> list[EquipmentCategory]:
    if context.voip_only:
        return [_Category.voip_gateway]
    order = [_Category.fiber_terminal, _Category.router, _Category.modem]
    if context.product_group == INTERNET_GROUP:
        order.append(_Category.wireless_router)
    order.extend([_Category.voip_gateway, _Category.set_top_box])
    return order


def resolve_primary(
    records: Sequence[AllocationRecord], context: WorkContext
) -> AllocationRecord | None:
    """Return the highest-priority allocated unit, or None."""
    for category in priority_order(context):
        record = _first(records, category)
        if record is not None:
            return record
    return None


def message_id_for(context: WorkContext) -> str:
    return VOIP_MESSAGE_ID if context.product_group == VOIP_GROUP else DEFAULT_MESSAGE_ID


def auxiliary_params(records: Sequence[AllocationRecord], context: WorkContext) -> dict[str, str]:
    if context.voip_only:
        etc_1 = _unit_id(records, _Category.wireless_router)
    else:
        etc_1 = _unit_id(records, _Category.set_top_box)
        if not etc_1 and context.product_group == NETWORK_CLASS_GROUP:
            etc_1 = context.network_class

    etc_3 = ""
    if context.product_group == WIRELESS_AP_GROUP:
        etc_3 = _unit_id(records, _Category.wireless_router)

    etc_4 = ""
    if context.product_group == VOIP_GROUP:
        etc_4 = _unit_id(records, _Category.voip_extension)
    if context.isp_product_code:
        etc_4 = _unit_id(records, _Category.isp_device)

    return {
        "etc_1": etc_1,
        "etc_2": _unit_id(records, _Category.special),
        "etc_3": etc_3,
        "etc_4": etc_4,
    }


def check_signal_preconditions(context: WorkContext) -> None:
    if context.product_group == VOIP_GROUP and not context.voip_only and not context.join_contract_id:
        raise ValidationError("VoIP service requires a joined contract id before signalling")
    if (
        context.product_group == INTERNET_GROUP
        and context.isp_product_code
        and not context.join_contract_id
    ):
        raise ValidationError("ISP service requires a joined contract id before signalling")


def build_signal_request(
    records: Sequence[AllocationRecord], context: WorkContext
) -> SignalRequest:
    if not records:
        raise ValidationError("No equipment is allocated")

    primary = resolve_primary(records, context)
    if primary is None and not context.voip_only:
        # Units reported under another category still qualify by class code.
        primary = next(
            (
                record
                for record in records
                if record.class_code.startswith((SET_TOP_CLASS_PREFIX, MODEM_CLASS_PREFIX))
            ),
            None,
        )
    if primary is None:
        raise ValidationError("No allocated equipment can carry the activation signal")

    return SignalRequest(
        message_id=message_id_for(context),
        unit_ids=[primary.unit_id],
        **auxiliary_params(records, context),
    )
