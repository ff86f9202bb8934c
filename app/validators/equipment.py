from collections import Counter
from collections.abc import Iterable, Sequence

from app.config import settings
from app.errors import ValidationError
from app.models.field_work import EquipmentCategory
from app.schemas.field_work import AllocationRecord, WorkContext

SET_TOP_CLASS_PREFIX = "0904"

_FIELD_LABELS = {
    "item_code": "item code",
    "unit_id": "unit id",
    "unit_dir_id": "unit directory id",
    "mac_address": "mac address",
    "stb_cm_mac": "STB CM mac address",
    "stb_rtca_id": "STB RTCA id",
}

# Required identifiers for customer-owned units, by category.
_OWNERSHIP_FIELDS: dict[str, tuple[str, ...]] = {
    EquipmentCategory.modem.value: ("item_code", "unit_id", "unit_dir_id"),
    EquipmentCategory.wireless_router.value: ("item_code", "unit_id", "mac_address"),
    EquipmentCategory.isp_device.value: ("item_code", "unit_id", "mac_address"),
    EquipmentCategory.set_top_box.value: (
        "item_code",
        "unit_id",
        "mac_address",
        "stb_cm_mac",
        "stb_rtca_id",
    ),
}


def _field_value(record: AllocationRecord, field: str) -> str:
    if field == "mac_address":
        return record.mac_address or ""
    return getattr(record.unit, field, "") or ""


def _is_blank(value: str | None) -> bool:
    return not value or not value.strip() or value.strip() == "[]"


def check_unit_match(records: Iterable[AllocationRecord]) -> None:
    """Every allocation except cable must reference a concrete unit."""
    for record in records:
        if record.category_code == EquipmentCategory.cable.value:
            continue
        if _is_blank(record.unit_id):
            raise ValidationError(
                f"Unit number is missing for {record.model_label}",
                details={"slot_id": record.slot.slot_id},
            )


def check_ownership_fields(records: Iterable[AllocationRecord]) -> None:
    for record in records:
        if not record.unit.customer_owned:
            continue
        for field in _OWNERSHIP_FIELDS.get(record.category_code, ()):
            if _is_blank(_field_value(record, field)):
                raise ValidationError(
                    f"Customer-owned {record.model_label} requires {_FIELD_LABELS[field]}",
                    details={"slot_id": record.slot.slot_id, "field": field},
                )
        if _is_blank(record.unit.owner_type):
            raise ValidationError(
                f"Customer-owned {record.model_label} requires ownership type",
                details={"slot_id": record.slot.slot_id, "field": "owner_type"},
            )


def check_pairing(
    records: Sequence[AllocationRecord],
    context: WorkContext,
    paired_class_codes: Sequence[tuple[str, str]] | None = None,
    bonus_product_codes: Iterable[str] | None = None,
    bonus_required_class_code: str | None = None,
) -> None:
    pairs = settings.paired_class_codes if paired_class_codes is None else paired_class_codes
    bonus_codes = set(
        settings.bonus_product_codes if bonus_product_codes is None else bonus_product_codes
    )
    required_class = bonus_required_class_code or settings.bonus_required_class_code

    class_codes = {record.class_code for record in records if record.class_code}
    for left, right in pairs:
        if (left in class_codes) != (right in class_codes):
            raise ValidationError(
                f"Equipment classes {left} and {right} must be installed together",
                details={"pair": [left, right]},
            )

    if context.product_code in bonus_codes and required_class not in class_codes:
        raise ValidationError(
            f"Product {context.product_code} requires equipment class {required_class}",
            details={"product_code": context.product_code},
        )

    counts = Counter(record.unit_id for record in records if record.unit_id)
    duplicates = sorted(uid for uid, count in counts.items() if count > 1)
    if duplicates:
        raise ValidationError(
            f"Unit {duplicates[0]} is allocated more than once",
            details={"unit_ids": duplicates},
        )


def check_add_ons(records: Sequence[AllocationRecord], context: WorkContext) -> None:
    has_set_top = any(
        record.category_code == EquipmentCategory.set_top_box.value for record in records
    )
    for add_on in context.add_ons:
        if SET_TOP_CLASS_PREFIX in add_on.attribute_codes and not has_set_top:
            raise ValidationError(
                f"Add-on {add_on.name or add_on.product_code} requires a set-top box",
                details={"product_code": add_on.product_code},
            )


def validate_allocations(
    records: Sequence[AllocationRecord],
    context: WorkContext,
    **catalogs,
) -> None:
    """Run the save-time battery in order; the first failure raises."""
    check_unit_match(records)
    check_ownership_fields(records)
    check_pairing(records, context, **catalogs)
    check_add_ons(records, context)
