from dataclasses import dataclass, field
from typing import Any, Mapping

METADATA_FIELDS = {"request_id", "version", "created_at", "updated_at"}

PLANT_CODE_LABELS = {
    "company_code": "Company Code",
    "plant_code": "Plant Code",
    "name_of_plant": "Name of Plant",
    "address_of_plant": "Address of Plant",
    "purchase_organization": "Purchase Organization",
    "name_of_purchase_organization": "Name of Purchase Organization",
    "sales_organization": "Sales Organization",
    "name_of_sales_organization": "Name of Sales Organization",
    "profit_center": "Profit Center",
    "name_of_profit_center": "Name of Profit Center",
    "cost_centers": "Cost Centers",
    "name_of_cost_centers": "Name of Cost Centers",
    "project_code": "Project Code",
    "project_code_description": "Project Code Description",
    "storage_location_code": "Storage Location Code",
    "storage_location_description": "Storage Location Description",
    "gst_certificate": "GST Certificate",
}

COMPANY_CODE_LABELS = {
    "company_code": "Company Code",
    "name_of_company_code": "Name of Company Code",
    "shareholding_percentage": "Shareholding Percentage",
    "segment": "Segment",
    "controlling_area": "Controlling Area",
    "gst_certificate": "GST Certificate",
    "cin": "CIN",
    "pan": "PAN",
    "plant_code": "Plant Code",
    "name_of_plant": "Name of Plant",
    "address_of_plant": "Address of Plant",
    "purchase_organization": "Purchase Organization",
    "name_of_purchase_organization": "Name of Purchase Organization",
    "sales_organization": "Sales Organization",
    "name_of_sales_organization": "Name of Sales Organization",
    "profit_center": "Profit Center",
    "name_of_profit_center": "Name of Profit Center",
    "cost_centers": "Cost Centers",
    "name_of_cost_centers": "Name of Cost Centers",
}

LABELS = {"plant": PLANT_CODE_LABELS, "company": COMPANY_CODE_LABELS}


@dataclass
class FieldChange:
    field: str
    old_value: Any
    new_value: Any
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "oldValue": self.old_value, "newValue": self.new_value, "label": self.label}


@dataclass
class CompareResult:
    has_changes: bool
    changes: list[FieldChange] = field(default_factory=list)
    changed_fields: list[str] = field(default_factory=list)


def compare_objects(old: Mapping[str, Any] | None, new: Mapping[str, Any] | None, request_type: str) -> CompareResult:
    """Flat field-by-field comparison of two detail records.

    Values are compared as strings with empty/None/0 all treated as blank, so a
    numeric ``51`` and a string ``"51"`` are the same value.
    """
    labels = LABELS.get(request_type, {})
    old = old or {}
    new = new or {}
    changes: list[FieldChange] = []
    for name in dict.fromkeys([*old.keys(), *new.keys()]):
        if name in METADATA_FIELDS:
            continue
        old_value = old.get(name) or ""
        new_value = new.get(name) or ""
        if str(old_value) != str(new_value):
            changes.append(FieldChange(name, old_value, new_value, labels.get(name, name)))
    return CompareResult(has_changes=bool(changes), changes=changes, changed_fields=[c.field for c in changes])


def format_changes_for_notification(changes: list[FieldChange]) -> str:
    if not changes:
        return "No changes detected"
    if len(changes) == 1:
        change = changes[0]
        return f'Changed {change.label}: "{change.old_value}" → "{change.new_value}"'
    return f"Changed {len(changes)} fields: {', '.join(c.label for c in changes)}"


def generate_changes_summary(changes: list[FieldChange]) -> str:
    return "\n".join(f'• {c.label}: "{c.old_value}" → "{c.new_value}"' for c in changes)
