import pytest

from takeoff.fields import (
    REGISTRY,
    DraftRecord,
    blank_record,
    coerce,
    coerce_fields,
    format_fields,
    lookup_number,
    parse_numbered_field,
)


def test_blank_record_defaults():
    assert blank_record() == {
        "itemDescription": "",
        "category": "Misc Metals",
        "materialType": "Rolled",
        "status": "Active",
    }


def test_coerce_by_kind():
    assert coerce(REGISTRY["qty"], "5") == 5
    assert coerce(REGISTRY["qty"], "five pieces") == 5
    assert coerce(REGISTRY["lengthFt"], "20 feet") == 20.0
    assert coerce(REGISTRY["lengthIn"], "6 1/2") == 6.5
    assert coerce(REGISTRY["thickness"], "3/8") == 0.375
    assert coerce(REGISTRY["materialType"], "plate") == "Plate"
    assert coerce(REGISTRY["useStockRounding"], "yes") is True


@pytest.mark.parametrize("name,value", [
    ("qty", 0),
    ("qty", "2.5"),
    ("qty", True),
    ("materialType", "wood"),
    ("lengthFt", "-3"),
])
def test_coerce_rejects(name, value):
    with pytest.raises(ValueError):
        coerce(REGISTRY[name], value)


def test_coerce_fields_reports_unknown_and_invalid():
    accepted, rejected = coerce_fields({"qty": "4", "colour": "red", "status": "gone"})
    assert accepted == {"qty": 4}
    assert set(rejected) == {"colour", "status"}
    assert rejected["colour"] == "unknown field"


def test_draft_warnings_come_from_required_predicates():
    draft = DraftRecord("L7", blank_record())
    assert draft.warnings() == ["Missing item description", "Missing size", "Missing quantity"]

    draft.merge({"itemDescription": "Column", "sizeDesignation": "W12x24", "qty": 5})
    assert draft.warnings() == []

    # size is only required for rolled shapes
    plate = DraftRecord("L8", {"materialType": "Plate", "itemDescription": "Base plate", "qty": 2})
    assert plate.warnings() == []


def test_summary_lists_populated_fields():
    draft = DraftRecord("L7", blank_record())
    draft.merge({"qty": 5})
    text = draft.summary()
    assert text.startswith("I will be entering the following data for line L7:")
    assert "• qty: 5" in text
    assert "Missing item description" in text
    assert text.endswith("Do you want me to proceed?")


def test_format_fields_in_registry_order():
    lines = format_fields({"qty": 5, "drawingNumber": "S-101", "notes": ""})
    assert lines == ["• drawingNumber: S-101", "• qty: 5"]


def test_numbered_shorthand():
    spec, value = parse_numbered_field("number ten five")
    assert spec.name == "qty"
    assert value == "5"
    spec, value = parse_numbered_field("8. W12x24")
    assert spec.name == "sizeDesignation"
    assert value == "W12x24"


def test_numbered_shorthand_needs_a_separator():
    assert parse_numbered_field("5 pieces") is None
    assert parse_numbered_field("10 5") is None


def test_plate_numbers_address_plate_fields():
    assert lookup_number(7).name == "shapeType"
    assert lookup_number(7, "Plate").name == "thickness"
    spec, value = parse_numbered_field("10, 3", "Plate")
    assert spec.name == "plateQty"
