"""
fields.py — closed registry of estimating-line fields and the draft record.

Every value that reaches a draft goes through the registry: unknown names are
rejected, values are coerced to the declared kind, and "missing required
field" warnings are computed from each field's `required` predicate rather
than ad hoc checks.

Numbered shorthand follows the estimating workflow order (1 = drawing number
… 27 = status).  When the draft's material type is "Plate", numbers 7–12
address the plate fields instead of the rolled-shape fields.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Any, Callable, Optional

from takeoff.normalizer import replace_number_words

log = logging.getLogger("takeoff.fields")


class FieldKind(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    CHOICE = "choice"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    display: str
    kind: FieldKind
    section: str
    number: Optional[int] = None
    choices: tuple[str, ...] = ()
    default: Any = None
    required: Optional[Callable[[dict], bool]] = None
    valid: Optional[Callable[[Any], bool]] = None


def _positive(value: Any) -> bool:
    return value > 0


def _non_negative(value: Any) -> bool:
    return value >= 0


def _is_rolled(values: dict) -> bool:
    return values.get("materialType", "Rolled") == "Rolled"


def _always(_values: dict) -> bool:
    return True


_LABOR = (
    ("laborUnload", "Unload"),
    ("laborCut", "Cut"),
    ("laborCope", "Cope"),
    ("laborProcessPlate", "Process"),
    ("laborDrillPunch", "Drill/Punch"),
    ("laborFit", "Fit"),
    ("laborWeld", "Weld"),
    ("laborPrepClean", "Prep/Clean"),
    ("laborPaint", "Paint"),
    ("laborHandleMove", "Handle/Move"),
    ("laborLoadShip", "Load/Ship"),
)

FIELDS: tuple[FieldSpec, ...] = (
    # Identification
    FieldSpec("drawingNumber", "Drawing #", FieldKind.TEXT, "Identification", 1),
    FieldSpec("detailNumber", "Detail #", FieldKind.TEXT, "Identification", 2),
    FieldSpec("itemDescription", "Item Description", FieldKind.TEXT, "Identification", 3,
              default="", required=_always),
    FieldSpec("category", "Category", FieldKind.TEXT, "Identification", 4, default="Misc Metals"),
    FieldSpec("subCategory", "Sub-Category", FieldKind.TEXT, "Identification", 5),
    FieldSpec("materialType", "Material Type", FieldKind.CHOICE, "Identification", 6,
              choices=("Rolled", "Plate"), default="Rolled"),
    # Material, rolled shapes
    FieldSpec("shapeType", "Shape Type", FieldKind.TEXT, "Material", 7),
    FieldSpec("sizeDesignation", "Size", FieldKind.TEXT, "Material", 8, required=_is_rolled),
    FieldSpec("grade", "Grade", FieldKind.TEXT, "Material", 9),
    FieldSpec("qty", "Quantity", FieldKind.INTEGER, "Material", 10, required=_always, valid=_positive),
    FieldSpec("lengthFt", "Length (ft)", FieldKind.DECIMAL, "Material", 11, valid=_non_negative),
    FieldSpec("lengthIn", "Length (in)", FieldKind.DECIMAL, "Material", 12, valid=_non_negative),
    # Material, plate (numbers 7-12 when materialType is Plate)
    FieldSpec("thickness", "Thickness", FieldKind.DECIMAL, "Material", valid=_positive),
    FieldSpec("width", "Width", FieldKind.DECIMAL, "Material", valid=_positive),
    FieldSpec("plateLength", "Plate Length", FieldKind.DECIMAL, "Material", valid=_positive),
    FieldSpec("plateQty", "Plate Quantity", FieldKind.INTEGER, "Material", valid=_positive),
    FieldSpec("plateGrade", "Plate Grade", FieldKind.TEXT, "Material"),
    FieldSpec("oneSideCoat", "One Side Coat", FieldKind.BOOLEAN, "Material"),
    # Coating
    FieldSpec("coatingSystem", "Coating System", FieldKind.TEXT, "Coating", 13),
    # Labor hours
    *(
        FieldSpec(name, display, FieldKind.DECIMAL, "Labor", 14 + i, valid=_non_negative)
        for i, (name, display) in enumerate(_LABOR)
    ),
    # Admin
    FieldSpec("notes", "Notes", FieldKind.TEXT, "Admin", 25),
    FieldSpec("hashtags", "Hashtags", FieldKind.TEXT, "Admin", 26),
    FieldSpec("status", "Status", FieldKind.CHOICE, "Admin", 27, choices=("Active", "Void"), default="Active"),
    FieldSpec("useStockRounding", "Use Stock Rounding", FieldKind.BOOLEAN, "Admin", 28),
)

REGISTRY: dict[str, FieldSpec] = {spec.name: spec for spec in FIELDS}
BY_NUMBER: dict[int, FieldSpec] = {spec.number: spec for spec in FIELDS if spec.number is not None}
PLATE_BY_NUMBER: dict[int, FieldSpec] = {
    7: REGISTRY["thickness"],
    8: REGISTRY["width"],
    9: REGISTRY["plateLength"],
    10: REGISTRY["plateQty"],
    11: REGISTRY["plateGrade"],
    12: REGISTRY["oneSideCoat"],
}


def blank_record() -> dict[str, Any]:
    """Field values written when a new line is created before any data is spoken."""
    return {spec.name: spec.default for spec in FIELDS if spec.default is not None}


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

_TRUE_WORDS = frozenset({"yes", "true", "on", "y", "1"})
_FALSE_WORDS = frozenset({"no", "false", "off", "n", "0"})
_MIXED_FRACTION_RE = re.compile(r"^(\d+)\s+(\d+/\d+)$")


def _to_decimal(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    for suffix in (" feet", " foot", " ft", " inches", " inch", " in", " hours", " hour", " hrs", " hr"):
        if text.endswith(suffix):
            text = text[: -len(suffix)].strip()
    mixed = _MIXED_FRACTION_RE.match(text)
    if mixed:
        return float(int(mixed.group(1)) + Fraction(mixed.group(2)))
    return float(Fraction(text))


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value} is not a whole number")
        return int(value)
    text = str(value).strip().lower()
    for suffix in (" pieces", " piece", " pcs", " pc", " ea", " each"):
        if text.endswith(suffix):
            text = text[: -len(suffix)].strip()
    return int(replace_number_words(text))


def coerce(spec: FieldSpec, value: Any) -> Any:
    """Coerce *value* to the field's declared kind.

    Raises ValueError when the value cannot be represented or fails the
    field's validity predicate.
    """
    if value is None:
        raise ValueError("empty value")
    if spec.kind is FieldKind.TEXT:
        result: Any = str(value).strip()
        if not result and spec.default != "":
            raise ValueError("empty value")
    elif spec.kind is FieldKind.INTEGER:
        result = _to_integer(value)
    elif spec.kind is FieldKind.DECIMAL:
        result = _to_decimal(value)
    elif spec.kind is FieldKind.BOOLEAN:
        if isinstance(value, bool):
            result = value
        elif str(value).strip().lower() in _TRUE_WORDS:
            result = True
        elif str(value).strip().lower() in _FALSE_WORDS:
            result = False
        else:
            raise ValueError(f"{value!r} is not yes/no")
    else:
        wanted = str(value).strip().lower()
        matches = [choice for choice in spec.choices if choice.lower() == wanted]
        if not matches:
            raise ValueError(f"{value!r} not one of {', '.join(spec.choices)}")
        result = matches[0]

    if spec.valid is not None and not spec.valid(result):
        raise ValueError(f"{result!r} is not a valid {spec.display.lower()}")
    return result


def coerce_fields(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
    """Split *data* into (accepted coerced values, rejected name → reason)."""
    accepted: dict[str, Any] = {}
    rejected: dict[str, str] = {}
    for name, value in data.items():
        spec = REGISTRY.get(name)
        if spec is None:
            rejected[name] = "unknown field"
            continue
        try:
            accepted[name] = coerce(spec, value)
        except (ValueError, ZeroDivisionError) as exc:
            rejected[name] = str(exc)
    if rejected:
        log.info("event=fields_rejected fields=%s", ",".join(sorted(rejected)))
    return accepted, rejected


def format_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def format_fields(values: dict[str, Any]) -> list[str]:
    """Bullet lines for populated fields, in registry order."""
    lines = []
    for spec in FIELDS:
        value = values.get(spec.name)
        if value is None or value == "":
            continue
        lines.append(f"• {spec.name}: {format_value(value)}")
    return lines


# ---------------------------------------------------------------------------
# Draft record
# ---------------------------------------------------------------------------

@dataclass
class DraftRecord:
    """Partial field values for exactly one target identifier."""
    record_id: str
    values: dict[str, Any] = field(default_factory=dict)

    def merge(self, data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        """Merge coerced fields by name; later values overwrite earlier ones."""
        accepted, rejected = coerce_fields(data)
        self.values.update(accepted)
        return accepted, rejected

    @property
    def populated(self) -> set[str]:
        return {name for name, value in self.values.items() if value is not None and value != ""}

    def warnings(self) -> list[str]:
        missing = []
        for spec in FIELDS:
            if spec.required is None or not spec.required(self.values):
                continue
            value = self.values.get(spec.name)
            if value is None or value == "" or (spec.valid is not None and not spec.valid(value)):
                missing.append(f"Missing {spec.display.lower()}")
        return missing

    def summary(self) -> str:
        lines = format_fields(self.values)
        text = f"I will be entering the following data for line {self.record_id}:\n\n"
        text += "\n".join(lines) if lines else "(no fields yet)"
        warnings = self.warnings()
        if warnings:
            text += f"\n\n⚠️ I noticed: {', '.join(warnings)}."
        text += "\n\nDo you want me to proceed?"
        return text


# ---------------------------------------------------------------------------
# Numbered shorthand
# ---------------------------------------------------------------------------

# "number 10 5", "number 10. 5", "10. 5", "10, 5"; a bare "10 5" is not
# shorthand, otherwise "5 pieces" would address field 5.
_NUMBERED_RE = re.compile(
    r"^\s*(?:number\s+(\d+)\s*[.,]?\s+|(\d+)\s*[.,]\s+)(\S.*?)\s*$",
    re.IGNORECASE,
)


def lookup_number(number: int, material_type: Optional[str] = None) -> Optional[FieldSpec]:
    if material_type == "Plate" and number in PLATE_BY_NUMBER:
        return PLATE_BY_NUMBER[number]
    return BY_NUMBER.get(number)


def parse_numbered_field(text: str, material_type: Optional[str] = None) -> Optional[tuple[FieldSpec, str]]:
    """Recognise "<field number>. <value>" and return (field, raw value)."""
    match = _NUMBERED_RE.match(replace_number_words(text))
    if not match:
        return None
    number = int(match.group(1) or match.group(2))
    spec = lookup_number(number, material_type)
    if spec is None:
        return None
    return spec, match.group(3)
