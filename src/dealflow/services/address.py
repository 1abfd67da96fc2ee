"""Default address normalizer and lead-type classifier for batch imports.

Both are plain callables so importers can swap in a richer provider.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from dealflow.domain.stages import LeadType

_SPACES = re.compile(r"\s+")

LAND_USE_KEYWORDS = ("VACANT", "AG", "RES VAC", "RAW LAND", "AGRICULTURE", "RURAL", "UNDEVELOPED")


@dataclass(frozen=True)
class NormalizedAddress:
    canonical: str | None = None
    line1: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    address_hash: str | None = None


@dataclass(frozen=True)
class LeadClassification:
    type: str
    signals: list[dict[str, Any]] | None = None


def clean(value: Any) -> str:
    return _SPACES.sub(" ", str(value if value is not None else "").strip().upper())


def normalize_address(row: Mapping[str, Any]) -> NormalizedAddress:
    line1 = clean(row.get("address")).replace(".", "")
    city = clean(row.get("city"))
    state = clean(row.get("state"))
    zip_code = str(row.get("zip") if row.get("zip") is not None else "").strip()[:5]
    return NormalizedAddress(
        canonical=f"{line1}, {city}, {state} {zip_code}",
        line1=line1,
        city=city,
        state=state,
        zip=zip_code,
    )


def classify_lead_type(row: Mapping[str, Any]) -> LeadClassification:
    building_sqft = _number(row.get("building_sqft"))
    improvement_value = _number(row.get("improvement_value"))
    units = _number(row.get("units"))
    land_use = clean(row.get("land_use"))

    if (building_sqft or 0) == 0 and (improvement_value or 0) == 0:
        return LeadClassification(
            type=LeadType.LAND.value,
            signals=[
                _signal(
                    "no_bldg_and_no_improvement",
                    "building_sqft/improvement_value",
                    f"{_fmt(building_sqft)}/{_fmt(improvement_value)}",
                )
            ],
        )

    if land_use and any(keyword in land_use for keyword in LAND_USE_KEYWORDS):
        return LeadClassification(
            type=LeadType.LAND.value,
            signals=[_signal("land_use_keyword", "land_use", row.get("land_use"))],
        )

    if (units if units is not None else 1) > 1:
        return LeadClassification(
            type=LeadType.MULTI.value,
            signals=[_signal("units_gt_1", "units", units)],
        )

    return LeadClassification(
        type=LeadType.SFR.value,
        signals=[_signal("default_sfr", "units", units if units is not None else 1)],
    )


def _signal(rule: str, field: str, value: Any) -> dict[str, Any]:
    return {"rule": rule, "field": field, "value": value, "source": "batch"}


def _number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fmt(value: float | None) -> str:
    if value is None:
        return "None"
    return str(int(value)) if value.is_integer() else str(value)
