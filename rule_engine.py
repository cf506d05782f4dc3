"""
Rule engine for the training institution compliance checks.

Rules are kept as flat, declarative tables at module level so a new
facility type or threshold is a table entry, not a new branch.  Every
evaluator is a pure function of its input: it returns a list of
human-readable issue strings, empty when the input is compliant.
"""
from typing import Any, Dict, Iterable, List

from models import (
    CLASSROOM,
    FACILITY_IN_USE,
    INSTITUTION_OPERATING,
    OFFICE,
    TRAINING_AREA,
    Facility,
    Institution,
)

# Minimum floor area per facility type, square metres
MIN_AREA_BY_TYPE = {
    CLASSROOM: 50.0,
    TRAINING_AREA: 100.0,
    OFFICE: 20.0,
}

# Minimum floor area per person, square metres; only these types are density-checked
MIN_AREA_PER_PERSON = {
    CLASSROOM: 1.5,
    TRAINING_AREA: 2.0,
}

REQUIRED_SAFETY_EQUIPMENT = ("fire extinguisher", "smoke alarm", "emergency lighting")

REQUIRED_FACILITY_STATUS = FACILITY_IN_USE

# Institution basic data: attribute -> issue reported when it is blank
REQUIRED_INSTITUTION_FIELDS = {
    "name": "institution name is required",
    "legal_representative": "legal representative is required",
    "contact_phone": "contact phone is required",
}

REQUIRED_INSTITUTION_STATUS = INSTITUTION_OPERATING

# Institution-wide facility adequacy
MIN_TOTAL_FACILITY_AREA = 200.0
REQUIRED_FACILITY_TYPES = {
    CLASSROOM: "at least one classroom is required",
    TRAINING_AREA: "at least one training-area is required",
}

MISSING_QUALIFICATION_ISSUE = "missing a valid training qualification."
MISSING_FACILITY_ISSUE = "missing facility information."


def _fmt(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def evaluate_facility(facility: Facility) -> List[str]:
    """Evaluate one facility against the fixed rule table.

    The checks run in this order and never stop early:

      1. minimum area for the facility type (types without an entry are
         unconstrained);
      2. occupancy density (area / capacity) for classrooms and training areas;
      3. each mandatory safety item, matched by name, one issue per missing item;
      4. operational status, which must be ``in-use``.
    """
    issues: List[str] = []

    def add_violation(explanation: str) -> None:
        issues.append(explanation)

    min_area = MIN_AREA_BY_TYPE.get(facility.facility_type)
    if min_area is not None and facility.area < min_area:
        add_violation(f"area below minimum: requires {_fmt(min_area)} m2, has {_fmt(facility.area)} m2")

    min_density = MIN_AREA_PER_PERSON.get(facility.facility_type)
    if min_density is not None:
        density = facility.area / facility.capacity
        if density < min_density:
            add_violation(
                f"density below minimum: requires {_fmt(min_density)} m2/person, "
                f"has {_fmt(density)} m2/person"
            )

    # structured items and bare labels are normalised to names once
    present = facility.safety_equipment_names()
    for item in REQUIRED_SAFETY_EQUIPMENT:
        if item not in present:
            add_violation(f"missing required safety equipment: {item}")

    if facility.status != REQUIRED_FACILITY_STATUS:
        add_violation(f"abnormal status: {facility.status}")

    return issues


def evaluate_institution_basics(institution: Institution) -> List[str]:
    """Check that the institution's basic data is complete and it is operating."""
    issues = []
    for field, explanation in REQUIRED_INSTITUTION_FIELDS.items():
        value = getattr(institution, field) or ""
        if not value.strip():
            issues.append(explanation)
    if institution.status != REQUIRED_INSTITUTION_STATUS:
        issues.append(f"institution status must be {REQUIRED_INSTITUTION_STATUS}, is {institution.status}")
    return issues


def evaluate_facility_adequacy(facilities: Iterable[Facility]) -> List[str]:
    """Institution-wide facility requirements: total area and required facility types."""
    facilities = list(facilities)
    issues = []
    total_area = sum(f.area for f in facilities)
    if total_area < MIN_TOTAL_FACILITY_AREA:
        issues.append(
            f"total facility area below minimum: requires {_fmt(MIN_TOTAL_FACILITY_AREA)} m2, "
            f"has {_fmt(total_area)} m2"
        )
    present_types = {f.facility_type for f in facilities}
    for facility_type, explanation in REQUIRED_FACILITY_TYPES.items():
        if facility_type not in present_types:
            issues.append(explanation)
    return issues


def describe_rules() -> Dict[str, Any]:
    """Return the rule tables as plain data, for reporting collaborators."""
    return {
        "min_area_by_type": dict(MIN_AREA_BY_TYPE),
        "min_area_per_person": dict(MIN_AREA_PER_PERSON),
        "required_safety_equipment": list(REQUIRED_SAFETY_EQUIPMENT),
        "required_facility_status": REQUIRED_FACILITY_STATUS,
        "required_institution_status": REQUIRED_INSTITUTION_STATUS,
        "min_total_facility_area": MIN_TOTAL_FACILITY_AREA,
        "required_facility_types": list(REQUIRED_FACILITY_TYPES),
    }
