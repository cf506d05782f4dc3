"""
Institution-level compliance aggregation.

:func:`check_institution_compliance` concatenates every applicable
check for one institution into a single issue list and never stops
early, so reporting can always show the complete list (or the first few
"primary" issues).  The other functions build plain-data summaries on top
of it for the reporting collaborators.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List

from config import EXPIRING_SOON_DAYS, RENEWAL_REMINDER_DAYS
from models import CLASSROOM, TRAINING_AREA, Facility, Institution, Qualification
from rule_engine import (
    MISSING_FACILITY_ISSUE,
    MISSING_QUALIFICATION_ISSUE,
    evaluate_facility,
    evaluate_facility_adequacy,
    evaluate_institution_basics,
)

PRIMARY_ISSUE_COUNT = 2


def check_institution_compliance(institution: Institution, now: datetime) -> List[str]:
    """Return every compliance issue for ``institution`` at ``now``.

    Order: basic-data issues, then the missing-qualification issue (when
    no qualification is valid at ``now``), then either the
    missing-facility issue or each facility's own issues.
    """
    issues = list(evaluate_institution_basics(institution))

    if not institution.valid_qualifications(now):
        issues.append(MISSING_QUALIFICATION_ISSUE)

    if not institution.facilities:
        issues.append(MISSING_FACILITY_ISSUE)
    else:
        for facility in institution.facilities:
            issues.extend(evaluate_facility(facility))

    return issues


def is_compliant(institution: Institution, now: datetime) -> bool:
    return not check_institution_compliance(institution, now)


def check_facility_adequacy(facilities: Iterable[Facility]) -> Dict[str, Any]:
    """Per-facility results plus the institution-wide adequacy verdict."""
    facilities = list(facilities)
    results = []
    for facility in facilities:
        issues = evaluate_facility(facility)
        results.append({
            "facility_id": facility.id,
            "facility_name": facility.facility_name,
            "facility_type": facility.facility_type,
            "is_compliant": not issues,
            "issues": issues,
        })
    overall_issues = evaluate_facility_adequacy(facilities)
    return {
        "facilities": results,
        "overall_compliant": not overall_issues,
        "overall_issues": overall_issues,
        "total_area": sum(f.area for f in facilities),
        "facility_counts": {
            "classroom": sum(1 for f in facilities if f.facility_type == CLASSROOM),
            "training_area": sum(1 for f in facilities if f.facility_type == TRAINING_AREA),
            "total": len(facilities),
        },
    }


def classify_expiry(
    qualification: Qualification,
    now: datetime,
    soon_days: int = EXPIRING_SOON_DAYS,
    warning_days: int = RENEWAL_REMINDER_DAYS,
) -> Dict[str, Any]:
    """Bucket a qualification by remaining days: expired, expiring_soon, warning or normal."""
    remaining = qualification.remaining_days(now)
    if qualification.window.has_ended(now):
        status = "expired"
    elif remaining <= soon_days:
        status = "expiring_soon"
    elif remaining <= warning_days:
        status = "warning"
    else:
        status = "normal"
    return {
        "qualification_id": qualification.id,
        "qualification_name": qualification.qualification_name,
        "certificate_number": qualification.certificate_number,
        "remaining_days": remaining,
        "status": status,
        "is_valid": qualification.is_valid(now),
    }


def run_status_check(institutions: Iterable[Institution], now: datetime) -> Dict[str, Any]:
    """Check many institutions and summarise the results.

    Each result keeps the full issue list plus ``primary_issues``, the
    first two issues, and a ``truncated`` flag when more exist.
    """
    results = []
    compliant = 0
    total_issues = 0
    for institution in institutions:
        issues = check_institution_compliance(institution, now)
        if issues:
            total_issues += len(issues)
        else:
            compliant += 1
        results.append({
            "institution_id": institution.id,
            "institution_name": institution.name,
            "institution_code": institution.code,
            "status": institution.status,
            "is_compliant": not issues,
            "issue_count": len(issues),
            "issues": issues,
            "primary_issues": issues[:PRIMARY_ISSUE_COUNT],
            "truncated": len(issues) > PRIMARY_ISSUE_COUNT,
        })

    total = len(results)
    return {
        "summary": {
            "total_institutions": total,
            "compliant": compliant,
            "non_compliant": total - compliant,
            "total_issues": total_issues,
            "compliance_rate": round(compliant / total * 100, 2) if total else 0.0,
            "checked_at": now.isoformat(),
        },
        "results": results,
    }
