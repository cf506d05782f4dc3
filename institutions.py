"""
Institution service: create, update, status changes, compliance checks.

Each function loads what it needs through ``db``, applies the domain
logic from ``models`` / ``compliance`` and saves the result.  Edits to
basic data and status changes leave a pending change record behind.
"""
import logging
import math
import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

import db
from compliance import check_institution_compliance as evaluate_compliance
from compliance import run_status_check
from config import DB_PATH
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    BASIC_FIELDS,
    INSTITUTION_OPERATING,
    ChangeRecord,
    Institution,
    parse_entity,
    revise,
)
from temporal import current_time

logger = logging.getLogger(__name__)

BASIC_INFO_CHANGE = "basic-info-change"
STATUS_CHANGE = "status-change"

REQUIRED_FIELDS = {
    "name": "institution name",
    "code": "institution code",
    "institution_type": "institution type",
    "legal_representative": "legal representative",
    "contact_person": "contact person",
    "contact_phone": "contact phone",
    "contact_email": "contact email",
    "address": "address",
    "business_scope": "business scope",
    "established_on": "establishment date",
    "registration_number": "registration number",
}

# Attributes a caller may set; children are managed by their own services
EDITABLE_FIELDS = BASIC_FIELDS + ("established_on", "registration_number", "organization_structure")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_institution_data(data: Dict[str, Any]) -> None:
    errors = [f"{label} is required" for field, label in REQUIRED_FIELDS.items() if not data.get(field)]
    email = data.get("contact_email")
    if email and not EMAIL_PATTERN.match(email):
        errors.append("contact email is malformed")
    if errors:
        raise ValidationError.from_messages(errors)


def _check_unique(data: Dict[str, Any], db_path: str, exclude_id: Optional[str] = None) -> None:
    if data.get("code") and db.institution_code_exists(data["code"], exclude_id, db_path):
        raise ConflictError(f"institution code already exists: {data['code']}")
    number = data.get("registration_number")
    if number and db.registration_number_exists(number, exclude_id, db_path):
        raise ConflictError(f"registration number already exists: {number}")


def create_institution(
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Institution:
    now = now or current_time()
    validate_institution_data(data)
    _check_unique(data, db_path)

    fields = {k: data[k] for k in EDITABLE_FIELDS if k in data}
    if data.get("status"):
        fields["status"] = data["status"]
    institution = parse_entity(Institution, {**fields, "created_at": now, "updated_at": now})
    db.save(institution, db_path=db_path)
    logger.info("Created institution %s (%s)", institution.id, institution.code)
    return institution


def get_institution(institution_id: str, db_path: str = DB_PATH) -> Institution:
    institution = db.fetch_institution(institution_id, db_path=db_path)
    if institution is None:
        raise NotFoundError(f"institution not found: {institution_id}")
    return institution


def update_institution(
    institution_id: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Institution:
    """Apply the non-null editable fields in ``data``.

    When basic data actually changes, a ``basic-info-change`` record with
    before/after snapshots is stored alongside.  ``change_reason`` and
    ``operator`` in ``data`` describe the edit.
    """
    now = now or current_time()
    institution = get_institution(institution_id, db_path)
    changes = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) is not None}
    _check_unique(changes, db_path, exclude_id=institution_id)

    before = institution.basic_snapshot()
    updated = revise(institution, {**changes, "updated_at": now})
    after = updated.basic_snapshot()

    entities: List[Any] = [updated]
    if before != after:
        record = ChangeRecord(
            institution_id=institution_id,
            change_type=BASIC_INFO_CHANGE,
            change_details={
                "summary": "basic information updated",
                "fields": [k for k in BASIC_FIELDS if before[k] != after[k]],
            },
            before_data=before,
            after_data=after,
            change_reason=data.get("change_reason") or "system update",
            operator=data.get("operator") or "system",
            change_date=now,
            created_at=now,
        )
        updated.add_change_record(record)
        entities.append(record)

    db.save(*entities, db_path=db_path)
    logger.info("Updated institution %s", institution_id)
    return updated


def change_institution_status(
    institution_id: str,
    status: str,
    reason: str,
    operator: str = "system",
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Institution:
    now = now or current_time()
    if not reason or not reason.strip():
        raise ValidationError("reason is required")
    institution = get_institution(institution_id, db_path)
    old_status = institution.status
    updated = revise(institution, {"status": status, "updated_at": now})

    record = ChangeRecord(
        institution_id=institution_id,
        change_type=STATUS_CHANGE,
        change_details={"summary": f"status changed from {old_status} to {status}"},
        before_data={"status": old_status},
        after_data={"status": status},
        change_reason=reason,
        operator=operator,
        change_date=now,
        created_at=now,
    )
    updated.add_change_record(record)
    db.save(updated, record, db_path=db_path)
    logger.info("Institution %s status %s -> %s", institution_id, old_status, status)
    return updated


def get_institutions_by_status(status: Optional[str] = None, db_path: str = DB_PATH) -> List[Institution]:
    return db.fetch_institutions(status=status, db_path=db_path)


def check_page(page: int, limit: int) -> None:
    problems = []
    if page < 1:
        problems.append("page must be at least 1")
    if limit < 1:
        problems.append("limit must be at least 1")
    if problems:
        raise ValidationError("; ".join(problems))


def page_result(items: List[Any], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "data": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit),
    }


def get_institutions_paginated(
    page: int = 1,
    limit: int = 20,
    criteria: Optional[Dict[str, Any]] = None,
    db_path: str = DB_PATH,
) -> Dict[str, Any]:
    """Newest institutions first, filtered by ``status``, ``institution_type`` and a ``name`` substring."""
    check_page(page, limit)
    criteria = criteria or {}
    items, total = db.fetch_institutions_page(
        page,
        limit,
        status=criteria.get("status"),
        institution_type=criteria.get("institution_type"),
        name=criteria.get("name"),
        db_path=db_path,
    )
    return page_result(items, total, page, limit)


def check_institution_compliance(
    institution_id: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[str]:
    institution = get_institution(institution_id, db_path)
    return evaluate_compliance(institution, now or current_time())


def search_institutions(criteria: Dict[str, Any], db_path: str = DB_PATH) -> List[Institution]:
    """Search by ``name``, or by ``address`` when no name is given."""
    return db.search_institutions(
        name=criteria.get("name"),
        address=criteria.get("address"),
        db_path=db_path,
    )


def get_institution_statistics(db_path: str = DB_PATH) -> Dict[str, Any]:
    institutions = db.fetch_institutions(db_path=db_path)
    return {
        "total": len(institutions),
        "by_status": dict(Counter(i.status for i in institutions)),
        "by_type": dict(Counter(i.institution_type for i in institutions)),
    }


def status_check(
    institution_id: Optional[str] = None,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Dict[str, Any]:
    """Run the compliance check over a selection of institutions.

    Selection: the given id, else every institution in ``status``, else
    every operating institution.
    """
    if institution_id:
        institutions = [get_institution(institution_id, db_path)]
    else:
        institutions = db.fetch_institutions(status=status or INSTITUTION_OPERATING, db_path=db_path)
    report = run_status_check(institutions, now or current_time())
    summary = report["summary"]
    logger.info(
        "Status check: %d institutions, %d compliant, %d issues",
        summary["total_institutions"], summary["compliant"], summary["total_issues"],
    )
    return report


def delete_institution(institution_id: str, db_path: str = DB_PATH) -> Dict[str, int]:
    """Delete an institution together with its qualifications, facilities and change records."""
    get_institution(institution_id, db_path)
    counts = db.delete_institution(institution_id, db_path=db_path)
    logger.info("Deleted institution %s: %s", institution_id, counts)
    return counts
