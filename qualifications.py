"""
Qualification service: registration, renewal, status changes and expiry queries.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import db
from compliance import classify_expiry
from config import DB_PATH, EXPIRING_SOON_DAYS, RENEWAL_REMINDER_DAYS
from errors import ConflictError, NotFoundError, ValidationError
from institutions import check_page, get_institution, page_result
from models import (
    QUALIFICATION_EXPIRED,
    QUALIFICATION_VALID,
    Qualification,
    parse_entity,
    revise,
)
from temporal import current_time

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "qualification_type": "qualification type",
    "qualification_name": "qualification name",
    "certificate_number": "certificate number",
    "issuing_authority": "issuing authority",
    "issue_date": "issue date",
    "valid_from": "valid from",
    "valid_to": "valid to",
}

EDITABLE_FIELDS = tuple(REQUIRED_FIELDS) + ("scope", "status", "attachments")

# Fields a renewal may replace besides the window and certificate number
RENEWAL_FIELDS = ("issuing_authority", "issue_date", "scope", "attachments")


def validate_qualification_data(data: Dict[str, Any]) -> None:
    errors = [f"{label} is required" for field, label in REQUIRED_FIELDS.items() if not data.get(field)]
    if errors:
        raise ValidationError.from_messages(errors)


def _check_certificate(number: Optional[str], db_path: str, exclude_id: Optional[str] = None) -> None:
    if number and db.certificate_number_exists(number, exclude_id, db_path):
        raise ConflictError(f"certificate number already exists: {number}")


def get_qualification(qualification_id: str, db_path: str = DB_PATH) -> Qualification:
    qualification = db.fetch_qualification(qualification_id, db_path=db_path)
    if qualification is None:
        raise NotFoundError(f"qualification not found: {qualification_id}")
    return qualification


def add_qualification(
    institution_id: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Qualification:
    now = now or current_time()
    institution = get_institution(institution_id, db_path)
    validate_qualification_data(data)
    _check_certificate(data["certificate_number"], db_path)

    fields = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) is not None}
    qualification = parse_entity(Qualification, {
        **fields,
        "institution_id": institution_id,
        "created_at": now,
        "updated_at": now,
    })
    institution.add_qualification(qualification)
    db.save(qualification, db_path=db_path)
    logger.info("Added qualification %s to institution %s", qualification.certificate_number, institution_id)
    return qualification


def update_qualification(
    qualification_id: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Qualification:
    qualification = get_qualification(qualification_id, db_path)
    changes = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) is not None}
    if "certificate_number" in changes:
        _check_certificate(changes["certificate_number"], db_path, exclude_id=qualification_id)
    updated = revise(qualification, {**changes, "updated_at": now or current_time()})
    db.save(updated, db_path=db_path)
    logger.info("Updated qualification %s", qualification_id)
    return updated


def renew_qualification(
    qualification_id: str,
    new_valid_to: Optional[datetime],
    new_certificate_number: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Qualification:
    """Extend a qualification and mark it valid again.

    ``extra`` may carry replacement values for the issuing authority,
    issue date, scope and attachments.
    """
    now = now or current_time()
    qualification = get_qualification(qualification_id, db_path)
    if new_valid_to is None:
        raise ValidationError("new valid_to is required")
    _check_certificate(new_certificate_number, db_path, exclude_id=qualification_id)

    qualification.renew(new_valid_to, now, new_certificate_number)
    extra = extra or {}
    changes = {k: extra[k] for k in RENEWAL_FIELDS if extra.get(k) is not None}
    if changes:
        qualification = revise(qualification, changes)

    db.save(qualification, db_path=db_path)
    logger.info("Renewed qualification %s until %s", qualification_id, new_valid_to.isoformat())
    return qualification


def revoke_qualification(
    qualification_id: str,
    reason: str = "",
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Qualification:
    qualification = get_qualification(qualification_id, db_path).revoke(now)
    db.save(qualification, db_path=db_path)
    logger.info("Revoked qualification %s: %s", qualification_id, reason)
    return qualification


def suspend_qualification(
    qualification_id: str,
    reason: str = "",
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Qualification:
    qualification = get_qualification(qualification_id, db_path).suspend(now)
    db.save(qualification, db_path=db_path)
    logger.info("Suspended qualification %s: %s", qualification_id, reason)
    return qualification


def restore_qualification(
    qualification_id: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Qualification:
    qualification = get_qualification(qualification_id, db_path).restore(now or current_time())
    db.save(qualification, db_path=db_path)
    logger.info("Restored qualification %s", qualification_id)
    return qualification


def get_qualifications_paginated(
    page: int = 1,
    limit: int = 20,
    criteria: Optional[Dict[str, Any]] = None,
    db_path: str = DB_PATH,
) -> Dict[str, Any]:
    """Newest qualifications first.

    ``criteria`` may hold ``institution_id``, ``status``,
    ``qualification_type`` and a ``certificate_number`` substring.
    """
    check_page(page, limit)
    criteria = criteria or {}
    items, total = db.fetch_qualifications_page(
        page,
        limit,
        institution_id=criteria.get("institution_id"),
        status=criteria.get("status"),
        qualification_type=criteria.get("qualification_type"),
        certificate_number=criteria.get("certificate_number"),
        db_path=db_path,
    )
    return page_result(items, total, page, limit)


def check_qualification_expiry(
    institution_id: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[Dict[str, Any]]:
    """Classify each of the institution's qualifications by remaining days."""
    now = now or current_time()
    institution = get_institution(institution_id, db_path)
    return [classify_expiry(q, now) for q in institution.qualifications]


def _valid_ending_within(qualifications: Iterable[Qualification], now: datetime, days: int) -> List[Qualification]:
    # status is valid and now < valid_to <= now + days
    return [
        q for q in qualifications
        if q.status == QUALIFICATION_VALID and not q.window.has_ended(now) and q.window.ends_within(now, days)
    ]


def get_expiring_qualifications(
    days: int = EXPIRING_SOON_DAYS,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[Qualification]:
    qualifications = db.fetch_qualifications(status=QUALIFICATION_VALID, db_path=db_path)
    return _valid_ending_within(qualifications, now or current_time(), days)


def get_qualifications_needing_renewal_reminder(
    days: int = RENEWAL_REMINDER_DAYS,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[Qualification]:
    return get_expiring_qualifications(days, now, db_path)


def get_expired_qualifications(now: Optional[datetime] = None, db_path: str = DB_PATH) -> List[Qualification]:
    """Qualifications still marked valid whose window has closed."""
    now = now or current_time()
    qualifications = db.fetch_qualifications(status=QUALIFICATION_VALID, db_path=db_path)
    return [q for q in qualifications if q.window.has_ended(now)]


def mark_expired_qualifications(now: Optional[datetime] = None, db_path: str = DB_PATH) -> List[Qualification]:
    now = now or current_time()
    expired = []
    for qualification in get_expired_qualifications(now, db_path):
        expired.append(revise(qualification, {"status": QUALIFICATION_EXPIRED, "updated_at": now}))
    if expired:
        db.save(*expired, db_path=db_path)
        logger.info("Marked %d qualifications as expired", len(expired))
    return expired


def validate_qualification_scope(
    qualification_id: str,
    training_types: Iterable[str],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> bool:
    qualification = get_qualification(qualification_id, db_path)
    if not qualification.is_valid(now or current_time()):
        return False
    return all(qualification.covers_training_type(t) for t in training_types)


def get_qualification_statistics(now: Optional[datetime] = None, db_path: str = DB_PATH) -> Dict[str, Any]:
    now = now or current_time()
    qualifications = db.fetch_qualifications(db_path=db_path)
    return {
        "total": len(qualifications),
        "by_status": dict(Counter(q.status for q in qualifications)),
        "by_type": dict(Counter(q.qualification_type for q in qualifications)),
        "valid": sum(1 for q in qualifications if q.is_valid(now)),
        "expiring_soon": len(_valid_ending_within(qualifications, now, EXPIRING_SOON_DAYS)),
    }
