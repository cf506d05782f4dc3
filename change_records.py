"""
Change record service: recording changes and driving their approval.

A change record leaves ``pending`` exactly once.  ``approve_change`` and
``reject_change`` check the stored status first, let the entity perform
the transition, then persist it with a compare-and-swap so a concurrent
decision on the same record fails with :class:`~errors.ConflictError`
instead of overwriting the first one.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import db
from config import DB_PATH
from errors import ComplianceError, ConflictError, NotFoundError, ValidationError
from institutions import get_institution
from models import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    ChangeRecord,
    parse_entity,
)
from temporal import current_time, to_local_naive

logger = logging.getLogger(__name__)

REQUIRED_TEXT_FIELDS = {
    "change_type": "change type",
    "change_reason": "change reason",
    "operator": "operator",
}
REQUIRED_MAPPING_FIELDS = {
    "change_details": "change details",
    "before_data": "before data",
    "after_data": "after data",
}

RECENT_CHANGE_COUNT = 10


def validate_change_data(data: Dict[str, Any]) -> None:
    errors = []
    for field, label in REQUIRED_TEXT_FIELDS.items():
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{label} is required")
    for field, label in REQUIRED_MAPPING_FIELDS.items():
        value = data.get(field)
        if value is None:
            errors.append(f"{label} is required")
        elif not isinstance(value, dict):
            errors.append(f"{label} must be a mapping")
    if errors:
        raise ValidationError.from_messages(errors)


def get_change_record(record_id: str, db_path: str = DB_PATH) -> ChangeRecord:
    record = db.fetch_change_record(record_id, db_path=db_path)
    if record is None:
        raise NotFoundError(f"change record not found: {record_id}")
    return record


def record_change(
    institution_id: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> ChangeRecord:
    """Store a new change record, pending unless ``approval_status`` says otherwise.

    A record created already approved or rejected must name its
    ``approver``; its approval time is the change date.
    """
    now = now or current_time()
    validate_change_data(data)
    institution = get_institution(institution_id, db_path)

    change_date = data.get("change_date") or now
    status = data.get("approval_status") or APPROVAL_PENDING
    fields = {
        "institution_id": institution_id,
        "change_type": data["change_type"],
        "change_details": data["change_details"],
        "before_data": data["before_data"],
        "after_data": data["after_data"],
        "change_reason": data["change_reason"],
        "operator": data["operator"],
        "change_date": change_date,
        "approval_status": status,
        "created_at": now,
    }
    if status != APPROVAL_PENDING:
        if not data.get("approver"):
            raise ValidationError(f"approver is required for a change recorded as {status}")
        fields["approver"] = data["approver"]
        fields["approved_at"] = change_date

    record = parse_entity(ChangeRecord, fields)
    institution.add_change_record(record)
    db.save(record, db_path=db_path)
    logger.info("Recorded %s change %s for institution %s", record.change_type, record.id, institution_id)
    return record


def _decide(record_id: str, outcome: str, approver: str, now: Optional[datetime], db_path: str) -> ChangeRecord:
    record = get_change_record(record_id, db_path)
    if not record.is_pending:
        raise ConflictError(f"change record {record_id} already processed ({record.approval_status})")
    if outcome == APPROVAL_APPROVED:
        record.approve(approver, now or current_time())
    else:
        record.reject(approver, now or current_time())
    db.update_change_record_decision(record, db_path=db_path)
    return record


def approve_change(
    record_id: str,
    approver: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> ChangeRecord:
    record = _decide(record_id, APPROVAL_APPROVED, approver, now, db_path)
    logger.info("Change record %s approved by %s", record_id, approver)
    return record


def reject_change(
    record_id: str,
    approver: str,
    reason: str = "",
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> ChangeRecord:
    record = _decide(record_id, APPROVAL_REJECTED, approver, now, db_path)
    logger.info("Change record %s rejected by %s: %s", record_id, approver, reason)
    return record


def _batch(record_ids: Iterable[str], decide) -> List[Dict[str, Any]]:
    # one record at a time; a failure never stops the batch
    results = []
    for record_id in record_ids:
        try:
            record = decide(record_id)
        except ComplianceError as e:
            logger.warning("Batch decision on change record %s failed: %s", record_id, e)
            results.append({"record_id": record_id, "success": False, "error": str(e)})
        else:
            results.append({"record_id": record_id, "success": True, "change_type": record.change_type})
    return results


def batch_approve_changes(
    record_ids: Iterable[str],
    approver: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[Dict[str, Any]]:
    return _batch(record_ids, lambda record_id: approve_change(record_id, approver, now, db_path))


def batch_reject_changes(
    record_ids: Iterable[str],
    approver: str,
    reason: str = "",
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[Dict[str, Any]]:
    return _batch(record_ids, lambda record_id: reject_change(record_id, approver, reason, now, db_path))


def get_change_history(institution_id: str, db_path: str = DB_PATH) -> List[ChangeRecord]:
    """All of an institution's change records, newest first."""
    get_institution(institution_id, db_path)
    return db.fetch_change_records(institution_id=institution_id, db_path=db_path)


def get_pending_changes(db_path: str = DB_PATH) -> List[ChangeRecord]:
    return db.fetch_change_records(approval_status=APPROVAL_PENDING, db_path=db_path)


def get_changes_by_type(change_type: str, db_path: str = DB_PATH) -> List[ChangeRecord]:
    return db.fetch_change_records(change_type=change_type, db_path=db_path)


def get_changes_by_date_range(
    institution_id: str,
    start: datetime,
    end: datetime,
    db_path: str = DB_PATH,
) -> List[ChangeRecord]:
    """Changes dated within ``[start, end]``, both ends inclusive."""
    start, end = to_local_naive(start), to_local_naive(end)
    return [r for r in get_change_history(institution_id, db_path) if start <= r.change_date <= end]


def get_change_detail(record_id: str, db_path: str = DB_PATH) -> Dict[str, Any]:
    record = get_change_record(record_id, db_path)
    institution = get_institution(record.institution_id, db_path)
    detail = record.model_dump(mode="json", exclude={"institution_id"})
    detail["institution"] = {"id": institution.id, "name": institution.name}
    return detail


def generate_change_report(
    institution_id: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Dict[str, Any]:
    institution = get_institution(institution_id, db_path)
    records = db.fetch_change_records(institution_id=institution_id, db_path=db_path)
    by_status = Counter(r.approval_status for r in records)
    pending = [r for r in records if r.is_pending]

    return {
        "institution": {"id": institution.id, "name": institution.name},
        "summary": {
            "total_changes": len(records),
            "pending_approval": by_status[APPROVAL_PENDING],
            "approved_changes": by_status[APPROVAL_APPROVED],
            "rejected_changes": by_status[APPROVAL_REJECTED],
        },
        "statistics": {
            "by_type": dict(Counter(r.change_type for r in records)),
            "by_status": dict(by_status),
            "by_operator": dict(Counter(r.operator for r in records)),
            "by_month": dict(Counter(r.change_date.strftime("%Y-%m") for r in records)),
        },
        "recent_changes": [
            {
                "id": r.id,
                "type": r.change_type,
                "operator": r.operator,
                "date": r.change_date.isoformat(),
                "status": r.approval_status,
                "approver": r.approver,
            }
            for r in records[:RECENT_CHANGE_COUNT]
        ],
        "pending_changes": [
            {
                "id": r.id,
                "type": r.change_type,
                "operator": r.operator,
                "date": r.change_date.isoformat(),
                "reason": r.change_reason,
            }
            for r in pending
        ],
        "generated_at": (now or current_time()).isoformat(),
    }


def get_change_statistics(db_path: str = DB_PATH) -> Dict[str, Any]:
    records = db.fetch_change_records(db_path=db_path)
    total = len(records)
    by_status = Counter(r.approval_status for r in records)
    return {
        "total": total,
        "pending": by_status[APPROVAL_PENDING],
        "approved": by_status[APPROVAL_APPROVED],
        "rejected": by_status[APPROVAL_REJECTED],
        "approval_rate": round(by_status[APPROVAL_APPROVED] / total * 100, 2) if total else 0,
        "by_type": dict(Counter(r.change_type for r in records)),
    }
