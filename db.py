"""
Database access layer for the training institution compliance engine.

This module is the persistence collaborator.  It stores institutions and
their children in a SQLite file using Python's built-in :mod:`sqlite3`
module, one table per entity.  List and mapping fields are stored as JSON
text; datetimes as ISO-8601 text.  Children reference their institution
with ``ON DELETE CASCADE`` so deleting an institution removes everything
it owns.

Functions take a ``db_path`` keyword so tests can point at a temporary
file.  Rows come back as hydrated pydantic models; an institution is
returned with its full child graph.

Approval transitions use :func:`update_change_record_decision`, a
compare-and-swap on ``approval_status = 'pending'``, so two concurrent
approvals of the same record cannot both succeed.
"""
import json
import sqlite3
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import DB_PATH
from errors import ConflictError
from models import (
    APPROVAL_PENDING,
    ChangeRecord,
    Facility,
    Institution,
    Qualification,
)

INSTITUTION_COLUMNS = (
    "id", "name", "code", "institution_type", "legal_representative", "contact_person",
    "contact_phone", "contact_email", "address", "business_scope", "established_on",
    "registration_number", "status", "organization_structure", "created_at", "updated_at",
)
QUALIFICATION_COLUMNS = (
    "id", "institution_id", "qualification_type", "qualification_name", "certificate_number",
    "issuing_authority", "issue_date", "valid_from", "valid_to", "scope", "status",
    "attachments", "created_at", "updated_at",
)
FACILITY_COLUMNS = (
    "id", "institution_id", "facility_type", "facility_name", "location", "area", "capacity",
    "equipment", "safety_equipment", "status", "last_inspection_date", "next_inspection_date",
    "created_at", "updated_at",
)
CHANGE_RECORD_COLUMNS = (
    "id", "institution_id", "change_type", "change_details", "before_data", "after_data",
    "change_reason", "change_date", "operator", "approval_status", "approver", "approved_at",
    "created_at",
)

JSON_COLUMNS = {
    "organization_structure", "scope", "attachments", "equipment", "safety_equipment",
    "change_details", "before_data", "after_data",
}

# entity type -> (table, columns)
TABLES = {
    Institution: ("institutions", INSTITUTION_COLUMNS),
    Qualification: ("qualifications", QUALIFICATION_COLUMNS),
    Facility: ("facilities", FACILITY_COLUMNS),
    ChangeRecord: ("change_records", CHANGE_RECORD_COLUMNS),
}


def get_connection(db_path: str = DB_PATH) -> sqlite3.Connection:
    """Return a SQLite connection with foreign keys enforced."""
    # Allow multi-thread access and wait if DB is busy
    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def safe_commit(conn, retries: int = 5, delay: float = 0.5):
    """Retry commits if the database is locked."""
    for _ in range(retries):
        try:
            conn.commit()
            return
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e).lower():
                time.sleep(delay)
            else:
                raise
    raise sqlite3.OperationalError("Database remained locked after multiple retries")


def init_db(db_path: str = DB_PATH) -> None:
    """Initialise the database schema.

    Idempotent and safe to call on every start-up.
    """
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS institutions (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            code TEXT NOT NULL UNIQUE,
            institution_type TEXT NOT NULL,
            legal_representative TEXT NOT NULL,
            contact_person TEXT,
            contact_phone TEXT NOT NULL,
            contact_email TEXT,
            address TEXT,
            business_scope TEXT,
            established_on TEXT NOT NULL,
            registration_number TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL,
            organization_structure TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS qualifications (
            id TEXT PRIMARY KEY,
            institution_id TEXT NOT NULL REFERENCES institutions(id) ON DELETE CASCADE,
            qualification_type TEXT NOT NULL,
            qualification_name TEXT NOT NULL,
            certificate_number TEXT NOT NULL UNIQUE,
            issuing_authority TEXT NOT NULL,
            issue_date TEXT NOT NULL,
            valid_from TEXT NOT NULL,
            valid_to TEXT NOT NULL,
            scope TEXT NOT NULL,
            status TEXT NOT NULL,
            attachments TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS facilities (
            id TEXT PRIMARY KEY,
            institution_id TEXT NOT NULL REFERENCES institutions(id) ON DELETE CASCADE,
            facility_type TEXT NOT NULL,
            facility_name TEXT NOT NULL,
            location TEXT NOT NULL,
            area REAL NOT NULL,
            capacity INTEGER NOT NULL,
            equipment TEXT NOT NULL,
            safety_equipment TEXT NOT NULL,
            status TEXT NOT NULL,
            last_inspection_date TEXT,
            next_inspection_date TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS change_records (
            id TEXT PRIMARY KEY,
            institution_id TEXT NOT NULL REFERENCES institutions(id) ON DELETE CASCADE,
            change_type TEXT NOT NULL,
            change_details TEXT NOT NULL,
            before_data TEXT NOT NULL,
            after_data TEXT NOT NULL,
            change_reason TEXT NOT NULL,
            change_date TEXT NOT NULL,
            operator TEXT NOT NULL,
            approval_status TEXT NOT NULL, -- 'pending', 'approved' or 'rejected'
            approver TEXT,
            approved_at TEXT,
            created_at TEXT NOT NULL
        );
        """
    )
    safe_commit(conn)
    conn.close()


def _to_values(entity, columns: Sequence[str]) -> Tuple[Any, ...]:
    data = entity.model_dump(mode="json")
    return tuple(json.dumps(data[c]) if c in JSON_COLUMNS else data[c] for c in columns)


def _from_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for key in JSON_COLUMNS & data.keys():
        if data[key] is not None:
            data[key] = json.loads(data[key])
    return data


def save(*entities, db_path: str = DB_PATH) -> None:
    """Insert or update each entity (child rows only; the owner's lists are not walked).

    All entities are written in one transaction.  A unique-constraint
    violation raises :class:`~errors.ConflictError` and nothing is written.
    """
    conn = get_connection(db_path)
    cur = conn.cursor()
    try:
        for entity in entities:
            table, columns = TABLES[type(entity)]
            placeholders = ", ".join("?" for _ in columns)
            updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
            cur.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                _to_values(entity, columns),
            )
        safe_commit(conn)
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise ConflictError(f"unique constraint violated: {e}") from e
    finally:
        conn.close()


def _select(sql: str, params: Sequence[Any], db_path: str) -> List[Dict[str, Any]]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(sql, tuple(params))
    rows = cur.fetchall()
    conn.close()
    return [_from_row(row) for row in rows]


def _where(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
    clauses = [f"{column} = ?" for column, value in filters.items() if value is not None]
    params = [value for value in filters.values() if value is not None]
    return (" WHERE " + " AND ".join(clauses) if clauses else ""), params


def _like(where: str, params: List[Any], patterns: Dict[str, Optional[str]]) -> Tuple[str, List[Any]]:
    """Extend a WHERE clause with substring matches for the non-empty patterns."""
    clauses = [f"{column} LIKE ?" for column, term in patterns.items() if term]
    if not clauses:
        return where, params
    params = params + [f"%{term}%" for term in patterns.values() if term]
    joiner = " AND " if where else " WHERE "
    return where + joiner + " AND ".join(clauses), params


def _page(
    table: str,
    where: str,
    params: List[Any],
    page: int,
    limit: int,
    db_path: str,
) -> Tuple[List[Dict[str, Any]], int]:
    """One page of rows, newest first, plus the total number of matching rows."""
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(*) FROM {table}{where}", tuple(params))
    total = cur.fetchone()[0]
    conn.close()
    rows = _select(
        f"SELECT * FROM {table}{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
        params + [limit, (page - 1) * limit],
        db_path,
    )
    return rows, total


def value_exists(
    table: str,
    column: str,
    value: Any,
    exclude_id: Optional[str] = None,
    db_path: str = DB_PATH,
) -> bool:
    """Uniqueness check: does any row other than ``exclude_id`` hold ``value``?"""
    sql = f"SELECT 1 FROM {table} WHERE {column} = ?"
    params: List[Any] = [value]
    if exclude_id is not None:
        sql += " AND id != ?"
        params.append(exclude_id)
    return bool(_select(sql + " LIMIT 1", params, db_path))


def institution_code_exists(code: str, exclude_id: Optional[str] = None, db_path: str = DB_PATH) -> bool:
    return value_exists("institutions", "code", code, exclude_id, db_path)


def registration_number_exists(number: str, exclude_id: Optional[str] = None, db_path: str = DB_PATH) -> bool:
    return value_exists("institutions", "registration_number", number, exclude_id, db_path)


def certificate_number_exists(number: str, exclude_id: Optional[str] = None, db_path: str = DB_PATH) -> bool:
    return value_exists("qualifications", "certificate_number", number, exclude_id, db_path)


def fetch_qualifications(
    institution_id: Optional[str] = None,
    status: Optional[str] = None,
    qualification_type: Optional[str] = None,
    db_path: str = DB_PATH,
) -> List[Qualification]:
    where, params = _where({
        "institution_id": institution_id,
        "status": status,
        "qualification_type": qualification_type,
    })
    rows = _select(f"SELECT * FROM qualifications{where} ORDER BY valid_to", params, db_path)
    return [Qualification.model_validate(row) for row in rows]


def fetch_qualifications_page(
    page: int = 1,
    limit: int = 20,
    institution_id: Optional[str] = None,
    status: Optional[str] = None,
    qualification_type: Optional[str] = None,
    certificate_number: Optional[str] = None,
    db_path: str = DB_PATH,
) -> Tuple[List[Qualification], int]:
    where, params = _where({
        "institution_id": institution_id,
        "status": status,
        "qualification_type": qualification_type,
    })
    where, params = _like(where, params, {"certificate_number": certificate_number})
    rows, total = _page("qualifications", where, params, page, limit, db_path)
    return [Qualification.model_validate(row) for row in rows], total


def fetch_qualification(qualification_id: str, db_path: str = DB_PATH) -> Optional[Qualification]:
    rows = _select("SELECT * FROM qualifications WHERE id = ?", (qualification_id,), db_path)
    return Qualification.model_validate(rows[0]) if rows else None


def fetch_facilities(institution_id: Optional[str] = None, db_path: str = DB_PATH) -> List[Facility]:
    where, params = _where({"institution_id": institution_id})
    rows = _select(f"SELECT * FROM facilities{where} ORDER BY created_at", params, db_path)
    return [Facility.model_validate(row) for row in rows]


def fetch_facility(facility_id: str, db_path: str = DB_PATH) -> Optional[Facility]:
    rows = _select("SELECT * FROM facilities WHERE id = ?", (facility_id,), db_path)
    return Facility.model_validate(rows[0]) if rows else None


def fetch_change_records(
    institution_id: Optional[str] = None,
    approval_status: Optional[str] = None,
    change_type: Optional[str] = None,
    db_path: str = DB_PATH,
) -> List[ChangeRecord]:
    """Return change records, newest first."""
    where, params = _where({
        "institution_id": institution_id,
        "approval_status": approval_status,
        "change_type": change_type,
    })
    rows = _select(f"SELECT * FROM change_records{where} ORDER BY change_date DESC", params, db_path)
    return [ChangeRecord.model_validate(row) for row in rows]


def fetch_change_record(record_id: str, db_path: str = DB_PATH) -> Optional[ChangeRecord]:
    rows = _select("SELECT * FROM change_records WHERE id = ?", (record_id,), db_path)
    return ChangeRecord.model_validate(rows[0]) if rows else None


def _hydrate(row: Dict[str, Any], db_path: str) -> Institution:
    institution_id = row["id"]
    return Institution.model_validate({
        **row,
        "qualifications": fetch_qualifications(institution_id, db_path=db_path),
        "facilities": fetch_facilities(institution_id, db_path=db_path),
        "change_records": fetch_change_records(institution_id, db_path=db_path),
    })


def fetch_institution(institution_id: str, db_path: str = DB_PATH) -> Optional[Institution]:
    """Return the institution with its qualifications, facilities and change records."""
    rows = _select("SELECT * FROM institutions WHERE id = ?", (institution_id,), db_path)
    return _hydrate(rows[0], db_path) if rows else None


def fetch_institutions(
    status: Optional[str] = None,
    institution_type: Optional[str] = None,
    db_path: str = DB_PATH,
) -> List[Institution]:
    where, params = _where({"status": status, "institution_type": institution_type})
    rows = _select(f"SELECT * FROM institutions{where} ORDER BY name", params, db_path)
    return [_hydrate(row, db_path) for row in rows]


def fetch_institutions_page(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    institution_type: Optional[str] = None,
    name: Optional[str] = None,
    db_path: str = DB_PATH,
) -> Tuple[List[Institution], int]:
    """Return one page of institutions, newest first, and the match count."""
    where, params = _where({"status": status, "institution_type": institution_type})
    where, params = _like(where, params, {"name": name})
    rows, total = _page("institutions", where, params, page, limit, db_path)
    return [_hydrate(row, db_path) for row in rows], total


def search_institutions(
    name: Optional[str] = None,
    address: Optional[str] = None,
    db_path: str = DB_PATH,
) -> List[Institution]:
    """Substring search on name, or on address when no name is given."""
    if name:
        column, term = "name", name
    elif address:
        column, term = "address", address
    else:
        return []
    rows = _select(f"SELECT * FROM institutions WHERE {column} LIKE ? ORDER BY name", (f"%{term}%",), db_path)
    return [_hydrate(row, db_path) for row in rows]


def update_change_record_decision(record: ChangeRecord, db_path: str = DB_PATH) -> None:
    """Persist an approve/reject decision only if the stored record is still pending.

    Raises :class:`~errors.ConflictError` when another caller processed the
    record first.
    """
    data = record.model_dump(mode="json")
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE change_records SET
            approval_status = ?,
            approver = ?,
            approved_at = ?
        WHERE id = ? AND approval_status = ?
        """,
        (data["approval_status"], data["approver"], data["approved_at"], record.id, APPROVAL_PENDING),
    )
    updated = cur.rowcount
    safe_commit(conn)
    conn.close()
    if updated == 0:
        raise ConflictError(f"change record {record.id} already processed")


def delete_institution(institution_id: str, db_path: str = DB_PATH) -> Dict[str, int]:
    """Remove an institution and everything it owns.

    Returns a dict with counts of deleted rows per table.
    """
    conn = get_connection(db_path)
    cur = conn.cursor()
    counts = {}
    for table in ("qualifications", "facilities", "change_records"):
        cur.execute(f"SELECT COUNT(*) FROM {table} WHERE institution_id = ?", (institution_id,))
        counts[table] = cur.fetchone()[0]
    cur.execute("DELETE FROM institutions WHERE id = ?", (institution_id,))
    counts["institutions"] = cur.rowcount
    safe_commit(conn)
    conn.close()
    return counts
