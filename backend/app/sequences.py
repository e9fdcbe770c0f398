from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from typing import Optional

from psycopg import errors as pg_errors

from .config import settings
from .errors import ConcurrencyConflict, InvalidFormatConfig
from .logs import json_log
from .numbering import (
    DocumentNumberFormat,
    NumberContext,
    default_format,
    format_document_number,
    format_from_row,
    reset_period_key,
    validate_format,
)


# Contention errors worth another attempt; anything else propagates untouched.
RETRYABLE_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
)


@dataclass(frozen=True)
class SequenceScope:
    company_id: str
    document_type: str
    period_key: str
    branch_id: Optional[str] = None

    @property
    def branch_key(self) -> str:
        # NULLs never conflict in a unique index, so company-wide counters use ''.
        return str(self.branch_id or "")


def scope_for(
    company_id: str,
    document_type: str,
    frequency: str,
    on: date,
    branch_id: Optional[str] = None,
) -> SequenceScope:
    return SequenceScope(
        company_id=str(company_id),
        document_type=document_type,
        period_key=reset_period_key(frequency, on),
        branch_id=str(branch_id) if branch_id else None,
    )


def _increment(cur, scope: SequenceScope) -> int:
    # Missing row: created at 0 and incremented in the same statement (so it returns 1).
    # Existing row: ON CONFLICT takes the row lock; concurrent callers queue behind it.
    cur.execute(
        """
        INSERT INTO document_sequences (company_id, branch_key, document_type, period_key, current_value, updated_at)
        VALUES (%s, %s, %s, %s, 1, now())
        ON CONFLICT (company_id, branch_key, document_type, period_key)
        DO UPDATE SET current_value = document_sequences.current_value + 1,
                      updated_at = now()
        RETURNING current_value
        """,
        (scope.company_id, scope.branch_key, scope.document_type, scope.period_key),
    )
    return int(cur.fetchone()["current_value"])


def allocate_next(
    conn,
    scope: SequenceScope,
    *,
    max_attempts: Optional[int] = None,
    backoff_ms: Optional[int] = None,
) -> int:
    """
    Atomically allocate the next sequence value for `scope`.

    Each attempt runs in its own savepoint with a short lock timeout, so a
    failed attempt leaves the enclosing document-creation transaction usable.
    The caller's lock timeout is restored once the value is allocated.
    The value is committed together with the caller's transaction.
    """
    attempts = max_attempts or settings.sequence_max_retries
    backoff = settings.sequence_retry_backoff_ms if backoff_ms is None else backoff_ms
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("SELECT current_setting('lock_timeout') AS lock_timeout")
                    previous = cur.fetchone()["lock_timeout"]
                    cur.execute(
                        "SELECT set_config('lock_timeout', %s, true)",
                        (f"{settings.sequence_lock_timeout_ms}ms",),
                    )
                    value = _increment(cur, scope)
                    # set_config(..., true) outlives the savepoint; a failed attempt is reverted by its rollback.
                    cur.execute("SELECT set_config('lock_timeout', %s, true)", (previous,))
                    return value
        except RETRYABLE_ERRORS as exc:
            last_error = exc
            json_log(
                "warning",
                "sequence.allocate.retry",
                company_id=scope.company_id,
                document_type=scope.document_type,
                branch_key=scope.branch_key,
                period_key=scope.period_key,
                attempt=attempt,
                error=type(exc).__name__,
            )
            if attempt < attempts and backoff:
                time.sleep(backoff * attempt / 1000.0)

    json_log(
        "error",
        "sequence.allocate.conflict",
        company_id=scope.company_id,
        document_type=scope.document_type,
        branch_key=scope.branch_key,
        period_key=scope.period_key,
        attempts=attempts,
        error=str(last_error),
    )
    raise ConcurrencyConflict(
        f"could not allocate a {scope.document_type} number after {attempts} attempts; please retry"
    )


def get_sequence_state(cur, scope: SequenceScope) -> dict:
    cur.execute(
        """
        SELECT current_value, updated_at
        FROM document_sequences
        WHERE company_id = %s AND branch_key = %s AND document_type = %s AND period_key = %s
        """,
        (scope.company_id, scope.branch_key, scope.document_type, scope.period_key),
    )
    row = cur.fetchone()
    current = int(row["current_value"]) if row else 0
    return {
        "document_type": scope.document_type,
        "branch_id": scope.branch_id,
        "period_key": scope.period_key,
        "current_value": current,
        "next_value": current + 1,
        "updated_at": row["updated_at"] if row else None,
    }


def load_format(cur, company_id: str, document_type: str) -> tuple[DocumentNumberFormat, bool]:
    """Returns (format, is_default)."""
    cur.execute(
        """
        SELECT prefix, separator, sequence_length, sequence_reset_frequency,
               include_branch, branch_format, include_year, year_format,
               include_month, include_day
        FROM document_number_formats
        WHERE company_id = %s AND document_type = %s
        """,
        (company_id, document_type),
    )
    row = cur.fetchone()
    if not row:
        return default_format(document_type), True
    return format_from_row(row), False


def load_branch(cur, company_id: str, branch_id: Optional[str]) -> dict:
    if not branch_id:
        return {}
    cur.execute(
        "SELECT id, code, name FROM branches WHERE company_id = %s AND id = %s",
        (company_id, branch_id),
    )
    return cur.fetchone() or {}


def issue_document_number(
    conn,
    company_id: str,
    document_type: str,
    *,
    branch_id: Optional[str] = None,
    on: Optional[date] = None,
) -> dict:
    """
    Allocate and render the next number for a document being created.
    Runs inside the caller's transaction so a rolled-back document does not
    consume the number.
    """
    on = on or date.today()
    with conn.cursor() as cur:
        fmt, _ = load_format(cur, company_id, document_type)
        branch = load_branch(cur, company_id, branch_id)
    validate_format(fmt)
    if fmt.include_branch and not branch:
        raise InvalidFormatConfig(f"{document_type} numbers include the branch; a valid branch_id is required")
    # Company-wide numbers share one counter across branches so rendered numbers never collide.
    scope = scope_for(
        company_id,
        document_type,
        fmt.sequence_reset_frequency,
        on,
        branch_id if fmt.include_branch else None,
    )
    value = allocate_next(conn, scope)
    number = format_document_number(
        fmt,
        NumberContext(on=on, sequence=value, branch_code=branch.get("code"), branch_id=branch.get("id")),
    )
    return {
        "document_type": document_type,
        "number": number,
        "sequence_value": value,
        "period_key": scope.period_key,
        "branch_id": scope.branch_id,
    }
