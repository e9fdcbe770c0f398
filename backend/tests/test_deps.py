import pytest
from fastapi import HTTPException

from backend.app import deps


COMPANY_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
USER = {"user_id": "cccccccc-cccc-cccc-cccc-cccccccccccc", "email": "owner@example.com"}


class _DummyCursor:
    def __init__(self, row):
        self._row = row
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._row


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, row):
    cur = _DummyCursor(row)
    monkeypatch.setattr(deps, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(deps, "set_company_context", lambda *_args, **_kwargs: None)
    return cur


def test_parse_uuid_optional():
    assert deps.parse_uuid_optional("  ", "branch_id") is None
    assert deps.parse_uuid_optional(COMPANY_ID.upper(), "branch_id") == COMPANY_ID
    with pytest.raises(HTTPException) as exc:
        deps.parse_uuid_optional("nope", "branch_id")
    assert exc.value.detail == "branch_id must be a valid UUID"


def test_branch_header_wins_over_session_branch():
    session = {"active_branch_id": "eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee"}
    assert deps.get_branch_id(x_branch_id=COMPANY_ID, session=session) == COMPANY_ID
    assert deps.get_branch_id(x_branch_id=None, session=session) == session["active_branch_id"]
    assert deps.get_branch_id(x_branch_id=None, session={}) is None


def test_require_permission_passes_code_to_query(monkeypatch):
    cur = _patch_db(monkeypatch, {"?column?": 1})
    assert deps.require_permission("reports:read")(company_id=COMPANY_ID, user=USER) is True
    _, params = cur.executed[0]
    assert params == (USER["user_id"], COMPANY_ID, "reports:read", "reports:read")


def test_require_permission_denies_without_grant(monkeypatch):
    _patch_db(monkeypatch, None)
    with pytest.raises(HTTPException) as exc:
        deps.require_permission("document_numbers:write")(company_id=COMPANY_ID, user=USER)
    assert exc.value.status_code == 403


def test_company_access_without_role_is_forbidden(monkeypatch):
    _patch_db(monkeypatch, None)
    with pytest.raises(HTTPException) as exc:
        deps.require_company_access(company_id=COMPANY_ID, user=USER)
    assert exc.value.detail == "no company access"
