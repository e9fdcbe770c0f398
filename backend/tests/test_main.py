import json

from starlette.requests import Request

from backend.app import main
from backend.app.errors import ConcurrencyConflict, PeriodDataInconsistency


class _DummyCursor:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.sql = sql

    def fetchone(self):
        return {"ok": 1}


class _DummyConn:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return _DummyCursor()


def _request(path="/health", headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": path, "headers": raw})


def test_health_ok(monkeypatch):
    monkeypatch.setattr(main, "get_conn", lambda: _DummyConn())

    out = main.health(_request(headers={"X-Request-Id": "req-1"}))

    assert out["status"] == "ok"
    assert out["db"] == "ok"
    assert out["request_id"] == "req-1"


def test_health_degraded_when_db_is_down(monkeypatch):
    def _down():
        raise ConnectionError("connection refused")

    monkeypatch.setattr(main, "get_conn", _down)

    resp = main.health(_request())

    assert resp.status_code == 503
    body = json.loads(resp.body)
    assert body["status"] == "degraded"
    assert body["db"] == "down"


def test_domain_errors_map_to_their_status_code():
    resp = main._domain_error(_request("/document-numbers/INVOICE/issue"), ConcurrencyConflict("busy"))
    assert resp.status_code == 409
    assert json.loads(resp.body) == {"detail": "busy", "code": "concurrency_conflict"}

    resp = main._domain_error(_request("/reports/gstr1"), PeriodDataInconsistency("bad split"))
    assert resp.status_code == 422
