from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, set_company_context
from datetime import datetime, timezone
from typing import Optional
import uuid


SESSION_COOKIE_NAME = "repairhub_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def parse_uuid_optional(raw: Optional[str], field: str) -> Optional[str]:
    v = (raw or "").strip()
    if not v:
        return None
    try:
        return str(uuid.UUID(v))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be a valid UUID")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    # Sessions are issued by the auth service; this only resolves them.
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active,
                       s.active_company_id, s.active_branch_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (token,),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "active_company_id": row["active_company_id"],
                "active_branch_id": row["active_branch_id"],
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_company_id(
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    session=Depends(get_session),
) -> str:
    if x_company_id:
        return x_company_id
    if session.get("active_company_id"):
        return str(session["active_company_id"])
    raise HTTPException(status_code=400, detail="missing company id")


def get_branch_id(
    x_branch_id: Optional[str] = Header(None, alias="X-Branch-Id"),
    session=Depends(get_session),
) -> Optional[str]:
    # Branch staff are pinned to a branch; company admins may pass none.
    if x_branch_id:
        return parse_uuid_optional(x_branch_id, "X-Branch-Id")
    if session.get("active_branch_id"):
        return str(session["active_branch_id"])
    return None


def _has_access(company_id: str, user_id, permission: Optional[str] = None) -> bool:
    # Without a permission code any role in the company grants access.
    sql = """
        SELECT 1
        FROM user_roles ur
        LEFT JOIN role_permissions rp ON rp.role_id = ur.role_id
        LEFT JOIN permissions p ON p.id = rp.permission_id
        WHERE ur.user_id = %s AND ur.company_id = %s AND (%s::text IS NULL OR p.code = %s)
        LIMIT 1
    """
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(sql, (user_id, company_id, permission, permission))
            return cur.fetchone() is not None


def require_company_access(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    if not _has_access(company_id, user["user_id"]):
        raise HTTPException(status_code=403, detail="no company access")
    return True


def require_permission(code: str):
    def _dep(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
        if not _has_access(company_id, user["user_id"], code):
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep
