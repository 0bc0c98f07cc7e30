from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, set_tenant_context
from .scope import ScopeContext, load_scope_context
from .cash.cari_bridge import CariApplyBridge
from .cash.transactions import CashTransactionService
from .cash.transit import CashTransitService
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "cashledger_session"


@dataclass(frozen=True)
class SessionUser:
    session_id: str
    user_id: str
    email: str
    active_tenant_id: Optional[str] = None


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
) -> SessionUser:
    token = _extract_session_token(authorization, cookie_token)
    # Sessions are looked up before any tenant is known, outside RLS.
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, u.is_active AS user_active,
                       s.expires_at, s.is_active, s.active_tenant_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (token,),
            )
            row = cur.fetchone()
    if not row or not row["is_active"] or not row["user_active"]:
        raise HTTPException(status_code=401, detail="invalid token")
    if row["expires_at"] < datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="session expired")
    return SessionUser(
        session_id=str(row["session_id"]),
        user_id=str(row["user_id"]),
        email=row["email"],
        active_tenant_id=str(row["active_tenant_id"]) if row["active_tenant_id"] else None,
    )


def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    session: SessionUser = Depends(get_session),
) -> str:
    tenant_id = (x_tenant_id or "").strip() or session.active_tenant_id
    if not tenant_id:
        raise HTTPException(status_code=400, detail="missing tenant id")
    return tenant_id


def has_tenant_role(cur, user_id: str, tenant_id: str, permission: Optional[str] = None) -> bool:
    """Membership when `permission` is None, otherwise membership through a role granting it."""
    sql = "SELECT 1 FROM user_roles ur"
    params: list = []
    if permission:
        sql += (
            " JOIN role_permissions rp ON rp.role_id = ur.role_id"
            " JOIN permissions p ON p.id = rp.permission_id AND p.code = %s"
        )
        params.append(permission)
    sql += " WHERE ur.user_id = %s AND ur.tenant_id = %s LIMIT 1"
    params.extend([user_id, tenant_id])
    cur.execute(sql, params)
    return cur.fetchone() is not None


def _check_role(tenant_id: str, session: SessionUser, permission: Optional[str], detail: str) -> None:
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            if not has_tenant_role(cur, session.user_id, tenant_id, permission):
                raise HTTPException(status_code=403, detail=detail)


def require_tenant_access(tenant_id: str = Depends(get_tenant_id), session: SessionUser = Depends(get_session)):
    _check_role(tenant_id, session, None, "no tenant access")
    return True


def require_permission(code: str):
    def _dep(tenant_id: str = Depends(get_tenant_id), session: SessionUser = Depends(get_session)):
        _check_role(tenant_id, session, code, f"permission denied: {code}")
        return True
    return _dep


def get_scope_context(
    tenant_id: str = Depends(get_tenant_id), session: SessionUser = Depends(get_session)
) -> ScopeContext:
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            return load_scope_context(cur, tenant_id, session.user_id)


# Services are stateless; each call opens its own unit of work.
def get_cash_txn_service() -> CashTransactionService:
    return CashTransactionService()


def get_cash_transit_service() -> CashTransitService:
    return CashTransitService()


def get_cari_apply_bridge() -> CariApplyBridge:
    return CariApplyBridge()
