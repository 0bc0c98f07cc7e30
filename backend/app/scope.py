"""
RBAC data scope for the cash endpoints.

A user is either tenant-wide or holds explicit grants on legal entities and
operating units (`user_scope_assignments`). Mutations assert access before any
row in that scope is touched; list queries get a SQL predicate instead.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import scope_denied

SCOPE_LEGAL_ENTITY = "legal_entity"
SCOPE_OPERATING_UNIT = "operating_unit"
SCOPE_TYPES = (SCOPE_LEGAL_ENTITY, SCOPE_OPERATING_UNIT)


@dataclass(frozen=True)
class ScopeContext:
    user_id: str
    tenant_id: str
    legal_entity_ids: frozenset = field(default_factory=frozenset)
    operating_unit_ids: frozenset = field(default_factory=frozenset)
    tenant_wide: bool = False

    def _ids_for(self, scope_type: str) -> frozenset:
        if scope_type == SCOPE_LEGAL_ENTITY:
            return self.legal_entity_ids
        if scope_type == SCOPE_OPERATING_UNIT:
            return self.operating_unit_ids
        raise ValueError(f"unknown scope type: {scope_type}")

    def covers(self, scope_type: str, scope_id: Optional[str]) -> bool:
        ids = self._ids_for(scope_type)
        if self.tenant_wide:
            return True
        # Rows without an operating unit are governed by their legal entity alone.
        if scope_id is None:
            return scope_type == SCOPE_OPERATING_UNIT
        return str(scope_id) in ids

    def assert_scope_access(self, scope_type: str, scope_id: Optional[str], label: str) -> None:
        if not self.covers(scope_type, scope_id):
            raise scope_denied(
                f"Access denied for {label}",
                scope_type=scope_type,
                scope_id=scope_id,
            )

    def build_scope_filter(self, scope_type: str, column: str, params: list) -> str:
        ids = self._ids_for(scope_type)
        if self.tenant_wide:
            return "TRUE"
        if not ids:
            return "FALSE"
        params.append(sorted(ids))
        return f"{column}::text = ANY(%s)"


def load_scope_context(cur, tenant_id: str, user_id: str) -> ScopeContext:
    cur.execute(
        """
        SELECT scope_type, scope_id::text AS scope_id
        FROM user_scope_assignments
        WHERE tenant_id = %s AND user_id = %s
        """,
        (tenant_id, user_id),
    )
    le_ids, ou_ids = set(), set()
    tenant_wide = False
    for r in cur.fetchall():
        st = str(r["scope_type"] or "").strip().lower()
        if st == "tenant":
            tenant_wide = True
        elif st == SCOPE_LEGAL_ENTITY:
            le_ids.add(r["scope_id"])
        elif st == SCOPE_OPERATING_UNIT:
            ou_ids.add(r["scope_id"])
    return ScopeContext(
        user_id=str(user_id),
        tenant_id=str(tenant_id),
        legal_entity_ids=frozenset(le_ids),
        operating_unit_ids=frozenset(ou_ids),
        tenant_wide=tenant_wide,
    )
