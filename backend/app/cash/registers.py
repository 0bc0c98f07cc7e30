from __future__ import annotations

from decimal import Decimal
from typing import Optional

from ..errors import bad_request, not_found
from ..scope import SCOPE_LEGAL_ENTITY, SCOPE_OPERATING_UNIT, ScopeContext
from .models import (
    CashRegister,
    CashSession,
    CashTransaction,
    RegisterStatus,
    SessionMode,
    SessionStatus,
)


def load_register(repo, register_id: Optional[str], label: str = "registerId") -> CashRegister:
    if not register_id:
        raise bad_request(f"{label} is required")
    register = repo.find_register(register_id)
    if register is None:
        raise not_found(f"{label} not found for tenant", register_id=register_id)
    return register


def assert_register_scope(scope: ScopeContext, register: CashRegister, label: str = "registerId") -> None:
    scope.assert_scope_access(SCOPE_LEGAL_ENTITY, register.legal_entity_id, label)
    if register.operating_unit_id:
        scope.assert_scope_access(SCOPE_OPERATING_UNIT, register.operating_unit_id, label)


def assert_register_operational(
    register: CashRegister,
    *,
    require_active: bool = True,
    require_cash_controlled: bool = True,
    label: str = "Cash register",
) -> None:
    if require_active and register.status != RegisterStatus.ACTIVE:
        raise bad_request(f"{label} is not ACTIVE", register_id=register.id)
    if not register.account_is_active:
        raise bad_request(f"{label} account must be active")
    if not register.account_allow_posting:
        raise bad_request(f"{label} account must allow posting")
    if register.account_has_children:
        raise bad_request(f"{label} account must be a leaf account")
    if register.account_legal_entity_id and register.account_legal_entity_id != register.legal_entity_id:
        raise bad_request(f"{label} account must belong to the register legal entity")
    if require_cash_controlled and not register.account_is_cash_controlled:
        raise bad_request(f"{label} account must be cash-controlled")


def assert_currency_matches(register: CashRegister, currency_code: Optional[str]) -> str:
    if not currency_code:
        return register.currency_code
    code = str(currency_code).strip().upper()
    if code != register.currency_code:
        raise bad_request("Transaction currency must match register currency")
    return code


def assert_amount_within_cap(register: CashRegister, amount: Decimal) -> None:
    cap = register.max_txn_amount
    if cap is not None and cap > 0 and amount > cap:
        raise bad_request("amount exceeds register max_txn_amount")


def resolve_session_for_create(
    repo, register: CashRegister, requested_session_id: Optional[str]
) -> Optional[CashSession]:
    if requested_session_id:
        session = repo.find_session(requested_session_id)
        if session is None:
            raise not_found("cashSessionId not found for tenant", session_id=requested_session_id)
        if session.register_id != register.id:
            raise bad_request("cashSessionId does not belong to registerId")
        if session.status != SessionStatus.OPEN:
            raise bad_request("cashSessionId must be OPEN")
        return session

    if register.session_mode == SessionMode.NONE:
        return None
    session = repo.find_open_session(register.id)
    if session is None and register.session_mode == SessionMode.REQUIRED:
        raise bad_request("An OPEN cash session is required for this register")
    return session


def assert_postable_register_state(txn: CashTransaction) -> None:
    if txn.register_status != RegisterStatus.ACTIVE:
        raise bad_request("Cash register is not ACTIVE", register_id=txn.register_id)
    if txn.register_session_mode == SessionMode.REQUIRED:
        if not txn.session_id or txn.session_status != SessionStatus.OPEN:
            raise bad_request("Posting requires an OPEN cash session")
