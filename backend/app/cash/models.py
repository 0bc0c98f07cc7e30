"""
Typed records for the cash core.

Rows come back from psycopg as dicts (`dict_row`); each record has a
`from_row` constructor so the services only ever see closed enums and Decimals.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

AMOUNT_Q = Decimal("0.000001")


def q6(v) -> Decimal:
    return Decimal(str(v if v is not None else 0)).quantize(AMOUNT_Q, rounding=ROUND_HALF_UP)


def _opt_str(v) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _upper(v) -> str:
    return str(v or "").strip().upper()


def _bool(v) -> bool:
    # Drivers and fixtures hand us bools, ints or 't'/'f'.
    if isinstance(v, str):
        return v.strip().lower() in {"1", "t", "true", "yes"}
    return bool(v)


class TxnType(str, Enum):
    RECEIPT = "RECEIPT"
    PAYOUT = "PAYOUT"
    DEPOSIT_TO_BANK = "DEPOSIT_TO_BANK"
    WITHDRAWAL_FROM_BANK = "WITHDRAWAL_FROM_BANK"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    OPENING_FLOAT = "OPENING_FLOAT"
    CLOSING_ADJUSTMENT = "CLOSING_ADJUSTMENT"
    VARIANCE = "VARIANCE"


class TxnStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    POSTED = "POSTED"
    CANCELED = "CANCELED"
    REVERSED = "REVERSED"


class TransitStatus(str, Enum):
    INITIATED = "INITIATED"
    IN_TRANSIT = "IN_TRANSIT"
    RECEIVED = "RECEIVED"
    CANCELED = "CANCELED"
    REVERSED = "REVERSED"


class RegisterStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SessionMode(str, Enum):
    REQUIRED = "REQUIRED"
    OPTIONAL = "OPTIONAL"
    NONE = "NONE"


class SessionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELED = "CANCELED"


class CounterpartyType(str, Enum):
    CUSTOMER = "CUSTOMER"
    VENDOR = "VENDOR"
    EMPLOYEE = "EMPLOYEE"
    LEGAL_ENTITY = "LEGAL_ENTITY"
    OTHER = "OTHER"


class SourceModule(str, Enum):
    MANUAL = "MANUAL"
    CASH = "CASH"
    CARI = "CARI"
    BANK = "BANK"
    PAYROLL = "PAYROLL"
    OTHER = "OTHER"


class IntegrationLinkStatus(str, Enum):
    UNLINKED = "UNLINKED"
    PENDING = "PENDING"
    LINKED = "LINKED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class UnappliedStatus(str, Enum):
    UNAPPLIED = "UNAPPLIED"
    PARTIALLY_APPLIED = "PARTIALLY_APPLIED"
    FULLY_APPLIED = "FULLY_APPLIED"
    REVERSED = "REVERSED"


TRANSFER_TXN_TYPES = frozenset({TxnType.TRANSFER_OUT, TxnType.TRANSFER_IN})
BANK_TXN_TYPES = frozenset({TxnType.DEPOSIT_TO_BANK, TxnType.WITHDRAWAL_FROM_BANK})
COUNTER_ACCOUNT_TXN_TYPES = frozenset(
    {
        TxnType.RECEIPT,
        TxnType.PAYOUT,
        TxnType.OPENING_FLOAT,
        TxnType.CLOSING_ADJUSTMENT,
        TxnType.VARIANCE,
    }
)
SYSTEM_ONLY_TXN_TYPES = frozenset({TxnType.VARIANCE})
CARI_LINKED_TXN_TYPES = frozenset({TxnType.RECEIPT, TxnType.PAYOUT})
CARI_COUNTERPARTY_TYPES = frozenset({CounterpartyType.CUSTOMER, CounterpartyType.VENDOR})

CANCELLABLE_STATUSES = frozenset({TxnStatus.DRAFT, TxnStatus.SUBMITTED})
POSTABLE_STATUSES = frozenset({TxnStatus.DRAFT, TxnStatus.SUBMITTED, TxnStatus.APPROVED})

TRANSIT_ENTITY_TYPE = "cash_transit_transfer"


@dataclass(frozen=True)
class CashRegister:
    id: str
    tenant_id: str
    legal_entity_id: str
    operating_unit_id: Optional[str]
    account_id: str
    code: str
    name: str
    currency_code: str
    status: RegisterStatus
    session_mode: SessionMode
    max_txn_amount: Optional[Decimal] = None
    legal_entity_code: Optional[str] = None
    account_is_active: bool = True
    account_allow_posting: bool = True
    account_has_children: bool = False
    account_is_cash_controlled: bool = True
    account_legal_entity_id: Optional[str] = None
    variance_gain_account_id: Optional[str] = None
    variance_loss_account_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "CashRegister":
        cap = row.get("max_txn_amount")
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            legal_entity_id=str(row["legal_entity_id"]),
            operating_unit_id=_opt_str(row.get("operating_unit_id")),
            account_id=str(row["account_id"]),
            code=str(row.get("code") or ""),
            name=str(row.get("name") or ""),
            currency_code=_upper(row.get("currency_code")),
            status=RegisterStatus(_upper(row.get("status") or "ACTIVE")),
            session_mode=SessionMode(_upper(row.get("session_mode") or "REQUIRED")),
            max_txn_amount=q6(cap) if cap is not None else None,
            legal_entity_code=_opt_str(row.get("legal_entity_code")),
            account_is_active=_bool(row.get("account_is_active", True)),
            account_allow_posting=_bool(row.get("account_allow_posting", True)),
            account_has_children=int(row.get("account_child_count") or 0) > 0,
            account_is_cash_controlled=_bool(row.get("account_is_cash_controlled", True)),
            account_legal_entity_id=_opt_str(row.get("account_legal_entity_id")),
            variance_gain_account_id=_opt_str(row.get("variance_gain_account_id")),
            variance_loss_account_id=_opt_str(row.get("variance_loss_account_id")),
        )


@dataclass(frozen=True)
class CashSession:
    id: str
    tenant_id: str
    register_id: str
    status: SessionStatus

    @classmethod
    def from_row(cls, row: dict) -> "CashSession":
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            register_id=str(row["cash_register_id"]),
            status=SessionStatus(_upper(row.get("status"))),
        )


@dataclass(frozen=True)
class CashTransaction:
    id: str
    tenant_id: str
    register_id: str
    txn_no: str
    txn_type: TxnType
    status: TxnStatus
    amount: Decimal
    currency_code: str
    book_date: date
    session_id: Optional[str] = None
    txn_datetime: Optional[datetime] = None
    description: Optional[str] = None
    reference_no: Optional[str] = None
    counterparty_type: Optional[CounterpartyType] = None
    counterparty_id: Optional[str] = None
    counter_account_id: Optional[str] = None
    counter_cash_register_id: Optional[str] = None
    source_module: Optional[SourceModule] = None
    source_entity_type: Optional[str] = None
    source_entity_id: Optional[str] = None
    integration_link_status: IntegrationLinkStatus = IntegrationLinkStatus.UNLINKED
    idempotency_key: Optional[str] = None
    integration_event_uid: Optional[str] = None
    reversal_of_transaction_id: Optional[str] = None
    posted_journal_entry_id: Optional[str] = None
    linked_cari_settlement_batch_id: Optional[str] = None
    linked_cari_unapplied_cash_id: Optional[str] = None
    override_cash_control: bool = False
    override_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    # Joined from the owning register / session for posting and scope checks.
    legal_entity_id: Optional[str] = None
    legal_entity_code: Optional[str] = None
    operating_unit_id: Optional[str] = None
    register_code: Optional[str] = None
    register_account_id: Optional[str] = None
    register_status: Optional[RegisterStatus] = None
    register_session_mode: Optional[SessionMode] = None
    session_status: Optional[SessionStatus] = None
    register_variance_gain_account_id: Optional[str] = None
    register_variance_loss_account_id: Optional[str] = None
    counter_register_legal_entity_id: Optional[str] = None
    counter_register_operating_unit_id: Optional[str] = None
    counter_register_account_id: Optional[str] = None
    counter_register_currency_code: Optional[str] = None

    @property
    def is_reversal(self) -> bool:
        return bool(self.reversal_of_transaction_id)

    @property
    def is_transit_linked(self) -> bool:
        return (
            self.txn_type in TRANSFER_TXN_TYPES
            and (self.source_entity_type or "").lower() == TRANSIT_ENTITY_TYPE
        )

    @classmethod
    def from_row(cls, row: dict) -> "CashTransaction":
        cp_type = _upper(row.get("counterparty_type"))
        source_module = _upper(row.get("source_module"))
        reg_status = _upper(row.get("register_status"))
        reg_mode = _upper(row.get("register_session_mode"))
        sess_status = _upper(row.get("cash_session_status"))
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            register_id=str(row["cash_register_id"]),
            txn_no=str(row.get("txn_no") or ""),
            txn_type=TxnType(_upper(row["txn_type"])),
            status=TxnStatus(_upper(row["status"])),
            amount=q6(row.get("amount")),
            currency_code=_upper(row.get("currency_code")),
            book_date=row.get("book_date"),
            session_id=_opt_str(row.get("cash_session_id")),
            txn_datetime=row.get("txn_datetime"),
            description=row.get("description"),
            reference_no=row.get("reference_no"),
            counterparty_type=CounterpartyType(cp_type) if cp_type else None,
            counterparty_id=_opt_str(row.get("counterparty_id")),
            counter_account_id=_opt_str(row.get("counter_account_id")),
            counter_cash_register_id=_opt_str(row.get("counter_cash_register_id")),
            source_module=SourceModule(source_module) if source_module else None,
            source_entity_type=_opt_str(row.get("source_entity_type")),
            source_entity_id=_opt_str(row.get("source_entity_id")),
            integration_link_status=IntegrationLinkStatus(
                _upper(row.get("integration_link_status") or "UNLINKED")
            ),
            idempotency_key=_opt_str(row.get("idempotency_key")),
            integration_event_uid=_opt_str(row.get("integration_event_uid")),
            reversal_of_transaction_id=_opt_str(row.get("reversal_of_transaction_id")),
            posted_journal_entry_id=_opt_str(row.get("posted_journal_entry_id")),
            linked_cari_settlement_batch_id=_opt_str(row.get("linked_cari_settlement_batch_id")),
            linked_cari_unapplied_cash_id=_opt_str(row.get("linked_cari_unapplied_cash_id")),
            override_cash_control=_bool(row.get("override_cash_control", False)),
            override_reason=row.get("override_reason"),
            cancel_reason=row.get("cancel_reason"),
            legal_entity_id=_opt_str(row.get("legal_entity_id")),
            legal_entity_code=_opt_str(row.get("legal_entity_code")),
            operating_unit_id=_opt_str(row.get("operating_unit_id")),
            register_code=_opt_str(row.get("cash_register_code")),
            register_account_id=_opt_str(row.get("register_account_id")),
            register_status=RegisterStatus(reg_status) if reg_status else None,
            register_session_mode=SessionMode(reg_mode) if reg_mode else None,
            session_status=SessionStatus(sess_status) if sess_status else None,
            register_variance_gain_account_id=_opt_str(row.get("register_variance_gain_account_id")),
            register_variance_loss_account_id=_opt_str(row.get("register_variance_loss_account_id")),
            counter_register_legal_entity_id=_opt_str(row.get("counter_cash_register_legal_entity_id")),
            counter_register_operating_unit_id=_opt_str(row.get("counter_cash_register_operating_unit_id")),
            counter_register_account_id=_opt_str(row.get("counter_cash_register_account_id")),
            counter_register_currency_code=_opt_str(row.get("counter_cash_register_currency_code")),
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {}
        for k, v in self.__dict__.items():
            out[k] = v.value if isinstance(v, Enum) else v
        return out


@dataclass(frozen=True)
class CashTransitTransfer:
    id: str
    tenant_id: str
    legal_entity_id: str
    source_register_id: str
    target_register_id: str
    source_operating_unit_id: Optional[str]
    target_operating_unit_id: Optional[str]
    transfer_out_txn_id: str
    status: TransitStatus
    amount: Decimal
    currency_code: str
    transit_account_id: str
    transfer_in_txn_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    integration_event_uid: Optional[str] = None
    cancel_reason: Optional[str] = None
    reverse_reason: Optional[str] = None
    note: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "CashTransitTransfer":
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            legal_entity_id=str(row["legal_entity_id"]),
            source_register_id=str(row["source_cash_register_id"]),
            target_register_id=str(row["target_cash_register_id"]),
            source_operating_unit_id=_opt_str(row.get("source_operating_unit_id")),
            target_operating_unit_id=_opt_str(row.get("target_operating_unit_id")),
            transfer_out_txn_id=str(row["transfer_out_cash_transaction_id"]),
            transfer_in_txn_id=_opt_str(row.get("transfer_in_cash_transaction_id")),
            status=TransitStatus(_upper(row["status"])),
            amount=q6(row.get("amount")),
            currency_code=_upper(row.get("currency_code")),
            transit_account_id=str(row["transit_account_id"]),
            idempotency_key=_opt_str(row.get("idempotency_key")),
            integration_event_uid=_opt_str(row.get("integration_event_uid")),
            cancel_reason=row.get("cancel_reason"),
            reverse_reason=row.get("reverse_reason"),
            note=row.get("note"),
        )

    def to_dict(self) -> dict:
        return {k: (v.value if isinstance(v, Enum) else v) for k, v in self.__dict__.items()}


@dataclass(frozen=True)
class UnappliedCash:
    id: str
    tenant_id: str
    legal_entity_id: str
    counterparty_id: Optional[str]
    cash_transaction_id: Optional[str]
    status: UnappliedStatus
    amount_txn: Decimal
    residual_amount_txn: Decimal
    currency_code: str
    receipt_date: Optional[date] = None
    cash_receipt_no: Optional[str] = None
    integration_event_uid: Optional[str] = None
    note: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "UnappliedCash":
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            legal_entity_id=str(row["legal_entity_id"]),
            counterparty_id=_opt_str(row.get("counterparty_id")),
            cash_transaction_id=_opt_str(row.get("cash_transaction_id")),
            status=UnappliedStatus(_upper(row.get("status") or "UNAPPLIED")),
            amount_txn=q6(row.get("amount_txn")),
            residual_amount_txn=q6(row.get("residual_amount_txn")),
            currency_code=_upper(row.get("currency_code")),
            receipt_date=row.get("receipt_date"),
            cash_receipt_no=_opt_str(row.get("cash_receipt_no")),
            integration_event_uid=_opt_str(row.get("integration_event_uid")),
            note=row.get("note"),
        )

    def to_dict(self) -> dict:
        return {k: (v.value if isinstance(v, Enum) else v) for k, v in self.__dict__.items()}


@dataclass(frozen=True)
class TransitBundle:
    transfer: CashTransitTransfer
    transfer_out: Optional[CashTransaction]
    transfer_in: Optional[CashTransaction] = None

    def to_dict(self) -> dict:
        return {
            "transfer": self.transfer.to_dict(),
            "transfer_out_transaction": self.transfer_out.to_dict() if self.transfer_out else None,
            "transfer_in_transaction": self.transfer_in.to_dict() if self.transfer_in else None,
        }


@dataclass(frozen=True)
class ReversalResult:
    original: CashTransaction
    reversal: CashTransaction

    def to_dict(self) -> dict:
        return {"original": self.original.to_dict(), "reversal": self.reversal.to_dict()}


@dataclass(frozen=True)
class Allocation:
    open_item_id: str
    amount_txn: Decimal


@dataclass(frozen=True)
class CariApplyResult:
    cash_transaction: CashTransaction
    settlement_batch_id: Optional[str] = None
    allocations: tuple = ()
    unapplied_cash: tuple = ()

    def with_cash_transaction(self, txn: CashTransaction) -> "CariApplyResult":
        return replace(self, cash_transaction=txn)

    def to_dict(self) -> dict:
        return {
            "cash_transaction": self.cash_transaction.to_dict(),
            "settlement_batch_id": self.settlement_batch_id,
            "allocations": [
                {"open_item_id": a.open_item_id, "amount_txn": a.amount_txn} for a in self.allocations
            ],
            "unapplied_cash": [u.to_dict() for u in self.unapplied_cash],
        }


@dataclass(frozen=True)
class Page:
    rows: list
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict:
        return {
            "rows": [r.to_dict() if hasattr(r, "to_dict") else r for r in self.rows],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


class OutcomeKind(str, Enum):
    CREATED = "CREATED"
    REPLAY = "REPLAY"


T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T
    kind: OutcomeKind = OutcomeKind.CREATED

    @property
    def idempotent_replay(self) -> bool:
        return self.kind is OutcomeKind.REPLAY

    @classmethod
    def created(cls, value: T) -> "Outcome[T]":
        return cls(value=value, kind=OutcomeKind.CREATED)

    @classmethod
    def replay(cls, value: T) -> "Outcome[T]":
        return cls(value=value, kind=OutcomeKind.REPLAY)

    def to_dict(self) -> dict:
        body = self.value.to_dict() if hasattr(self.value, "to_dict") else {"value": self.value}
        return {**body, "idempotent_replay": self.idempotent_replay}


def format_txn_no(prefix: str, legal_entity_code: Optional[str], book_date: date, seq: int) -> str:
    le = "".join(ch for ch in str(legal_entity_code or "").upper() if ch.isalnum()) or "LE"
    return f"{prefix}-{le}-{book_date.year:04d}-{int(seq):06d}"
