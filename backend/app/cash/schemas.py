from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ..validation import (
    CounterpartyTypeCode,
    CurrencyCode,
    EventUid,
    IdempotencyKey,
    PositiveAmount,
    ShortText,
    SourceModuleCode,
    TxnTypeCode,
)
from .models import TxnStatus, TransitStatus


class CashTxnCreateIn(BaseModel):
    register_id: str
    txn_type: TxnTypeCode
    amount: PositiveAmount
    idempotency_key: IdempotencyKey
    currency_code: Optional[CurrencyCode] = None
    session_id: Optional[str] = None
    txn_datetime: Optional[datetime] = None
    book_date: Optional[date] = None
    description: Optional[ShortText] = None
    reference_no: Optional[ShortText] = None
    counterparty_type: Optional[CounterpartyTypeCode] = None
    counterparty_id: Optional[str] = None
    counter_account_id: Optional[str] = None
    counter_cash_register_id: Optional[str] = None
    source_module: Optional[SourceModuleCode] = None
    source_entity_type: Optional[ShortText] = None
    source_entity_id: Optional[ShortText] = None
    integration_event_uid: Optional[EventUid] = None
    linked_cari_settlement_batch_id: Optional[str] = None
    linked_cari_unapplied_cash_id: Optional[str] = None


class CashTxnPostIn(BaseModel):
    override_cash_control: bool = False
    override_reason: Optional[ShortText] = None

    @model_validator(mode="after")
    def _reason_with_override(self):
        if self.override_cash_control and not self.override_reason:
            raise ValueError("overrideReason is required when overrideCashControl=true")
        return self


class CashTxnCancelIn(BaseModel):
    reason: Optional[ShortText] = None


class CashTxnReverseIn(BaseModel):
    reason: ShortText = Field(min_length=1)


class CashTxnListQuery(BaseModel):
    register_id: Optional[str] = None
    session_id: Optional[str] = None
    legal_entity_id: Optional[str] = None
    txn_type: Optional[TxnTypeCode] = None
    status: Optional[TxnStatus] = None
    book_date_from: Optional[date] = None
    book_date_to: Optional[date] = None
    limit: Optional[int] = None
    offset: int = 0


class TransitInitiateIn(BaseModel):
    register_id: str
    target_register_id: str
    amount: PositiveAmount
    transit_account_id: str
    idempotency_key: IdempotencyKey
    currency_code: Optional[CurrencyCode] = None
    integration_event_uid: Optional[EventUid] = None
    session_id: Optional[str] = None
    txn_datetime: Optional[datetime] = None
    book_date: Optional[date] = None
    description: Optional[ShortText] = None
    reference_no: Optional[ShortText] = None
    note: Optional[ShortText] = None


class TransitReceiveIn(BaseModel):
    idempotency_key: IdempotencyKey
    integration_event_uid: Optional[EventUid] = None
    session_id: Optional[str] = None
    txn_datetime: Optional[datetime] = None
    book_date: Optional[date] = None
    description: Optional[ShortText] = None
    reference_no: Optional[ShortText] = None


class TransitCancelIn(BaseModel):
    reason: Optional[ShortText] = None


class TransitListQuery(BaseModel):
    legal_entity_id: Optional[str] = None
    source_register_id: Optional[str] = None
    target_register_id: Optional[str] = None
    status: Optional[TransitStatus] = None
    limit: Optional[int] = None
    offset: int = 0


class CariApplicationIn(BaseModel):
    open_item_id: Optional[str] = None
    cari_document_id: Optional[str] = None
    amount_txn: PositiveAmount

    @model_validator(mode="after")
    def _one_target(self):
        if bool(self.open_item_id) == bool(self.cari_document_id):
            raise ValueError("each application needs exactly one of openItemId or cariDocumentId")
        return self


class CariApplyIn(BaseModel):
    idempotency_key: IdempotencyKey
    integration_event_uid: Optional[EventUid] = None
    auto_allocate: bool = False
    applications: List[CariApplicationIn] = Field(default_factory=list)
    settlement_date: Optional[date] = None
    note: Optional[ShortText] = None
