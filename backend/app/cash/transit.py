"""
Cash transit transfers: a two-leg movement between registers of one legal
entity that sit in different operating units.

    INITIATED --post(out leg)--> IN_TRANSIT --receive--> RECEIVED
    INITIATED --cancel--> CANCELED
    IN_TRANSIT | RECEIVED --reverse(leg)--> REVERSED

The out leg is a TRANSFER_OUT transaction created with the transfer; the in
leg is a TRANSFER_IN created and posted on receive. Both credit/debit the
transit clearing account.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ..errors import bad_request, conflict, not_found
from ..jsonlog import json_log
from ..journal_utils import JournalPoster, GlJournalPoster
from ..scope import SCOPE_LEGAL_ENTITY, SCOPE_OPERATING_UNIT, ScopeContext
from ..tenant_guards import assert_account_belongs_to_tenant, assert_account_in_legal_entity
from .idempotency import derive_key, find_or_create
from .models import (
    CANCELLABLE_STATUSES,
    TRANSIT_ENTITY_TYPE,
    CashTransitTransfer,
    IntegrationLinkStatus,
    Outcome,
    Page,
    SourceModule,
    TransitBundle,
    TransitStatus,
    TxnStatus,
    TxnType,
)
from .registers import (
    assert_amount_within_cap,
    assert_register_operational,
    assert_register_scope,
    load_register,
    resolve_session_for_create,
)
from .repository import open_cash_uow
from .schemas import TransitCancelIn, TransitInitiateIn, TransitListQuery, TransitReceiveIn
from .transactions import insert_and_load, page_bounds, post_locked, today

PENDING_TRANSFER_ID = "PENDING"


def assert_transfer_scope(scope: ScopeContext, transfer: CashTransitTransfer, label: str = "transferId") -> None:
    scope.assert_scope_access(SCOPE_LEGAL_ENTITY, transfer.legal_entity_id, label)
    if transfer.source_operating_unit_id:
        scope.assert_scope_access(SCOPE_OPERATING_UNIT, transfer.source_operating_unit_id, label)
    if transfer.target_operating_unit_id and transfer.target_operating_unit_id != transfer.source_operating_unit_id:
        scope.assert_scope_access(SCOPE_OPERATING_UNIT, transfer.target_operating_unit_id, label)


def load_bundle(repo, transfer: CashTransitTransfer) -> TransitBundle:
    out_txn = repo.find_transaction(transfer.transfer_out_txn_id)
    in_txn = repo.find_transaction(transfer.transfer_in_txn_id) if transfer.transfer_in_txn_id else None
    return TransitBundle(transfer=transfer, transfer_out=out_txn, transfer_in=in_txn)


class CashTransitService:
    def __init__(self, open_uow=open_cash_uow, journal: Optional[JournalPoster] = None):
        self._open_uow = open_uow
        self.journal = journal or GlJournalPoster()

    def get(self, scope: ScopeContext, transfer_id: str) -> TransitBundle:
        with self._open_uow(scope.tenant_id) as repo:
            transfer = repo.find_transfer(transfer_id)
            if transfer is None:
                raise not_found("Cash transit transfer not found", transfer_id=transfer_id)
            assert_transfer_scope(scope, transfer)
            return load_bundle(repo, transfer)

    def list(self, scope: ScopeContext, query: TransitListQuery) -> Page:
        limit, offset = page_bounds(query.limit, query.offset)
        filters = query.model_dump(exclude={"limit", "offset"}, exclude_none=True)
        with self._open_uow(scope.tenant_id) as repo:
            rows, total = repo.list_transfers(scope, filters, limit, offset)
        return Page(rows=rows, total=total, limit=limit, offset=offset)

    def initiate(self, scope: ScopeContext, data: TransitInitiateIn) -> Outcome[TransitBundle]:
        if data.register_id == data.target_register_id:
            raise bad_request("registerId and targetRegisterId must be different")

        event_uid = data.integration_event_uid or derive_key(f"TRANSIT_EVENT_{data.register_id}", data.idempotency_key)
        out_key = derive_key("TRANSIT_OUT", data.idempotency_key)
        out_event_uid = derive_key("TRANSIT_OUT_EVENT", event_uid)

        def precheck(repo):
            found = repo.find_transfer_by_event_uid(event_uid)
            if found is None:
                return None
            assert_transfer_scope(scope, found)
            return load_bundle(repo, found)

        def find_replay(repo, locked: bool):
            found = repo.find_transfer_by_idempotency(data.register_id, data.idempotency_key, for_update=locked)
            if found is None and not locked:
                found = repo.find_transfer_by_event_uid(event_uid)
            if found is None:
                return None
            assert_transfer_scope(scope, found)
            return load_bundle(repo, found)

        def create(repo):
            source = load_register(repo, data.register_id)
            target = load_register(repo, data.target_register_id, "targetRegisterId")
            assert_register_scope(scope, source)
            if target.operating_unit_id and target.operating_unit_id != source.operating_unit_id:
                scope.assert_scope_access(SCOPE_OPERATING_UNIT, target.operating_unit_id, "targetRegisterId")

            if source.legal_entity_id != target.legal_entity_id:
                raise bad_request("Cross-legal-entity cash transit transfer is not supported")
            if not source.operating_unit_id or source.operating_unit_id == target.operating_unit_id:
                raise bad_request("Cash transit workflow requires source and target registers from different operating units")

            assert_register_operational(source, label="Source cash register")
            assert_register_operational(target, label="Target cash register")

            currency = data.currency_code or source.currency_code
            if source.currency_code != target.currency_code or currency != source.currency_code:
                raise bad_request("Transit transfer currency must match both source and target register currency")
            assert_amount_within_cap(source, data.amount)

            transit_account = assert_account_belongs_to_tenant(repo, data.transit_account_id, "transitAccountId")
            assert_account_in_legal_entity(transit_account, source.legal_entity_id, "transitAccountId")

            session = resolve_session_for_create(repo, source, data.session_id)
            book_date = data.book_date or today()

            out_txn = insert_and_load(
                repo,
                {
                    "cash_register_id": source.id,
                    "cash_session_id": session.id if session else None,
                    "txn_no": repo.next_txn_no(source.legal_entity_id, source.legal_entity_code, book_date),
                    "txn_type": TxnType.TRANSFER_OUT.value,
                    "status": TxnStatus.DRAFT.value,
                    "txn_datetime": data.txn_datetime or datetime.now(timezone.utc),
                    "book_date": book_date,
                    "amount": data.amount,
                    "currency_code": currency,
                    "description": data.description or f"Transit transfer out to {target.code}",
                    "reference_no": data.reference_no or f"TRANSIT-OUT-{source.code}-{target.code}"[:255],
                    "counter_account_id": data.transit_account_id,
                    "counter_cash_register_id": target.id,
                    "source_module": SourceModule.CASH.value,
                    "source_entity_type": TRANSIT_ENTITY_TYPE,
                    "source_entity_id": PENDING_TRANSFER_ID,
                    "integration_link_status": IntegrationLinkStatus.PENDING.value,
                    "idempotency_key": out_key,
                    "integration_event_uid": out_event_uid,
                },
            )

            transfer_id = repo.insert_transfer(
                {
                    "legal_entity_id": source.legal_entity_id,
                    "source_cash_register_id": source.id,
                    "target_cash_register_id": target.id,
                    "source_operating_unit_id": source.operating_unit_id,
                    "target_operating_unit_id": target.operating_unit_id,
                    "transfer_out_cash_transaction_id": out_txn.id,
                    "status": TransitStatus.INITIATED.value,
                    "amount": data.amount,
                    "currency_code": currency,
                    "transit_account_id": data.transit_account_id,
                    "idempotency_key": data.idempotency_key,
                    "integration_event_uid": event_uid,
                    "note": data.note,
                }
            )
            repo.link_transaction_to_transfer(out_txn.id, transfer_id)

            repo.insert_audit_log(
                scope.user_id, "cash.transit.initiate", "cash_transit_transfer", transfer_id,
                {"out_txn_id": out_txn.id, "amount": data.amount, "currency_code": currency},
            )
            json_log(
                "info",
                "cash.transit.initiated",
                tenant_id=scope.tenant_id,
                transfer_id=transfer_id,
                out_txn_id=out_txn.id,
            )
            return load_bundle(repo, repo.find_transfer(transfer_id))

        return find_or_create(
            self._open_uow,
            scope.tenant_id,
            precheck=precheck,
            find_replay=find_replay,
            create=create,
            label="cash.transit.initiate",
        )

    def receive(self, scope: ScopeContext, transfer_id: str, data: TransitReceiveIn) -> Outcome[TransitBundle]:
        in_key = derive_key(f"TRANSIT_IN_{transfer_id}", data.idempotency_key)
        in_event_uid = derive_key(
            "TRANSIT_IN_EVENT",
            data.integration_event_uid or f"{transfer_id}:{data.idempotency_key}",
        )

        def find_replay(repo, locked: bool):
            transfer = repo.find_transfer(transfer_id, for_update=locked)
            if transfer is None:
                raise not_found("Cash transit transfer not found", transfer_id=transfer_id)
            assert_transfer_scope(scope, transfer)
            if transfer.status == TransitStatus.RECEIVED and transfer.transfer_in_txn_id:
                return load_bundle(repo, transfer)
            if not locked:
                in_txn = repo.find_transaction_by_idempotency(transfer.target_register_id, in_key)
                if in_txn is not None:
                    return TransitBundle(
                        transfer=transfer,
                        transfer_out=repo.find_transaction(transfer.transfer_out_txn_id),
                        transfer_in=in_txn,
                    )
            return None

        def create(repo):
            # find_replay(locked=True) already holds the transfer row lock.
            transfer = repo.find_transfer(transfer_id, for_update=True)
            if transfer.status != TransitStatus.IN_TRANSIT:
                raise bad_request("Cash transit transfer must be IN_TRANSIT before receive")
            out_txn = repo.find_transaction(transfer.transfer_out_txn_id, for_update=True)
            if out_txn is None or out_txn.status != TxnStatus.POSTED:
                raise bad_request("Transfer-out transaction must be POSTED before receive")

            target = load_register(repo, transfer.target_register_id, "targetRegisterId")
            assert_register_scope(scope, target, "targetRegisterId")
            assert_register_operational(target, label="Target cash register")
            if target.currency_code != transfer.currency_code:
                raise bad_request("Transit transfer currency must match both source and target register currency")
            session = resolve_session_for_create(repo, target, data.session_id)
            book_date = data.book_date or today()

            in_txn = insert_and_load(
                repo,
                {
                    "cash_register_id": target.id,
                    "cash_session_id": session.id if session else None,
                    "txn_no": repo.next_txn_no(target.legal_entity_id, target.legal_entity_code, book_date),
                    "txn_type": TxnType.TRANSFER_IN.value,
                    "status": TxnStatus.DRAFT.value,
                    "txn_datetime": data.txn_datetime or datetime.now(timezone.utc),
                    "book_date": book_date,
                    "amount": transfer.amount,
                    "currency_code": transfer.currency_code,
                    "description": data.description or f"Transit transfer in from {out_txn.register_code or transfer.source_register_id}",
                    "reference_no": data.reference_no or out_txn.reference_no,
                    "counter_account_id": transfer.transit_account_id,
                    "counter_cash_register_id": transfer.source_register_id,
                    "source_module": SourceModule.CASH.value,
                    "source_entity_type": TRANSIT_ENTITY_TYPE,
                    "source_entity_id": transfer.id,
                    "integration_link_status": IntegrationLinkStatus.LINKED.value,
                    "idempotency_key": in_key,
                    "integration_event_uid": in_event_uid,
                },
            )
            post_locked(repo, self.journal, in_txn, transfer)

            if repo.mark_transfer_received(transfer.id, in_txn.id) == 0:
                raise conflict("Transit transfer status update failed during receive", transfer_id=transfer.id)

            repo.insert_audit_log(
                scope.user_id, "cash.transit.receive", "cash_transit_transfer", transfer.id,
                {"in_txn_id": in_txn.id},
            )
            json_log(
                "info",
                "cash.transit.received",
                tenant_id=scope.tenant_id,
                transfer_id=transfer.id,
                in_txn_id=in_txn.id,
            )
            return load_bundle(repo, repo.find_transfer(transfer.id))

        return find_or_create(
            self._open_uow,
            scope.tenant_id,
            find_replay=find_replay,
            create=create,
            label="cash.transit.receive",
        )

    def cancel(self, scope: ScopeContext, transfer_id: str, data: Optional[TransitCancelIn] = None) -> Outcome[TransitBundle]:
        reason = data.reason if data else None
        with self._open_uow(scope.tenant_id) as repo:
            transfer = repo.find_transfer(transfer_id, for_update=True)
            if transfer is None:
                raise not_found("Cash transit transfer not found", transfer_id=transfer_id)
            assert_transfer_scope(scope, transfer)

            if transfer.status == TransitStatus.CANCELED:
                return Outcome.replay(load_bundle(repo, transfer))
            if transfer.status != TransitStatus.INITIATED:
                raise bad_request("Only INITIATED cash transit transfer can be cancelled")

            out_txn = repo.find_transaction(transfer.transfer_out_txn_id, for_update=True)
            if out_txn is None or out_txn.status not in CANCELLABLE_STATUSES:
                raise bad_request("Transit transfer-out transaction can only be cancelled from DRAFT or SUBMITTED status")

            if repo.mark_transaction_canceled(out_txn.id, reason) == 0:
                raise conflict("Cash transaction status changed concurrently", transaction_id=out_txn.id)
            if repo.mark_transfer_canceled(transfer.id, reason) == 0:
                raise conflict("Transit transfer status changed concurrently", transfer_id=transfer.id)

            repo.insert_audit_log(
                scope.user_id, "cash.transit.cancel", "cash_transit_transfer", transfer.id, {"reason": reason}
            )
            json_log("info", "cash.transit.canceled", tenant_id=scope.tenant_id, transfer_id=transfer.id)
            return Outcome.created(load_bundle(repo, repo.find_transfer(transfer.id)))
