"""
Applies POSTED cash receipts/payouts to the AR/AP subledger.

RECEIPT settles customer (AR) open items, PAYOUT settles vendor (AP) items.
Without explicit applications and without auto-allocation the whole amount is
parked as unapplied cash, which is a normal state, not an error.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from ..errors import DuplicateKeyError, bad_request, not_found
from ..scope import ScopeContext
from .cari_settlement import CariApplyRequest, CariSettlementAdapter, OpenItemSettlementAdapter, insert_unapplied_for
from .idempotency import derive_key, find_or_create
from .models import (
    Allocation,
    CariApplyResult,
    CashTransaction,
    CounterpartyType,
    Outcome,
    TxnStatus,
    TxnType,
    UnappliedCash,
    q6,
)
from .repository import open_cash_uow
from .schemas import CariApplyIn
from .transactions import assert_txn_scope

DIRECTION_BY_TYPE = {
    TxnType.RECEIPT: ("AR", CounterpartyType.CUSTOMER),
    TxnType.PAYOUT: ("AP", CounterpartyType.VENDOR),
}


def _check_applicable(txn: CashTransaction) -> tuple[str, CounterpartyType]:
    if txn.status != TxnStatus.POSTED:
        raise bad_request("Cash transaction must be POSTED before applying Cari settlement")
    if txn.txn_type not in DIRECTION_BY_TYPE:
        raise bad_request("Cari settlement can only be applied to RECEIPT or PAYOUT cash transactions")
    direction, cp_type = DIRECTION_BY_TYPE[txn.txn_type]
    if txn.counterparty_type != cp_type or not txn.counterparty_id:
        raise bad_request(f"Cash transaction must include counterpartyType={cp_type.value} and counterpartyId")
    return direction, cp_type


class CariApplyBridge:
    def __init__(self, open_uow=open_cash_uow, adapter: Optional[CariSettlementAdapter] = None):
        self._open_uow = open_uow
        self.adapter = adapter or OpenItemSettlementAdapter()

    def _resolve_allocations(
        self, repo, txn: CashTransaction, direction: str, data: CariApplyIn, unapplied: Optional[UnappliedCash] = None
    ) -> list[Allocation]:
        out: list[Allocation] = []
        for app in data.applications:
            if app.open_item_id:
                item = repo.find_open_item(app.open_item_id, for_update=True)
                if not item:
                    raise not_found("openItemId not found for tenant", open_item_id=app.open_item_id)
                if str(item["counterparty_id"]) != txn.counterparty_id or item.get("direction") != direction:
                    raise bad_request("openItemId does not belong to the cash transaction counterparty")
                if app.amount_txn > q6(item["residual_amount_txn"]):
                    raise bad_request(f"applications amount exceeds available residual for openItemId={app.open_item_id}")
                out.append(Allocation(open_item_id=str(item["id"]), amount_txn=app.amount_txn))
                continue

            items = [
                it
                for it in repo.find_open_items_by_document(app.cari_document_id)
                if str(it["counterparty_id"]) == txn.counterparty_id
            ]
            if not items:
                raise bad_request(f"No open items available for cariDocumentId={app.cari_document_id}")
            remaining = app.amount_txn
            # Oldest due first; the repository returns items in that order.
            for it in items:
                if remaining <= 0:
                    break
                take = min(q6(it["residual_amount_txn"]), remaining)
                out.append(Allocation(open_item_id=str(it["id"]), amount_txn=take))
                remaining -= take
            if remaining > 0:
                raise bad_request(
                    f"applications amount exceeds available residual for cariDocumentId={app.cari_document_id}"
                )

        total = sum((a.amount_txn for a in out), Decimal("0"))
        if unapplied is not None and total > unapplied.residual_amount_txn:
            raise bad_request(
                "applications total exceeds unapplied cash residual", unapplied_cash_id=unapplied.id
            )
        if total > txn.amount:
            raise bad_request("applications total exceeds cash transaction amount")
        return out

    def apply(self, scope: ScopeContext, txn_id: str, data: CariApplyIn) -> Outcome[CariApplyResult]:
        event_uid = data.integration_event_uid or derive_key(f"CASH-APPLY-{txn_id}", data.idempotency_key)

        def load(repo, locked: bool) -> CashTransaction:
            txn = repo.find_transaction(txn_id, for_update=locked)
            if txn is None:
                raise not_found("Cash transaction not found", transaction_id=txn_id)
            assert_txn_scope(scope, txn)
            return txn

        wants_settlement = bool(data.applications) or data.auto_allocate

        def find_replay(repo, locked: bool):
            txn = load(repo, locked)
            if txn.linked_cari_settlement_batch_id:
                return self.adapter.load_result(repo, txn)
            # Parked cash replays only a repeat park; a settlement request consumes it.
            if txn.linked_cari_unapplied_cash_id and not wants_settlement:
                return self.adapter.load_result(repo, txn)
            return None

        def create(repo) -> CariApplyResult:
            txn = load(repo, True)
            direction, _ = _check_applicable(txn)
            unapplied = None
            if txn.linked_cari_unapplied_cash_id:
                unapplied = repo.find_unapplied_cash(txn.linked_cari_unapplied_cash_id)
            allocations = self._resolve_allocations(repo, txn, direction, data, unapplied)

            if not allocations and not data.auto_allocate:
                other = repo.find_unapplied_cash_by_event_uid(event_uid)
                if other is not None and other.cash_transaction_id != txn.id:
                    raise bad_request("integrationEventUid is already used by another cash transaction")
                unap_id = insert_unapplied_for(repo, txn, txn.amount, event_uid, data.note)
                repo.set_transaction_cari_links(txn.id, unapplied_cash_id=unap_id)
                repo.insert_audit_log(
                    scope.user_id, "cari.unapplied.create", "cash_transaction", txn.id,
                    {"unapplied_cash_id": unap_id, "amount": txn.amount},
                )
                return CariApplyResult(
                    cash_transaction=repo.find_transaction(txn.id),
                    unapplied_cash=(repo.find_unapplied_cash(unap_id),),
                )

            result = self.adapter.apply(
                repo,
                CariApplyRequest(
                    txn=txn,
                    direction=direction,
                    allocations=tuple(allocations),
                    auto_allocate=data.auto_allocate,
                    idempotency_key=data.idempotency_key,
                    integration_event_uid=event_uid,
                    settlement_date=data.settlement_date,
                    note=data.note,
                    unapplied=unapplied,
                ),
            )
            repo.set_transaction_cari_links(
                txn.id,
                settlement_batch_id=result.settlement_batch_id,
                unapplied_cash_id=result.unapplied_cash[0].id if result.unapplied_cash else None,
            )
            repo.insert_audit_log(
                scope.user_id, "cari.settlement.apply", "cash_transaction", txn.id,
                {"settlement_batch_id": result.settlement_batch_id, "allocations": len(result.allocations)},
            )
            return result.with_cash_transaction(repo.find_transaction(txn.id))

        def on_duplicate(exc: DuplicateKeyError) -> None:
            if not exc.matches("uk_cari_unap_tenant_event_uid"):
                return
            with self._open_uow(scope.tenant_id) as repo:
                other = repo.find_unapplied_cash_by_event_uid(event_uid)
            if other is not None and other.cash_transaction_id != txn_id:
                raise bad_request("integrationEventUid is already used by another cash transaction") from exc

        return find_or_create(
            self._open_uow,
            scope.tenant_id,
            find_replay=find_replay,
            create=create,
            on_duplicate=on_duplicate,
            label="cari.settlement.apply",
        )
