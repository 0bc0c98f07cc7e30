from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from ..errors import bad_request, conflict
from ..jsonlog import json_log
from .models import Allocation, CariApplyResult, CashTransaction, UnappliedCash, UnappliedStatus, q6


@dataclass(frozen=True)
class CariApplyRequest:
    txn: CashTransaction
    direction: str
    allocations: tuple = ()
    auto_allocate: bool = False
    idempotency_key: Optional[str] = None
    integration_event_uid: Optional[str] = None
    settlement_date: Optional[date] = None
    note: Optional[str] = None
    # Unapplied cash already parked for this transaction; settlement draws on its residual.
    unapplied: Optional[UnappliedCash] = None

    @property
    def available(self) -> Decimal:
        if self.unapplied is not None:
            return self.unapplied.residual_amount_txn
        return self.txn.amount


class CariSettlementAdapter(Protocol):
    def apply(self, repo, request: CariApplyRequest) -> CariApplyResult: ...

    def load_result(self, repo, txn: CashTransaction) -> Optional[CariApplyResult]: ...


def unapplied_receipt_no(txn_id: str) -> str:
    return f"UNAP-CASH-{txn_id}"


def insert_unapplied_for(repo, txn: CashTransaction, amount: Decimal, event_uid: Optional[str], note: Optional[str]) -> str:
    unap_id = repo.insert_unapplied_cash(
        {
            "legal_entity_id": txn.legal_entity_id,
            "counterparty_id": txn.counterparty_id,
            "cash_transaction_id": txn.id,
            "cash_receipt_no": unapplied_receipt_no(txn.id),
            "receipt_date": txn.book_date,
            "currency_code": txn.currency_code,
            "amount_txn": amount,
            "residual_amount_txn": amount,
            "status": UnappliedStatus.UNAPPLIED.value,
            "integration_event_uid": event_uid,
            "note": note,
        }
    )
    json_log(
        "info",
        "cash.cari.unapplied_created",
        tenant_id=repo.tenant_id,
        transaction_id=txn.id,
        unapplied_cash_id=unap_id,
        amount=amount,
    )
    return unap_id


class OpenItemSettlementAdapter:
    """
    Records one settlement batch per cash transaction and burns down open-item
    residuals. Anything left over after allocation stays as unapplied cash.
    """

    def load_result(self, repo, txn: CashTransaction) -> Optional[CariApplyResult]:
        batch = repo.find_settlement_batch_by_cash_txn(txn.id)
        unap = repo.find_unapplied_cash_by_cash_txn(txn.id)
        if batch is None and unap is None:
            return None
        allocations = ()
        if batch is not None:
            allocations = tuple(
                Allocation(open_item_id=str(r["open_item_id"]), amount_txn=q6(r["amount_txn"]))
                for r in repo.list_settlement_allocations(str(batch["id"]))
            )
        return CariApplyResult(
            cash_transaction=txn,
            settlement_batch_id=str(batch["id"]) if batch is not None else None,
            allocations=allocations,
            unapplied_cash=(unap,) if unap is not None else (),
        )

    def _auto_allocations(self, repo, request: CariApplyRequest) -> list[Allocation]:
        txn = request.txn
        remaining = request.available
        out: list[Allocation] = []
        for item in repo.find_open_items_for_counterparty(txn.legal_entity_id, txn.counterparty_id, request.direction):
            if remaining <= 0:
                break
            take = min(q6(item["residual_amount_txn"]), remaining)
            if take > 0:
                out.append(Allocation(open_item_id=str(item["id"]), amount_txn=take))
                remaining -= take
        return out

    def apply(self, repo, request: CariApplyRequest) -> CariApplyResult:
        txn = request.txn
        existing = self.load_result(repo, txn)
        if existing is not None and existing.settlement_batch_id:
            return existing

        allocations = list(request.allocations)
        if not allocations and request.auto_allocate:
            allocations = self._auto_allocations(repo, request)
        total = sum((a.amount_txn for a in allocations), Decimal("0"))
        if total > request.available:
            raise bad_request("applications total exceeds cash transaction amount")

        batch_id = None
        if allocations:
            batch_id = repo.insert_settlement_batch(
                {
                    "legal_entity_id": txn.legal_entity_id,
                    "counterparty_id": txn.counterparty_id,
                    "direction": request.direction,
                    "cash_transaction_id": txn.id,
                    "settlement_date": request.settlement_date or txn.book_date,
                    "currency_code": txn.currency_code,
                    "total_allocated_txn": q6(total),
                    "idempotency_key": request.idempotency_key,
                    "integration_event_uid": request.integration_event_uid,
                }
            )
            for a in allocations:
                if repo.decrement_open_item_residual(a.open_item_id, a.amount_txn) == 0:
                    raise conflict("open item residual changed concurrently", open_item_id=a.open_item_id)
                repo.insert_settlement_allocation(batch_id, a.open_item_id, a.amount_txn)

        unapplied = ()
        leftover = q6(txn.amount - total)
        if request.unapplied is not None:
            unap_id = request.unapplied.id
            if total > 0 and repo.apply_unapplied_cash(unap_id, q6(total)) == 0:
                raise conflict("unapplied cash residual changed concurrently", unapplied_cash_id=unap_id)
            unapplied = (repo.find_unapplied_cash(unap_id),)
        elif leftover > 0:
            unap_id = insert_unapplied_for(repo, txn, leftover, request.integration_event_uid, request.note)
            unapplied = (repo.find_unapplied_cash(unap_id),)

        return CariApplyResult(
            cash_transaction=txn,
            settlement_batch_id=batch_id,
            allocations=tuple(allocations),
            unapplied_cash=unapplied,
        )
