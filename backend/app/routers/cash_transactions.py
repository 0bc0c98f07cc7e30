from fastapi import APIRouter, Depends, Query
from typing import Optional
from datetime import date

from ..deps import (
    get_cari_apply_bridge,
    get_cash_transit_service,
    get_cash_txn_service,
    get_scope_context,
    require_permission,
)
from ..cash.schemas import (
    CariApplyIn,
    CashTxnCancelIn,
    CashTxnCreateIn,
    CashTxnListQuery,
    CashTxnPostIn,
    CashTxnReverseIn,
    TransitCancelIn,
    TransitInitiateIn,
    TransitListQuery,
    TransitReceiveIn,
)

router = APIRouter(prefix="/cash/transactions", tags=["cash"])


# Transit routes are declared first so `/transit` is not captured by `/{txn_id}`.

@router.get("/transit", dependencies=[Depends(require_permission("cash:read"))])
def list_transit_transfers(
    legal_entity_id: Optional[str] = Query(None),
    source_register_id: Optional[str] = Query(None),
    target_register_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="INITIATED|IN_TRANSIT|RECEIVED|CANCELED|REVERSED"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    scope=Depends(get_scope_context),
    service=Depends(get_cash_transit_service),
):
    query = TransitListQuery(
        legal_entity_id=legal_entity_id,
        source_register_id=source_register_id,
        target_register_id=target_register_id,
        status=status.strip().upper() if status else None,
        limit=limit,
        offset=offset,
    )
    return service.list(scope, query).to_dict()


@router.get("/transit/{transfer_id}", dependencies=[Depends(require_permission("cash:read"))])
def get_transit_transfer(transfer_id: str, scope=Depends(get_scope_context), service=Depends(get_cash_transit_service)):
    return service.get(scope, transfer_id).to_dict()


@router.post("/transit/initiate", dependencies=[Depends(require_permission("cash:create"))])
def initiate_transit_transfer(
    data: TransitInitiateIn,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_transit_service),
):
    return service.initiate(scope, data).to_dict()


@router.post("/transit/{transfer_id}/receive", dependencies=[Depends(require_permission("cash:post"))])
def receive_transit_transfer(
    transfer_id: str,
    data: TransitReceiveIn,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_transit_service),
):
    return service.receive(scope, transfer_id, data).to_dict()


@router.post("/transit/{transfer_id}/cancel", dependencies=[Depends(require_permission("cash:cancel"))])
def cancel_transit_transfer(
    transfer_id: str,
    data: Optional[TransitCancelIn] = None,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_transit_service),
):
    return service.cancel(scope, transfer_id, data).to_dict()


@router.get("", dependencies=[Depends(require_permission("cash:read"))])
def list_cash_transactions(
    register_id: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    legal_entity_id: Optional[str] = Query(None),
    txn_type: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="DRAFT|SUBMITTED|APPROVED|POSTED|CANCELED|REVERSED"),
    book_date_from: Optional[date] = Query(None),
    book_date_to: Optional[date] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    scope=Depends(get_scope_context),
    service=Depends(get_cash_txn_service),
):
    query = CashTxnListQuery(
        register_id=register_id,
        session_id=session_id,
        legal_entity_id=legal_entity_id,
        txn_type=txn_type,
        status=status.strip().upper() if status else None,
        book_date_from=book_date_from,
        book_date_to=book_date_to,
        limit=limit,
        offset=offset,
    )
    return service.list(scope, query).to_dict()


@router.get("/{txn_id}", dependencies=[Depends(require_permission("cash:read"))])
def get_cash_transaction(txn_id: str, scope=Depends(get_scope_context), service=Depends(get_cash_txn_service)):
    return {"row": service.get(scope, txn_id).to_dict()}


@router.post("", dependencies=[Depends(require_permission("cash:create"))])
def create_cash_transaction(
    data: CashTxnCreateIn,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_txn_service),
):
    out = service.create(scope, data)
    return {"row": out.value.to_dict(), "idempotent_replay": out.idempotent_replay}


@router.post("/{txn_id}/submit", dependencies=[Depends(require_permission("cash:create"))])
def submit_cash_transaction(txn_id: str, scope=Depends(get_scope_context), service=Depends(get_cash_txn_service)):
    out = service.submit(scope, txn_id)
    return {"row": out.value.to_dict(), "idempotent_replay": out.idempotent_replay}


@router.post("/{txn_id}/approve", dependencies=[Depends(require_permission("cash:post"))])
def approve_cash_transaction(txn_id: str, scope=Depends(get_scope_context), service=Depends(get_cash_txn_service)):
    out = service.approve(scope, txn_id)
    return {"row": out.value.to_dict(), "idempotent_replay": out.idempotent_replay}


@router.post("/{txn_id}/post", dependencies=[Depends(require_permission("cash:post"))])
def post_cash_transaction(
    txn_id: str,
    data: Optional[CashTxnPostIn] = None,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_txn_service),
):
    out = service.post(scope, txn_id, data)
    return {"row": out.value.to_dict(), "idempotent_replay": out.idempotent_replay}


@router.post("/{txn_id}/cancel", dependencies=[Depends(require_permission("cash:cancel"))])
def cancel_cash_transaction(
    txn_id: str,
    data: Optional[CashTxnCancelIn] = None,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_txn_service),
):
    return {"row": service.cancel(scope, txn_id, data).to_dict()}


@router.post("/{txn_id}/reverse", dependencies=[Depends(require_permission("cash:reverse"))])
def reverse_cash_transaction(
    txn_id: str,
    data: CashTxnReverseIn,
    scope=Depends(get_scope_context),
    service=Depends(get_cash_txn_service),
):
    return service.reverse(scope, txn_id, data).to_dict()


@router.post("/{txn_id}/apply-cari", dependencies=[Depends(require_permission("cari:apply"))])
def apply_cari_settlement(
    txn_id: str,
    data: CariApplyIn,
    scope=Depends(get_scope_context),
    bridge=Depends(get_cari_apply_bridge),
):
    return bridge.apply(scope, txn_id, data).to_dict()
