from datetime import date
from decimal import Decimal

import pytest

from backend.app.cash.schemas import CariApplyIn
from backend.app.errors import CashError

BOOK = date(2026, 3, 14)


@pytest.fixture
def posted_receipt(txn_service, scope, world, new_txn):
    def _make(amount="100", **extra):
        txn = new_txn(
            amount=amount,
            counterparty_type="CUSTOMER",
            counterparty_id=world.customer,
            book_date=BOOK,
            **extra,
        )
        return txn_service.post(scope, txn.id).value

    return _make


@pytest.fixture
def open_item(store, world):
    def _make(residual, due, document_id="doc-1", counterparty=None, direction="AR"):
        return store.put(
            "cari_open_items",
            legal_entity_id=world.le,
            counterparty_id=counterparty or world.customer,
            direction=direction,
            cari_document_id=document_id,
            residual_amount_txn=Decimal(residual),
            due_date=due,
            status="OPEN",
        )

    return _make


def test_apply_without_applications_parks_unapplied_cash(cari_bridge, scope, store, posted_receipt):
    txn = posted_receipt()
    out = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-1", note="walk-in"))
    assert out.idempotent_replay is False
    result = out.value
    assert result.settlement_batch_id is None
    (unap,) = result.unapplied_cash
    assert unap.amount_txn == Decimal("100.000000")
    assert unap.cash_receipt_no == f"UNAP-CASH-{txn.id}"
    assert unap.integration_event_uid == f"CASH-APPLY-{txn.id}:ap-1"
    assert result.cash_transaction.linked_cari_unapplied_cash_id == unap.id
    assert [r["action"] for r in store.rows("audit_logs")][-1] == "cari.unapplied.create"


def test_repeat_park_replays_unapplied_cash(cari_bridge, scope, store, posted_receipt):
    txn = posted_receipt()
    first = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-1")).value
    again = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-2"))
    assert again.idempotent_replay is True
    assert again.value.unapplied_cash[0].id == first.unapplied_cash[0].id
    assert len(store.rows("cari_unapplied_cash")) == 1


def test_settlement_draws_down_parked_unapplied_cash(cari_bridge, scope, store, posted_receipt, open_item):
    txn = posted_receipt()
    parked = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-1")).value
    unap_id = parked.unapplied_cash[0].id
    item = open_item("60", date(2026, 1, 10))

    data = CariApplyIn(idempotency_key="ap-2", applications=[{"open_item_id": item, "amount_txn": "60"}])
    out = cari_bridge.apply(scope, txn.id, data)
    assert out.idempotent_replay is False
    result = out.value
    assert result.settlement_batch_id is not None
    assert [(a.open_item_id, a.amount_txn) for a in result.allocations] == [(item, Decimal("60.000000"))]
    assert store.row("cari_open_items", item)["residual_amount_txn"] == Decimal("0")

    # The parked row is consumed in place; no second unapplied row appears.
    assert len(store.rows("cari_unapplied_cash")) == 1
    unap = store.row("cari_unapplied_cash", unap_id)
    assert unap["residual_amount_txn"] == Decimal("40.000000")
    assert unap["status"] == "PARTIALLY_APPLIED"
    assert result.unapplied_cash[0].id == unap_id
    assert result.cash_transaction.linked_cari_settlement_batch_id == result.settlement_batch_id
    assert result.cash_transaction.linked_cari_unapplied_cash_id == unap_id

    again = cari_bridge.apply(scope, txn.id, data)
    assert again.idempotent_replay is True
    assert again.value.settlement_batch_id == result.settlement_batch_id
    assert store.row("cari_open_items", item)["residual_amount_txn"] == Decimal("0")


def test_full_settlement_of_parked_cash_marks_it_applied(cari_bridge, scope, store, posted_receipt, open_item):
    txn = posted_receipt(amount="50")
    unap_id = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-1")).value.unapplied_cash[0].id
    open_item("30", date(2026, 1, 1))
    open_item("40", date(2026, 1, 5))
    out = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-2", auto_allocate=True)).value
    assert sum(a.amount_txn for a in out.allocations) == Decimal("50.000000")
    unap = store.row("cari_unapplied_cash", unap_id)
    assert unap["residual_amount_txn"] == Decimal("0")
    assert unap["status"] == "FULLY_APPLIED"


def test_settlement_of_parked_cash_is_bounded_by_its_residual(cari_bridge, scope, posted_receipt, open_item):
    txn = posted_receipt()
    cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-1"))
    item = open_item("150", date(2026, 1, 1))
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(
            scope,
            txn.id,
            CariApplyIn(idempotency_key="ap-2", applications=[{"open_item_id": item, "amount_txn": "120"}]),
        )
    assert exc_info.value.status == 400
    assert "exceeds unapplied cash residual" in str(exc_info.value)


def test_apply_to_open_item_settles_and_parks_rest(cari_bridge, scope, store, world, posted_receipt, open_item):
    txn = posted_receipt()
    item = open_item("60", date(2026, 1, 10))
    out = cari_bridge.apply(
        scope, txn.id, CariApplyIn(idempotency_key="ap-1", applications=[{"open_item_id": item, "amount_txn": "60"}])
    ).value

    assert out.settlement_batch_id is not None
    assert [(a.open_item_id, a.amount_txn) for a in out.allocations] == [(item, Decimal("60.000000"))]
    assert out.unapplied_cash[0].amount_txn == Decimal("40.000000")
    assert store.row("cari_open_items", item)["residual_amount_txn"] == Decimal("0")
    assert store.row("cari_open_items", item)["status"] == "SETTLED"
    batch = store.row("cari_settlement_batches", out.settlement_batch_id)
    assert batch["cash_transaction_id"] == txn.id
    assert batch["direction"] == "AR"
    assert out.cash_transaction.linked_cari_settlement_batch_id == out.settlement_batch_id
    assert out.cash_transaction.linked_cari_unapplied_cash_id == out.unapplied_cash[0].id


def test_apply_by_document_takes_oldest_items_first(cari_bridge, scope, posted_receipt, open_item):
    txn = posted_receipt()
    newer = open_item("50", date(2026, 2, 1), document_id="doc-2")
    older = open_item("30", date(2026, 1, 1), document_id="doc-2")
    out = cari_bridge.apply(
        scope,
        txn.id,
        CariApplyIn(idempotency_key="ap-1", applications=[{"cari_document_id": "doc-2", "amount_txn": "70"}]),
    ).value
    assert [(a.open_item_id, a.amount_txn) for a in out.allocations] == [
        (older, Decimal("30.000000")),
        (newer, Decimal("40.000000")),
    ]


def test_auto_allocate_walks_counterparty_items(cari_bridge, scope, world, posted_receipt, open_item):
    txn = posted_receipt(amount="50")
    first = open_item("20", date(2026, 1, 1))
    second = open_item("80", date(2026, 1, 5))
    open_item("10", date(2025, 12, 1), direction="AP")
    out = cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="ap-1", auto_allocate=True)).value
    assert [(a.open_item_id, a.amount_txn) for a in out.allocations] == [
        (first, Decimal("20.000000")),
        (second, Decimal("30.000000")),
    ]
    assert out.unapplied_cash == ()


def test_document_amount_over_residual_is_rejected(cari_bridge, scope, store, posted_receipt, open_item):
    txn = posted_receipt()
    open_item("30", date(2026, 1, 1), document_id="doc-3")
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(
            scope,
            txn.id,
            CariApplyIn(idempotency_key="ap-1", applications=[{"cari_document_id": "doc-3", "amount_txn": "31"}]),
        )
    assert exc_info.value.status == 400
    assert "exceeds available residual for cariDocumentId=doc-3" in str(exc_info.value)
    assert store.rows("cari_settlement_batches") == []


def test_unknown_document_is_rejected(cari_bridge, scope, posted_receipt):
    txn = posted_receipt()
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(
            scope,
            txn.id,
            CariApplyIn(idempotency_key="ap-1", applications=[{"cari_document_id": "nope", "amount_txn": "1"}]),
        )
    assert "No open items available for cariDocumentId=nope" in str(exc_info.value)


def test_open_item_checks(cari_bridge, scope, world, posted_receipt, open_item):
    txn = posted_receipt()
    foreign = open_item("10", date(2026, 1, 1), counterparty=world.vendor)

    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(
            scope, txn.id, CariApplyIn(idempotency_key="a", applications=[{"open_item_id": "missing", "amount_txn": "1"}])
        )
    assert exc_info.value.status == 404

    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(
            scope, txn.id, CariApplyIn(idempotency_key="a", applications=[{"open_item_id": foreign, "amount_txn": "1"}])
        )
    assert "does not belong to the cash transaction counterparty" in str(exc_info.value)


def test_applications_cannot_exceed_transaction_amount(cari_bridge, scope, posted_receipt, open_item):
    txn = posted_receipt(amount="10")
    a = open_item("8", date(2026, 1, 1))
    b = open_item("8", date(2026, 1, 2))
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(
            scope,
            txn.id,
            CariApplyIn(
                idempotency_key="a",
                applications=[{"open_item_id": a, "amount_txn": "8"}, {"open_item_id": b, "amount_txn": "8"}],
            ),
        )
    assert "applications total exceeds cash transaction amount" in str(exc_info.value)


def test_application_needs_exactly_one_target():
    with pytest.raises(ValueError):
        CariApplyIn(idempotency_key="a", applications=[{"amount_txn": "1"}])
    with pytest.raises(ValueError):
        CariApplyIn(
            idempotency_key="a",
            applications=[{"open_item_id": "x", "cari_document_id": "y", "amount_txn": "1"}],
        )


def test_apply_requires_posted_transaction(cari_bridge, scope, world, new_txn):
    txn = new_txn(counterparty_type="CUSTOMER", counterparty_id=world.customer, book_date=BOOK)
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="a"))
    assert "must be POSTED" in str(exc_info.value)


def test_payout_requires_vendor_counterparty(cari_bridge, txn_service, scope, world, new_txn):
    txn = new_txn(txn_type="PAYOUT", counterparty_type="CUSTOMER", counterparty_id=world.customer, book_date=BOOK)
    txn_service.post(scope, txn.id)
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="a"))
    assert "counterpartyType=VENDOR" in str(exc_info.value)


def test_non_cari_transaction_type_is_rejected(cari_bridge, txn_service, scope, new_txn):
    txn = new_txn(txn_type="DEPOSIT_TO_BANK", book_date=BOOK)
    txn_service.post(scope, txn.id)
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(scope, txn.id, CariApplyIn(idempotency_key="a"))
    assert "RECEIPT or PAYOUT" in str(exc_info.value)


def test_event_uid_of_another_transaction_is_rejected(cari_bridge, scope, posted_receipt):
    first = posted_receipt()
    second = posted_receipt()
    cari_bridge.apply(scope, first.id, CariApplyIn(idempotency_key="a", integration_event_uid="E-1"))
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(scope, second.id, CariApplyIn(idempotency_key="a", integration_event_uid="E-1"))
    assert exc_info.value.status == 400
    assert "already used by another cash transaction" in str(exc_info.value)


def test_event_uid_race_with_another_transaction_is_rejected(cari_bridge, scope, store, posted_receipt):
    first = posted_receipt()
    second = posted_receipt()
    cari_bridge.apply(scope, first.id, CariApplyIn(idempotency_key="a", integration_event_uid="E-2"))
    # The pre-insert check misses; the unique constraint catches it instead.
    store.miss("find_unapplied_cash_by_event_uid")
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(scope, second.id, CariApplyIn(idempotency_key="a", integration_event_uid="E-2"))
    assert exc_info.value.status == 400
    assert store.row("cash_transactions", second.id).get("linked_cari_unapplied_cash_id") is None


def test_unknown_transaction_is_not_found(cari_bridge, scope):
    with pytest.raises(CashError) as exc_info:
        cari_bridge.apply(scope, "missing", CariApplyIn(idempotency_key="a"))
    assert exc_info.value.status == 404
