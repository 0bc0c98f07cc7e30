"""
Cash transaction state machine.

    DRAFT -> SUBMITTED -> APPROVED -> POSTED -> REVERSED
    DRAFT | SUBMITTED -> CANCELED

Every mutation runs in one unit of work. Rows are locked in a fixed order:
the linked transit transfer first, then the transaction row(s).
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from ..config import settings
from ..errors import DuplicateKeyError, bad_request, conflict, not_found
from ..jsonlog import json_log
from ..journal_utils import JournalPoster, GlJournalPoster
from ..scope import SCOPE_LEGAL_ENTITY, SCOPE_OPERATING_UNIT, ScopeContext
from ..tenant_guards import assert_account_belongs_to_tenant
from .idempotency import find_or_create
from .models import (
    BANK_TXN_TYPES,
    CANCELLABLE_STATUSES,
    CARI_COUNTERPARTY_TYPES,
    CARI_LINKED_TXN_TYPES,
    COUNTER_ACCOUNT_TXN_TYPES,
    POSTABLE_STATUSES,
    SYSTEM_ONLY_TXN_TYPES,
    TRANSFER_TXN_TYPES,
    TRANSIT_ENTITY_TYPE,
    CashTransaction,
    CashTransitTransfer,
    CounterpartyType,
    IntegrationLinkStatus,
    Outcome,
    Page,
    ReversalResult,
    SourceModule,
    TransitStatus,
    TxnStatus,
    TxnType,
)
from .registers import (
    assert_amount_within_cap,
    assert_currency_matches,
    assert_postable_register_state,
    assert_register_operational,
    assert_register_scope,
    load_register,
    resolve_session_for_create,
)
from .repository import open_cash_uow
from .schemas import CashTxnCancelIn, CashTxnCreateIn, CashTxnListQuery, CashTxnPostIn, CashTxnReverseIn

CARI_LINK_CONSTRAINTS = (
    "uk_cari_settle_batches_tenant_cash_txn",
    "uk_cari_unap_tenant_cash_txn",
)


def today() -> date:
    return datetime.now(timezone.utc).date()


def page_bounds(limit: Optional[int], offset: Optional[int]) -> tuple[int, int]:
    lim = limit or settings.default_page_limit
    lim = max(1, min(int(lim), settings.max_page_limit))
    return lim, max(0, int(offset or 0))


def assert_txn_scope(scope: ScopeContext, txn: CashTransaction, label: str = "transactionId") -> None:
    scope.assert_scope_access(SCOPE_LEGAL_ENTITY, txn.legal_entity_id, label)
    if txn.operating_unit_id:
        scope.assert_scope_access(SCOPE_OPERATING_UNIT, txn.operating_unit_id, label)


def lock_txn_with_transfer(repo, txn_id: str) -> tuple[CashTransaction, Optional[CashTransitTransfer]]:
    """Lock the linked transfer (if any) before the transaction row."""
    peek = repo.find_transaction(txn_id)
    if peek is None:
        raise not_found("Cash transaction not found", transaction_id=txn_id)

    transfer_id = None
    if peek.txn_type == TxnType.TRANSFER_OUT:
        linked = repo.find_transfer_by_out_txn(peek.id)
        transfer_id = linked.id if linked else None
    elif peek.txn_type == TxnType.TRANSFER_IN:
        linked = repo.find_transfer_by_in_txn(peek.id)
        if linked is None and peek.is_transit_linked and peek.source_entity_id:
            # In-leg not yet attached to its transfer (receive still in flight).
            linked = repo.find_transfer(peek.source_entity_id)
        transfer_id = linked.id if linked else None

    transfer = repo.find_transfer(transfer_id, for_update=True) if transfer_id else None
    txn = repo.find_transaction(txn_id, for_update=True)
    if txn is None:
        raise not_found("Cash transaction not found", transaction_id=txn_id)
    return txn, transfer


def post_locked(
    repo,
    journal: JournalPoster,
    txn: CashTransaction,
    transfer: Optional[CashTransitTransfer],
    *,
    override_cash_control: bool = False,
    override_reason: Optional[str] = None,
    require_session: bool = True,
) -> CashTransaction:
    """Post an already locked DRAFT/SUBMITTED/APPROVED row inside the caller's transaction."""
    if txn.status not in POSTABLE_STATUSES:
        raise bad_request("Only DRAFT, SUBMITTED, or APPROVED transactions can be posted")
    if require_session:
        assert_postable_register_state(txn)

    posting = journal.post(repo, txn)
    updated = repo.mark_transaction_posted(
        txn.id,
        posting.journal_entry_id,
        override_cash_control,
        override_reason if override_cash_control else None,
    )
    if updated == 0:
        raise conflict("Cash transaction status changed during posting", transaction_id=txn.id)

    if txn.txn_type == TxnType.TRANSFER_OUT and transfer is not None:
        moved = repo.mark_transfer_in_transit(transfer.id)
        if moved:
            json_log("info", "cash.transit.in_transit", tenant_id=repo.tenant_id, transfer_id=transfer.id)
        elif transfer.status not in (TransitStatus.IN_TRANSIT, TransitStatus.RECEIVED):
            raise bad_request("Transit transfer status update failed during transfer-out posting")

    json_log(
        "info",
        "cash.txn.posted",
        tenant_id=repo.tenant_id,
        transaction_id=txn.id,
        txn_no=txn.txn_no,
        journal_entry_id=posting.journal_entry_id,
    )
    return repo.find_transaction(txn.id)


def insert_and_load(repo, values: dict) -> CashTransaction:
    txn_id = repo.insert_transaction(values)
    return repo.find_transaction(txn_id, for_update=True)


class CashTransactionService:
    def __init__(self, open_uow=open_cash_uow, journal: Optional[JournalPoster] = None):
        self._open_uow = open_uow
        self.journal = journal or GlJournalPoster()

    # Reads

    def get(self, scope: ScopeContext, txn_id: str) -> CashTransaction:
        with self._open_uow(scope.tenant_id) as repo:
            txn = repo.find_transaction(txn_id)
        if txn is None:
            raise not_found("Cash transaction not found", transaction_id=txn_id)
        assert_txn_scope(scope, txn)
        return txn

    def list(self, scope: ScopeContext, query: CashTxnListQuery) -> Page:
        limit, offset = page_bounds(query.limit, query.offset)
        filters = query.model_dump(exclude={"limit", "offset"}, exclude_none=True)
        with self._open_uow(scope.tenant_id) as repo:
            rows, total = repo.list_transactions(scope, filters, limit, offset)
        return Page(rows=rows, total=total, limit=limit, offset=offset)

    # Create

    def _validate_cari_links(self, repo, register, data: CashTxnCreateIn, source_module: SourceModule) -> None:
        batch_id = data.linked_cari_settlement_batch_id
        unap_id = data.linked_cari_unapplied_cash_id
        if not (batch_id or unap_id or source_module == SourceModule.CARI):
            return

        if data.txn_type not in CARI_LINKED_TXN_TYPES:
            raise bad_request("Cari integration links are only supported for RECEIPT and PAYOUT cash transactions")
        if data.counterparty_type not in CARI_COUNTERPARTY_TYPES:
            raise bad_request("counterpartyType must be CUSTOMER or VENDOR when sourceModule=CARI")
        if not data.counterparty_id:
            raise bad_request("counterpartyId is required when sourceModule=CARI")

        cp = repo.find_counterparty(data.counterparty_id)
        if not cp:
            raise not_found("counterpartyId not found for tenant", counterparty_id=data.counterparty_id)
        if str(cp["legal_entity_id"]) != register.legal_entity_id:
            raise bad_request("counterpartyId must belong to register legalEntityId")
        if data.counterparty_type == CounterpartyType.CUSTOMER and not cp.get("is_customer"):
            raise bad_request("counterpartyId is not marked as customer")
        if data.counterparty_type == CounterpartyType.VENDOR and not cp.get("is_vendor"):
            raise bad_request("counterpartyId is not marked as vendor")

        linked_cps = []
        if batch_id:
            batch = repo.find_settlement_batch(batch_id)
            if not batch:
                raise not_found("linkedCariSettlementBatchId not found for tenant", batch_id=batch_id)
            if str(batch["legal_entity_id"]) != register.legal_entity_id:
                raise bad_request("linkedCariSettlementBatchId must belong to register legalEntityId")
            if batch.get("cash_transaction_id"):
                raise conflict("linkedCariSettlementBatchId is already linked to another cash transaction")
            linked_cps.append(str(batch["counterparty_id"]))
        if unap_id:
            unap = repo.find_unapplied_cash(unap_id)
            if unap is None:
                raise not_found("linkedCariUnappliedCashId not found for tenant", unapplied_cash_id=unap_id)
            if unap.legal_entity_id != register.legal_entity_id:
                raise bad_request("linkedCariUnappliedCashId must belong to register legalEntityId")
            if unap.cash_transaction_id:
                raise conflict("linkedCariUnappliedCashId is already linked to another cash transaction")
            linked_cps.append(unap.counterparty_id)
        if len(set(linked_cps)) > 1:
            raise bad_request("linkedCariSettlementBatchId and linkedCariUnappliedCashId must target the same counterparty")
        if linked_cps and linked_cps[0] != data.counterparty_id:
            raise bad_request("Linked cari record counterparty does not match counterpartyId")

    def _validate_counter_refs(self, repo, register, data: CashTxnCreateIn) -> None:
        t = data.txn_type
        if t in TRANSFER_TXN_TYPES:
            if not data.counter_cash_register_id:
                raise bad_request(f"{t.value} requires counterCashRegisterId")
            if data.counter_cash_register_id == register.id:
                raise bad_request("counterCashRegisterId must differ from registerId")
            counter = load_register(repo, data.counter_cash_register_id, "counterCashRegisterId")
            if counter.currency_code != register.currency_code:
                raise bad_request("Transfer register currencies must match")
        if t in BANK_TXN_TYPES or t in COUNTER_ACCOUNT_TXN_TYPES:
            if not data.counter_account_id:
                raise bad_request(f"{t.value} requires counterAccountId")
        if data.counter_account_id:
            assert_account_belongs_to_tenant(repo, data.counter_account_id, "counterAccountId")

    def create(self, scope: ScopeContext, data: CashTxnCreateIn) -> Outcome[CashTransaction]:
        if data.txn_type in SYSTEM_ONLY_TXN_TYPES:
            raise bad_request(f"{data.txn_type.value} can only be system-generated")

        has_cari_links = bool(data.linked_cari_settlement_batch_id or data.linked_cari_unapplied_cash_id)
        source_module = data.source_module or (SourceModule.CARI if has_cari_links else SourceModule.MANUAL)

        def precheck(repo):
            if not data.integration_event_uid:
                return None
            found = repo.find_transaction_by_event_uid(data.integration_event_uid)
            if found is not None:
                assert_txn_scope(scope, found)
            return found

        def find_replay(repo, locked: bool):
            found = repo.find_transaction_by_idempotency(data.register_id, data.idempotency_key, for_update=locked)
            if found is None and not locked and data.integration_event_uid:
                found = repo.find_transaction_by_event_uid(data.integration_event_uid)
            if found is not None:
                assert_txn_scope(scope, found)
            return found

        def create(repo):
            register = load_register(repo, data.register_id)
            assert_register_scope(scope, register)
            assert_register_operational(register)
            currency = assert_currency_matches(register, data.currency_code)
            assert_amount_within_cap(register, data.amount)
            self._validate_counter_refs(repo, register, data)
            self._validate_cari_links(repo, register, data, source_module)
            session = resolve_session_for_create(repo, register, data.session_id)

            book_date = data.book_date or today()
            txn_no = repo.next_txn_no(register.legal_entity_id, register.legal_entity_code, book_date)
            txn = insert_and_load(
                repo,
                {
                    "cash_register_id": register.id,
                    "cash_session_id": session.id if session else None,
                    "txn_no": txn_no,
                    "txn_type": data.txn_type.value,
                    "status": TxnStatus.DRAFT.value,
                    "txn_datetime": data.txn_datetime or datetime.now(timezone.utc),
                    "book_date": book_date,
                    "amount": data.amount,
                    "currency_code": currency,
                    "description": data.description,
                    "reference_no": data.reference_no,
                    "counterparty_type": data.counterparty_type.value if data.counterparty_type else None,
                    "counterparty_id": data.counterparty_id,
                    "counter_account_id": data.counter_account_id,
                    "counter_cash_register_id": data.counter_cash_register_id,
                    "source_module": source_module.value,
                    "source_entity_type": data.source_entity_type,
                    "source_entity_id": data.source_entity_id,
                    "integration_link_status": (
                        IntegrationLinkStatus.LINKED if has_cari_links else IntegrationLinkStatus.UNLINKED
                    ).value,
                    "idempotency_key": data.idempotency_key,
                    "integration_event_uid": data.integration_event_uid,
                    "linked_cari_settlement_batch_id": data.linked_cari_settlement_batch_id,
                    "linked_cari_unapplied_cash_id": data.linked_cari_unapplied_cash_id,
                },
            )

            # Conditional link closes the read-then-write race on the cari row.
            if data.linked_cari_settlement_batch_id:
                if repo.link_settlement_batch(data.linked_cari_settlement_batch_id, txn.id) == 0:
                    raise conflict("linkedCariSettlementBatchId is already linked to another cash transaction")
            if data.linked_cari_unapplied_cash_id:
                if repo.link_unapplied_cash(data.linked_cari_unapplied_cash_id, txn.id) == 0:
                    raise conflict("linkedCariUnappliedCashId is already linked to another cash transaction")

            repo.insert_audit_log(
                scope.user_id, "cash.txn.create", "cash_transaction", txn.id,
                {"txn_no": txn.txn_no, "txn_type": txn.txn_type.value, "amount": txn.amount},
            )
            json_log(
                "info",
                "cash.txn.created",
                tenant_id=scope.tenant_id,
                transaction_id=txn.id,
                txn_no=txn.txn_no,
                txn_type=txn.txn_type.value,
            )
            return txn

        def on_duplicate(exc: DuplicateKeyError) -> None:
            if exc.matches(*CARI_LINK_CONSTRAINTS):
                raise conflict("Linked cari record is already linked to another cash transaction") from exc

        return find_or_create(
            self._open_uow,
            scope.tenant_id,
            precheck=precheck,
            find_replay=find_replay,
            create=create,
            on_duplicate=on_duplicate,
            label="cash.txn.create",
        )

    # Approval flow

    def _advance(self, scope: ScopeContext, txn_id: str, *, to: TxnStatus, frm: TxnStatus, mark) -> Outcome[CashTransaction]:
        with self._open_uow(scope.tenant_id) as repo:
            txn, _ = lock_txn_with_transfer(repo, txn_id)
            assert_txn_scope(scope, txn)
            if txn.status == to:
                return Outcome.replay(txn)
            if txn.status != frm:
                raise bad_request(f"Only {frm.value} transactions can be moved to {to.value}")
            if mark(repo, txn.id) == 0:
                raise conflict("Cash transaction status changed concurrently", transaction_id=txn.id)
            repo.insert_audit_log(scope.user_id, f"cash.txn.{to.value.lower()}", "cash_transaction", txn.id, {})
            json_log("info", f"cash.txn.{to.value.lower()}", tenant_id=scope.tenant_id, transaction_id=txn.id)
            return Outcome.created(repo.find_transaction(txn.id))

    def submit(self, scope: ScopeContext, txn_id: str) -> Outcome[CashTransaction]:
        return self._advance(
            scope, txn_id, to=TxnStatus.SUBMITTED, frm=TxnStatus.DRAFT,
            mark=lambda repo, tid: repo.mark_transaction_submitted(tid),
        )

    def approve(self, scope: ScopeContext, txn_id: str) -> Outcome[CashTransaction]:
        return self._advance(
            scope, txn_id, to=TxnStatus.APPROVED, frm=TxnStatus.SUBMITTED,
            mark=lambda repo, tid: repo.mark_transaction_approved(tid),
        )

    # Post / cancel / reverse

    def post(self, scope: ScopeContext, txn_id: str, data: Optional[CashTxnPostIn] = None) -> Outcome[CashTransaction]:
        data = data or CashTxnPostIn()
        with self._open_uow(scope.tenant_id) as repo:
            txn, transfer = lock_txn_with_transfer(repo, txn_id)
            assert_txn_scope(scope, txn)
            if txn.status == TxnStatus.POSTED:
                json_log("info", "cash.idempotent_replay", op="cash.txn.post", tenant_id=scope.tenant_id, transaction_id=txn.id)
                return Outcome.replay(txn)
            posted = post_locked(
                repo,
                self.journal,
                txn,
                transfer,
                override_cash_control=data.override_cash_control,
                override_reason=data.override_reason,
            )
            repo.insert_audit_log(
                scope.user_id, "cash.txn.post", "cash_transaction", txn.id,
                {"journal_entry_id": posted.posted_journal_entry_id, "override_cash_control": data.override_cash_control},
            )
            return Outcome.created(posted)

    def cancel(self, scope: ScopeContext, txn_id: str, data: Optional[CashTxnCancelIn] = None) -> CashTransaction:
        reason = data.reason if data else None
        with self._open_uow(scope.tenant_id) as repo:
            txn, transfer = lock_txn_with_transfer(repo, txn_id)
            assert_txn_scope(scope, txn)

            if txn.txn_type == TxnType.TRANSFER_IN and (transfer is not None or txn.is_transit_linked):
                raise bad_request("Transit receive transaction cannot be cancelled; reverse the transaction instead")
            if txn.txn_type == TxnType.TRANSFER_OUT and transfer is not None:
                if transfer.status != TransitStatus.INITIATED:
                    raise bad_request("Transit transfer-out can only be cancelled while transfer status is INITIATED")
            if txn.status not in CANCELLABLE_STATUSES:
                raise bad_request("Only DRAFT or SUBMITTED transactions can be cancelled")

            if repo.mark_transaction_canceled(txn.id, reason) == 0:
                raise conflict("Cash transaction status changed concurrently", transaction_id=txn.id)
            if transfer is not None:
                if repo.mark_transfer_canceled(transfer.id, reason) == 0:
                    raise conflict("Transit transfer status changed concurrently", transfer_id=transfer.id)
                json_log("info", "cash.transit.canceled", tenant_id=scope.tenant_id, transfer_id=transfer.id)

            repo.insert_audit_log(scope.user_id, "cash.txn.cancel", "cash_transaction", txn.id, {"reason": reason})
            json_log("info", "cash.txn.canceled", tenant_id=scope.tenant_id, transaction_id=txn.id)
            return repo.find_transaction(txn.id)

    def reverse(self, scope: ScopeContext, txn_id: str, data: CashTxnReverseIn) -> Outcome[ReversalResult]:
        rev_key = f"REV-{txn_id}"

        def find_replay(repo, locked: bool):
            existing = repo.find_transaction_by_reversal_of(txn_id)
            if existing is None:
                return None
            original = repo.find_transaction(txn_id)
            assert_txn_scope(scope, original)
            return ReversalResult(original=original, reversal=existing)

        def create(repo):
            original, transfer = lock_txn_with_transfer(repo, txn_id)
            assert_txn_scope(scope, original)

            if original.is_reversal:
                raise bad_request("Reversal transactions cannot be reversed")
            if original.status == TxnStatus.REVERSED:
                # Locked re-check: a concurrent reversal committed after the lookup.
                existing = repo.find_transaction_by_reversal_of(original.id)
                if existing is not None:
                    json_log(
                        "info",
                        "cash.idempotent_replay",
                        op="cash.txn.reverse",
                        tenant_id=scope.tenant_id,
                        via="locked_recheck",
                    )
                    return Outcome.replay(ReversalResult(original=original, reversal=existing))
            if original.status != TxnStatus.POSTED:
                raise bad_request("Only POSTED transactions can be reversed")
            if (
                original.txn_type == TxnType.TRANSFER_OUT
                and transfer is not None
                and transfer.status == TransitStatus.RECEIVED
            ):
                raise bad_request("Cannot reverse transfer-out after transit is RECEIVED; reverse transfer-in first")

            keep_transit = original.is_transit_linked
            book_date = today()
            reversal = insert_and_load(
                repo,
                {
                    "cash_register_id": original.register_id,
                    "cash_session_id": original.session_id,
                    "txn_no": repo.next_txn_no(original.legal_entity_id, original.legal_entity_code, book_date),
                    "txn_type": original.txn_type.value,
                    "status": TxnStatus.DRAFT.value,
                    "txn_datetime": datetime.now(timezone.utc),
                    "book_date": book_date,
                    "amount": original.amount,
                    "currency_code": original.currency_code,
                    "description": f"Reversal of {original.txn_no}: {data.reason}"[:255],
                    "reference_no": original.reference_no,
                    "counterparty_type": original.counterparty_type.value if original.counterparty_type else None,
                    "counterparty_id": original.counterparty_id,
                    "counter_account_id": original.counter_account_id,
                    "counter_cash_register_id": original.counter_cash_register_id,
                    "source_module": SourceModule.CASH.value,
                    "source_entity_type": TRANSIT_ENTITY_TYPE if keep_transit else "cash_transaction_reversal",
                    "source_entity_id": original.source_entity_id if keep_transit else original.id,
                    "integration_link_status": (
                        original.integration_link_status if keep_transit else IntegrationLinkStatus.UNLINKED
                    ).value,
                    "idempotency_key": rev_key,
                    "integration_event_uid": rev_key,
                    "reversal_of_transaction_id": original.id,
                },
            )
            # Reversals post without a session check; the original already passed it.
            posted = post_locked(repo, self.journal, reversal, None, require_session=False)

            if repo.mark_transaction_reversed(original.id) == 0:
                raise conflict("Cash transaction status changed concurrently", transaction_id=original.id)
            if transfer is not None and transfer.status in (TransitStatus.IN_TRANSIT, TransitStatus.RECEIVED):
                if repo.mark_transfer_reversed(transfer.id, data.reason) == 0:
                    raise conflict("Transit transfer status changed concurrently", transfer_id=transfer.id)
                json_log("info", "cash.transit.reversed", tenant_id=scope.tenant_id, transfer_id=transfer.id)

            repo.insert_audit_log(
                scope.user_id, "cash.txn.reverse", "cash_transaction", original.id,
                {"reversal_id": posted.id, "reason": data.reason},
            )
            json_log(
                "info",
                "cash.txn.reversed",
                tenant_id=scope.tenant_id,
                transaction_id=original.id,
                reversal_id=posted.id,
            )
            return ReversalResult(original=repo.find_transaction(original.id), reversal=posted)

        return find_or_create(
            self._open_uow,
            scope.tenant_id,
            find_replay=find_replay,
            create=create,
            label="cash.txn.reverse",
        )
