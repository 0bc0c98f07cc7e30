import copy
import functools
import itertools
import os
import sys
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from types import SimpleNamespace

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.cash.models import (  # noqa: E402
    CashRegister,
    CashSession,
    CashTransaction,
    CashTransitTransfer,
    UnappliedCash,
    format_txn_no,
)
from backend.app.errors import DuplicateKeyError  # noqa: E402
from backend.app.scope import ScopeContext  # noqa: E402


TENANT = "tenant-1"

# (table, constraint, columns); NULLs never conflict, as in Postgres.
UNIQUE_CONSTRAINTS = [
    ("cash_transactions", "uk_cash_txn_tenant_register_txn_no", ("tenant_id", "cash_register_id", "txn_no")),
    ("cash_transactions", "uk_cash_txn_tenant_register_idem", ("tenant_id", "cash_register_id", "idempotency_key")),
    ("cash_transactions", "uk_cash_txn_tenant_event_uid", ("tenant_id", "integration_event_uid")),
    ("cash_transactions", "uk_cash_txn_reversal_of", ("reversal_of_transaction_id",)),
    ("cash_transit_transfers", "uk_cash_transit_tenant_source_register_idem", ("tenant_id", "source_cash_register_id", "idempotency_key")),
    ("cash_transit_transfers", "uk_cash_transit_tenant_event_uid", ("tenant_id", "integration_event_uid")),
    ("cash_transit_transfers", "uk_cash_transit_tenant_out_txn", ("tenant_id", "transfer_out_cash_transaction_id")),
    ("cash_transit_transfers", "uk_cash_transit_tenant_in_txn", ("tenant_id", "transfer_in_cash_transaction_id")),
    ("cari_settlement_batches", "uk_cari_settle_batches_tenant_cash_txn", ("tenant_id", "cash_transaction_id")),
    ("cari_unapplied_cash", "uk_cari_unap_tenant_cash_txn", ("tenant_id", "cash_transaction_id")),
    ("cari_unapplied_cash", "uk_cari_unap_tenant_event_uid", ("tenant_id", "integration_event_uid")),
]

TABLES = (
    "legal_entities",
    "accounts",
    "cash_registers",
    "cash_sessions",
    "cash_transactions",
    "cash_transit_transfers",
    "cari_counterparties",
    "cari_open_items",
    "cari_settlement_batches",
    "cari_settlement_allocations",
    "cari_unapplied_cash",
    "gl_journals",
    "gl_entries",
    "audit_logs",
    "accounting_period_locks",
)


class MemoryStore:
    """
    Table-per-dict stand-in for the Postgres schema.

    One unit of work runs at a time (store-level lock, like a serialised DB);
    a failing unit of work restores the snapshot taken when it started.
    Row locks are recorded in acquisition order in `lock_log`.
    """

    def __init__(self):
        self.tables = {t: {} for t in TABLES}
        self.sequences = {}
        self.lock_log = []
        self.uow_count = 0
        self._mutex = threading.RLock()
        self._misses = {}

    def miss(self, method: str, times: int = 1):
        """Make the next `times` calls of a repository finder return None."""
        self._misses[method] = self._misses.get(method, 0) + times

    def _take_miss(self, method: str) -> bool:
        left = self._misses.get(method, 0)
        if left:
            self._misses[method] = left - 1
            return True
        return False

    @contextmanager
    def uow(self, tenant_id):
        with self._mutex:
            self.uow_count += 1
            snapshot = (copy.deepcopy(self.tables), dict(self.sequences))
            try:
                yield MemoryRepository(self, tenant_id)
            except BaseException:
                self.tables, self.sequences = snapshot
                raise

    def put(self, table: str, **row) -> str:
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("tenant_id", TENANT)
        self.tables[table][row["id"]] = row
        return row["id"]

    def row(self, table: str, row_id: str) -> dict:
        return self.tables[table][row_id]

    def rows(self, table: str, **where) -> list:
        return [r for r in self.tables[table].values() if all(r.get(k) == v for k, v in where.items())]

    def locks(self, table: str = None) -> list:
        return [e for e in self.lock_log if table is None or e[0] == table]


def _finder(method):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            if self.store._take_miss(method):
                return None
            return fn(self, *args, **kwargs)
        return wrapper
    return deco


class MemoryRepository:
    def __init__(self, store: MemoryStore, tenant_id: str):
        self.store = store
        self.tenant_id = str(tenant_id)

    # helpers

    def _t(self, name):
        return self.store.tables[name]

    def _mine(self, name):
        return [r for r in self._t(name).values() if r.get("tenant_id") == self.tenant_id]

    def _get(self, name, row_id):
        r = self._t(name).get(str(row_id)) if row_id is not None else None
        if r is None or r.get("tenant_id") != self.tenant_id:
            return None
        return r

    def _check_unique(self, table, row, ignore_id=None):
        for tbl, name, cols in UNIQUE_CONSTRAINTS:
            if tbl != table:
                continue
            key = tuple(row.get(c) for c in cols)
            if any(v is None for v in key):
                continue
            for other in self._t(table).values():
                if other["id"] == ignore_id:
                    continue
                if tuple(other.get(c) for c in cols) == key:
                    raise DuplicateKeyError(name)

    def _insert(self, table, values):
        row = dict(values)
        row["id"] = str(uuid.uuid4())
        row["tenant_id"] = self.tenant_id
        self._check_unique(table, row)
        self._t(table)[row["id"]] = row
        return row["id"]

    def _lock(self, table, row_id, for_update):
        if for_update:
            self.store.lock_log.append((table, str(row_id)))

    # registers / sessions / accounts

    def _register_row(self, r):
        acc = self._t("accounts").get(r["account_id"], {})
        le = self._t("legal_entities").get(r["legal_entity_id"], {})
        children = [a for a in self._t("accounts").values() if a.get("parent_account_id") == acc.get("id")]
        return {
            **r,
            "legal_entity_code": le.get("code"),
            "account_is_active": acc.get("is_active", True),
            "account_allow_posting": acc.get("allow_posting", True),
            "account_child_count": len(children),
            "account_is_cash_controlled": acc.get("is_cash_controlled", True),
            "account_legal_entity_id": acc.get("legal_entity_id"),
        }

    def find_register(self, register_id):
        r = self._get("cash_registers", register_id)
        return CashRegister.from_row(self._register_row(r)) if r else None

    def find_session(self, session_id):
        r = self._get("cash_sessions", session_id)
        return CashSession.from_row(r) if r else None

    def find_open_session(self, register_id):
        for r in self._mine("cash_sessions"):
            if r["cash_register_id"] == register_id and r["status"] == "OPEN":
                return CashSession.from_row(r)
        return None

    def find_account(self, account_id):
        return self._get("accounts", account_id)

    def is_period_locked(self, legal_entity_id, posting_date):
        for r in self._mine("accounting_period_locks"):
            if r["legal_entity_id"] == legal_entity_id and r["start_date"] <= posting_date <= r["end_date"]:
                return bool(r.get("locked", True))
        return False

    # transactions

    def _txn_row(self, r):
        reg = self._t("cash_registers")[r["cash_register_id"]]
        le = self._t("legal_entities").get(reg["legal_entity_id"], {})
        sess = self._t("cash_sessions").get(r.get("cash_session_id") or "", {})
        counter = self._t("cash_registers").get(r.get("counter_cash_register_id") or "", {})
        return {
            **r,
            "legal_entity_id": reg["legal_entity_id"],
            "legal_entity_code": le.get("code"),
            "operating_unit_id": reg.get("operating_unit_id"),
            "cash_register_code": reg.get("code"),
            "register_account_id": reg.get("account_id"),
            "register_status": reg.get("status"),
            "register_session_mode": reg.get("session_mode"),
            "register_variance_gain_account_id": reg.get("variance_gain_account_id"),
            "register_variance_loss_account_id": reg.get("variance_loss_account_id"),
            "cash_session_status": sess.get("status"),
            "counter_cash_register_legal_entity_id": counter.get("legal_entity_id"),
            "counter_cash_register_operating_unit_id": counter.get("operating_unit_id"),
            "counter_cash_register_account_id": counter.get("account_id"),
            "counter_cash_register_currency_code": counter.get("currency_code"),
        }

    def _txn(self, r, for_update=False):
        if r is None:
            return None
        self._lock("cash_transactions", r["id"], for_update)
        return CashTransaction.from_row(self._txn_row(r))

    def _txn_where(self, **where):
        for r in self._mine("cash_transactions"):
            if all(r.get(k) == v for k, v in where.items()):
                return r
        return None

    @_finder("find_transaction")
    def find_transaction(self, txn_id, for_update=False):
        return self._txn(self._get("cash_transactions", txn_id), for_update)

    @_finder("find_transaction_by_idempotency")
    def find_transaction_by_idempotency(self, register_id, idempotency_key, for_update=False):
        return self._txn(self._txn_where(cash_register_id=register_id, idempotency_key=idempotency_key), for_update)

    @_finder("find_transaction_by_event_uid")
    def find_transaction_by_event_uid(self, event_uid):
        return self._txn(self._txn_where(integration_event_uid=event_uid))

    @_finder("find_transaction_by_reversal_of")
    def find_transaction_by_reversal_of(self, txn_id):
        return self._txn(self._txn_where(reversal_of_transaction_id=txn_id))

    def next_txn_no(self, legal_entity_id, legal_entity_code, book_date):
        key = (self.tenant_id, legal_entity_id, book_date.year)
        self.store.sequences[key] = self.store.sequences.get(key, 0) + 1
        return format_txn_no("CASH", legal_entity_code, book_date, self.store.sequences[key])

    def insert_transaction(self, values):
        return self._insert("cash_transactions", values)

    def _update_txn(self, txn_id, status_in, **changes):
        r = self._get("cash_transactions", txn_id)
        if r is None or r["status"] not in status_in:
            return 0
        r.update(changes)
        return 1

    def mark_transaction_submitted(self, txn_id):
        return self._update_txn(txn_id, ("DRAFT",), status="SUBMITTED")

    def mark_transaction_approved(self, txn_id):
        return self._update_txn(txn_id, ("SUBMITTED",), status="APPROVED")

    def mark_transaction_posted(self, txn_id, journal_entry_id, override_cash_control=False, override_reason=None):
        return self._update_txn(
            txn_id,
            ("DRAFT", "SUBMITTED", "APPROVED"),
            status="POSTED",
            posted_journal_entry_id=journal_entry_id,
            override_cash_control=override_cash_control,
            override_reason=override_reason,
        )

    def mark_transaction_canceled(self, txn_id, reason):
        return self._update_txn(txn_id, ("DRAFT", "SUBMITTED"), status="CANCELED", cancel_reason=reason)

    def mark_transaction_reversed(self, txn_id):
        return self._update_txn(txn_id, ("POSTED",), status="REVERSED")

    def link_transaction_to_transfer(self, txn_id, transfer_id):
        r = self._get("cash_transactions", txn_id)
        if r is None:
            return 0
        r.update(source_entity_id=transfer_id, integration_link_status="LINKED")
        return 1

    def set_transaction_cari_links(self, txn_id, settlement_batch_id=None, unapplied_cash_id=None):
        r = self._get("cash_transactions", txn_id)
        if r is None:
            return 0
        if settlement_batch_id:
            r["linked_cari_settlement_batch_id"] = settlement_batch_id
        if unapplied_cash_id:
            r["linked_cari_unapplied_cash_id"] = unapplied_cash_id
        r["integration_link_status"] = "LINKED"
        return 1

    # transfers

    def _transfer(self, r, for_update=False):
        if r is None:
            return None
        self._lock("cash_transit_transfers", r["id"], for_update)
        return CashTransitTransfer.from_row(r)

    def _transfer_where(self, **where):
        for r in self._mine("cash_transit_transfers"):
            if all(r.get(k) == v for k, v in where.items()):
                return r
        return None

    @_finder("find_transfer")
    def find_transfer(self, transfer_id, for_update=False):
        return self._transfer(self._get("cash_transit_transfers", transfer_id), for_update)

    @_finder("find_transfer_by_idempotency")
    def find_transfer_by_idempotency(self, source_register_id, idempotency_key, for_update=False):
        return self._transfer(
            self._transfer_where(source_cash_register_id=source_register_id, idempotency_key=idempotency_key),
            for_update,
        )

    @_finder("find_transfer_by_event_uid")
    def find_transfer_by_event_uid(self, event_uid):
        return self._transfer(self._transfer_where(integration_event_uid=event_uid))

    def find_transfer_by_out_txn(self, txn_id):
        return self._transfer(self._transfer_where(transfer_out_cash_transaction_id=txn_id))

    def find_transfer_by_in_txn(self, txn_id):
        return self._transfer(self._transfer_where(transfer_in_cash_transaction_id=txn_id))

    def insert_transfer(self, values):
        return self._insert("cash_transit_transfers", values)

    def _update_transfer(self, transfer_id, status_in, **changes):
        r = self._get("cash_transit_transfers", transfer_id)
        if r is None or r["status"] not in status_in:
            return 0
        candidate = {**r, **changes}
        self._check_unique("cash_transit_transfers", candidate, ignore_id=r["id"])
        r.update(changes)
        return 1

    def mark_transfer_in_transit(self, transfer_id):
        return self._update_transfer(transfer_id, ("INITIATED",), status="IN_TRANSIT")

    def mark_transfer_received(self, transfer_id, in_txn_id):
        r = self._get("cash_transit_transfers", transfer_id)
        if r is None or r.get("transfer_in_cash_transaction_id"):
            return 0
        return self._update_transfer(
            transfer_id, ("IN_TRANSIT",), status="RECEIVED", transfer_in_cash_transaction_id=in_txn_id
        )

    def mark_transfer_canceled(self, transfer_id, reason):
        return self._update_transfer(transfer_id, ("INITIATED",), status="CANCELED", cancel_reason=reason)

    def mark_transfer_reversed(self, transfer_id, reason):
        return self._update_transfer(transfer_id, ("IN_TRANSIT", "RECEIVED"), status="REVERSED", reverse_reason=reason)

    # cari

    def find_counterparty(self, counterparty_id):
        return self._get("cari_counterparties", counterparty_id)

    def find_settlement_batch(self, batch_id):
        return self._get("cari_settlement_batches", batch_id)

    def find_settlement_batch_by_cash_txn(self, txn_id):
        for r in self._mine("cari_settlement_batches"):
            if r.get("cash_transaction_id") == txn_id:
                return r
        return None

    def insert_settlement_batch(self, values):
        return self._insert("cari_settlement_batches", values)

    def insert_settlement_allocation(self, batch_id, open_item_id, amount_txn):
        return self._insert(
            "cari_settlement_allocations",
            {"settlement_batch_id": batch_id, "open_item_id": open_item_id, "amount_txn": amount_txn},
        )

    def list_settlement_allocations(self, batch_id):
        return [r for r in self._mine("cari_settlement_allocations") if r["settlement_batch_id"] == batch_id]

    def link_settlement_batch(self, batch_id, txn_id):
        r = self._get("cari_settlement_batches", batch_id)
        if r is None or r.get("cash_transaction_id"):
            return 0
        self._check_unique("cari_settlement_batches", {**r, "cash_transaction_id": txn_id}, ignore_id=r["id"])
        r["cash_transaction_id"] = txn_id
        return 1

    def find_open_item(self, open_item_id, for_update=False):
        return self._get("cari_open_items", open_item_id)

    def _open_items(self, **where):
        rows = [
            r
            for r in self._mine("cari_open_items")
            if r.get("status", "OPEN") == "OPEN"
            and r["residual_amount_txn"] > 0
            and all(r.get(k) == v for k, v in where.items())
        ]
        return sorted(rows, key=lambda r: (r["due_date"], r["id"]))

    def find_open_items_by_document(self, document_id):
        return self._open_items(cari_document_id=document_id)

    def find_open_items_for_counterparty(self, legal_entity_id, counterparty_id, direction):
        return self._open_items(legal_entity_id=legal_entity_id, counterparty_id=counterparty_id, direction=direction)

    def decrement_open_item_residual(self, open_item_id, amount):
        r = self._get("cari_open_items", open_item_id)
        if r is None or r["residual_amount_txn"] < amount:
            return 0
        r["residual_amount_txn"] = r["residual_amount_txn"] - amount
        if r["residual_amount_txn"] == 0:
            r["status"] = "SETTLED"
        return 1

    def _unapplied(self, r):
        return UnappliedCash.from_row(r) if r else None

    def find_unapplied_cash(self, unapplied_id):
        return self._unapplied(self._get("cari_unapplied_cash", unapplied_id))

    @_finder("find_unapplied_cash_by_cash_txn")
    def find_unapplied_cash_by_cash_txn(self, txn_id):
        for r in self._mine("cari_unapplied_cash"):
            if r.get("cash_transaction_id") == txn_id:
                return self._unapplied(r)
        return None

    @_finder("find_unapplied_cash_by_event_uid")
    def find_unapplied_cash_by_event_uid(self, event_uid):
        for r in self._mine("cari_unapplied_cash"):
            if r.get("integration_event_uid") == event_uid:
                return self._unapplied(r)
        return None

    def insert_unapplied_cash(self, values):
        return self._insert("cari_unapplied_cash", values)

    def apply_unapplied_cash(self, unapplied_id, amount):
        r = self._get("cari_unapplied_cash", unapplied_id)
        if r is None or r["status"] not in ("UNAPPLIED", "PARTIALLY_APPLIED") or r["residual_amount_txn"] < amount:
            return 0
        r["residual_amount_txn"] = r["residual_amount_txn"] - amount
        r["status"] = "FULLY_APPLIED" if r["residual_amount_txn"] == 0 else "PARTIALLY_APPLIED"
        return 1

    def link_unapplied_cash(self, unapplied_id, txn_id):
        r = self._get("cari_unapplied_cash", unapplied_id)
        if r is None or r.get("cash_transaction_id"):
            return 0
        self._check_unique("cari_unapplied_cash", {**r, "cash_transaction_id": txn_id}, ignore_id=r["id"])
        r["cash_transaction_id"] = txn_id
        return 1

    # journals / audit

    def insert_journal(self, values):
        return self._insert("gl_journals", values)

    def insert_journal_lines(self, journal_id, lines):
        for ln in lines:
            self._insert(
                "gl_entries",
                {
                    "journal_id": journal_id,
                    "account_id": ln.account_id,
                    "debit": ln.debit,
                    "credit": ln.credit,
                    "memo": ln.memo,
                    "operating_unit_id": ln.operating_unit_id,
                    "subledger_reference_no": ln.subledger_reference_no,
                },
            )

    def insert_audit_log(self, user_id, action, entity_type, entity_id, details):
        self._insert(
            "audit_logs",
            {"user_id": user_id, "action": action, "entity_type": entity_type, "entity_id": entity_id, "details": details},
        )

    # lists

    def _filtered(self, rows, scope, filters, mapping, le_attr, ou_attr):
        out = []
        for row in rows:
            if not scope.covers("legal_entity", getattr(row, le_attr)):
                continue
            ou = getattr(row, ou_attr)
            if ou and not scope.covers("operating_unit", ou):
                continue
            keep = True
            for key, attr in mapping.items():
                v = filters.get(key)
                if v is None:
                    continue
                have = getattr(row, attr)
                if key.endswith("_from"):
                    keep = have >= v
                elif key.endswith("_to"):
                    keep = have <= v
                else:
                    keep = have == v
                if not keep:
                    break
            if keep:
                out.append(row)
        return out

    def list_transactions(self, scope, filters, limit, offset):
        rows = [CashTransaction.from_row(self._txn_row(r)) for r in self._mine("cash_transactions")]
        rows = self._filtered(
            rows,
            scope,
            filters,
            {
                "register_id": "register_id",
                "session_id": "session_id",
                "txn_type": "txn_type",
                "status": "status",
                "legal_entity_id": "legal_entity_id",
                "book_date_from": "book_date",
                "book_date_to": "book_date",
            },
            "legal_entity_id",
            "operating_unit_id",
        )
        rows.sort(key=lambda t: (t.book_date, t.txn_no), reverse=True)
        return rows[offset: offset + limit], len(rows)

    def list_transfers(self, scope, filters, limit, offset):
        rows = [CashTransitTransfer.from_row(r) for r in self._mine("cash_transit_transfers")]
        rows = self._filtered(
            rows,
            scope,
            filters,
            {
                "legal_entity_id": "legal_entity_id",
                "source_register_id": "source_register_id",
                "target_register_id": "target_register_id",
                "status": "status",
            },
            "legal_entity_id",
            "source_operating_unit_id",
        )
        return rows[offset: offset + limit], len(rows)


@dataclass
class World:
    store: MemoryStore
    le: str
    le_other: str
    ou1: str
    ou2: str
    ou3: str
    cash_acc_a: str
    cash_acc_b: str
    cash_acc_c: str
    cash_acc_d: str
    transit_acc: str
    revenue_acc: str
    bank_acc: str
    reg_a: str
    reg_b: str
    reg_c: str
    reg_d: str
    reg_x: str
    sess_a: str
    sess_b: str
    customer: str
    vendor: str


def seed_world(store: MemoryStore) -> World:
    le = store.put("legal_entities", code="TR01", name="Istanbul Trading")
    le_other = store.put("legal_entities", code="DE01", name="Berlin GmbH")
    ou1, ou2, ou3 = "ou-1", "ou-2", "ou-3"

    def acc(code, legal_entity=le, cash=False):
        return store.put(
            "accounts", code=code, name=code, legal_entity_id=legal_entity, is_active=True,
            allow_posting=True, is_cash_controlled=cash, parent_account_id=None,
        )

    cash_a, cash_b, cash_c, cash_d = acc("100.01", cash=True), acc("100.02", cash=True), acc("100.03", cash=True), acc("100.04", cash=True)
    cash_x = acc("100.99", legal_entity=le_other, cash=True)
    transit = acc("102.00")
    revenue = acc("600.00")
    bank = acc("102.10")

    def reg(code, account, ou, currency="TRY", legal_entity=le, mode="REQUIRED"):
        return store.put(
            "cash_registers", code=code, name=code, legal_entity_id=legal_entity, operating_unit_id=ou,
            account_id=account, currency_code=currency, status="ACTIVE", session_mode=mode,
            max_txn_amount=Decimal("100000"),
        )

    reg_a = reg("KASA-A", cash_a, ou1)
    reg_b = reg("KASA-B", cash_b, ou2)
    reg_c = reg("KASA-C", cash_c, ou3, currency="USD")
    reg_d = reg("KASA-D", cash_d, ou1)
    reg_x = reg("KASSE-X", cash_x, "ou-9", legal_entity=le_other)

    sess = {}
    for r in (reg_a, reg_b, reg_c, reg_d, reg_x):
        sess[r] = store.put("cash_sessions", cash_register_id=r, status="OPEN")

    customer = store.put("cari_counterparties", legal_entity_id=le, code="C1", name="Customer", is_customer=True, is_vendor=False)
    vendor = store.put("cari_counterparties", legal_entity_id=le, code="V1", name="Vendor", is_customer=False, is_vendor=True)

    return World(
        store=store, le=le, le_other=le_other, ou1=ou1, ou2=ou2, ou3=ou3,
        cash_acc_a=cash_a, cash_acc_b=cash_b, cash_acc_c=cash_c, cash_acc_d=cash_d,
        transit_acc=transit, revenue_acc=revenue, bank_acc=bank,
        reg_a=reg_a, reg_b=reg_b, reg_c=reg_c, reg_d=reg_d, reg_x=reg_x,
        sess_a=sess[reg_a], sess_b=sess[reg_b], customer=customer, vendor=vendor,
    )


class FakeJournalPoster:
    """Records posts; never touches gl tables."""

    def __init__(self):
        self.posted = []
        self.fail_with = None

    def post(self, repo, txn):
        if self.fail_with is not None:
            raise self.fail_with
        jid = f"je-{len(self.posted) + 1}"
        self.posted.append((txn.id, jid))
        return SimpleNamespace(journal_entry_id=jid, line_count=2, total=txn.amount)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def world(store):
    return seed_world(store)


@pytest.fixture
def scope():
    return ScopeContext(user_id="user-1", tenant_id=TENANT, tenant_wide=True)


@pytest.fixture
def txn_service(store):
    from backend.app.cash.transactions import CashTransactionService
    from backend.app.journal_utils import GlJournalPoster

    return CashTransactionService(open_uow=store.uow, journal=GlJournalPoster())


@pytest.fixture
def transit_service(store):
    from backend.app.cash.transit import CashTransitService
    from backend.app.journal_utils import GlJournalPoster

    return CashTransitService(open_uow=store.uow, journal=GlJournalPoster())


@pytest.fixture
def cari_bridge(store):
    from backend.app.cash.cari_bridge import CariApplyBridge

    return CariApplyBridge(open_uow=store.uow)


@pytest.fixture
def new_txn(txn_service, scope, world):
    """Create a DRAFT transaction on register A (or `register=`) with sane defaults."""
    from backend.app.cash.schemas import CashTxnCreateIn

    counter = itertools.count(1)

    def _make(txn_type="RECEIPT", amount="100", register=None, key=None, **extra):
        payload = {
            "register_id": register or world.reg_a,
            "txn_type": txn_type,
            "amount": amount,
            "idempotency_key": key or f"k-{next(counter)}",
        }
        if txn_type in ("RECEIPT", "PAYOUT", "OPENING_FLOAT", "CLOSING_ADJUSTMENT"):
            payload["counter_account_id"] = world.revenue_acc
        elif txn_type in ("DEPOSIT_TO_BANK", "WITHDRAWAL_FROM_BANK"):
            payload["counter_account_id"] = world.bank_acc
        payload.update(extra)
        return txn_service.create(scope, CashTxnCreateIn(**payload)).value

    return _make


@pytest.fixture
def fake_journal():
    return FakeJournalPoster()
