"""
psycopg-backed unit of work for the cash core.

`CashRepository` wraps one cursor inside one DB transaction and is created per
call via `open_cash_uow(tenant_id)`. Every statement is tenant-scoped. Unique
violations surface as `DuplicateKeyError(constraint_name)` so services never
see psycopg error classes.
"""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from psycopg import errors

from ..config import settings
from ..db import get_conn, set_tenant_context
from ..errors import DuplicateKeyError
from ..period_locks import is_period_locked
from .models import (
    CashRegister,
    CashSession,
    CashTransaction,
    CashTransitTransfer,
    UnappliedCash,
    format_txn_no,
)

TXN_COLUMNS = (
    "cash_register_id",
    "cash_session_id",
    "txn_no",
    "txn_type",
    "status",
    "txn_datetime",
    "book_date",
    "amount",
    "currency_code",
    "description",
    "reference_no",
    "counterparty_type",
    "counterparty_id",
    "counter_account_id",
    "counter_cash_register_id",
    "source_module",
    "source_entity_type",
    "source_entity_id",
    "integration_link_status",
    "idempotency_key",
    "integration_event_uid",
    "reversal_of_transaction_id",
    "linked_cari_settlement_batch_id",
    "linked_cari_unapplied_cash_id",
)

TRANSFER_COLUMNS = (
    "legal_entity_id",
    "source_cash_register_id",
    "target_cash_register_id",
    "source_operating_unit_id",
    "target_operating_unit_id",
    "transfer_out_cash_transaction_id",
    "status",
    "amount",
    "currency_code",
    "transit_account_id",
    "idempotency_key",
    "integration_event_uid",
    "note",
)

UNAPPLIED_COLUMNS = (
    "legal_entity_id",
    "counterparty_id",
    "cash_transaction_id",
    "cash_receipt_no",
    "receipt_date",
    "currency_code",
    "amount_txn",
    "residual_amount_txn",
    "status",
    "integration_event_uid",
    "note",
)

_REGISTER_SELECT = """
    SELECT r.id, r.tenant_id, r.legal_entity_id, r.operating_unit_id, r.account_id,
           r.code, r.name, r.currency_code, r.status, r.session_mode, r.max_txn_amount,
           r.variance_gain_account_id, r.variance_loss_account_id,
           le.code AS legal_entity_code,
           a.is_active AS account_is_active,
           a.allow_posting AS account_allow_posting,
           (SELECT COUNT(*) FROM accounts c WHERE c.tenant_id = a.tenant_id AND c.parent_account_id = a.id) AS account_child_count,
           a.is_cash_controlled AS account_is_cash_controlled,
           a.legal_entity_id AS account_legal_entity_id
    FROM cash_registers r
    JOIN legal_entities le ON le.id = r.legal_entity_id
    JOIN accounts a ON a.id = r.account_id AND a.tenant_id = r.tenant_id
"""

_TXN_SELECT = """
    SELECT ct.*,
           cr.legal_entity_id,
           le.code AS legal_entity_code,
           cr.operating_unit_id,
           cr.code AS cash_register_code,
           cr.account_id AS register_account_id,
           cr.status AS register_status,
           cr.session_mode AS register_session_mode,
           cr.variance_gain_account_id AS register_variance_gain_account_id,
           cr.variance_loss_account_id AS register_variance_loss_account_id,
           cs.status AS cash_session_status,
           ccr.legal_entity_id AS counter_cash_register_legal_entity_id,
           ccr.operating_unit_id AS counter_cash_register_operating_unit_id,
           ccr.account_id AS counter_cash_register_account_id,
           ccr.currency_code AS counter_cash_register_currency_code
    FROM cash_transactions ct
    JOIN cash_registers cr ON cr.id = ct.cash_register_id AND cr.tenant_id = ct.tenant_id
    JOIN legal_entities le ON le.id = cr.legal_entity_id
    LEFT JOIN cash_sessions cs ON cs.id = ct.cash_session_id AND cs.tenant_id = ct.tenant_id
    LEFT JOIN cash_registers ccr ON ccr.id = ct.counter_cash_register_id AND ccr.tenant_id = ct.tenant_id
"""


@contextmanager
def _unique_guard():
    try:
        yield
    except errors.UniqueViolation as exc:
        raise DuplicateKeyError(getattr(exc.diag, "constraint_name", None)) from exc


def _lock(for_update: bool, of: str) -> str:
    return f" FOR UPDATE OF {of}" if for_update else ""


class CashRepository:
    def __init__(self, cur, tenant_id: str):
        self.cur = cur
        self.tenant_id = str(tenant_id)

    def _one(self, sql: str, params: Iterable) -> Optional[dict]:
        self.cur.execute(sql, tuple(params))
        return self.cur.fetchone()

    def _all(self, sql: str, params: Iterable) -> list[dict]:
        self.cur.execute(sql, tuple(params))
        return self.cur.fetchall()

    def _insert(self, table: str, columns: tuple, values: dict) -> str:
        cols = ", ".join(("tenant_id",) + columns)
        ph = ", ".join(["%s"] * (len(columns) + 1))
        params = [self.tenant_id] + [values.get(c) for c in columns]
        with _unique_guard():
            row = self._one(f"INSERT INTO {table} ({cols}) VALUES ({ph}) RETURNING id", params)
        return str(row["id"])

    # Registers / sessions

    def find_register(self, register_id: str) -> Optional[CashRegister]:
        row = self._one(
            _REGISTER_SELECT + " WHERE r.tenant_id = %s AND r.id = %s",
            (self.tenant_id, register_id),
        )
        return CashRegister.from_row(row) if row else None

    def find_session(self, session_id: str) -> Optional[CashSession]:
        row = self._one(
            "SELECT id, tenant_id, cash_register_id, status FROM cash_sessions WHERE tenant_id = %s AND id = %s",
            (self.tenant_id, session_id),
        )
        return CashSession.from_row(row) if row else None

    def find_open_session(self, register_id: str) -> Optional[CashSession]:
        row = self._one(
            """
            SELECT id, tenant_id, cash_register_id, status
            FROM cash_sessions
            WHERE tenant_id = %s AND cash_register_id = %s AND status = 'OPEN'
            ORDER BY opened_at DESC
            LIMIT 1
            """,
            (self.tenant_id, register_id),
        )
        return CashSession.from_row(row) if row else None

    def find_account(self, account_id: str) -> Optional[dict]:
        return self._one(
            """
            SELECT id, legal_entity_id, is_active, allow_posting, is_cash_controlled
            FROM accounts
            WHERE tenant_id = %s AND id = %s
            """,
            (self.tenant_id, account_id),
        )

    def is_period_locked(self, legal_entity_id: str, posting_date: date) -> bool:
        return is_period_locked(self.cur, self.tenant_id, legal_entity_id, posting_date)

    # Cash transactions

    def _find_txn(self, where: str, params: tuple, for_update: bool) -> Optional[CashTransaction]:
        row = self._one(
            _TXN_SELECT + f" WHERE ct.tenant_id = %s AND {where}" + _lock(for_update, "ct"),
            (self.tenant_id,) + params,
        )
        return CashTransaction.from_row(row) if row else None

    def find_transaction(self, txn_id: str, for_update: bool = False) -> Optional[CashTransaction]:
        return self._find_txn("ct.id = %s", (txn_id,), for_update)

    def find_transaction_by_idempotency(
        self, register_id: str, idempotency_key: str, for_update: bool = False
    ) -> Optional[CashTransaction]:
        return self._find_txn(
            "ct.cash_register_id = %s AND ct.idempotency_key = %s",
            (register_id, idempotency_key),
            for_update,
        )

    def find_transaction_by_event_uid(self, event_uid: str) -> Optional[CashTransaction]:
        return self._find_txn("ct.integration_event_uid = %s", (event_uid,), False)

    def find_transaction_by_reversal_of(self, txn_id: str) -> Optional[CashTransaction]:
        return self._find_txn("ct.reversal_of_transaction_id = %s", (txn_id,), False)

    def next_txn_no(self, legal_entity_id: str, legal_entity_code: Optional[str], book_date: date) -> str:
        # Same transaction as the insert: numbers may gap on rollback, never repeat.
        row = self._one(
            """
            INSERT INTO cash_txn_sequences (tenant_id, legal_entity_id, fiscal_year, last_no)
            VALUES (%s, %s, %s, 1)
            ON CONFLICT (tenant_id, legal_entity_id, fiscal_year)
            DO UPDATE SET last_no = cash_txn_sequences.last_no + 1
            RETURNING last_no
            """,
            (self.tenant_id, legal_entity_id, book_date.year),
        )
        return format_txn_no(settings.txn_no_prefix, legal_entity_code, book_date, row["last_no"])

    def insert_transaction(self, values: dict) -> str:
        return self._insert("cash_transactions", TXN_COLUMNS, values)

    def _update_txn(self, set_sql: str, params: tuple, txn_id: str, status_in: tuple) -> int:
        self.cur.execute(
            f"""
            UPDATE cash_transactions
            SET {set_sql}, updated_at = now()
            WHERE tenant_id = %s AND id = %s AND status = ANY(%s)
            """,
            params + (self.tenant_id, txn_id, list(status_in)),
        )
        return self.cur.rowcount

    def mark_transaction_submitted(self, txn_id: str) -> int:
        return self._update_txn("status = 'SUBMITTED', submitted_at = now()", (), txn_id, ("DRAFT",))

    def mark_transaction_approved(self, txn_id: str) -> int:
        return self._update_txn("status = 'APPROVED', approved_at = now()", (), txn_id, ("SUBMITTED",))

    def mark_transaction_posted(
        self,
        txn_id: str,
        journal_entry_id: str,
        override_cash_control: bool = False,
        override_reason: Optional[str] = None,
    ) -> int:
        return self._update_txn(
            """
            status = 'POSTED', posted_at = now(), posted_journal_entry_id = %s,
            override_cash_control = %s, override_reason = %s
            """,
            (journal_entry_id, override_cash_control, override_reason),
            txn_id,
            ("DRAFT", "SUBMITTED", "APPROVED"),
        )

    def mark_transaction_canceled(self, txn_id: str, reason: Optional[str]) -> int:
        return self._update_txn(
            "status = 'CANCELED', canceled_at = now(), cancel_reason = %s",
            (reason,),
            txn_id,
            ("DRAFT", "SUBMITTED"),
        )

    def mark_transaction_reversed(self, txn_id: str) -> int:
        return self._update_txn("status = 'REVERSED', reversed_at = now()", (), txn_id, ("POSTED",))

    def link_transaction_to_transfer(self, txn_id: str, transfer_id: str) -> int:
        self.cur.execute(
            """
            UPDATE cash_transactions
            SET source_entity_id = %s, integration_link_status = 'LINKED', updated_at = now()
            WHERE tenant_id = %s AND id = %s
            """,
            (transfer_id, self.tenant_id, txn_id),
        )
        return self.cur.rowcount

    def set_transaction_cari_links(
        self, txn_id: str, settlement_batch_id: Optional[str] = None, unapplied_cash_id: Optional[str] = None
    ) -> int:
        self.cur.execute(
            """
            UPDATE cash_transactions
            SET linked_cari_settlement_batch_id = COALESCE(%s, linked_cari_settlement_batch_id),
                linked_cari_unapplied_cash_id = COALESCE(%s, linked_cari_unapplied_cash_id),
                integration_link_status = 'LINKED',
                updated_at = now()
            WHERE tenant_id = %s AND id = %s
            """,
            (settlement_batch_id, unapplied_cash_id, self.tenant_id, txn_id),
        )
        return self.cur.rowcount

    # Transit transfers

    def _find_transfer(self, where: str, params: tuple, for_update: bool) -> Optional[CashTransitTransfer]:
        row = self._one(
            f"SELECT t.* FROM cash_transit_transfers t WHERE t.tenant_id = %s AND {where}"
            + _lock(for_update, "t"),
            (self.tenant_id,) + params,
        )
        return CashTransitTransfer.from_row(row) if row else None

    def find_transfer(self, transfer_id: str, for_update: bool = False) -> Optional[CashTransitTransfer]:
        return self._find_transfer("t.id = %s", (transfer_id,), for_update)

    def find_transfer_by_idempotency(
        self, source_register_id: str, idempotency_key: str, for_update: bool = False
    ) -> Optional[CashTransitTransfer]:
        return self._find_transfer(
            "t.source_cash_register_id = %s AND t.idempotency_key = %s",
            (source_register_id, idempotency_key),
            for_update,
        )

    def find_transfer_by_event_uid(self, event_uid: str) -> Optional[CashTransitTransfer]:
        return self._find_transfer("t.integration_event_uid = %s", (event_uid,), False)

    def find_transfer_by_out_txn(self, txn_id: str) -> Optional[CashTransitTransfer]:
        return self._find_transfer("t.transfer_out_cash_transaction_id = %s", (txn_id,), False)

    def find_transfer_by_in_txn(self, txn_id: str) -> Optional[CashTransitTransfer]:
        return self._find_transfer("t.transfer_in_cash_transaction_id = %s", (txn_id,), False)

    def insert_transfer(self, values: dict) -> str:
        return self._insert("cash_transit_transfers", TRANSFER_COLUMNS, values)

    def _update_transfer(self, set_sql: str, params: tuple, transfer_id: str, status_in: tuple) -> int:
        self.cur.execute(
            f"""
            UPDATE cash_transit_transfers
            SET {set_sql}
            WHERE tenant_id = %s AND id = %s AND status = ANY(%s)
            """,
            params + (self.tenant_id, transfer_id, list(status_in)),
        )
        return self.cur.rowcount

    def mark_transfer_in_transit(self, transfer_id: str) -> int:
        return self._update_transfer("status = 'IN_TRANSIT', in_transit_at = now()", (), transfer_id, ("INITIATED",))

    def mark_transfer_received(self, transfer_id: str, in_txn_id: str) -> int:
        with _unique_guard():
            self.cur.execute(
                """
                UPDATE cash_transit_transfers
                SET status = 'RECEIVED', received_at = now(), transfer_in_cash_transaction_id = %s
                WHERE tenant_id = %s AND id = %s
                  AND status = 'IN_TRANSIT'
                  AND transfer_in_cash_transaction_id IS NULL
                """,
                (in_txn_id, self.tenant_id, transfer_id),
            )
        return self.cur.rowcount

    def mark_transfer_canceled(self, transfer_id: str, reason: Optional[str]) -> int:
        return self._update_transfer(
            "status = 'CANCELED', canceled_at = now(), cancel_reason = %s",
            (reason,),
            transfer_id,
            ("INITIATED",),
        )

    def mark_transfer_reversed(self, transfer_id: str, reason: Optional[str]) -> int:
        return self._update_transfer(
            "status = 'REVERSED', reversed_at = now(), reverse_reason = %s",
            (reason,),
            transfer_id,
            ("IN_TRANSIT", "RECEIVED"),
        )

    # Cari

    def find_counterparty(self, counterparty_id: str) -> Optional[dict]:
        return self._one(
            """
            SELECT id, legal_entity_id, is_customer, is_vendor
            FROM cari_counterparties
            WHERE tenant_id = %s AND id = %s
            """,
            (self.tenant_id, counterparty_id),
        )

    def find_settlement_batch(self, batch_id: str) -> Optional[dict]:
        return self._one(
            "SELECT * FROM cari_settlement_batches WHERE tenant_id = %s AND id = %s",
            (self.tenant_id, batch_id),
        )

    def find_settlement_batch_by_cash_txn(self, txn_id: str) -> Optional[dict]:
        return self._one(
            "SELECT * FROM cari_settlement_batches WHERE tenant_id = %s AND cash_transaction_id = %s",
            (self.tenant_id, txn_id),
        )

    def insert_settlement_batch(self, values: dict) -> str:
        return self._insert(
            "cari_settlement_batches",
            (
                "legal_entity_id",
                "counterparty_id",
                "direction",
                "cash_transaction_id",
                "settlement_date",
                "currency_code",
                "total_allocated_txn",
                "idempotency_key",
                "integration_event_uid",
            ),
            values,
        )

    def insert_settlement_allocation(self, batch_id: str, open_item_id: str, amount_txn: Decimal) -> str:
        return self._insert(
            "cari_settlement_allocations",
            ("settlement_batch_id", "open_item_id", "amount_txn"),
            {"settlement_batch_id": batch_id, "open_item_id": open_item_id, "amount_txn": amount_txn},
        )

    def list_settlement_allocations(self, batch_id: str) -> list[dict]:
        return self._all(
            """
            SELECT open_item_id, amount_txn
            FROM cari_settlement_allocations
            WHERE tenant_id = %s AND settlement_batch_id = %s
            ORDER BY id
            """,
            (self.tenant_id, batch_id),
        )

    def link_settlement_batch(self, batch_id: str, txn_id: str) -> int:
        with _unique_guard():
            self.cur.execute(
                """
                UPDATE cari_settlement_batches
                SET cash_transaction_id = %s
                WHERE tenant_id = %s AND id = %s AND cash_transaction_id IS NULL
                """,
                (txn_id, self.tenant_id, batch_id),
            )
        return self.cur.rowcount

    def find_open_item(self, open_item_id: str, for_update: bool = False) -> Optional[dict]:
        return self._one(
            "SELECT * FROM cari_open_items WHERE tenant_id = %s AND id = %s" + (" FOR UPDATE" if for_update else ""),
            (self.tenant_id, open_item_id),
        )

    def find_open_items_by_document(self, document_id: str) -> list[dict]:
        return self._all(
            """
            SELECT *
            FROM cari_open_items
            WHERE tenant_id = %s AND cari_document_id = %s
              AND status = 'OPEN' AND residual_amount_txn > 0
            ORDER BY due_date, id
            FOR UPDATE
            """,
            (self.tenant_id, document_id),
        )

    def find_open_items_for_counterparty(self, legal_entity_id: str, counterparty_id: str, direction: str) -> list[dict]:
        return self._all(
            """
            SELECT *
            FROM cari_open_items
            WHERE tenant_id = %s AND legal_entity_id = %s AND counterparty_id = %s
              AND direction = %s AND status = 'OPEN' AND residual_amount_txn > 0
            ORDER BY due_date, id
            FOR UPDATE
            """,
            (self.tenant_id, legal_entity_id, counterparty_id, direction),
        )

    def decrement_open_item_residual(self, open_item_id: str, amount: Decimal) -> int:
        self.cur.execute(
            """
            UPDATE cari_open_items
            SET residual_amount_txn = residual_amount_txn - %s,
                status = CASE WHEN residual_amount_txn - %s = 0 THEN 'SETTLED' ELSE status END
            WHERE tenant_id = %s AND id = %s AND residual_amount_txn >= %s
            """,
            (amount, amount, self.tenant_id, open_item_id, amount),
        )
        return self.cur.rowcount

    def _find_unapplied(self, where: str, params: tuple) -> Optional[UnappliedCash]:
        row = self._one(
            f"SELECT * FROM cari_unapplied_cash WHERE tenant_id = %s AND {where}",
            (self.tenant_id,) + params,
        )
        return UnappliedCash.from_row(row) if row else None

    def find_unapplied_cash(self, unapplied_id: str) -> Optional[UnappliedCash]:
        return self._find_unapplied("id = %s", (unapplied_id,))

    def find_unapplied_cash_by_cash_txn(self, txn_id: str) -> Optional[UnappliedCash]:
        return self._find_unapplied("cash_transaction_id = %s", (txn_id,))

    def find_unapplied_cash_by_event_uid(self, event_uid: str) -> Optional[UnappliedCash]:
        return self._find_unapplied("integration_event_uid = %s", (event_uid,))

    def insert_unapplied_cash(self, values: dict) -> str:
        return self._insert("cari_unapplied_cash", UNAPPLIED_COLUMNS, values)

    def apply_unapplied_cash(self, unapplied_id: str, amount: Decimal) -> int:
        self.cur.execute(
            """
            UPDATE cari_unapplied_cash
            SET residual_amount_txn = residual_amount_txn - %s,
                status = CASE WHEN residual_amount_txn - %s = 0 THEN 'FULLY_APPLIED' ELSE 'PARTIALLY_APPLIED' END
            WHERE tenant_id = %s AND id = %s
              AND status IN ('UNAPPLIED', 'PARTIALLY_APPLIED')
              AND residual_amount_txn >= %s
            """,
            (amount, amount, self.tenant_id, unapplied_id, amount),
        )
        return self.cur.rowcount

    def link_unapplied_cash(self, unapplied_id: str, txn_id: str) -> int:
        with _unique_guard():
            self.cur.execute(
                """
                UPDATE cari_unapplied_cash
                SET cash_transaction_id = %s
                WHERE tenant_id = %s AND id = %s AND cash_transaction_id IS NULL
                """,
                (txn_id, self.tenant_id, unapplied_id),
            )
        return self.cur.rowcount

    # Journals

    def insert_journal(self, values: dict) -> str:
        return self._insert(
            "gl_journals",
            ("legal_entity_id", "journal_no", "source_type", "source_id", "journal_date", "currency_code", "memo"),
            values,
        )

    def insert_journal_lines(self, journal_id: str, lines: list) -> None:
        for ln in lines:
            self.cur.execute(
                """
                INSERT INTO gl_entries
                  (id, tenant_id, journal_id, account_id, debit, credit, memo, operating_unit_id, subledger_reference_no)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    self.tenant_id,
                    journal_id,
                    ln.account_id,
                    ln.debit,
                    ln.credit,
                    ln.memo,
                    ln.operating_unit_id,
                    ln.subledger_reference_no,
                ),
            )

    # Audit

    def insert_audit_log(self, user_id: Optional[str], action: str, entity_type: str, entity_id: str, details: dict) -> None:
        self.cur.execute(
            """
            INSERT INTO audit_logs (id, tenant_id, user_id, action, entity_type, entity_id, details)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
            """,
            (self.tenant_id, user_id, action, entity_type, entity_id, json.dumps(details, default=str)),
        )

    # Lists

    def _where(self, scope, filters: dict, mapping: dict, le_col: str, ou_cols: tuple) -> tuple[str, list]:
        params: list = [self.tenant_id]
        clauses = [mapping["__tenant__"] + " = %s"]
        clauses.append(scope.build_scope_filter("legal_entity", le_col, params))
        for ou_col in ou_cols:
            ou_params: list = []
            pred = scope.build_scope_filter("operating_unit", ou_col, ou_params)
            clauses.append(f"({ou_col} IS NULL OR {pred})")
            params.extend(ou_params)
        for key, col in mapping.items():
            if key.startswith("__"):
                continue
            v = filters.get(key)
            if v is None:
                continue
            if key.endswith("_from"):
                clauses.append(f"{col} >= %s")
            elif key.endswith("_to"):
                clauses.append(f"{col} <= %s")
            else:
                clauses.append(f"{col} = %s")
            params.append(v.value if hasattr(v, "value") else v)
        return " AND ".join(clauses), params

    def list_transactions(self, scope, filters: dict, limit: int, offset: int) -> tuple[list[CashTransaction], int]:
        where, params = self._where(
            scope,
            filters,
            {
                "__tenant__": "ct.tenant_id",
                "register_id": "ct.cash_register_id",
                "session_id": "ct.cash_session_id",
                "txn_type": "ct.txn_type",
                "status": "ct.status",
                "legal_entity_id": "cr.legal_entity_id",
                "book_date_from": "ct.book_date",
                "book_date_to": "ct.book_date",
            },
            "cr.legal_entity_id",
            ("cr.operating_unit_id",),
        )
        total = self._one(
            "SELECT COUNT(*) AS total FROM cash_transactions ct "
            "JOIN cash_registers cr ON cr.id = ct.cash_register_id AND cr.tenant_id = ct.tenant_id "
            f"WHERE {where}",
            params,
        )["total"]
        rows = self._all(
            _TXN_SELECT + f" WHERE {where} ORDER BY ct.book_date DESC, ct.created_at DESC, ct.id DESC LIMIT %s OFFSET %s",
            params + [limit, offset],
        )
        return [CashTransaction.from_row(r) for r in rows], int(total)

    def list_transfers(self, scope, filters: dict, limit: int, offset: int) -> tuple[list[CashTransitTransfer], int]:
        where, params = self._where(
            scope,
            filters,
            {
                "__tenant__": "t.tenant_id",
                "legal_entity_id": "t.legal_entity_id",
                "source_register_id": "t.source_cash_register_id",
                "target_register_id": "t.target_cash_register_id",
                "status": "t.status",
            },
            "t.legal_entity_id",
            ("t.source_operating_unit_id",),
        )
        total = self._one(f"SELECT COUNT(*) AS total FROM cash_transit_transfers t WHERE {where}", params)["total"]
        rows = self._all(
            f"SELECT t.* FROM cash_transit_transfers t WHERE {where} ORDER BY t.initiated_at DESC, t.id DESC LIMIT %s OFFSET %s",
            params + [limit, offset],
        )
        return [CashTransitTransfer.from_row(r) for r in rows], int(total)


@contextmanager
def open_cash_uow(tenant_id: str):
    """One pooled connection, one DB transaction, one repository."""
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                yield CashRepository(cur, tenant_id)
