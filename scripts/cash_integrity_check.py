#!/usr/bin/env python3
"""
Cash ledger integrity checks.

Verifies invariants the services maintain inside a single transaction, so a
finding here means data was changed outside the API or a migration went wrong:
- POSTED/REVERSED cash transactions carry a GL journal
- cash GL journals are balanced
- transit transfer status agrees with its legs
- REVERSED cash transactions have exactly one reversal row
- LINKED cash transactions (other than transit legs and reversals) point at a
  settlement batch or unapplied cash row

Read-only; safe to run against production DBs.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from decimal import Decimal


# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.db import get_conn, set_tenant_context  # noqa: E402


EPS = Decimal("0.000001")


def d(v) -> Decimal:
    return Decimal(str(v or 0))


@dataclass
class Finding:
    kind: str
    id: str
    ref: str
    message: str


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--tenant-id", default=os.environ.get("TENANT_ID") or "", help="Tenant UUID (or env TENANT_ID)")
    p.add_argument("--limit", type=int, default=200, help="Rows per check (default: 200)")
    return p.parse_args(argv)


def check_posted_without_journal(cur, tenant_id: str, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT id, txn_no, status
        FROM cash_transactions
        WHERE tenant_id = %s
          AND status IN ('POSTED', 'REVERSED')
          AND posted_journal_entry_id IS NULL
        ORDER BY book_date DESC, txn_no DESC
        LIMIT %s
        """,
        (tenant_id, limit),
    )
    return [
        Finding(
            kind="cash_txn_missing_journal",
            id=str(r["id"]),
            ref=str(r["txn_no"] or r["id"]),
            message=f"status {r['status']} without posted_journal_entry_id",
        )
        for r in cur.fetchall()
    ]


def check_cash_journal_balance(cur, tenant_id: str, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT j.id,
               j.journal_no,
               j.journal_date,
               COALESCE(SUM(e.debit - e.credit), 0) AS delta
        FROM gl_journals j
        JOIN gl_entries e ON e.journal_id = j.id
        WHERE j.tenant_id = %s
          AND j.source_type = 'cash_transaction'
        GROUP BY j.id, j.journal_no, j.journal_date
        HAVING ABS(COALESCE(SUM(e.debit - e.credit), 0)) > %s
        ORDER BY j.journal_date DESC, j.journal_no DESC
        LIMIT %s
        """,
        (tenant_id, EPS, limit),
    )
    return [
        Finding(
            kind="gl_unbalanced",
            id=str(r["id"]),
            ref=str(r["journal_no"] or r["id"]),
            message=f"unbalanced: delta={d(r['delta'])} on {r['journal_date']}",
        )
        for r in cur.fetchall()
    ]


def check_transit_legs(cur, tenant_id: str, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT t.id,
               t.status,
               o.txn_no AS out_txn_no,
               o.status AS out_status,
               t.transfer_in_cash_transaction_id AS in_id,
               i.status AS in_status
        FROM cash_transit_transfers t
        JOIN cash_transactions o ON o.id = t.transfer_out_cash_transaction_id
        LEFT JOIN cash_transactions i ON i.id = t.transfer_in_cash_transaction_id
        WHERE t.tenant_id = %s
          AND (
            (t.status = 'INITIATED' AND (o.status <> 'DRAFT' OR t.transfer_in_cash_transaction_id IS NOT NULL))
            OR (t.status = 'IN_TRANSIT' AND (o.status <> 'POSTED' OR t.transfer_in_cash_transaction_id IS NOT NULL))
            OR (t.status = 'RECEIVED' AND (o.status <> 'POSTED' OR i.status IS DISTINCT FROM 'POSTED'))
            OR (t.status = 'CANCELED' AND o.status <> 'CANCELED')
            OR (t.status = 'REVERSED' AND o.status <> 'REVERSED' AND i.status IS DISTINCT FROM 'REVERSED')
          )
        ORDER BY t.initiated_at DESC
        LIMIT %s
        """,
        (tenant_id, limit),
    )
    out: list[Finding] = []
    for r in cur.fetchall():
        legs = f"out={r['out_status']}"
        if r["in_id"]:
            legs += f" in={r['in_status']}"
        out.append(
            Finding(
                kind="transit_leg_mismatch",
                id=str(r["id"]),
                ref=str(r["out_txn_no"] or r["id"]),
                message=f"transfer {r['status']} with {legs}",
            )
        )
    return out


def check_reversals(cur, tenant_id: str, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT ct.id, ct.txn_no, COUNT(rv.id) AS reversal_count
        FROM cash_transactions ct
        LEFT JOIN cash_transactions rv
          ON rv.tenant_id = ct.tenant_id
         AND rv.reversal_of_transaction_id = ct.id
        WHERE ct.tenant_id = %s
          AND ct.status = 'REVERSED'
        GROUP BY ct.id, ct.txn_no
        HAVING COUNT(rv.id) <> 1
        LIMIT %s
        """,
        (tenant_id, limit),
    )
    return [
        Finding(
            kind="cash_txn_reversal_count",
            id=str(r["id"]),
            ref=str(r["txn_no"] or r["id"]),
            message=f"REVERSED with {int(r['reversal_count'] or 0)} reversal row(s)",
        )
        for r in cur.fetchall()
    ]


def check_cari_links(cur, tenant_id: str, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT id, txn_no
        FROM cash_transactions
        WHERE tenant_id = %s
          AND integration_link_status = 'LINKED'
          AND reversal_of_transaction_id IS NULL
          AND source_entity_type IS DISTINCT FROM 'cash_transit_transfer'
          AND linked_cari_settlement_batch_id IS NULL
          AND linked_cari_unapplied_cash_id IS NULL
        LIMIT %s
        """,
        (tenant_id, limit),
    )
    return [
        Finding(
            kind="cash_txn_dangling_cari_link",
            id=str(r["id"]),
            ref=str(r["txn_no"] or r["id"]),
            message="LINKED without settlement batch or unapplied cash",
        )
        for r in cur.fetchall()
    ]


CHECKS = (
    check_posted_without_journal,
    check_cash_journal_balance,
    check_transit_legs,
    check_reversals,
    check_cari_links,
)


def run_checks(cur, tenant_id: str, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    for check in CHECKS:
        findings.extend(check(cur, tenant_id, limit))
    return findings


def main(argv=None) -> int:
    args = _parse_args(argv)
    tenant_id = (args.tenant_id or "").strip()
    if not tenant_id:
        print("Missing --tenant-id (or env TENANT_ID).", file=sys.stderr)
        return 2
    limit = max(1, min(int(args.limit or 200), 5000))

    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            findings = run_checks(cur, tenant_id, limit)

    if not findings:
        print("OK: no integrity issues found.")
        return 0

    print(f"Found {len(findings)} issue(s):")
    for f in findings[:200]:
        print(f"- {f.kind}: {f.ref} ({f.id}) -> {f.message}")
    if len(findings) > 200:
        print(f"... plus {len(findings) - 200} more")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
