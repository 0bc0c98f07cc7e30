from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from .cash.models import CashTransaction, TxnType, q6
from .errors import bad_request
from .period_locks import assert_period_open

SUBLEDGER_PREFIX = "CASH_TXN:"
JOURNAL_NO_MAX_LEN = 40


@dataclass(frozen=True)
class JournalLine:
    account_id: str
    debit: Decimal
    credit: Decimal
    memo: str
    operating_unit_id: Optional[str] = None
    subledger_reference_no: Optional[str] = None

    def inverted(self) -> "JournalLine":
        return JournalLine(
            account_id=self.account_id,
            debit=self.credit,
            credit=self.debit,
            memo=self.memo,
            operating_unit_id=self.operating_unit_id,
            subledger_reference_no=self.subledger_reference_no,
        )


@dataclass(frozen=True)
class JournalPosting:
    journal_entry_id: str
    line_count: int
    total: Decimal


class JournalPoster(Protocol):
    def post(self, repo, txn: CashTransaction) -> JournalPosting: ...


def _require_account(account_id: Optional[str], label: str) -> str:
    if not account_id:
        raise bad_request(f"{label} is required for posting")
    return account_id


def _pair(debit_account: str, credit_account: str, amount: Decimal, memo: str, ref: str,
          debit_ou: Optional[str], credit_ou: Optional[str]) -> list[JournalLine]:
    zero = q6(0)
    return [
        JournalLine(debit_account, amount, zero, memo, debit_ou, ref),
        JournalLine(credit_account, zero, amount, memo, credit_ou, ref),
    ]


def transfer_posting_mode(txn: CashTransaction) -> str:
    """
    DIRECT when both registers sit in one operating unit, TRANSIT otherwise.
    Cross-unit legs are only postable when they belong to a transit transfer.
    """
    if not txn.counter_register_legal_entity_id or txn.counter_register_legal_entity_id != txn.legal_entity_id:
        raise bad_request("Direct transfer is only supported within the same legal entity")
    if (
        txn.counter_register_currency_code
        and txn.counter_register_currency_code != txn.currency_code
    ):
        raise bad_request("Transfer register currencies must match")
    if txn.operating_unit_id == txn.counter_register_operating_unit_id:
        return "DIRECT"
    if not txn.is_transit_linked:
        raise bad_request("Cross-operating-unit transfer requires the cash transit workflow")
    return "TRANSIT"


def build_cash_posting_lines(txn: CashTransaction) -> list[JournalLine]:
    amount = q6(txn.amount)
    if amount <= 0:
        raise bad_request("Cash transaction amount must be > 0 for posting")

    register_acc = _require_account(txn.register_account_id, "register account")
    memo = (txn.description or "").strip()[:255] or f"Cash {txn.txn_type.value}"
    ref = f"{SUBLEDGER_PREFIX}{txn.id}"
    ou = txn.operating_unit_id
    t = txn.txn_type

    if t in {TxnType.RECEIPT, TxnType.WITHDRAWAL_FROM_BANK, TxnType.OPENING_FLOAT}:
        counter = _require_account(txn.counter_account_id, "counterAccountId")
        lines = _pair(register_acc, counter, amount, memo, ref, ou, ou)
    elif t in {TxnType.PAYOUT, TxnType.DEPOSIT_TO_BANK, TxnType.CLOSING_ADJUSTMENT}:
        counter = _require_account(txn.counter_account_id, "counterAccountId")
        lines = _pair(counter, register_acc, amount, memo, ref, ou, ou)
    elif t == TxnType.VARIANCE:
        counter = _require_account(txn.counter_account_id, "counterAccountId")
        gain = txn.register_variance_gain_account_id
        loss = txn.register_variance_loss_account_id
        if gain and counter == gain:
            over = True
        elif loss and counter == loss:
            over = False
        elif gain or loss:
            raise bad_request(
                "Variance counterAccountId must match register variance gain/loss account configuration"
            )
        else:
            over = False
        # Over: counted cash exceeds expected, so the register is debited.
        if over:
            lines = _pair(register_acc, counter, amount, memo, ref, ou, ou)
        else:
            lines = _pair(counter, register_acc, amount, memo, ref, ou, ou)
    elif t == TxnType.TRANSFER_OUT:
        if transfer_posting_mode(txn) == "DIRECT":
            counter = _require_account(txn.counter_register_account_id, "counterCashRegisterId account")
            lines = _pair(counter, register_acc, amount, memo, ref, txn.counter_register_operating_unit_id, ou)
        else:
            transit = _require_account(txn.counter_account_id, "counterAccountId (cash in transit)")
            lines = _pair(transit, register_acc, amount, memo, ref, ou, ou)
    elif t == TxnType.TRANSFER_IN:
        if transfer_posting_mode(txn) == "DIRECT":
            counter = _require_account(txn.counter_register_account_id, "counterCashRegisterId account")
            lines = _pair(register_acc, counter, amount, memo, ref, ou, txn.counter_register_operating_unit_id)
        else:
            transit = _require_account(txn.counter_account_id, "counterAccountId (cash in transit)")
            lines = _pair(register_acc, transit, amount, memo, ref, ou, ou)
    else:
        raise bad_request(f"Unsupported cash transaction type for posting: {t.value}")

    if txn.is_reversal:
        lines = [ln.inverted() for ln in lines]

    if sum(ln.debit for ln in lines) != sum(ln.credit for ln in lines):
        raise ValueError("cash journal is imbalanced")
    return lines


def journal_no_for(txn: CashTransaction) -> str:
    return f"CASH-{txn.txn_no}"[:JOURNAL_NO_MAX_LEN]


class GlJournalPoster:
    """
    Writes one `gl_journals` header plus its `gl_entries` for a cash transaction.

    Runs on the caller's repository so the journal commits or rolls back together
    with the cash row that references it.
    """

    source_type = "cash_transaction"

    def post(self, repo, txn: CashTransaction) -> JournalPosting:
        if not txn.legal_entity_id:
            raise bad_request("cash transaction has no legal entity for posting")
        assert_period_open(repo, txn.legal_entity_id, txn.book_date)
        lines = build_cash_posting_lines(txn)
        journal_id = repo.insert_journal(
            {
                "journal_no": journal_no_for(txn),
                "legal_entity_id": txn.legal_entity_id,
                "source_type": self.source_type,
                "source_id": txn.id,
                "journal_date": txn.book_date,
                "currency_code": txn.currency_code,
                "memo": lines[0].memo,
            }
        )
        repo.insert_journal_lines(journal_id, lines)
        return JournalPosting(
            journal_entry_id=journal_id,
            line_count=len(lines),
            total=sum((ln.debit for ln in lines), Decimal("0")),
        )
