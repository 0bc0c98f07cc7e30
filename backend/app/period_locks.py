from datetime import date

from .errors import bad_request


def is_period_locked(cur, tenant_id: str, legal_entity_id: str, posting_date: date) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM accounting_period_locks
        WHERE tenant_id = %s
          AND legal_entity_id = %s
          AND locked = true
          AND %s BETWEEN start_date AND end_date
        LIMIT 1
        """,
        (tenant_id, legal_entity_id, posting_date),
    )
    return cur.fetchone() is not None


def assert_period_open(repo, legal_entity_id: str, posting_date: date):
    if repo.is_period_locked(legal_entity_id, posting_date):
        raise bad_request(
            f"accounting period is locked for date {posting_date.isoformat()}",
            legal_entity_id=legal_entity_id,
        )
