from typing import Optional

from .errors import bad_request, not_found


def assert_account_belongs_to_tenant(repo, account_id: Optional[str], label: str) -> dict:
    """Resolve an account through the tenant-scoped repository or fail with 404."""
    if not account_id:
        raise bad_request(f"{label} is required")
    account = repo.find_account(account_id)
    if not account:
        raise not_found(f"{label} not found for tenant", account_id=account_id)
    return account


def assert_account_in_legal_entity(account: dict, legal_entity_id: str, label: str) -> None:
    le = account.get("legal_entity_id")
    if le is not None and str(le) != str(legal_entity_id):
        raise bad_request(f"{label} must belong to the register legal entity")
