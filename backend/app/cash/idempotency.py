"""
Idempotent create-or-replay for cash operations.

Two callers racing on one key both get the same row: the loser's insert hits
a unique constraint, its transaction rolls back, and the winner's row is read
back in a fresh transaction and returned as a replay.
"""
from __future__ import annotations

from typing import Callable, ContextManager, Optional, TypeVar

from ..config import settings
from ..errors import DuplicateKeyError, bad_request
from ..jsonlog import json_log
from .models import Outcome

T = TypeVar("T")

UowFactory = Callable[[str], ContextManager]


def derive_key(prefix: str, raw: Optional[str]) -> str:
    """`PREFIX:raw`, truncated to the key column width. Stable for a given input."""
    s = str(raw or "").strip()
    if not s:
        raise bad_request(f"{prefix} requires a non-empty idempotency key")
    return f"{prefix}:{s}"[: settings.idempotency_key_max_len]


def find_or_create(
    open_uow: UowFactory,
    tenant_id: str,
    *,
    find_replay: Callable[..., Optional[T]],
    create: Callable[..., T],
    precheck: Optional[Callable[..., Optional[T]]] = None,
    on_duplicate: Optional[Callable[[DuplicateKeyError], None]] = None,
    label: str,
) -> Outcome[T]:
    """
    precheck(repo) runs first in its own short transaction (integration event id).
    find_replay(repo, locked) runs inside the main transaction before `create`,
    and again unlocked after a duplicate-key race to fetch the winner.
    create(repo) may return an Outcome itself when a re-check under its own
    row locks finds the work already done.
    on_duplicate(exc) may raise a user-facing error for constraints that must
    not resolve to a replay.
    """
    if precheck is not None:
        with open_uow(tenant_id) as repo:
            found = precheck(repo)
        if found is not None:
            json_log("info", "cash.idempotent_replay", op=label, tenant_id=tenant_id, via="event_uid")
            return Outcome.replay(found)

    try:
        with open_uow(tenant_id) as repo:
            found = find_replay(repo, True)
            if found is not None:
                json_log("info", "cash.idempotent_replay", op=label, tenant_id=tenant_id, via="lookup")
                return Outcome.replay(found)
            made = create(repo)
            if isinstance(made, Outcome):
                return made
            return Outcome.created(made)
    except DuplicateKeyError as exc:
        if on_duplicate is not None:
            on_duplicate(exc)
        with open_uow(tenant_id) as repo:
            winner = find_replay(repo, False)
        if winner is None:
            raise
        json_log(
            "info",
            "cash.idempotent_replay",
            op=label,
            tenant_id=tenant_id,
            via="duplicate_key",
            constraint=exc.constraint,
        )
        return Outcome.replay(winner)
