from __future__ import annotations

import logging
from typing import Any, Callable, NamedTuple, TypeVar

from ..db.base import BaseDBManager
from ..errors import ConflictError, NotFoundError, StaleDocumentError
from ..models.user import UserAccount


logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_WRITE_ATTEMPTS = 5


class AccountChange(NamedTuple):
    before: UserAccount
    after: UserAccount
    result: Any


async def get_account(db: BaseDBManager, user_id: str) -> UserAccount:
    account = await db.get_user(user_id)
    if account is None:
        raise NotFoundError(f"user {user_id} not found")
    return account


async def mutate_account(
    db: BaseDBManager,
    user_id: str,
    mutate: Callable[[UserAccount], T],
) -> AccountChange:
    """
    Read-compute-write a user account under optimistic concurrency.

    `mutate` edits a fresh copy in place and may raise to abort without
    writing. A write that loses the version race is retried from a fresh
    read, so decisions are always taken against the state being replaced.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        account = await get_account(db, user_id)
        before = account.model_copy(deep=True)
        result = mutate(account)
        try:
            after = await db.update_user(account)
        except StaleDocumentError:
            logger.info(
                "Concurrent update on user %s, retrying (attempt %d/%d)",
                user_id,
                attempt,
                MAX_WRITE_ATTEMPTS,
            )
            continue
        return AccountChange(before, after, result)
    raise ConflictError(
        "account is being updated concurrently, try again",
        {"user_id": user_id},
    )
