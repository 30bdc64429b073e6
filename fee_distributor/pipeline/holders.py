"""
Holder snapshot and proportional allocation.

`take_snapshot` enumerates every token account of the fee-bearing token,
drops zero balances and excluded addresses, and folds several accounts of the
same owner into one holder record.

`allocate` splits a reward pool across a snapshot with exactly one floor
division per holder:

    amount_i = floor(balance_i * pool / total_balance)

so sum(amount_i) <= pool and the shortfall (the plan's `remainder`) is smaller
than the number of holders. Products are checked against the 128-bit ceiling.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List

from fee_distributor.domain.errors import ArithmeticOverflow
from fee_distributor.domain.models import (
    U128_MAX,
    Allocation,
    AllocationPlan,
    HolderRecord,
    HolderSnapshot,
)
from fee_distributor.pipeline.abstract import TokenAccountEnumerator
from fee_distributor.utils.logging import get_logger

log = get_logger(__name__)


def checked_mul(a: int, b: int, limit: int = U128_MAX) -> int:
    """Multiply two unsigned amounts, raising ArithmeticOverflow past `limit`."""
    if a < 0 or b < 0:
        raise ArithmeticOverflow(f"negative operand in checked_mul: {a} * {b}")
    product = a * b
    if product > limit:
        raise ArithmeticOverflow(
            f"{a} * {b} exceeds the 128-bit amount width", operand_a=str(a), operand_b=str(b)
        )
    return product


def checked_add(a: int, b: int, limit: int = U128_MAX) -> int:
    total = a + b
    if total > limit:
        raise ArithmeticOverflow(f"{a} + {b} exceeds the 128-bit amount width")
    return total


async def take_snapshot(
    enumerator: TokenAccountEnumerator,
    token_id: str,
    excluded: Iterable[str] = (),
) -> HolderSnapshot:
    """
    Capture current holders of `token_id`.

    Parameters
    ----------
    enumerator : TokenAccountEnumerator
        Source of every token account of the mint.
    token_id : str
        Mint address of the fee-bearing token.
    excluded : Iterable[str]
        Owner addresses never included (treasury, fee collector, operator, ...).

    Returns
    -------
    HolderSnapshot
        Holders sorted by descending balance, then address.
    """
    excluded_set = frozenset(excluded)
    accounts = await enumerator.token_accounts(token_id)

    balances: Dict[str, int] = defaultdict(int)
    skipped_excluded = 0
    for account in accounts:
        if account.amount <= 0:
            continue
        if account.owner in excluded_set:
            skipped_excluded += 1
            continue
        balances[account.owner] = checked_add(balances[account.owner], account.amount)

    holders = sorted(
        (HolderRecord(address=owner, balance=balance) for owner, balance in balances.items()),
        key=lambda h: (-h.balance, h.address),
    )
    total = 0
    for holder in holders:
        total = checked_add(total, holder.balance)

    log.info(
        f"[SNAPSHOT] {len(holders)} holder(s) of {token_id}",
        extra={
            "token_id": token_id,
            "accounts": len(accounts),
            "holders": len(holders),
            "excluded_accounts": skipped_excluded,
            "total_balance": str(total),
        },
    )
    return HolderSnapshot(
        token_id=token_id,
        holders=tuple(holders),
        total_balance=total,
        excluded_count=skipped_excluded,
    )


def allocate(snapshot: HolderSnapshot, reward_pool: int) -> AllocationPlan:
    """
    Split `reward_pool` across `snapshot` proportionally to balance.

    Holders whose share floors to zero get no allocation and are counted in
    `dust_recipients`. An empty snapshot or an empty pool gives an empty plan.
    """
    if reward_pool < 0 or reward_pool > U128_MAX:
        raise ArithmeticOverflow(f"reward pool {reward_pool} outside the 128-bit amount range")

    if not snapshot.holders or snapshot.total_balance == 0 or reward_pool == 0:
        return AllocationPlan(reward_pool=reward_pool, remainder=reward_pool)

    allocations: List[Allocation] = []
    dust = 0
    total_allocated = 0
    for holder in snapshot.holders:
        amount = checked_mul(holder.balance, reward_pool) // snapshot.total_balance
        if amount == 0:
            dust += 1
            continue
        allocations.append(
            Allocation(recipient=holder.address, amount=amount, holder_balance=holder.balance)
        )
        total_allocated += amount

    plan = AllocationPlan(
        reward_pool=reward_pool,
        allocations=tuple(allocations),
        total_allocated=total_allocated,
        remainder=reward_pool - total_allocated,
        dust_recipients=dust,
    )
    log.info(
        f"[ALLOCATION] {len(allocations)} recipient(s), remainder {plan.remainder}",
        extra={
            "reward_pool": str(reward_pool),
            "total_allocated": str(total_allocated),
            "remainder": str(plan.remainder),
            "dust_recipients": dust,
        },
    )
    return plan


__all__ = ["allocate", "checked_add", "checked_mul", "take_snapshot"]
