"""
Article 21 pooling.

A pool sums its members' Adjusted CB for one year and moves surplus to the
members in deficit. Redistribution only cures deficits; surplus that is not
needed stays with whoever held it.

No-worse-off rule, checked after every allocation whatever the policy:
- a deficit member never ends below its own pre-pool balance
- a surplus member never ends below zero
- the pool total is conserved
"""

import logging
import math
import uuid
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from .audit import audit_logger
from .errors import (
    ConflictError,
    FairnessViolationError,
    InvalidInputError,
    PoolNonCompliantError,
)
from .models import AdjustedBalance, Pool, PoolAllocation, PoolResult

logger = logging.getLogger(__name__)

# (members in request order, pre-pool CB by ship) -> post-pool CB by ship
AllocationPolicy = Callable[[Sequence[str], Mapping[str, float]], Dict[str, float]]


# =============================================================================
# Allocation policies
# =============================================================================

def largest_surplus_first(members: Sequence[str], pre: Mapping[str, float]) -> Dict[str, float]:
    """
    Cure deficits (most negative first) from the largest surplus holders.

    Ties keep the order in which members were listed.
    """
    position = {ship_id: i for i, ship_id in enumerate(members)}
    post = {ship_id: pre[ship_id] for ship_id in members}

    deficits = sorted((s for s in members if pre[s] < 0), key=lambda s: (pre[s], position[s]))
    donors = sorted((s for s in members if pre[s] > 0), key=lambda s: (-pre[s], position[s]))

    for ship_id in deficits:
        need = -post[ship_id]
        for donor in donors:
            if need <= 0:
                break
            give = min(post[donor], need)
            if give <= 0:
                continue
            post[donor] -= give
            need -= give
        post[ship_id] = -need if need > 0 else 0.0

    return post


def pro_rata(members: Sequence[str], pre: Mapping[str, float]) -> Dict[str, float]:
    """Cure all deficits, charging each surplus holder in proportion to its surplus."""
    total_deficit = sum(-pre[s] for s in members if pre[s] < 0)
    total_surplus = sum(pre[s] for s in members if pre[s] > 0)
    if total_deficit <= 0 or total_surplus <= 0:
        return {s: pre[s] for s in members}

    share = min(total_deficit / total_surplus, 1.0)
    cure = min(total_surplus / total_deficit, 1.0)
    post = {}
    for ship_id in members:
        value = pre[ship_id]
        if value > 0:
            post[ship_id] = value - value * share
        elif value < 0:
            post[ship_id] = 0.0 if cure >= 1.0 else value * (1.0 - cure)
        else:
            post[ship_id] = 0.0
    return post


POLICIES: Dict[str, AllocationPolicy] = {
    "largest_surplus_first": largest_surplus_first,
    "pro_rata": pro_rata,
}


# =============================================================================
# Allocator
# =============================================================================

class PoolAllocator:
    """Validates pool membership and redistributes Adjusted CB."""

    def __init__(self, policy: Union[str, AllocationPolicy] = "largest_surplus_first",
                 tolerance: float = 1e-6):
        if isinstance(policy, str):
            if policy not in POLICIES:
                raise InvalidInputError(f"Unknown pool policy: {policy}. Valid: {list(POLICIES)}")
            self.policy_name = policy
            self.policy = POLICIES[policy]
        else:
            self.policy_name = getattr(policy, "__name__", "custom")
            self.policy = policy
        self.tolerance = tolerance

    def form_pool(
        self,
        year: int,
        member_ship_ids: Sequence[str],
        adjusted_balances_by_ship: Mapping[str, Union[AdjustedBalance, float]],
        existing_memberships: Optional[Mapping[str, Optional[str]]] = None,
    ) -> PoolResult:
        """
        Build a pool and its allocations. Nothing is persisted here.

        Args:
            year: Compliance year shared by all members
            member_ship_ids: Members in request order
            adjusted_balances_by_ship: AdjustedBalance (or plain CB) per member
            existing_memberships: ship id -> pool id already held for ``year``

        Raises:
            InvalidInputError: fewer than two members, duplicates, missing
                balances or balances for another year
            ConflictError: a member already belongs to a pool for ``year``
            PoolNonCompliantError: the pool total is negative
            FairnessViolationError: the allocation breaks the no-worse-off rule
        """
        members = list(member_ship_ids)
        if len(set(members)) != len(members):
            raise InvalidInputError(f"Duplicate ships in pool request: {members}")
        if len(members) < 2:
            raise InvalidInputError("A pool needs at least two distinct ships")

        existing_memberships = existing_memberships or {}
        taken = {s: existing_memberships.get(s) for s in members if existing_memberships.get(s)}
        if taken:
            raise ConflictError(
                f"Ships already pooled for {year}: "
                + ", ".join(f"{s} (pool {p})" for s, p in sorted(taken.items()))
            )

        pre = {}
        for ship_id in members:
            if ship_id not in adjusted_balances_by_ship:
                raise InvalidInputError(f"No adjusted balance for ship {ship_id}")
            pre[ship_id] = self._balance_value(adjusted_balances_by_ship[ship_id], year)

        aggregate = math.fsum(pre.values())
        if aggregate < 0:
            raise PoolNonCompliantError(
                f"Pool for {year} would remain in deficit: aggregate CB {aggregate:.4f} t"
            )

        post = self.policy(members, pre)
        self._verify(year, members, pre, post)

        pool = Pool(
            pool_id=str(uuid.uuid4()),
            year=year,
            member_ship_ids=tuple(members),
            aggregate_adjusted_cb=aggregate,
        )
        allocations = [
            PoolAllocation(
                pool_id=pool.pool_id,
                ship_id=ship_id,
                pre_cb=pre[ship_id],
                post_cb=post[ship_id],
            )
            for ship_id in members
        ]

        audit_logger.info(
            "Pool allocated",
            pool_id=pool.pool_id,
            year=year,
            policy=self.policy_name,
            aggregate_cb=aggregate,
            allocations={a.ship_id: round(a.delta, 6) for a in allocations},
        )
        return PoolResult(pool=pool, allocations=allocations)

    # ---- private helpers ----------------------------------------------------

    @staticmethod
    def _balance_value(balance, year: int) -> float:
        if isinstance(balance, AdjustedBalance):
            if balance.year != year:
                raise InvalidInputError(
                    f"Balance of ship {balance.ship_id} is for {balance.year}, not {year}"
                )
            value = balance.adjusted_cb
        else:
            value = float(balance)
        if not math.isfinite(value):
            raise InvalidInputError(f"Adjusted balance must be finite, got {value}")
        return value

    def _verify(self, year: int, members: List[str],
                pre: Mapping[str, float], post: Mapping[str, float]) -> None:
        if set(post) != set(members):
            raise FairnessViolationError(
                f"Allocation for {year} does not cover exactly the pool members"
            )

        scale = max(1.0, math.fsum(abs(v) for v in pre.values()))
        slack = self.tolerance * scale

        drift = math.fsum(post.values()) - math.fsum(pre.values())
        if abs(drift) > slack:
            raise FairnessViolationError(
                f"Allocation for {year} changes the pool total by {drift:.6f} t"
            )

        worse = [
            s for s in members
            if post[s] < min(pre[s], 0.0) - slack
        ]
        if worse:
            details = ", ".join(f"{s}: {pre[s]:.4f} -> {post[s]:.4f}" for s in worse)
            logger.error("Pool fairness violated for %s: %s", year, details)
            raise FairnessViolationError(f"Members worse off after pooling: {details}")
