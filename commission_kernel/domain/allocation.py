"""
Allocation -- Distribute a manual payment across matched debts.

Responsibility:
    Computes the non-binding allocation hint stored on each
    manual-payment/debt link.  The hint tells a reviewer how the submitted
    amount would spread over the claimed debts; it never changes a debt's
    status or settled amount.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Conservation: sum(allocated) + unallocated == amount.
    - No line exceeds its target's remaining balance.
    - Integer minor units throughout; prorata rounding uses the largest
      remainder method so no unit is created or lost.

Failure modes:
    - ValueError on an unknown method or a negative amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Sequence
from uuid import UUID

from commission_kernel.logging_config import get_logger

logger = get_logger("domain.allocation")


class AllocationMethod(str, Enum):
    """Method for distributing a payment across debts."""

    FIFO = "fifo"  # Oldest due date first
    PRORATA = "prorata"  # Proportional to remaining balance


@dataclass(frozen=True)
class AllocationTarget:
    """A debt that can receive part of a payment."""

    debt_id: UUID
    remaining: int
    due_date: date | None = None

    def __post_init__(self) -> None:
        if self.remaining < 0:
            raise ValueError(
                f"Target {self.debt_id} has negative remaining balance"
            )


@dataclass(frozen=True)
class AllocationLine:
    """Amount allocated to one debt."""

    debt_id: UUID
    allocated: int
    remaining_after: int

    @property
    def is_fully_allocated(self) -> bool:
        return self.remaining_after == 0


@dataclass(frozen=True)
class AllocationResult:
    """Result of an allocation run."""

    amount: int
    method: AllocationMethod
    lines: tuple[AllocationLine, ...]
    total_allocated: int
    unallocated: int

    def as_pairs(self) -> tuple[tuple[UUID, int], ...]:
        return tuple((line.debt_id, line.allocated) for line in self.lines)

    def for_debt(self, debt_id: UUID) -> int:
        for line in self.lines:
            if line.debt_id == debt_id:
                return line.allocated
        return 0


def allocate(
    amount: int,
    targets: Sequence[AllocationTarget],
    method: AllocationMethod | str = AllocationMethod.FIFO,
) -> AllocationResult:
    """
    Allocate ``amount`` across ``targets``.

    Lines are returned in the order the targets were given, whatever the
    method, so callers can zip them with their own ordered debt list.
    """
    method = AllocationMethod(method)
    if amount < 0:
        raise ValueError(f"Cannot allocate a negative amount: {amount}")

    if not targets:
        logger.warning("allocation_no_targets", extra={
            "amount": amount,
            "method": method.value,
        })
        return AllocationResult(
            amount=amount,
            method=method,
            lines=(),
            total_allocated=0,
            unallocated=amount,
        )

    match method:
        case AllocationMethod.FIFO:
            allocated = _allocate_fifo(amount, targets)
        case AllocationMethod.PRORATA:
            allocated = _allocate_prorata(amount, targets)
        case _:
            raise ValueError(f"Unknown allocation method: {method}")

    lines = tuple(
        AllocationLine(
            debt_id=target.debt_id,
            allocated=allocated[i],
            remaining_after=target.remaining - allocated[i],
        )
        for i, target in enumerate(targets)
    )
    total_allocated = sum(line.allocated for line in lines)
    unallocated = amount - total_allocated

    assert total_allocated + unallocated == amount
    assert all(line.remaining_after >= 0 for line in lines)

    logger.debug("allocation_completed", extra={
        "method": method.value,
        "amount": amount,
        "total_allocated": total_allocated,
        "unallocated": unallocated,
        "line_count": len(lines),
    })

    return AllocationResult(
        amount=amount,
        method=method,
        lines=lines,
        total_allocated=total_allocated,
        unallocated=unallocated,
    )


def _allocate_fifo(amount: int, targets: Sequence[AllocationTarget]) -> list[int]:
    """Fill targets oldest-due first until the amount is exhausted."""
    order = sorted(
        range(len(targets)),
        key=lambda i: (targets[i].due_date or date.min, i),
    )
    allocated = [0] * len(targets)
    left = amount
    for i in order:
        if left <= 0:
            break
        take = min(left, targets[i].remaining)
        allocated[i] = take
        left -= take
    return allocated


def _allocate_prorata(amount: int, targets: Sequence[AllocationTarget]) -> list[int]:
    """Split proportionally to remaining balance (largest remainder)."""
    total_remaining = sum(t.remaining for t in targets)
    if total_remaining == 0:
        return [0] * len(targets)

    # Never hand out more than the debts can absorb
    distributable = min(amount, total_remaining)

    floors: list[int] = []
    remainders: list[tuple[int, int]] = []
    for i, target in enumerate(targets):
        share, rem = divmod(distributable * target.remaining, total_remaining)
        floors.append(share)
        remainders.append((rem, i))

    # Ties resolve to the earlier target
    leftover = distributable - sum(floors)
    for _, i in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        floors[i] += 1
    return floors
