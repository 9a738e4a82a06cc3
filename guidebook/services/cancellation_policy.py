"""Cancellation policy evaluation: how much of the paid amount comes back."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from ..core.enums import CancellationPolicyKind
from ..core.exceptions import UnknownPolicyException, ValidationException
from ..core.money import MoneyLike, percentage_of, to_money


@dataclass(frozen=True)
class PolicyTier:
    """Refund percentage that applies once at least ``min_hours`` remain."""

    min_hours: float
    refund_percentage: int


# Asymmetric on purpose: these are the published policies, kept as data so a
# deployment can swap the table without touching the evaluation logic.
DEFAULT_POLICY_TABLE: Dict[str, Tuple[PolicyTier, ...]] = {
    CancellationPolicyKind.FLEXIBLE.value: (PolicyTier(24, 100), PolicyTier(0, 50)),
    CancellationPolicyKind.MODERATE.value: (
        PolicyTier(168, 100),
        PolicyTier(48, 50),
        PolicyTier(0, 0),
    ),
    CancellationPolicyKind.STRICT.value: (
        PolicyTier(336, 100),
        PolicyTier(168, 50),
        PolicyTier(0, 0),
    ),
    CancellationPolicyKind.SUPER_STRICT.value: (PolicyTier(720, 50), PolicyTier(0, 0)),
    CancellationPolicyKind.NON_REFUNDABLE.value: (PolicyTier(0, 0),),
}


@dataclass(frozen=True)
class RefundComputation:
    refund_amount: Decimal
    cancellation_fee: Decimal
    refund_percentage: int
    policy_kind: str
    policy_basis: str = ""

    def to_payload(self) -> dict[str, object]:
        return {
            "policy_kind": self.policy_kind,
            "refund_percentage": self.refund_percentage,
            "refund_amount": str(self.refund_amount),
            "cancellation_fee": str(self.cancellation_fee),
            "policy_basis": self.policy_basis,
        }


TierSpec = Union[PolicyTier, Sequence[float]]


def _normalize_table(table: Mapping[str, Iterable[TierSpec]]) -> Dict[str, Tuple[PolicyTier, ...]]:
    normalized: Dict[str, Tuple[PolicyTier, ...]] = {}
    for kind, tiers in table.items():
        parsed = [
            tier if isinstance(tier, PolicyTier) else PolicyTier(float(tier[0]), int(tier[1]))
            for tier in tiers
        ]
        if not parsed:
            raise ValueError(f"Policy {kind!r} has no tiers")
        for tier in parsed:
            if not 0 <= tier.refund_percentage <= 100:
                raise ValueError(f"Policy {kind!r} has an out-of-range refund percentage")
        # Highest threshold first; the first tier whose threshold is met wins
        normalized[str(kind)] = tuple(sorted(parsed, key=lambda t: t.min_hours, reverse=True))
    return normalized


class CancellationPolicyEngine:
    """Pure refund calculator over a (swappable) policy tier table."""

    def __init__(self, table: Optional[Mapping[str, Iterable[TierSpec]]] = None):
        self._table = _normalize_table(table if table is not None else DEFAULT_POLICY_TABLE)

    @property
    def policy_kinds(self) -> Tuple[str, ...]:
        return tuple(self._table)

    def tiers_for(self, policy_kind: Union[str, CancellationPolicyKind]) -> Tuple[PolicyTier, ...]:
        key = policy_kind.value if isinstance(policy_kind, CancellationPolicyKind) else policy_kind
        tiers = self._table.get(key) if isinstance(key, str) else None
        if tiers is None:
            raise UnknownPolicyException(policy_kind)
        return tiers

    def refund_percentage(
        self, policy_kind: Union[str, CancellationPolicyKind], hours_until_start: float
    ) -> Tuple[int, str]:
        tiers = self.tiers_for(policy_kind)
        for tier in tiers:
            if hours_until_start >= tier.min_hours:
                return tier.refund_percentage, f">={tier.min_hours:g}h before start: {tier.refund_percentage}% refund"
        # Start already passed: the lowest tier still governs
        lowest = tiers[-1]
        return lowest.refund_percentage, f"after start: {lowest.refund_percentage}% refund"

    def compute_refund(
        self,
        policy_kind: Union[str, CancellationPolicyKind],
        hours_until_start: float,
        amount_paid: MoneyLike,
    ) -> RefundComputation:
        paid = to_money(amount_paid)
        if paid < 0:
            raise ValidationException("Amount paid cannot be negative", code="INVALID_AMOUNT")

        percentage, basis = self.refund_percentage(policy_kind, hours_until_start)
        refund = percentage_of(paid, percentage)
        kind = policy_kind.value if isinstance(policy_kind, CancellationPolicyKind) else policy_kind
        return RefundComputation(
            refund_amount=refund,
            cancellation_fee=paid - refund,
            refund_percentage=percentage,
            policy_kind=kind,
            policy_basis=basis,
        )

    def refund_deadline(
        self, start_at: datetime, policy_kind: Union[str, CancellationPolicyKind]
    ) -> datetime:
        """Latest moment at which the policy's best refund tier still applies."""
        best = max(self.tiers_for(policy_kind), key=lambda t: (t.refund_percentage, -t.min_hours))
        return start_at - timedelta(hours=best.min_hours)
