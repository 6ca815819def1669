from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from typing import Optional, Tuple

from core.types import Venue


class PositionStatus(Enum):
    OPEN = "open"
    PARTIALLY_EXITED = "partially_exited"
    CLOSED = "closed"


@dataclass(frozen=True)
class Position:
    """Represents our mirrored position in one token.

    Instances are immutable snapshots; the position store swaps in a new
    one on every committed transition and bumps ``version``.
    """
    token_mint: str
    entry_ratio: Fraction          # lamports per raw token unit on the monitored wallet's first buy
    entry_quantity: int            # tokens we expected to receive on entry
    quantity: int                  # tokens still held
    sol_committed: int             # lamports still invested
    venue: Venue
    pool_accounts: Tuple[str, ...] = field(default=(), compare=False)
    applied_tiers: Tuple[int, ...] = ()
    status: PositionStatus = PositionStatus.OPEN
    version: int = 1
    last_slot: int = 0
    source_signature: str = ""
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)
    closed_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status is not PositionStatus.CLOSED

    def has_applied_tier(self, tier_index: int) -> bool:
        return tier_index in self.applied_tiers

    def realized_multiple(self, current_ratio: Fraction) -> Fraction:
        """Current price as a multiple of the entry price"""
        if self.entry_ratio == 0:
            return Fraction(0)
        return current_ratio / self.entry_ratio

    def tier_quantity(self, sell_percent: int) -> int:
        """Tokens to sell for a tier, as a share of the entry size, clamped to what is left"""
        amount = self.entry_quantity * sell_percent // 100
        if amount <= 0 and self.quantity > 0:
            amount = 1
        return min(amount, self.quantity)

    def reduced(self, amount_sold: int, tier_index: Optional[int], slot: Optional[int]) -> "Position":
        remaining = max(self.quantity - amount_sold, 0)
        sold = self.quantity - remaining

        # Reduce invested proportionally
        invested_reduction = self.sol_committed * sold // self.quantity if self.quantity else self.sol_committed
        tiers = self.applied_tiers + (tier_index,) if tier_index is not None else self.applied_tiers

        if remaining == 0:
            return replace(
                self,
                quantity=0,
                sol_committed=0,
                applied_tiers=tiers,
                status=PositionStatus.CLOSED,
                version=self.version + 1,
                last_slot=max(self.last_slot, slot or 0),
                closed_at=datetime.now(timezone.utc),
            )

        return replace(
            self,
            quantity=remaining,
            sol_committed=self.sol_committed - invested_reduction,
            applied_tiers=tiers,
            status=PositionStatus.PARTIALLY_EXITED,
            version=self.version + 1,
            last_slot=max(self.last_slot, slot or 0),
        )

    def closed(self, slot: Optional[int]) -> "Position":
        return self.reduced(self.quantity, None, slot)
