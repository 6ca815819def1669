from dataclasses import dataclass, field
from fractions import Fraction
from typing import Tuple

from solders.instruction import Instruction

from core.types import Venue, TipUrgency


@dataclass(frozen=True)
class TradeAction:
    """Outbound instruction for the bundle builder"""
    token: str
    venue: Venue
    correlation_id: str
    slot: int
    reference_price: Fraction  # lamports per raw token unit seen on the triggering swap
    pool_accounts: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def urgency(self) -> TipUrgency:
        return TipUrgency.NORMAL

    @property
    def is_buy(self) -> bool:
        return False


@dataclass(frozen=True)
class EnterAction(TradeAction):
    sol_amount: int = 0
    expected_token_amount: int = 0

    @property
    def is_buy(self) -> bool:
        return True


@dataclass(frozen=True)
class ExitTierAction(TradeAction):
    percent: int = 0
    tier_index: int = 0
    token_amount: int = 0
    tip_urgency: TipUrgency = TipUrgency.NORMAL
    closes_position: bool = False

    @property
    def urgency(self) -> TipUrgency:
        return self.tip_urgency


@dataclass(frozen=True)
class EmergencyExitAction(TradeAction):
    """Mirror of the monitored wallet selling: dump everything we hold"""
    percent: int = 100
    token_amount: int = 0
    closes_position: bool = True

    @property
    def urgency(self) -> TipUrgency:
        return TipUrgency.EMERGENCY


@dataclass(frozen=True)
class Bundle:
    instructions: Tuple[Instruction, ...]
    target_slot_window: Tuple[int, int]
    tip_lamports: int
    correlation_id: str
    urgency: TipUrgency
    actions: Tuple[TradeAction, ...]
    tip_account: str = ""
    attempt: int = 0

    @property
    def token(self) -> str:
        return self.actions[0].token

    def __len__(self) -> int:
        return len(self.instructions)
