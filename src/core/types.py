from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fractions import Fraction
from typing import Optional, Tuple, List

# Wrapped SOL, the quote side of every trade we mirror
WSOL_MINT = "So11111111111111111111111111111111111111112"


class Venue(Enum):
    RAYDIUM_AMM = "raydium_amm"
    JUPITER = "jupiter"
    PUMP_FUN = "pump_fun"
    ORCA_WHIRLPOOL = "orca_whirlpool"
    RAYDIUM_CLMM = "raydium_clmm"


class Direction(Enum):
    BUY = "buy"
    SELL = "sell"


class TipUrgency(Enum):
    NORMAL = "normal"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class TokenBalance:
    """Token account metadata attached to a transaction (pre/post token balances).

    Amounts are raw token units; ``None`` when the account did not exist on
    that side of the transaction.
    """
    account_index: int
    mint: str
    owner: Optional[str] = None
    pre_amount: Optional[int] = None
    post_amount: Optional[int] = None


@dataclass(frozen=True)
class RawInstruction:
    program_id_index: int
    accounts: Tuple[int, ...]
    data: bytes


@dataclass(frozen=True)
class RawTransaction:
    """Transaction record as delivered by the ingestion feed.

    ``pre_balances``/``post_balances`` are lamports per account key, in
    ``account_keys`` order; both are empty when the feed sent no metadata.
    """
    slot: int
    signature: str
    instructions: Tuple[RawInstruction, ...]
    account_keys: Tuple[str, ...]
    timestamp: datetime
    token_balances: Tuple[TokenBalance, ...] = ()
    pre_balances: Tuple[int, ...] = ()
    post_balances: Tuple[int, ...] = ()
    fee: int = 0

    def program_id(self, instruction: RawInstruction) -> str:
        return self.account_keys[instruction.program_id_index]

    def instruction_accounts(self, instruction: RawInstruction) -> List[str]:
        """Resolve the instruction's account indexes into addresses"""
        return [self.account_keys[index] for index in instruction.accounts]

    def mint_at(self, account_index: int) -> Optional[str]:
        for balance in self.token_balances:
            if balance.account_index == account_index:
                return balance.mint
        return None

    def token_change(self, owner: str, mint: str) -> Optional[int]:
        """Net raw units of ``mint`` gained by ``owner`` across its token accounts"""
        owned = [b for b in self.token_balances if b.owner == owner and b.mint == mint]
        if not owned or all(b.pre_amount is None and b.post_amount is None for b in owned):
            return None
        return sum((b.post_amount or 0) - (b.pre_amount or 0) for b in owned)

    def sol_change(self, owner: str) -> Optional[int]:
        """Net lamports gained by ``owner``, not counting the transaction fee.

        Lamports held by the owner's token accounts count as the owner's, so
        opening or closing an account (rent) and wrapping SOL net out.
        """
        if not self.pre_balances or len(self.pre_balances) != len(self.post_balances):
            return None
        try:
            wallet_index = self.account_keys.index(owner)
        except ValueError:
            return None

        indexes = {wallet_index} | {b.account_index for b in self.token_balances if b.owner == owner}
        if max(indexes) >= len(self.pre_balances):
            return None
        change = sum(self.post_balances[i] - self.pre_balances[i] for i in indexes)
        if wallet_index == 0:
            change += self.fee
        return change


@dataclass(frozen=True)
class TradeEvent:
    """One observed swap, independent of the venue that executed it.

    Amounts are integers in the smallest denomination (lamports for SOL,
    raw units for tokens). ``amount_in`` is what the trader gave up,
    ``amount_out`` what they received. ``executed`` is set when the amounts
    come from the trader's balance changes; otherwise they are the
    instruction's own limits (max cost, min output) and only bound the price.
    """
    venue: Venue
    mint: str
    trader: str
    direction: Direction
    amount_in: int
    amount_out: int
    slot: int
    signature: str
    timestamp: datetime
    pool_accounts: Tuple[str, ...] = field(default=(), compare=False)
    instruction_index: int = 0
    executed: bool = False

    def __post_init__(self):
        for name in ("amount_in", "amount_out"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")

    @property
    def is_buy(self) -> bool:
        return self.direction is Direction.BUY

    @property
    def sol_amount(self) -> int:
        return self.amount_in if self.is_buy else self.amount_out

    @property
    def token_amount(self) -> int:
        return self.amount_out if self.is_buy else self.amount_in

    @property
    def ratio(self) -> Optional[Fraction]:
        """Exact lamports per raw token unit, None when no tokens moved"""
        if self.token_amount == 0:
            return None
        return Fraction(self.sol_amount, self.token_amount)

    @property
    def correlation_id(self) -> str:
        return f"{self.signature}:{self.instruction_index}"


@dataclass
class SubmissionResult:
    accepted: bool
    reason: Optional[str] = None
    bundle_id: Optional[str] = None
