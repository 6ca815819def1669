import threading
from dataclasses import dataclass, field
from fractions import Fraction
from logging import Logger
from typing import Dict, List, Optional, Tuple, Union

from core.types import Venue
from risk.position import Position, PositionStatus


class PositionError(Exception):
    """A requested state transition does not hold for the current position"""

    def __init__(self, token: str, message: str):
        super().__init__(f"{message}: {token}")
        self.token = token


class PositionAlreadyOpen(PositionError):
    def __init__(self, token: str):
        super().__init__(token, "Position already open")


class NoSuchPosition(PositionError):
    def __init__(self, token: str):
        super().__init__(token, "No open position")


class TierAlreadyApplied(PositionError):
    def __init__(self, token: str, tier_index: int):
        super().__init__(token, f"Take profit tier {tier_index} already applied")
        self.tier_index = tier_index


class StalePosition(PositionError):
    """The transition was decided from a snapshot that is no longer current"""

    def __init__(self, token: str, reason: str):
        super().__init__(token, f"Stale position ({reason})")


@dataclass(frozen=True)
class OpenPosition:
    entry_sol: int
    entry_qty: int
    entry_ratio: Fraction
    venue: Venue
    pool_accounts: Tuple[str, ...] = field(default=(), compare=False)
    slot: int = 0
    source_signature: str = ""


@dataclass(frozen=True)
class RecordExit:
    qty_reduced: int
    tier_index: Optional[int] = None
    expected_version: Optional[int] = None
    slot: Optional[int] = None


@dataclass(frozen=True)
class Close:
    expected_version: Optional[int] = None
    slot: Optional[int] = None


StateTransition = Union[OpenPosition, RecordExit, Close]


class PositionStore:
    """Per-token position table.

    Reads never block. ``apply`` runs the read-check-write for one token
    under that token's lock, so two transitions on the same token never
    interleave while different tokens proceed independently. Exit
    transitions carry the version they were decided from; if the record
    moved on in the meantime the transition is rejected instead of
    overwriting newer state.
    """

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger
        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def _lock_for(self, token: str) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(token)
            if lock is None:
                lock = self._locks[token] = threading.Lock()
            return lock

    def get(self, token: str) -> Optional[Position]:
        return self._positions.get(token)

    def open_positions(self) -> List[Position]:
        return [p for p in list(self._positions.values()) if p.is_active]

    def open_positions_count(self) -> int:
        return len(self.open_positions())

    def apply(self, token: str, transition: StateTransition) -> Position:
        with self._lock_for(token):
            current = self._positions.get(token)

            if isinstance(transition, OpenPosition):
                position = self._open(token, current, transition)
            elif isinstance(transition, RecordExit):
                self._check_exit(token, current, transition.expected_version, transition.slot, transition.tier_index)
                if transition.qty_reduced <= 0:
                    raise ValueError(f"qty_reduced must be positive, got {transition.qty_reduced}")
                position = current.reduced(transition.qty_reduced, transition.tier_index, transition.slot)
            elif isinstance(transition, Close):
                self._check_exit(token, current, transition.expected_version, transition.slot)
                position = current.closed(transition.slot)
            else:
                raise TypeError(f"Unknown state transition: {transition!r}")

            self._positions[token] = position

        if self.logger:
            self.logger.debug(
                f"Position {token}: {type(transition).__name__} -> status={position.status.value}, "
                f"quantity={position.quantity}, version={position.version}"
            )
        return position

    def _open(self, token: str, current: Optional[Position], transition: OpenPosition) -> Position:
        if current is not None and current.is_active:
            raise PositionAlreadyOpen(token)
        if transition.entry_qty <= 0:
            raise ValueError(f"entry_qty must be positive, got {transition.entry_qty}")

        return Position(
            token_mint=token,
            entry_ratio=transition.entry_ratio,
            entry_quantity=transition.entry_qty,
            quantity=transition.entry_qty,
            sol_committed=transition.entry_sol,
            venue=transition.venue,
            pool_accounts=transition.pool_accounts,
            status=PositionStatus.OPEN,
            version=current.version + 1 if current is not None else 1,
            last_slot=transition.slot,
            source_signature=transition.source_signature,
        )

    def _check_exit(
        self,
        token: str,
        current: Optional[Position],
        expected_version: Optional[int],
        slot: Optional[int],
        tier_index: Optional[int] = None,
    ):
        # A replayed tier reports TierAlreadyApplied, not a version mismatch
        if current is None or not current.is_active:
            raise NoSuchPosition(token)
        if tier_index is not None and current.has_applied_tier(tier_index):
            raise TierAlreadyApplied(token, tier_index)
        if slot is not None and slot < current.last_slot:
            raise StalePosition(token, f"slot {slot} older than {current.last_slot}")
        if expected_version is not None and expected_version != current.version:
            raise StalePosition(token, f"version {expected_version} != {current.version}")
