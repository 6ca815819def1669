"""Tests for the position store."""

from concurrent.futures import ThreadPoolExecutor
from fractions import Fraction

import pytest

from core.types import Venue
from risk.position import PositionStatus
from risk.position_store import (
    Close,
    NoSuchPosition,
    OpenPosition,
    PositionAlreadyOpen,
    RecordExit,
    StalePosition,
    TierAlreadyApplied,
)


def open_transition(qty: int = 100_000, slot: int = 10) -> OpenPosition:
    return OpenPosition(
        entry_sol=100_000_000,
        entry_qty=qty,
        entry_ratio=Fraction(1000),
        venue=Venue.PUMP_FUN,
        slot=slot,
    )


class TestOpen:
    def test_open_creates_position(self, store, mint):
        position = store.apply(mint, open_transition())

        assert position.status is PositionStatus.OPEN
        assert position.quantity == 100_000
        assert position.sol_committed == 100_000_000
        assert position.version == 1
        assert store.get(mint) == position
        assert store.open_positions() == [position]

    def test_second_open_rejected(self, store, mint):
        store.apply(mint, open_transition())

        with pytest.raises(PositionAlreadyOpen):
            store.apply(mint, open_transition())

        assert store.get(mint).version == 1

    def test_get_unknown_token(self, store, mint):
        assert store.get(mint) is None
        assert store.open_positions() == []

    def test_zero_quantity_rejected(self, store, mint):
        with pytest.raises(ValueError):
            store.apply(mint, open_transition(qty=0))

    def test_concurrent_opens_commit_once(self, store, mint):
        def attempt(_):
            try:
                store.apply(mint, open_transition())
                return True
            except PositionAlreadyOpen:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(32)))

        assert results.count(True) == 1
        assert store.open_positions_count() == 1


class TestExit:
    def test_record_exit_reduces_quantity(self, store, mint):
        store.apply(mint, open_transition())

        position = store.apply(mint, RecordExit(qty_reduced=20_000, tier_index=0, expected_version=1, slot=11))

        assert position.status is PositionStatus.PARTIALLY_EXITED
        assert position.quantity == 80_000
        assert position.sol_committed == 80_000_000
        assert position.applied_tiers == (0,)
        assert position.version == 2
        assert store.get(mint) == position

    def test_replayed_tier_is_rejected(self, store, mint):
        store.apply(mint, open_transition())
        transition = RecordExit(qty_reduced=20_000, tier_index=0, expected_version=1, slot=11)
        store.apply(mint, transition)

        with pytest.raises(TierAlreadyApplied):
            store.apply(mint, transition)

        assert store.get(mint).quantity == 80_000

    def test_exit_without_position(self, store, mint):
        with pytest.raises(NoSuchPosition):
            store.apply(mint, RecordExit(qty_reduced=1))

    def test_selling_everything_closes(self, store, mint):
        store.apply(mint, open_transition())

        position = store.apply(mint, RecordExit(qty_reduced=150_000, tier_index=0))

        assert position.status is PositionStatus.CLOSED
        assert position.quantity == 0
        assert position.closed_at is not None
        assert store.open_positions() == []

    def test_stale_version_rejected(self, store, mint):
        store.apply(mint, open_transition())
        store.apply(mint, RecordExit(qty_reduced=10_000, tier_index=0, expected_version=1))

        with pytest.raises(StalePosition):
            store.apply(mint, RecordExit(qty_reduced=10_000, tier_index=1, expected_version=1))

        assert store.get(mint).quantity == 90_000

    def test_older_slot_rejected(self, store, mint):
        store.apply(mint, open_transition(slot=50))

        with pytest.raises(StalePosition):
            store.apply(mint, Close(slot=49))

        assert store.get(mint).is_active


class TestClose:
    def test_close_is_kept_as_closed_record(self, store, mint):
        store.apply(mint, open_transition())

        position = store.apply(mint, Close(expected_version=1, slot=12))

        assert position.status is PositionStatus.CLOSED
        assert store.get(mint).status is PositionStatus.CLOSED
        assert store.open_positions() == []

    def test_replayed_close_is_rejected(self, store, mint):
        store.apply(mint, open_transition())
        store.apply(mint, Close())

        with pytest.raises(NoSuchPosition):
            store.apply(mint, Close())

    def test_reopen_after_close_bumps_version(self, store, mint):
        store.apply(mint, open_transition())
        store.apply(mint, Close())

        position = store.apply(mint, open_transition(slot=20))

        assert position.status is PositionStatus.OPEN
        assert position.version == 3

    def test_unknown_transition(self, store, mint):
        with pytest.raises(TypeError):
            store.apply(mint, "close")
