import logging
from typing import Collection, List, Optional

from core.events import TradeAction, EnterAction, ExitTierAction, EmergencyExitAction
from core.types import TradeEvent, Direction, TipUrgency, Venue
from risk.position import Position, PositionStatus
from risk.position_store import PositionStore, PositionError, OpenPosition, RecordExit, Close
from utils.config import DecisionConfig


class CopyTradingStrategy:
    """Maps an observed swap plus our current position to the trades to mirror.

    Every state change is proposed to the position store and only the
    actions whose transition the store committed are returned. A transition
    the store rejects (lost race, replay) drops its action.

    ``tradable_venues`` limits entries to venues we can build swaps for;
    ``None`` allows every venue.
    """

    def __init__(self, config: DecisionConfig, logger: Optional[logging.Logger] = None,
                 tradable_venues: Optional[Collection[Venue]] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.monitored_wallet = config.monitored_wallet
        self.tradable_venues = frozenset(tradable_venues) if tradable_venues is not None else None

    def decide(self, event: TradeEvent, store: PositionStore) -> List[TradeAction]:
        position = store.get(event.mint)
        from_monitored = event.trader == self.monitored_wallet

        # Entry: first buy of a token by the monitored wallet
        if from_monitored and event.direction is Direction.BUY:
            if position is None:
                return self._enter(event, store)
            self.logger.debug(f"Ignoring repeat buy of {event.mint} (first-buy-only): {event.signature}")

        if position is None or not position.is_active:
            return []

        # Copy exit: the monitored wallet selling overrides take profit
        if from_monitored and event.direction is Direction.SELL and self.config.emergency_exit_enabled:
            return self._emergency_exit(event, store, position)

        if self.config.take_profit_enabled:
            return self._check_take_profit(event, store, position)
        return []

    def _enter(self, event: TradeEvent, store: PositionStore) -> List[TradeAction]:
        if self.tradable_venues is not None and event.venue not in self.tradable_venues:
            self.logger.info(f"Not mirroring {event.venue.value} buy of {event.mint}: no swap builder for venue, "
                             f"signature={event.signature}")
            return []

        ratio = event.ratio
        if ratio is None or event.sol_amount == 0:
            self.logger.warning(f"Cannot price entry for {event.mint}: sol={event.sol_amount}, "
                                f"tokens={event.token_amount}, signature={event.signature}")
            return []

        sol_amount = self.config.buy_amount_lamports
        expected_tokens = sol_amount * ratio.denominator // ratio.numerator
        if expected_tokens <= 0:
            self.logger.warning(f"Entry for {event.mint} would buy zero tokens at ratio {ratio}")
            return []

        try:
            store.apply(event.mint, OpenPosition(
                entry_sol=sol_amount,
                entry_qty=expected_tokens,
                entry_ratio=ratio,
                venue=event.venue,
                pool_accounts=event.pool_accounts,
                slot=event.slot,
                source_signature=event.signature,
            ))
        except PositionError as e:
            self.logger.info(f"Entry dropped: {e}")
            return []

        self.logger.info(f"Entry: Mint={event.mint}, sol_amount={sol_amount}, "
                         f"expected_tokens={expected_tokens}, signature={event.signature}")
        return [EnterAction(
            token=event.mint,
            venue=event.venue,
            correlation_id=event.correlation_id,
            slot=event.slot,
            reference_price=ratio,
            pool_accounts=event.pool_accounts,
            sol_amount=sol_amount,
            expected_token_amount=expected_tokens,
        )]

    def _emergency_exit(self, event: TradeEvent, store: PositionStore, position: Position) -> List[TradeAction]:
        try:
            store.apply(event.mint, Close(expected_version=position.version, slot=event.slot))
        except PositionError as e:
            self.logger.warning(f"Copy exit dropped: {e}")
            return []

        self.logger.info(f"Copy exit: Mint={event.mint}, tokens={position.quantity}, signature={event.signature}")
        return [EmergencyExitAction(
            token=event.mint,
            venue=position.venue,
            correlation_id=event.correlation_id,
            slot=event.slot,
            reference_price=event.ratio or position.entry_ratio,
            pool_accounts=position.pool_accounts or event.pool_accounts,
            percent=100,
            token_amount=position.quantity,
        )]

    def _check_take_profit(self, event: TradeEvent, store: PositionStore, position: Position) -> List[TradeAction]:
        # Slippage limits are not prices
        ratio = event.ratio
        if ratio is None or not event.executed:
            return []

        actions: List[TradeAction] = []
        multiple = position.realized_multiple(ratio)

        for index, tier in enumerate(self.config.take_profit_tiers):
            if position.has_applied_tier(index):
                continue
            if multiple < tier.threshold:
                break

            amount = position.tier_quantity(tier.sell_percent)
            try:
                position = store.apply(event.mint, RecordExit(
                    qty_reduced=amount,
                    tier_index=index,
                    expected_version=position.version,
                    slot=event.slot,
                ))
            except PositionError as e:
                self.logger.warning(f"Take profit tier {index} dropped: {e}")
                break

            self.logger.info(f"Take profit: Mint={event.mint}, tier={index}, multiple={float(multiple):.2f}x, "
                             f"tokens={amount}, remaining={position.quantity}")
            actions.append(ExitTierAction(
                token=event.mint,
                venue=position.venue,
                correlation_id=event.correlation_id,
                slot=event.slot,
                reference_price=ratio,
                pool_accounts=position.pool_accounts,
                percent=tier.sell_percent,
                tier_index=index,
                token_amount=amount,
                tip_urgency=TipUrgency.NORMAL,
                closes_position=position.status is PositionStatus.CLOSED,
            ))
            if not position.is_active:
                break

        return actions


def decide(event: TradeEvent, store: PositionStore, config: DecisionConfig,
           logger: Optional[logging.Logger] = None,
           tradable_venues: Optional[Collection[Venue]] = None) -> List[TradeAction]:
    """Stateless entry point for a single decision"""
    return CopyTradingStrategy(config, logger, tradable_venues).decide(event, store)
