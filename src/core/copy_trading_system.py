from collections import OrderedDict
from typing import Dict, List, Optional

from core.events import Bundle, TradeAction
from core.types import RawTransaction
from data.transaction_decoder import TransactionDecoder
from execution.bundle_builder import BundleBuilder
from execution.submitter import BundleSubmitter, SubmissionReport
from risk.position_store import PositionStore
from risk.position_tracker import PositionTracker
from strategies.copy_trading_strategy import CopyTradingStrategy
from utils.logger import TradingLogger


class CopyTradingSystem:
    """Runs each raw transaction through decode, decide and bundle.

    Bundles are handed to the submitter, which sends them in the
    background; processing never waits on the network.
    """

    def __init__(self,
                 decoder: TransactionDecoder,
                 strategy: CopyTradingStrategy,
                 store: PositionStore,
                 builder: BundleBuilder,
                 submitter: BundleSubmitter,
                 position_tracker: Optional[PositionTracker] = None,
                 operator_wallet: Optional[str] = None,
                 dedup_window: int = 10_000,
                 data_feed=None,
                 logger: TradingLogger = None):
        self.logger = logger or TradingLogger("copy_trading_system", console_output=False)
        self.decoder = decoder
        self.strategy = strategy
        self.store = store
        self.builder = builder
        self.submitter = submitter
        self.position_tracker = position_tracker or PositionTracker()
        self.operator_wallet = operator_wallet
        self.dedup_window = dedup_window
        self.data_feed = data_feed
        self.is_running = False

        self._seen_signatures: "OrderedDict[str, None]" = OrderedDict()
        self.submitter.add_callback(self._on_submission)

    def _is_duplicate(self, signature: str) -> bool:
        if signature in self._seen_signatures:
            self._seen_signatures.move_to_end(signature)
            return True
        self._seen_signatures[signature] = None
        if len(self._seen_signatures) > self.dedup_window:
            self._seen_signatures.popitem(last=False)
        return False

    async def process_transaction(self, raw: RawTransaction) -> List[Bundle]:
        """Process one transaction; returns the bundles scheduled for submission"""
        if self._is_duplicate(raw.signature):
            self.logger.debug(f"Ignoring duplicate transaction {raw.signature}")
            return []

        actions: List[TradeAction] = []
        for event in self.decoder.decode(raw):
            if self.operator_wallet and event.trader == self.operator_wallet:
                self.logger.debug(f"Skipping our own swap {event.correlation_id}")
                continue
            actions.extend(self.strategy.decide(event, self.store))

        if not actions:
            return []

        for action in actions:
            self.position_tracker.record_action(action, raw.timestamp)

        bundles = self.builder.build(actions)
        self.submitter.submit(bundles)
        self.logger.info(f"Scheduled {len(bundles)} bundle(s) for {len(actions)} action(s) from {raw.signature}")
        return bundles

    async def _on_submission(self, report: SubmissionReport):
        bundle = report.bundle
        bundle_id = report.result.bundle_id if report.result else None
        for action in bundle.actions:
            self.position_tracker.record_submission(action.correlation_id, action.token, report.accepted, bundle_id)

    async def start(self):
        """Start consuming the data feed"""
        if self.data_feed is None:
            raise ValueError("No data feed configured")
        try:
            self.is_running = True
            self.logger.critical("Copy Trading System Starting")

            async def on_transaction(raw: RawTransaction):
                if not self.is_running:
                    return
                try:
                    await self.process_transaction(raw)
                except Exception as e:
                    self.logger.error(f"Error processing transaction {raw.signature}: {str(e)}")

            self.data_feed.add_callback(on_transaction)
            await self.data_feed.start()

        except Exception as e:
            self.logger.critical(f"Failed to start copy trading system: {str(e)}")
            self.is_running = False
            raise

    async def stop(self):
        """Stop the feed and wait for in-flight submissions"""
        self.logger.critical("Initiating copy trading system shutdown")
        self.is_running = False
        if self.data_feed is not None:
            await self.data_feed.stop()

        if self.submitter.pending:
            self.logger.info(f"Waiting for {self.submitter.pending} in-flight submissions")
        await self.submitter.drain()
        self.logger.info("Copy trading system stopped successfully")

    def summary(self) -> Dict:
        return {
            'decoder': dict(self.decoder.decode_health),
            'submissions': dict(self.submitter.health),
            'open_positions': self.store.open_positions_count(),
            'trades': self.position_tracker.stats(),
        }
