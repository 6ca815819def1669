import asyncio
import signal
import sys
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair

from core.copy_trading_system import CopyTradingSystem
from data.helius_data_feed import HeliusDataFeed
from data.transaction_decoder import TransactionDecoder
from data.venues import VENUE_PROGRAM_IDS
from execution.bundle_builder import BundleBuilder
from execution.dry_run_executor import DryRunBundleClient
from execution.instructions import InstructionRouter
from execution.jito_client import JitoClient
from execution.submitter import BundleSubmitter
from risk.position_store import PositionStore
from risk.position_tracker import PositionTracker
from strategies.copy_trading_strategy import CopyTradingStrategy
from utils.config import Config, ConfigError
from utils.logger import TradingLogger


def build_system(config: Config, logger: TradingLogger) -> CopyTradingSystem:
    """Wire up the pipeline from configuration"""
    if config.submission.dry_run:
        # Paper mode only needs a pubkey to lay out instructions
        wallet = config.keypair() if config.private_key else Keypair()
        client = DryRunBundleClient(logger)
    else:
        wallet = config.keypair()
        client = JitoClient(
            block_engine_url=config.submission.block_engine_url,
            wallet=wallet,
            rpc_client=AsyncClient(config.rpc_url),
            logger=logger,
            timeout=config.submission.timeout_seconds,
        )

    router = InstructionRouter(wallet.pubkey(), config.decision.slippage_bps)
    builder = BundleBuilder(router, config.tips, config.bundle, logger)
    submitter = BundleSubmitter(client, builder, config.submission, logger)
    data_feed = HeliusDataFeed(
        config.feed,
        account_include=[config.decision.monitored_wallet, *VENUE_PROGRAM_IDS],
        logger=logger,
    )

    return CopyTradingSystem(
        decoder=TransactionDecoder(logger),
        strategy=CopyTradingStrategy(config.decision, logger, tradable_venues=router.supported_venues),
        store=PositionStore(logger),
        builder=builder,
        submitter=submitter,
        position_tracker=PositionTracker(csv_path="data/trades/copy_trades.csv"),
        operator_wallet=str(wallet.pubkey()),
        dedup_window=config.feed.dedup_window,
        data_feed=data_feed,
        logger=logger,
    )


class InitTradingSystem:
    def __init__(self, logger: TradingLogger = None):
        self.trading_bot: Optional[CopyTradingSystem] = None
        self.logger = logger
        self._shutdown_requested = False

    def handle_shutdown(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}. Starting graceful shutdown...")
        self._shutdown_requested = True

    async def run_trading_system(self, config: Config) -> None:
        """Run the copy trader until a shutdown signal arrives"""
        self.trading_bot = build_system(config, self.logger)
        self.logger.info(
            f"Copying {config.decision.monitored_wallet}: buy={config.decision.buy_amount_sol} SOL, "
            f"tiers={[(t.multiplier, t.sell_percent) for t in config.decision.take_profit_tiers]}, "
            f"dry_run={config.submission.dry_run}"
        )

        feed_task = asyncio.create_task(self.trading_bot.start())
        try:
            # Keep the system running until shutdown signal or the feed gives up
            while not self._shutdown_requested and not feed_task.done():
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            self.logger.info("Received cancellation request")
        finally:
            await self.shutdown()
            if not feed_task.done():
                feed_task.cancel()
            await asyncio.gather(feed_task, return_exceptions=True)

    async def shutdown(self):
        """Gracefully shutdown the trading system"""
        if self.trading_bot is None:
            return
        self.logger.info("Shutting down trading system...")
        shutdown_timeout = 30
        try:
            await asyncio.wait_for(self.trading_bot.stop(), timeout=shutdown_timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Shutdown timed out after {shutdown_timeout} seconds")
        finally:
            await self.trading_bot.submitter.client.close()

        summary = self.trading_bot.summary()
        self.logger.info(f"Session summary: {summary}")
        print(f"Decoder: {summary['decoder']}")
        print(f"Submissions: {summary['submissions']}")
        print(f"Open positions: {summary['open_positions']}")
        print(f"Trades: {summary['trades']}")
        if self.trading_bot.position_tracker.trades:
            path = self.trading_bot.position_tracker.export_csv()
            print(f"Trade history written to {path}")


async def main():
    # Configure logging
    logger = TradingLogger("copy_trader", console_output=True)

    try:
        config = Config("config.yaml")
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    init_system = InitTradingSystem(logger)

    # Register signal handlers
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, init_system.handle_shutdown)

    try:
        logger.info("Starting copy trading system...")
        await init_system.run_trading_system(config)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        logger.info("Copy trading system shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
