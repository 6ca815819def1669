from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Dict, List, Optional, Tuple
import json
import os

import base58
import yaml
from dotenv import load_dotenv
from solders.keypair import Keypair

LAMPORTS_PER_SOL = 1_000_000_000


class ConfigError(ValueError):
    """Raised when configuration values are missing or inconsistent"""
    pass


@dataclass(frozen=True)
class TakeProfitTier:
    multiplier: float      # Price multiple to trigger (2.0 = 2x entry)
    sell_percent: int      # Share of the entry size to sell (1-100)

    @property
    def threshold(self) -> Fraction:
        return Fraction(str(self.multiplier))


DEFAULT_TAKE_PROFIT_TIERS = (
    TakeProfitTier(multiplier=2.0, sell_percent=20),
    TakeProfitTier(multiplier=3.0, sell_percent=30),
    TakeProfitTier(multiplier=5.0, sell_percent=50),
)


@dataclass(frozen=True)
class DecisionConfig:
    """Copy trading parameters"""
    monitored_wallet: str
    buy_amount_sol: float = 0.1             # Fixed amount to spend per copied entry
    max_buy_amount_sol: float = 1.0         # Hard cap on any single entry
    slippage_bps: int = 500
    take_profit_enabled: bool = True
    take_profit_tiers: Tuple[TakeProfitTier, ...] = DEFAULT_TAKE_PROFIT_TIERS
    emergency_exit_enabled: bool = True     # Mirror the monitored wallet's sells

    def __post_init__(self):
        if not self.monitored_wallet:
            raise ConfigError("monitored_wallet must be set")
        if self.buy_amount_sol <= 0 or self.max_buy_amount_sol <= 0:
            raise ConfigError("buy amounts must be positive")
        if not 0 <= self.slippage_bps <= 10_000:
            raise ConfigError(f"slippage_bps out of range: {self.slippage_bps}")
        previous = None
        for tier in self.take_profit_tiers:
            if not 1 <= tier.sell_percent <= 100:
                raise ConfigError(f"sell_percent out of range: {tier.sell_percent}")
            if tier.multiplier <= 0:
                raise ConfigError(f"multiplier must be positive: {tier.multiplier}")
            if previous is not None and tier.multiplier <= previous:
                raise ConfigError("take profit tiers must be sorted by ascending multiplier")
            previous = tier.multiplier

    @property
    def buy_amount_lamports(self) -> int:
        """Configured buy amount, capped at the maximum"""
        return int(round(min(self.buy_amount_sol, self.max_buy_amount_sol) * LAMPORTS_PER_SOL))


@dataclass(frozen=True)
class TipConfig:
    normal_amount: int = 10_000         # 0.00001 SOL
    emergency_amount: int = 100_000     # 0.0001 SOL
    max_amount: int = 500_000           # 0.0005 SOL, never exceeded
    retry_multiplier: int = 2

    def __post_init__(self):
        if self.normal_amount <= 0 or self.emergency_amount <= 0 or self.max_amount <= 0:
            raise ConfigError("tip amounts must be positive")
        if self.normal_amount > self.max_amount:
            raise ConfigError("normal tip exceeds tip cap")
        if self.retry_multiplier < 1:
            raise ConfigError("retry_multiplier must be at least 1")


@dataclass(frozen=True)
class BundleConfig:
    max_instructions_per_bundle: int = 24
    slot_window: int = 10
    compute_unit_limit: int = 400_000
    priority_fee_micro_lamports: int = 10_000


@dataclass(frozen=True)
class SubmissionConfig:
    block_engine_url: str = "https://frankfurt.mainnet.block-engine.jito.wtf"
    timeout_seconds: float = 30.0
    dry_run: bool = True


@dataclass(frozen=True)
class FeedConfig:
    ws_url: Optional[str] = None
    reconnect_delay_seconds: float = 1.0
    max_reconnect_attempts: int = 10
    dedup_window: int = 10_000


def parse_keypair(value: str) -> Keypair:
    """Parse a keypair from base58 or a JSON array of 64 bytes"""
    value = value.strip()
    if value.startswith('['):
        secret = bytes(json.loads(value))
    else:
        try:
            secret = base58.b58decode(value)
        except ValueError as e:
            raise ConfigError(f"Invalid keypair encoding: {e}") from e
    if len(secret) != 64:
        raise ConfigError("Invalid keypair format. Expected base58 or JSON array of 64 bytes.")
    return Keypair.from_bytes(secret)


def _tiers_from(raw: List[Dict[str, Any]]) -> Tuple[TakeProfitTier, ...]:
    return tuple(
        TakeProfitTier(multiplier=float(t['multiplier']), sell_percent=int(t['sell_percent']))
        for t in raw
    )


class Config:
    def __init__(self, config_path: str = "config.yaml", env: Optional[Dict[str, str]] = None):
        if env is None:
            load_dotenv()
            env = dict(os.environ)
        self.env = env

        config_data: Dict[str, Any] = {}
        if os.path.exists(config_path):
            config_data = self.load_config(config_path)

        self.private_key: Optional[str] = env.get('PRIVATE_KEY')
        self.rpc_url: str = env.get('RPC_URL', "https://api.mainnet-beta.solana.com")

        decision = dict(config_data.get('decision', {}))
        monitored_wallet = env.get('TARGET_WALLET') or decision.pop('monitored_wallet', None)
        decision.pop('monitored_wallet', None)
        if 'take_profit_tiers' in decision:
            decision['take_profit_tiers'] = _tiers_from(decision['take_profit_tiers'])
        elif env.get('TAKE_PROFIT_TIERS'):
            decision['take_profit_tiers'] = _tiers_from(json.loads(env['TAKE_PROFIT_TIERS']))
        try:
            self.decision = DecisionConfig(monitored_wallet=monitored_wallet, **decision)
            self.tips = TipConfig(**config_data.get('tips', {}))
            self.bundle = BundleConfig(**config_data.get('bundle', {}))
            submission = dict(config_data.get('submission', {}))
            if env.get('JITO_BLOCK_ENGINE_URL'):
                submission['block_engine_url'] = env['JITO_BLOCK_ENGINE_URL']
            self.submission = SubmissionConfig(**submission)
            feed = dict(config_data.get('feed', {}))
            if env.get('WS_URL'):
                feed['ws_url'] = env['WS_URL']
            self.feed = FeedConfig(**feed)
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e

        if not self.submission.dry_run and not self.private_key:
            raise ConfigError("PRIVATE_KEY is required for live submission")

    def load_config(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def keypair(self) -> Keypair:
        if not self.private_key:
            raise ConfigError("PRIVATE_KEY not set")
        return parse_keypair(self.private_key)
