"""Pytest configuration and fixtures."""

import itertools
import logging
from datetime import datetime
from typing import Optional

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from core.types import (
    Direction, RawInstruction, RawTransaction, TokenBalance, TradeEvent, Venue,
)
from data.venues import PUMP_BUY_ARGS, PUMP_SELL_ARGS, PUMP_FUN_PROGRAM, RAYDIUM_AMM_PROGRAM, RAYDIUM_SWAP
from execution.bundle_builder import BundleBuilder
from execution.instructions import InstructionRouter
from risk.position_store import PositionStore
from utils.config import BundleConfig, DecisionConfig, TakeProfitTier, TipConfig

_signatures = itertools.count(1)


def new_address() -> str:
    return str(Pubkey.new_unique())


def new_signature() -> str:
    return f"sig{next(_signatures)}"


def create_trade_event(
    *,
    mint: str,
    trader: str,
    direction: Direction = Direction.BUY,
    sol: int = 1_000_000_000,
    tokens: int = 1_000_000,
    slot: int = 100,
    signature: Optional[str] = None,
    venue: Venue = Venue.PUMP_FUN,
    instruction_index: int = 0,
    executed: bool = True,
) -> TradeEvent:
    """Create a TradeEvent; ``sol`` and ``tokens`` are the two legs regardless of direction."""
    amount_in, amount_out = (sol, tokens) if direction is Direction.BUY else (tokens, sol)
    return TradeEvent(
        venue=venue,
        mint=mint,
        trader=trader,
        direction=direction,
        amount_in=amount_in,
        amount_out=amount_out,
        slot=slot,
        signature=signature or new_signature(),
        timestamp=datetime.now(),
        instruction_index=instruction_index,
        executed=executed,
    )


def pump_instruction_data(direction: Direction, sol: int, tokens: int) -> bytes:
    if direction is Direction.BUY:
        return PUMP_BUY_ARGS.build(dict(amount=tokens, max_sol_cost=sol))
    return PUMP_SELL_ARGS.build(dict(amount=tokens, min_sol_output=sol))


def create_pump_transaction(
    *,
    mint: str,
    trader: str,
    direction: Direction = Direction.BUY,
    sol: int = 1_000_000_000,
    tokens: int = 1_000_000,
    slot: int = 100,
    signature: Optional[str] = None,
    filled_sol: Optional[int] = None,
    filled_tokens: Optional[int] = None,
    with_balances: bool = True,
) -> RawTransaction:
    """A transaction with a single top-level pump.fun buy or sell.

    Accounts 0-11 follow the pump.fun layout (mint at 2, user token account
    at 5, user at 6), the program id sits at 12. ``sol``/``tokens`` go into
    the instruction as limits; the balance metadata moves the trader by
    ``filled_sol``/``filled_tokens``, which default to the limits.
    """
    keys = [new_address() for _ in range(12)] + [PUMP_FUN_PROGRAM]
    keys[2] = mint
    keys[6] = trader
    instruction = RawInstruction(
        program_id_index=12,
        accounts=tuple(range(12)),
        data=pump_instruction_data(direction, sol, tokens),
    )
    if not with_balances:
        return RawTransaction(
            slot=slot,
            signature=signature or new_signature(),
            instructions=(instruction,),
            account_keys=tuple(keys),
            timestamp=datetime.now(),
        )

    filled_sol = sol if filled_sol is None else filled_sol
    filled_tokens = tokens if filled_tokens is None else filled_tokens
    sign = 1 if direction is Direction.BUY else -1
    pre_balances = [10_000_000_000] * len(keys)
    post_balances = list(pre_balances)
    post_balances[6] -= sign * filled_sol
    held = 0 if direction is Direction.BUY else filled_tokens
    token_account = TokenBalance(account_index=5, mint=mint, owner=trader,
                                 pre_amount=held, post_amount=held + sign * filled_tokens)
    return RawTransaction(
        slot=slot,
        signature=signature or new_signature(),
        instructions=(instruction,),
        account_keys=tuple(keys),
        timestamp=datetime.now(),
        token_balances=(token_account,),
        pre_balances=tuple(pre_balances),
        post_balances=tuple(post_balances),
        fee=5_000,
    )


def create_raydium_transaction(
    *,
    trader: str,
    source_mint: Optional[str],
    destination_mint: Optional[str],
    amount_in: int = 1_000_000_000,
    minimum_out: int = 1_000_000,
    slot: int = 100,
    signature: Optional[str] = None,
) -> RawTransaction:
    """A Raydium AMM v4 swapBaseIn with 18 accounts; a ``None`` mint leaves
    that token account out of the balance metadata."""
    keys = [new_address() for _ in range(17)] + [trader, RAYDIUM_AMM_PROGRAM]
    balances = []
    if source_mint is not None:
        balances.append(TokenBalance(account_index=15, mint=source_mint, owner=trader))
    if destination_mint is not None:
        balances.append(TokenBalance(account_index=16, mint=destination_mint, owner=trader))
    instruction = RawInstruction(
        program_id_index=18,
        accounts=tuple(range(18)),
        data=RAYDIUM_SWAP.build(dict(tag=9, amount_a=amount_in, amount_b=minimum_out)),
    )
    return RawTransaction(
        slot=slot,
        signature=signature or new_signature(),
        instructions=(instruction,),
        account_keys=tuple(keys),
        timestamp=datetime.now(),
        token_balances=tuple(balances),
    )


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("copy_trader.tests")


@pytest.fixture
def monitored_wallet() -> str:
    return new_address()


@pytest.fixture
def mint() -> str:
    return new_address()


@pytest.fixture
def operator() -> Keypair:
    return Keypair()


@pytest.fixture
def store(logger) -> PositionStore:
    return PositionStore(logger)


@pytest.fixture
def decision_config(monitored_wallet) -> DecisionConfig:
    """0.1 SOL entries with a single 2x / 20% take profit tier"""
    return DecisionConfig(
        monitored_wallet=monitored_wallet,
        buy_amount_sol=0.1,
        take_profit_tiers=(TakeProfitTier(multiplier=2.0, sell_percent=20),),
    )


@pytest.fixture
def tip_config() -> TipConfig:
    return TipConfig()


@pytest.fixture
def bundle_config() -> BundleConfig:
    return BundleConfig()


@pytest.fixture
def router(operator) -> InstructionRouter:
    return InstructionRouter(operator.pubkey(), slippage_bps=500)


@pytest.fixture
def builder(router, tip_config, bundle_config, logger) -> BundleBuilder:
    return BundleBuilder(router, tip_config, bundle_config, logger)


@pytest.fixture
def make_event():
    return create_trade_event


@pytest.fixture
def make_pump_tx():
    return create_pump_transaction


@pytest.fixture
def make_raydium_tx():
    return create_raydium_transaction
