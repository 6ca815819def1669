from fractions import Fraction
from typing import Dict, FrozenSet, List, Optional, Tuple

from solders.instruction import Instruction, AccountMeta
from solders.pubkey import Pubkey
from solders.system_program import transfer, TransferParams
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    get_associated_token_address,
    create_associated_token_account,
    close_account,
    CloseAccountParams,
    sync_native,
    SyncNativeParams,
)

from core.events import TradeAction, EnterAction, EmergencyExitAction
from core.types import Venue
from data.venues import PUMP_BUY_ARGS, PUMP_SELL_ARGS, RAYDIUM_SWAP, RAYDIUM_SWAP_BASE_IN
from .constants import (
    PUMP_PROGRAM, PUMP_GLOBAL, PUMP_FEE, PUMP_EVENT_AUTHORITY, RAYDIUM_AMM_PROGRAM, SYSTEM_PROGRAM, SYSTEM_TOKEN_PROGRAM,
    SYSTEM_RENT, ASSOCIATED_TOKEN_PROGRAM_ID, COMPUTE_BUDGET_ID, WSOL_MINT,
)


class BundleError(Exception):
    """Raised when trade actions cannot be turned into a bundle"""
    pass


class UnsupportedVenueError(BundleError):
    def __init__(self, venue: Venue):
        super().__init__(f"No instruction builder for venue {venue.value}")
        self.venue = venue


def apply_slippage(amount: int, slippage_bps: int) -> int:
    return amount - (amount * slippage_bps) // 10000


def expected_sol_out(token_amount: int, reference_price: Fraction) -> int:
    return int(token_amount * reference_price)


class Instructions:
    def __init__(self, owner: Pubkey):
        self.owner = owner
        self.created_atas = set()  # Track ATAs we've created or verified

    def get_or_create_ata(self, mint: Pubkey) -> Tuple[Pubkey, Optional[Instruction]]:
        """Get or create user's associated token account using in-memory tracking"""
        mint_str = str(mint)
        ata = get_associated_token_address(self.owner, mint)

        if mint_str in self.created_atas:
            return ata, None

        # Assume the creation lands; entries are first-buy-only so a mint is created at most once
        self.created_atas.add(mint_str)

        create_ata_ix = create_associated_token_account(
            payer=self.owner,
            owner=self.owner,
            mint=mint
        )
        return ata, create_ata_ix

    def get_and_close_ata(self, mint: Pubkey) -> Tuple[Pubkey, Instruction]:
        """Get associated token account and create instruction to close it

        Used when a sell empties the account, to reclaim rent.

        Args:
            mint: The token mint address

        Returns:
            Tuple of (token_account, close_instruction)
        """
        ata = get_associated_token_address(self.owner, mint)
        params = CloseAccountParams(
            account=ata,
            dest=self.owner,
            owner=self.owner,
            program_id=TOKEN_PROGRAM_ID
        )
        self.created_atas.discard(str(mint))
        return ata, close_account(params)

    def create_compute_budget_instructions(
        self,
        priority_fee: int = 10_000,
        compute_unit_limit: int = 400_000
    ) -> Tuple[Instruction, Instruction]:
        """Create compute budget instructions for transaction priority

        Args:
            priority_fee: Priority fee in microlamports
            compute_unit_limit: Compute unit limit

        Returns:
            Tuple of (compute_limit_ix, compute_price_ix)
        """
        # Set Compute Unit Limit (instruction ID: 2)
        compute_limit_ix = Instruction(
            program_id=COMPUTE_BUDGET_ID,
            data=bytes([2]) + compute_unit_limit.to_bytes(4, "little"),
            accounts=[]
        )

        # Set Compute Unit Price (instruction ID: 3)
        compute_price_ix = Instruction(
            program_id=COMPUTE_BUDGET_ID,
            data=bytes([3]) + priority_fee.to_bytes(8, "little"),
            accounts=[]
        )

        return compute_limit_ix, compute_price_ix

    def create_tip_instruction(self, tip_account: Pubkey, lamports: int) -> Instruction:
        return transfer(TransferParams(from_pubkey=self.owner, to_pubkey=tip_account, lamports=lamports))


class PumpFunInstructions:
    venue = Venue.PUMP_FUN

    def __init__(self, instructions: Instructions, slippage_bps: int):
        self.instructions = instructions
        self.slippage_bps = slippage_bps

    def get_bonding_curve_pda(self, mint: Pubkey) -> Pubkey:
        """Derive the bonding curve PDA for a given mint"""
        pda, _ = Pubkey.find_program_address([b"bonding-curve", bytes(mint)], PUMP_PROGRAM)
        return pda

    def build(self, action: TradeAction) -> List[Instruction]:
        mint = Pubkey.from_string(action.token)
        bonding_curve = self.get_bonding_curve_pda(mint)
        associated_bonding_curve = get_associated_token_address(bonding_curve, mint)

        if isinstance(action, EnterAction):
            user_ata, user_ata_ix = self.instructions.get_or_create_ata(mint)
            buy_ix = self.create_buy_instruction(
                mint=mint,
                bonding_curve=bonding_curve,
                associated_bonding_curve=associated_bonding_curve,
                user_ata=user_ata,
                token_amount=apply_slippage(action.expected_token_amount, self.slippage_bps),
                max_sol_amount=action.sol_amount,
            )
            return [user_ata_ix, buy_ix] if user_ata_ix else [buy_ix]

        if isinstance(action, EmergencyExitAction):
            min_sol_output = 0
        else:
            min_sol_output = apply_slippage(expected_sol_out(action.token_amount, action.reference_price),
                                            self.slippage_bps)

        if action.closes_position:
            user_ata, close_ix = self.instructions.get_and_close_ata(mint)
        else:
            user_ata, close_ix = get_associated_token_address(self.instructions.owner, mint), None

        sell_ix = self.create_sell_instruction(
            mint=mint,
            bonding_curve=bonding_curve,
            associated_bonding_curve=associated_bonding_curve,
            user_ata=user_ata,
            token_amount=action.token_amount,
            min_sol_output=min_sol_output,
        )
        return [sell_ix, close_ix] if close_ix else [sell_ix]

    def create_buy_instruction(
        self,
        mint: Pubkey,
        bonding_curve: Pubkey,
        associated_bonding_curve: Pubkey,
        user_ata: Pubkey,
        token_amount: int,
        max_sol_amount: int
    ) -> Instruction:
        """Create the buy instruction with token amount and max SOL"""
        accounts = [
            AccountMeta(pubkey=PUMP_GLOBAL, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_FEE, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=bonding_curve, is_signer=False, is_writable=True),
            AccountMeta(pubkey=associated_bonding_curve, is_signer=False, is_writable=True),
            AccountMeta(pubkey=user_ata, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.instructions.owner, is_signer=True, is_writable=True),
            AccountMeta(pubkey=SYSTEM_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_TOKEN_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_RENT, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_EVENT_AUTHORITY, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_PROGRAM, is_signer=False, is_writable=False),
        ]
        data = PUMP_BUY_ARGS.build(dict(amount=token_amount, max_sol_cost=max_sol_amount))
        return Instruction(PUMP_PROGRAM, data, accounts)

    def create_sell_instruction(
        self,
        mint: Pubkey,
        bonding_curve: Pubkey,
        associated_bonding_curve: Pubkey,
        user_ata: Pubkey,
        token_amount: int,
        min_sol_output: int
    ) -> Instruction:
        """Create the sell instruction according to the Pump IDL"""
        accounts = [
            AccountMeta(pubkey=PUMP_GLOBAL, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_FEE, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=bonding_curve, is_signer=False, is_writable=True),
            AccountMeta(pubkey=associated_bonding_curve, is_signer=False, is_writable=True),
            AccountMeta(pubkey=user_ata, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.instructions.owner, is_signer=True, is_writable=True),
            AccountMeta(pubkey=SYSTEM_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_TOKEN_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_EVENT_AUTHORITY, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMP_PROGRAM, is_signer=False, is_writable=False),
        ]
        data = PUMP_SELL_ARGS.build(dict(amount=token_amount, min_sol_output=min_sol_output))
        return Instruction(PUMP_PROGRAM, data, accounts)


class RaydiumAmmInstructions:
    """Mirrors a Raydium AMM v4 swap through the same pool the monitored wallet used.

    ``pool_accounts`` are the accounts between the token program and the
    user accounts of the observed instruction (13 or 14 of them).
    """
    venue = Venue.RAYDIUM_AMM

    def __init__(self, instructions: Instructions, slippage_bps: int):
        self.instructions = instructions
        self.slippage_bps = slippage_bps

    def build(self, action: TradeAction) -> List[Instruction]:
        if len(action.pool_accounts) not in (13, 14):
            raise BundleError(f"Raydium pool accounts missing for {action.token}: got {len(action.pool_accounts)}")

        owner = self.instructions.owner
        mint = Pubkey.from_string(action.token)
        wsol_ata, create_wsol_ix = self.instructions.get_or_create_ata(WSOL_MINT)
        _, close_wsol_ix = self.instructions.get_and_close_ata(WSOL_MINT)
        ixs: List[Instruction] = [create_wsol_ix] if create_wsol_ix else []

        if isinstance(action, EnterAction):
            token_ata, create_token_ix = self.instructions.get_or_create_ata(mint)
            ixs.append(transfer(TransferParams(from_pubkey=owner, to_pubkey=wsol_ata, lamports=action.sol_amount)))
            ixs.append(sync_native(SyncNativeParams(program_id=TOKEN_PROGRAM_ID, account=wsol_ata)))
            if create_token_ix:
                ixs.append(create_token_ix)
            min_out = apply_slippage(action.expected_token_amount, self.slippage_bps)
            ixs.append(self.create_swap_instruction(action.pool_accounts, wsol_ata, token_ata,
                                                    action.sol_amount, min_out))
            ixs.append(close_wsol_ix)
            return ixs

        if isinstance(action, EmergencyExitAction):
            min_out = 0
        else:
            min_out = apply_slippage(expected_sol_out(action.token_amount, action.reference_price), self.slippage_bps)

        if action.closes_position:
            token_ata, close_token_ix = self.instructions.get_and_close_ata(mint)
        else:
            token_ata, close_token_ix = get_associated_token_address(owner, mint), None

        ixs.append(self.create_swap_instruction(action.pool_accounts, token_ata, wsol_ata,
                                                action.token_amount, min_out))
        ixs.append(close_wsol_ix)
        if close_token_ix:
            ixs.append(close_token_ix)
        return ixs

    def create_swap_instruction(
        self,
        pool_accounts: Tuple[str, ...],
        source: Pubkey,
        destination: Pubkey,
        amount_in: int,
        minimum_out: int,
    ) -> Instruction:
        # authority, serum program and vault signer are read-only
        read_only = {1, len(pool_accounts) - 8, len(pool_accounts) - 1}
        accounts = [AccountMeta(pubkey=SYSTEM_TOKEN_PROGRAM, is_signer=False, is_writable=False)]
        accounts.extend(
            AccountMeta(pubkey=Pubkey.from_string(address), is_signer=False, is_writable=i not in read_only)
            for i, address in enumerate(pool_accounts)
        )
        accounts.extend([
            AccountMeta(pubkey=source, is_signer=False, is_writable=True),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.instructions.owner, is_signer=True, is_writable=False),
        ])
        data = RAYDIUM_SWAP.build(dict(tag=RAYDIUM_SWAP_BASE_IN, amount_a=amount_in, amount_b=minimum_out))
        return Instruction(RAYDIUM_AMM_PROGRAM, data, accounts)


class InstructionRouter:
    """Picks the venue-specific builder for each trade action"""

    def __init__(self, owner: Pubkey, slippage_bps: int, builders: Optional[Dict[Venue, object]] = None):
        self.instructions = Instructions(owner)
        if builders is None:
            builders = {
                Venue.PUMP_FUN: PumpFunInstructions(self.instructions, slippage_bps),
                Venue.RAYDIUM_AMM: RaydiumAmmInstructions(self.instructions, slippage_bps),
            }
        self.builders = builders

    @property
    def supported_venues(self) -> FrozenSet[Venue]:
        return frozenset(self.builders)

    def build(self, action: TradeAction) -> List[Instruction]:
        builder = self.builders.get(action.venue)
        if builder is None:
            raise UnsupportedVenueError(action.venue)
        return builder.build(action)
