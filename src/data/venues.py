"""Venue-specific swap instruction decoders.

Each venue recognises its own instruction tags and account layout and
produces the canonical ``TradeEvent``. Decoders return ``None`` for tags
they do not care about and raise ``DecodeError`` when a recognised
instruction is malformed.
"""
from typing import Dict, List, Optional, Tuple

from construct import Struct, Const, Int8ul, Int16ul, Int64ul, Flag, BytesInteger, ConstructError

from core.types import Venue, Direction, TradeEvent, RawTransaction, RawInstruction, WSOL_MINT

RAYDIUM_AMM_PROGRAM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
RAYDIUM_CLMM_PROGRAM = "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK"
JUPITER_PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
PUMP_FUN_PROGRAM = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
ORCA_WHIRLPOOL_PROGRAM = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"

# Raydium AMM v4 single byte tags
RAYDIUM_SWAP_BASE_IN = 9
RAYDIUM_SWAP_BASE_OUT = 11

# Anchor discriminators
JUPITER_ROUTE = bytes([0xe5, 0x17, 0xcb, 0x97, 0x7a, 0xe3, 0xad, 0x2a])
JUPITER_SHARED_ACCOUNTS_ROUTE = bytes([0xc1, 0x20, 0x9b, 0x33, 0x41, 0xd6, 0x9c, 0x81])
PUMP_BUY = bytes([0x66, 0x06, 0x3d, 0x12, 0x01, 0xda, 0xeb, 0xea])
PUMP_SELL = bytes([0x33, 0xe6, 0x85, 0xa4, 0x01, 0x7f, 0x83, 0xad])
ANCHOR_SWAP = bytes([0xf8, 0xc6, 0x9e, 0x91, 0xe1, 0x75, 0x87, 0xc8])

RAYDIUM_SWAP = Struct(
    "tag" / Int8ul,
    "amount_a" / Int64ul,
    "amount_b" / Int64ul,
)

# Jupiter's route plan is variable length; the amounts sit in a fixed tail
JUPITER_ROUTE_TAIL = Struct(
    "in_amount" / Int64ul,
    "quoted_out_amount" / Int64ul,
    "slippage_bps" / Int16ul,
    "platform_fee_bps" / Int8ul,
)

PUMP_BUY_ARGS = Struct(
    Const(PUMP_BUY),
    "amount" / Int64ul,
    "max_sol_cost" / Int64ul,
)

PUMP_SELL_ARGS = Struct(
    Const(PUMP_SELL),
    "amount" / Int64ul,
    "min_sol_output" / Int64ul,
)

WHIRLPOOL_SWAP_ARGS = Struct(
    Const(ANCHOR_SWAP),
    "amount" / Int64ul,
    "other_amount_threshold" / Int64ul,
    "sqrt_price_limit" / BytesInteger(16, swapped=True),
    "amount_specified_is_input" / Flag,
    "a_to_b" / Flag,
)

CLMM_SWAP_ARGS = Struct(
    Const(ANCHOR_SWAP),
    "amount" / Int64ul,
    "other_amount_threshold" / Int64ul,
    "sqrt_price_limit_x64" / BytesInteger(16, swapped=True),
    "is_base_input" / Flag,
)


class DecodeError(ValueError):
    """A recognised instruction could not be interpreted"""

    def __init__(self, message: str, venue: Venue = None, signature: str = "", instruction_index: int = -1):
        super().__init__(message)
        self.venue = venue
        self.signature = signature
        self.instruction_index = instruction_index


class VenueDecoder:
    venue: Venue
    program_id: str
    min_accounts: int = 0

    def decode(self, raw: RawTransaction, instruction: RawInstruction, index: int) -> Optional[TradeEvent]:
        raise NotImplementedError

    def _fail(self, message: str, raw: RawTransaction, index: int) -> DecodeError:
        return DecodeError(
            f"{self.venue.value}: {message} (tx={raw.signature}, ix={index})",
            venue=self.venue,
            signature=raw.signature,
            instruction_index=index,
        )

    def _accounts(self, raw: RawTransaction, instruction: RawInstruction, index: int) -> List[str]:
        try:
            accounts = raw.instruction_accounts(instruction)
        except IndexError:
            raise self._fail("account index out of range", raw, index)
        if len(accounts) < self.min_accounts:
            raise self._fail(f"expected at least {self.min_accounts} accounts, got {len(accounts)}", raw, index)
        return accounts

    def _parse(self, layout: Struct, data: bytes, raw: RawTransaction, index: int):
        try:
            return layout.parse(data)
        except ConstructError as e:
            raise self._fail(f"bad instruction data: {e}", raw, index)

    def _resolve_legs(
        self,
        raw: RawTransaction,
        instruction: RawInstruction,
        source_position: int,
        destination_position: int,
        index: int,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Look up the mints behind the source/destination token accounts.

        Temporary wrapped SOL accounts are opened and closed inside the same
        transaction and never show up in the balance metadata, so a missing
        leg opposite a resolved token mint is taken to be wrapped SOL.
        """
        source = raw.mint_at(instruction.accounts[source_position])
        destination = raw.mint_at(instruction.accounts[destination_position])
        if source is None and destination is None:
            raise self._fail("cannot resolve mints of swap token accounts", raw, index)
        if source is None:
            source = WSOL_MINT if destination != WSOL_MINT else None
        elif destination is None:
            destination = WSOL_MINT if source != WSOL_MINT else None
        if source is None or destination is None:
            raise self._fail("cannot resolve non-SOL leg of swap", raw, index)
        return source, destination

    def _event(
        self,
        raw: RawTransaction,
        index: int,
        trader: str,
        source_mint: str,
        destination_mint: str,
        amount_in: int,
        amount_out: int,
        pool_accounts: Tuple[str, ...] = (),
    ) -> Optional[TradeEvent]:
        """Build the event from the trader's side of the swap; token-to-token swaps are not SOL trades"""
        if source_mint == WSOL_MINT and destination_mint != WSOL_MINT:
            direction, mint = Direction.BUY, destination_mint
        elif destination_mint == WSOL_MINT and source_mint != WSOL_MINT:
            direction, mint = Direction.SELL, source_mint
        else:
            return None

        return TradeEvent(
            venue=self.venue,
            mint=mint,
            trader=trader,
            direction=direction,
            amount_in=amount_in,
            amount_out=amount_out,
            slot=raw.slot,
            signature=raw.signature,
            timestamp=raw.timestamp,
            pool_accounts=pool_accounts,
            instruction_index=index,
        )


class RaydiumAmmDecoder(VenueDecoder):
    """Raydium AMM v4 swapBaseIn / swapBaseOut.

    Accounts: token program, amm, authority, open orders, [target orders],
    pool coin vault, pool pc vault, serum program, market, bids, asks,
    event queue, serum coin vault, serum pc vault, vault signer,
    user source, user destination, user owner.
    """
    venue = Venue.RAYDIUM_AMM
    program_id = RAYDIUM_AMM_PROGRAM
    min_accounts = 17

    def decode(self, raw, instruction, index):
        if not instruction.data or instruction.data[0] not in (RAYDIUM_SWAP_BASE_IN, RAYDIUM_SWAP_BASE_OUT):
            return None

        args = self._parse(RAYDIUM_SWAP, instruction.data, raw, index)
        accounts = self._accounts(raw, instruction, index)
        count = len(accounts)
        source_mint, destination_mint = self._resolve_legs(raw, instruction, count - 3, count - 2, index)

        # base in: (amount_in, minimum_out); base out: (maximum_in, amount_out)
        return self._event(
            raw, index,
            trader=accounts[-1],
            source_mint=source_mint,
            destination_mint=destination_mint,
            amount_in=args.amount_a,
            amount_out=args.amount_b,
            pool_accounts=tuple(accounts[1:-3]),
        )


class JupiterDecoder(VenueDecoder):
    venue = Venue.JUPITER
    program_id = JUPITER_PROGRAM
    min_accounts = 9
    shared_min_accounts = 13

    def decode(self, raw, instruction, index):
        discriminator = instruction.data[:8]
        if discriminator not in (JUPITER_ROUTE, JUPITER_SHARED_ACCOUNTS_ROUTE):
            return None

        if len(instruction.data) < 8 + 4 + JUPITER_ROUTE_TAIL.sizeof():
            raise self._fail("route data too short", raw, index)
        tail = self._parse(JUPITER_ROUTE_TAIL, instruction.data[-JUPITER_ROUTE_TAIL.sizeof():], raw, index)
        accounts = self._accounts(raw, instruction, index)

        if discriminator == JUPITER_ROUTE:
            trader = accounts[1]
            destination_mint = accounts[5]
            source_mint = raw.mint_at(instruction.accounts[2])
            if source_mint is None:
                if destination_mint == WSOL_MINT:
                    raise self._fail("cannot resolve source mint of route", raw, index)
                source_mint = WSOL_MINT
        else:
            if len(accounts) < self.shared_min_accounts:
                raise self._fail(
                    f"expected at least {self.shared_min_accounts} accounts, got {len(accounts)}", raw, index
                )
            trader = accounts[2]
            source_mint = accounts[7]
            destination_mint = accounts[8]

        return self._event(
            raw, index,
            trader=trader,
            source_mint=source_mint,
            destination_mint=destination_mint,
            amount_in=tail.in_amount,
            amount_out=tail.quoted_out_amount,
        )


class PumpFunDecoder(VenueDecoder):
    """Bonding-curve launch venue. Accounts: global, fee recipient, mint,
    bonding curve, associated bonding curve, user ATA, user, ..."""
    venue = Venue.PUMP_FUN
    program_id = PUMP_FUN_PROGRAM
    min_accounts = 12

    def decode(self, raw, instruction, index):
        discriminator = instruction.data[:8]
        if discriminator not in (PUMP_BUY, PUMP_SELL):
            return None

        accounts = self._accounts(raw, instruction, index)
        mint = accounts[2]
        pool_accounts = (accounts[3], accounts[4])

        if discriminator == PUMP_BUY:
            args = self._parse(PUMP_BUY_ARGS, instruction.data, raw, index)
            return self._event(raw, index, accounts[6], WSOL_MINT, mint,
                               amount_in=args.max_sol_cost, amount_out=args.amount,
                               pool_accounts=pool_accounts)

        args = self._parse(PUMP_SELL_ARGS, instruction.data, raw, index)
        return self._event(raw, index, accounts[6], mint, WSOL_MINT,
                           amount_in=args.amount, amount_out=args.min_sol_output,
                           pool_accounts=pool_accounts)


class OrcaWhirlpoolDecoder(VenueDecoder):
    """Accounts: token program, authority, whirlpool, owner account A, vault A,
    owner account B, vault B, tick arrays 0-2, oracle"""
    venue = Venue.ORCA_WHIRLPOOL
    program_id = ORCA_WHIRLPOOL_PROGRAM
    min_accounts = 11

    def decode(self, raw, instruction, index):
        if instruction.data[:8] != ANCHOR_SWAP:
            return None

        args = self._parse(WHIRLPOOL_SWAP_ARGS, instruction.data, raw, index)
        accounts = self._accounts(raw, instruction, index)
        if args.a_to_b:
            source_mint, destination_mint = self._resolve_legs(raw, instruction, 3, 5, index)
        else:
            source_mint, destination_mint = self._resolve_legs(raw, instruction, 5, 3, index)

        if args.amount_specified_is_input:
            amount_in, amount_out = args.amount, args.other_amount_threshold
        else:
            amount_in, amount_out = args.other_amount_threshold, args.amount

        return self._event(
            raw, index,
            trader=accounts[1],
            source_mint=source_mint,
            destination_mint=destination_mint,
            amount_in=amount_in,
            amount_out=amount_out,
            pool_accounts=(accounts[2], accounts[4], accounts[6], *accounts[7:11]),
        )


class RaydiumClmmDecoder(VenueDecoder):
    """Accounts: payer, amm config, pool state, input account, output account,
    input vault, output vault, observation state, token program, tick array..."""
    venue = Venue.RAYDIUM_CLMM
    program_id = RAYDIUM_CLMM_PROGRAM
    min_accounts = 10

    def decode(self, raw, instruction, index):
        if instruction.data[:8] != ANCHOR_SWAP:
            return None

        args = self._parse(CLMM_SWAP_ARGS, instruction.data, raw, index)
        accounts = self._accounts(raw, instruction, index)
        source_mint, destination_mint = self._resolve_legs(raw, instruction, 3, 4, index)

        if args.is_base_input:
            amount_in, amount_out = args.amount, args.other_amount_threshold
        else:
            amount_in, amount_out = args.other_amount_threshold, args.amount

        return self._event(
            raw, index,
            trader=accounts[0],
            source_mint=source_mint,
            destination_mint=destination_mint,
            amount_in=amount_in,
            amount_out=amount_out,
            pool_accounts=(accounts[1], accounts[2], accounts[5], accounts[6], accounts[7], *accounts[9:]),
        )


VENUE_DECODERS: Tuple[VenueDecoder, ...] = (
    RaydiumAmmDecoder(),
    JupiterDecoder(),
    PumpFunDecoder(),
    OrcaWhirlpoolDecoder(),
    RaydiumClmmDecoder(),
)

DECODERS_BY_PROGRAM: Dict[str, VenueDecoder] = {decoder.program_id: decoder for decoder in VENUE_DECODERS}

VENUE_PROGRAM_IDS: Tuple[str, ...] = tuple(DECODERS_BY_PROGRAM)
