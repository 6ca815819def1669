from dataclasses import replace
from logging import Logger
from typing import Dict, Iterator, Optional

from core.types import RawTransaction, TradeEvent
from data.venues import DecodeError, VenueDecoder, DECODERS_BY_PROGRAM


class TransactionDecoder:
    """Turns a raw transaction into the trade events of its top-level swap instructions.

    Only top-level instructions are looked at: aggregator routes invoke the
    underlying pools through CPI, and decoding those too would count the same
    swap twice.

    Instruction arguments only carry the trader's limits (maximum cost,
    minimum output). When the transaction holds a single swap, the amounts
    are replaced with what the trader's balances actually moved by.
    """

    def __init__(self, logger: Logger, decoders: Optional[Dict[str, VenueDecoder]] = None):
        self.logger = logger
        self.decoders = decoders if decoders is not None else DECODERS_BY_PROGRAM
        self.decode_health = {
            'transactions': 0,
            'events': 0,
            'executed_events': 0,
            'decode_errors': 0,
        }

    def _swap_count(self, raw: RawTransaction) -> int:
        count = 0
        for instruction in raw.instructions:
            if instruction.program_id_index < len(raw.account_keys) and raw.program_id(instruction) in self.decoders:
                count += 1
        return count

    def settle(self, raw: RawTransaction, event: TradeEvent) -> TradeEvent:
        """Use the trader's balance changes as the swap amounts when they agree with the direction"""
        tokens = raw.token_change(event.trader, event.mint)
        sol = raw.sol_change(event.trader)
        if tokens is None or sol is None:
            return event

        if event.is_buy and tokens > 0 and sol < 0:
            return replace(event, amount_in=-sol, amount_out=tokens, executed=True)
        if not event.is_buy and tokens < 0 and sol > 0:
            return replace(event, amount_in=-tokens, amount_out=sol, executed=True)

        self.logger.debug(f"Balance changes do not match {event.direction.value} {event.correlation_id}: "
                          f"tokens={tokens}, lamports={sol}")
        return event

    def decode(self, raw: RawTransaction) -> Iterator[TradeEvent]:
        self.decode_health['transactions'] += 1
        # Balance changes are per transaction, so they only price a lone swap
        single_swap = self._swap_count(raw) == 1

        for index, instruction in enumerate(raw.instructions):
            try:
                program_id = raw.program_id(instruction)
            except IndexError:
                self.decode_health['decode_errors'] += 1
                self.logger.warning(f"Program index out of range: tx={raw.signature}, ix={index}")
                continue

            decoder = self.decoders.get(program_id)
            if decoder is None:
                continue

            try:
                event = decoder.decode(raw, instruction, index)
            except DecodeError as e:
                self.decode_health['decode_errors'] += 1
                self.logger.warning(f"Skipping instruction: {e}")
                continue

            if event is None:
                continue

            if single_swap:
                event = self.settle(raw, event)
            self.decode_health['events'] += 1
            if event.executed:
                self.decode_health['executed_events'] += 1
            self.logger.debug(
                f"Decoded {event.venue.value} {event.direction.value}: mint={event.mint}, "
                f"trader={event.trader}, in={event.amount_in}, out={event.amount_out}, "
                f"executed={event.executed}, slot={event.slot}"
            )
            yield event
