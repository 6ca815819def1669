import json
import asyncio
from datetime import datetime
from logging import Logger
from typing import Any, Callable, Dict, List, Optional

import base58
import websockets
import websockets.exceptions

from core.types import RawInstruction, RawTransaction, TokenBalance
from utils.config import FeedConfig


def _key(entry) -> str:
    # jsonParsed encoding wraps keys as {"pubkey": ..., "signer": ..., "writable": ...}
    return entry["pubkey"] if isinstance(entry, dict) else entry


def _raw_amount(balance) -> Optional[int]:
    ui_amount = balance.get("uiTokenAmount") or {}
    amount = ui_amount.get("amount")
    return int(amount) if amount is not None else None


def raw_transaction_from_json(result: Dict[str, Any]) -> RawTransaction:
    """Convert the ``result`` of a Helius ``transactionNotification`` into a RawTransaction.

    Account keys loaded from address lookup tables are appended after the
    static keys (writable first, then read-only), matching the indexes the
    instructions use.
    """
    tx_info = result["transaction"]
    transaction = tx_info["transaction"]
    meta = tx_info.get("meta") or {}
    message = transaction["message"]

    account_keys = [_key(k) for k in message["accountKeys"]]
    loaded = meta.get("loadedAddresses") or {}
    account_keys.extend(loaded.get("writable", []))
    account_keys.extend(loaded.get("readonly", []))

    instructions = []
    for ix in message.get("instructions", []):
        if "programIdIndex" not in ix:
            # Parsed instructions carry no raw data; nothing to decode
            continue
        instructions.append(RawInstruction(
            program_id_index=ix["programIdIndex"],
            accounts=tuple(ix.get("accounts", [])),
            data=base58.b58decode(ix.get("data", "")),
        ))

    pre_amounts = {b["accountIndex"]: _raw_amount(b) for b in meta.get("preTokenBalances") or []}
    post_amounts = {b["accountIndex"]: _raw_amount(b) for b in meta.get("postTokenBalances") or []}
    balances = {}
    for balance in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        index = balance["accountIndex"]
        balances[index] = TokenBalance(
            account_index=index,
            mint=balance["mint"],
            owner=balance.get("owner"),
            pre_amount=pre_amounts.get(index),
            post_amount=post_amounts.get(index),
        )

    block_time = tx_info.get("blockTime") or result.get("blockTime")
    timestamp = datetime.fromtimestamp(block_time) if block_time else datetime.now()

    return RawTransaction(
        slot=int(result.get("slot", tx_info.get("slot", 0))),
        signature=result.get("signature") or transaction["signatures"][0],
        instructions=tuple(instructions),
        account_keys=tuple(account_keys),
        timestamp=timestamp,
        token_balances=tuple(balances.values()),
        pre_balances=tuple(meta.get("preBalances") or ()),
        post_balances=tuple(meta.get("postBalances") or ()),
        fee=int(meta.get("fee") or 0),
    )


class HeliusDataFeed:
    """Streams transactions touching the monitored wallet from a Helius websocket"""

    def __init__(self, config: FeedConfig, account_include: List[str], logger: Logger):
        if not config.ws_url:
            raise ValueError("WS_URL must be configured for the live feed")
        self.ws_url = config.ws_url
        self.config = config
        self.account_include = list(account_include)
        self.callbacks: List[Callable] = []
        self.ws = None
        self.logger = logger
        self.running = False

        self.connection_status = {
            'last_disconnect_time': None,
            'disconnect_code': None,
            'reconnect_attempts': 0,
            'time_to_reconnect': 0.0
        }

        self.message_health = {
            'last_message_time': None,
            'messages_received': 0,
            'transactions': 0,
            'processing_errors': 0
        }

    def subscribe_message(self) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "transactionSubscribe",
            "params": [
                {"accountInclude": self.account_include, "failed": False, "vote": False},
                {
                    "commitment": "processed",
                    "encoding": "json",
                    "transactionDetails": "full",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }

    def add_callback(self, callback: Callable):
        """Add a coroutine callback receiving each RawTransaction"""
        self.callbacks.append(callback)

    async def start(self):
        """Start the data feed"""
        self.running = True
        await self.connect()

    async def stop(self):
        self.running = False
        if self.ws:
            await self.ws.close()

    async def connect(self):
        while self.running:
            try:
                connect_start = datetime.now()
                self.logger.info(f"Attempting to connect to WebSocket at {self.ws_url}")
                self.ws = await websockets.connect(self.ws_url)
                self.connection_status['time_to_reconnect'] = (datetime.now() - connect_start).total_seconds()
                self.connection_status['reconnect_attempts'] = 0

                await self.ws.send(json.dumps(self.subscribe_message()))
                self.logger.info(f"Subscribed to transactions for {len(self.account_include)} accounts")

                while self.running:
                    try:
                        msg = await self.ws.recv()
                    except websockets.exceptions.ConnectionClosed as e:
                        self.connection_status['last_disconnect_time'] = datetime.now()
                        self.connection_status['disconnect_code'] = e.code
                        if self.running:
                            self.logger.error(
                                f"WebSocket disconnected. Code: {e.code}, "
                                f"Last message: {self.message_health['last_message_time']}"
                            )
                        break
                    self.message_health['last_message_time'] = datetime.now()
                    self.message_health['messages_received'] += 1
                    await self.process_message(msg)

            except (OSError, websockets.exceptions.WebSocketException) as e:
                self.logger.error(f"Connection error: {str(e)}")

            if not self.running:
                break
            self.connection_status['reconnect_attempts'] += 1
            if self.connection_status['reconnect_attempts'] > self.config.max_reconnect_attempts:
                self.logger.critical(f"Giving up after {self.config.max_reconnect_attempts} reconnect attempts")
                self.running = False
                break
            await asyncio.sleep(self.config.reconnect_delay_seconds)

    async def process_message(self, msg: str) -> Optional[RawTransaction]:
        try:
            data = json.loads(msg)
            if data.get("method") != "transactionNotification":
                if "result" in data and "id" in data:
                    self.logger.info(f"Subscription confirmed: {data['result']}")
                return None
            raw = raw_transaction_from_json(data["params"]["result"])
        except (ValueError, KeyError, TypeError, IndexError) as e:
            self.message_health['processing_errors'] += 1
            self.logger.error(f"Error processing message: {str(e)}")
            return None

        self.message_health['transactions'] += 1
        for callback in self.callbacks:
            await callback(raw)
        return raw
