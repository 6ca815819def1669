import asyncio
import base64
from logging import Logger
from typing import Optional

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from core.events import Bundle
from core.types import SubmissionResult


class SubmissionError(Exception):
    """Raised when a bundle could not be handed to the block engine"""
    pass


class SubmissionTimeout(SubmissionError):
    pass


class BundleRejected(SubmissionError):
    """The block engine answered but refused the bundle"""
    pass


class JitoClient:
    """Signs bundles and submits them to a Jito block engine over JSON-RPC"""

    def __init__(
        self,
        block_engine_url: str,
        wallet: Keypair,
        rpc_client: AsyncClient,
        logger: Logger,
        timeout: float = 10.0,
    ):
        self.url = f"{block_engine_url.rstrip('/')}/api/v1/bundles"
        self.wallet = wallet
        self.client = rpc_client
        self.logger = logger
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def latest_blockhash(self) -> Hash:
        response = await self.client.get_latest_blockhash(commitment=Confirmed)
        return response.value.blockhash

    def encode(self, bundle: Bundle, blockhash: Hash) -> str:
        """Sign the bundle's instructions as one transaction, base64 encoded"""
        message = Message.new_with_blockhash(list(bundle.instructions), self.wallet.pubkey(), blockhash)
        transaction = Transaction([self.wallet], message, blockhash)
        return base64.b64encode(bytes(transaction)).decode("ascii")

    async def send_bundle(self, bundle: Bundle) -> SubmissionResult:
        # Always sign against a fresh blockhash, retries included
        try:
            blockhash = await self.latest_blockhash()
        except Exception as e:
            raise SubmissionError(f"Could not fetch blockhash: {str(e)}") from e

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendBundle",
            "params": [[self.encode(bundle, blockhash)], {"encoding": "base64"}],
        }

        session = await self._get_session()
        try:
            async with session.post(self.url, json=payload) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise BundleRejected(f"HTTP {response.status}: {text}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise SubmissionTimeout(f"Block engine did not answer within {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise SubmissionError(f"Block engine request failed: {str(e)}") from e

        if "error" in data:
            error = data["error"]
            reason = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            return SubmissionResult(accepted=False, reason=reason)

        bundle_id = data.get("result")
        self.logger.info(f"Bundle {bundle.correlation_id} submitted: {bundle_id}")
        return SubmissionResult(accepted=True, bundle_id=bundle_id)

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        await self.client.close()
