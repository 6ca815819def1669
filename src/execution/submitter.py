import asyncio
from dataclasses import dataclass
from logging import Logger
from typing import Callable, Dict, List, Optional, Sequence, Set

from core.events import Bundle
from core.types import SubmissionResult, TipUrgency
from utils.config import SubmissionConfig
from .bundle_builder import BundleBuilder, TipCapExceeded
from .jito_client import SubmissionError, SubmissionTimeout, BundleRejected


@dataclass
class SubmissionReport:
    bundle: Bundle                          # last bundle sent (the retry, if there was one)
    result: Optional[SubmissionResult] = None
    error: Optional[str] = None
    attempts: int = 1

    @property
    def accepted(self) -> bool:
        return self.result is not None and self.result.accepted


class BundleSubmitter:
    """Sends bundles in the background without holding up ingestion.

    Bundles for different tokens go out concurrently; bundles for the same
    token are chained so they reach the block engine in the order they
    were decided. Every attempt is bounded by the configured timeout.
    Emergency bundles get a single retry with a fresh tip.
    """

    def __init__(self, client, builder: BundleBuilder, config: SubmissionConfig, logger: Logger):
        self.client = client
        self.builder = builder
        self.timeout = config.timeout_seconds
        self.logger = logger
        self.callbacks: List[Callable] = []
        self._tails: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.health = {
            'submitted': 0,
            'accepted': 0,
            'failed': 0,
            'timeouts': 0,
            'retries': 0,
            'dropped_at_tip_cap': 0,
        }

    def add_callback(self, callback: Callable):
        """Add a coroutine callback receiving each SubmissionReport"""
        self.callbacks.append(callback)

    def submit(self, bundles: Sequence[Bundle]) -> List[asyncio.Task]:
        """Schedule bundles and return immediately; must be called from a running loop"""
        tasks = []
        for bundle in bundles:
            previous = self._tails.get(bundle.token)
            task = asyncio.create_task(self._run(bundle, previous))
            self._tails[bundle.token] = task
            self._tasks.add(task)
            task.add_done_callback(self._forget)
            tasks.append(task)
        return tasks

    def _forget(self, task: asyncio.Task):
        self._tasks.discard(task)
        for token, tail in list(self._tails.items()):
            if tail is task:
                del self._tails[token]

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every scheduled submission to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, bundle: Bundle, previous: Optional[asyncio.Task]) -> Optional[SubmissionReport]:
        if previous is not None:
            await asyncio.wait({previous})

        try:
            report = await self._submit_with_retry(bundle)
            for callback in self.callbacks:
                await callback(report)
            return report
        except Exception as e:
            self.logger.error(f"Unexpected error submitting bundle {bundle.correlation_id}: {str(e)}")
            return None

    async def _attempt(self, bundle: Bundle) -> SubmissionResult:
        self.health['submitted'] += 1
        try:
            result = await asyncio.wait_for(self.client.send_bundle(bundle), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise SubmissionTimeout(f"No answer within {self.timeout}s")
        if not result.accepted:
            raise BundleRejected(result.reason or "rejected")
        return result

    async def _submit_with_retry(self, bundle: Bundle) -> SubmissionReport:
        try:
            result = await self._attempt(bundle)
            self.health['accepted'] += 1
            return SubmissionReport(bundle=bundle, result=result)
        except SubmissionError as e:
            self._record_failure(e)
            self.logger.error(f"Bundle {bundle.correlation_id} for {bundle.token} failed: {str(e)}")
            if bundle.urgency is not TipUrgency.EMERGENCY:
                return SubmissionReport(bundle=bundle, error=str(e))

        try:
            retry = self.builder.rebuild_with_fresh_tip(bundle)
        except TipCapExceeded as e:
            self.health['dropped_at_tip_cap'] += 1
            self.logger.critical(f"Emergency exit for {bundle.token} dropped, retry tip over cap: {str(e)}")
            return SubmissionReport(bundle=bundle, error=str(e))

        self.health['retries'] += 1
        self.logger.warning(f"Retrying emergency bundle {bundle.correlation_id} with tip {retry.tip_lamports}")
        try:
            result = await self._attempt(retry)
            self.health['accepted'] += 1
            return SubmissionReport(bundle=retry, result=result, attempts=2)
        except SubmissionError as e:
            self._record_failure(e)
            self.logger.critical(f"Emergency exit for {bundle.token} failed after retry: {str(e)}")
            return SubmissionReport(bundle=retry, error=str(e), attempts=2)

    def _record_failure(self, error: SubmissionError):
        self.health['failed'] += 1
        if isinstance(error, SubmissionTimeout):
            self.health['timeouts'] += 1
