from datetime import datetime
from logging import Logger
from typing import List, Tuple

from core.events import Bundle
from core.types import SubmissionResult


class DryRunBundleClient:
    """Paper-trading stand-in for the block engine: accepts and logs every bundle"""

    def __init__(self, logger: Logger):
        self.logger = logger
        self.submitted: List[Tuple[datetime, Bundle]] = []

    async def send_bundle(self, bundle: Bundle) -> SubmissionResult:
        self.submitted.append((datetime.now(), bundle))
        actions = ", ".join(type(a).__name__ for a in bundle.actions)
        self.logger.info(
            f"[DRY RUN] Bundle {bundle.correlation_id}: token={bundle.token}, actions=[{actions}], "
            f"instructions={len(bundle)}, tip={bundle.tip_lamports}, attempt={bundle.attempt}"
        )
        return SubmissionResult(accepted=True, bundle_id=f"dry-run-{len(self.submitted)}")

    async def close(self):
        pass
