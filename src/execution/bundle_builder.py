import logging
import random
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from core.events import Bundle, EmergencyExitAction, ExitTierAction, TradeAction
from core.types import TipUrgency
from utils.config import TipConfig, BundleConfig
from .constants import JITO_TIP_ACCOUNTS
from .instructions import BundleError, UnsupportedVenueError, InstructionRouter

__all__ = ["BundleBuilder", "TipPolicy", "BundleError", "UnsupportedVenueError", "TipCapExceeded"]

# compute unit limit + compute unit price
BUDGET_INSTRUCTIONS = 2


class TipCapExceeded(BundleError):
    """The tip needed for this bundle is above the configured maximum"""

    def __init__(self, requested: int, cap: int):
        super().__init__(f"Tip of {requested} lamports exceeds cap of {cap}")
        self.requested = requested
        self.cap = cap


class TipPolicy:
    def __init__(self, config: TipConfig):
        self.config = config

    def base_amount(self, urgency: TipUrgency) -> int:
        if urgency is TipUrgency.EMERGENCY:
            return self.config.emergency_amount
        return self.config.normal_amount

    def tip_for(self, urgency: TipUrgency, attempt: int = 0) -> int:
        """Tip in lamports for the given attempt.

        The first attempt is clamped to the cap. Retries escalate by
        ``retry_multiplier`` per attempt and are refused once the escalated
        amount no longer fits under the cap.
        """
        if attempt == 0:
            return min(self.base_amount(urgency), self.config.max_amount)

        amount = self.base_amount(urgency) * self.config.retry_multiplier ** attempt
        if amount > self.config.max_amount:
            raise TipCapExceeded(amount, self.config.max_amount)
        return amount


class BundleBuilder:
    """Turns the actions of one decision cycle into tip-prioritised bundles.

    Actions are laned by token. Lanes holding an emergency exit go first;
    otherwise tokens keep their incoming order, and a token's own actions
    always keep their decision order. Consecutive actions of one token
    sharing a correlation id and urgency share one bundle (and one tip)
    while the instruction count allows it.
    Each bundle is laid out as compute budget, swaps, tip.
    """

    def __init__(
        self,
        router: InstructionRouter,
        tip_config: TipConfig,
        bundle_config: BundleConfig,
        logger: Optional[logging.Logger] = None,
    ):
        self.router = router
        self.tips = TipPolicy(tip_config)
        self.config = bundle_config
        self.logger = logger or logging.getLogger(__name__)

    @property
    def payer(self) -> Pubkey:
        return self.router.instructions.owner

    def build(self, actions: Sequence[TradeAction]) -> List[Bundle]:
        lanes: Dict[str, List[TradeAction]] = {}
        for action in actions:
            lanes.setdefault(action.token, []).append(action)
        # Urgency orders tokens; one token's actions keep their decision order
        ordered = sorted(lanes.values(), key=lambda lane: 0 if self._has_emergency(lane) else 1)

        bundles: List[Bundle] = []
        for lane in ordered:
            for group_actions, group_ixs, lead in self._group(self._fold_exits(lane)):
                bundles.append(self._assemble(group_actions, group_ixs, lead))
        return bundles

    @staticmethod
    def _has_emergency(lane: List[TradeAction]) -> bool:
        return any(a.urgency is TipUrgency.EMERGENCY for a in lane)

    def _fold_exits(self, lane: List[TradeAction]) -> List[Tuple[Tuple[TradeAction, ...], TradeAction]]:
        """Pair each step of a token's lane with the action its swap is built from.

        Tier sells queued ahead of an emergency exit are sold by that exit,
        before it closes the token account.
        """
        steps: List[Tuple[Tuple[TradeAction, ...], TradeAction]] = []
        tiers: List[ExitTierAction] = []
        for action in lane:
            if isinstance(action, ExitTierAction):
                tiers.append(action)
                continue
            if isinstance(action, EmergencyExitAction) and tiers:
                folded = replace(action, token_amount=action.token_amount + sum(t.token_amount for t in tiers))
                self.logger.info(f"Folding {len(tiers)} take profit sell(s) for {action.token} "
                                 f"into copy exit of {folded.token_amount} tokens")
                steps.append(((*tiers, folded), folded))
                tiers = []
                continue
            steps.extend(((tier,), tier) for tier in tiers)
            tiers = []
            steps.append(((action,), action))
        steps.extend(((tier,), tier) for tier in tiers)
        return steps

    def _group(self, steps):
        room = self.config.max_instructions_per_bundle - BUDGET_INSTRUCTIONS - 1

        groups: List[Tuple[List[TradeAction], List[Instruction], TradeAction]] = []
        for step_actions, action in steps:
            try:
                swap_ixs = self.router.build(action)
            except BundleError as e:
                self.logger.warning(f"Dropping {type(action).__name__} for {action.token}: {e}")
                continue

            if len(swap_ixs) > room:
                self.logger.warning(f"Dropping {type(action).__name__} for {action.token}: "
                                    f"{len(swap_ixs)} instructions do not fit in one bundle")
                continue

            if groups:
                group_actions, group_ixs, lead = groups[-1]
                if (lead.correlation_id == action.correlation_id and lead.urgency is action.urgency
                        and len(group_ixs) + len(swap_ixs) <= room):
                    group_actions.extend(step_actions)
                    group_ixs.extend(swap_ixs)
                    continue
            groups.append((list(step_actions), list(swap_ixs), action))
        return groups

    def _assemble(self, actions: List[TradeAction], swap_ixs: List[Instruction], lead: TradeAction,
                  attempt: int = 0) -> Bundle:
        urgency = lead.urgency
        tip = self.tips.tip_for(urgency, attempt)
        tip_account = random.choice(JITO_TIP_ACCOUNTS)
        slot = min(a.slot for a in actions)

        instructions = [
            *self.router.instructions.create_compute_budget_instructions(
                priority_fee=self.config.priority_fee_micro_lamports,
                compute_unit_limit=self.config.compute_unit_limit,
            ),
            *swap_ixs,
            self.router.instructions.create_tip_instruction(Pubkey.from_string(tip_account), tip),
        ]
        bundle = Bundle(
            instructions=tuple(instructions),
            target_slot_window=(slot, slot + self.config.slot_window),
            tip_lamports=tip,
            correlation_id=lead.correlation_id,
            urgency=urgency,
            actions=tuple(actions),
            tip_account=tip_account,
            attempt=attempt,
        )
        self.logger.debug(f"Built bundle {bundle.correlation_id}: {len(actions)} action(s), "
                          f"{len(bundle)} instructions, tip={tip}, urgency={urgency.value}")
        return bundle

    def rebuild_with_fresh_tip(self, bundle: Bundle) -> Bundle:
        """Same swaps with an escalated tip to a different tip account.

        Raises TipCapExceeded when the escalated tip would pass the cap.
        """
        attempt = bundle.attempt + 1
        tip = self.tips.tip_for(bundle.urgency, attempt)
        choices = [a for a in JITO_TIP_ACCOUNTS if a != bundle.tip_account] or list(JITO_TIP_ACCOUNTS)
        tip_account = random.choice(choices)

        tip_ix = self.router.instructions.create_tip_instruction(Pubkey.from_string(tip_account), tip)
        return replace(
            bundle,
            instructions=bundle.instructions[:-1] + (tip_ix,),
            tip_lamports=tip,
            tip_account=tip_account,
            attempt=attempt,
        )
