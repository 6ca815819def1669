"""Tests for background bundle submission."""

import asyncio
import logging
from fractions import Fraction

import pytest
from solders.pubkey import Pubkey

from core.events import EmergencyExitAction, ExitTierAction
from core.types import SubmissionResult, TipUrgency, Venue
from execution.bundle_builder import BundleBuilder
from execution.jito_client import SubmissionError
from execution.submitter import BundleSubmitter
from utils.config import SubmissionConfig, TipConfig


class FakeBlockEngine:
    """Records bundles; answers from a queue of results (or exceptions), accepting by default"""

    def __init__(self, results=None, delays=None):
        self.results = list(results or [])
        self.delays = dict(delays or {})   # token -> delay for that token's first call
        self.sent = []
        self.completed = []

    async def send_bundle(self, bundle):
        self.sent.append(bundle)
        delay = self.delays.pop(bundle.token, 0)
        if delay:
            await asyncio.sleep(delay)
        self.completed.append(bundle)
        result = self.results.pop(0) if self.results else SubmissionResult(accepted=True, bundle_id="id")
        if isinstance(result, Exception):
            raise result
        return result


def tier_bundle(builder, token, tier_index=0, slot=400):
    action = ExitTierAction(
        token=token, venue=Venue.PUMP_FUN, correlation_id=f"sig{slot}:0", slot=slot,
        reference_price=Fraction(2000), percent=20, tier_index=tier_index, token_amount=20_000,
    )
    (bundle,) = builder.build([action])
    return bundle


def emergency_bundle(builder, token, slot=500):
    action = EmergencyExitAction(
        token=token, venue=Venue.PUMP_FUN, correlation_id=f"sig{slot}:0", slot=slot,
        reference_price=Fraction(1000), token_amount=80_000,
    )
    (bundle,) = builder.build([action])
    return bundle


def make_submitter(client, builder, logger, timeout=1.0):
    return BundleSubmitter(client, builder, SubmissionConfig(timeout_seconds=timeout), logger)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_same_token_keeps_submission_order(self, builder, logger, mint):
        client = FakeBlockEngine(delays={mint: 0.05})
        submitter = make_submitter(client, builder, logger)
        first = tier_bundle(builder, mint, tier_index=0, slot=400)
        second = tier_bundle(builder, mint, tier_index=1, slot=401)

        tasks = submitter.submit([first, second])
        await asyncio.gather(*tasks)

        assert client.completed == [first, second]

    @pytest.mark.asyncio
    async def test_slow_token_does_not_block_others(self, builder, logger):
        slow, fast = str(Pubkey.new_unique()), str(Pubkey.new_unique())
        client = FakeBlockEngine(delays={slow: 0.2})
        submitter = make_submitter(client, builder, logger)
        slow_bundle, fast_bundle = tier_bundle(builder, slow), tier_bundle(builder, fast)

        await asyncio.gather(*submitter.submit([slow_bundle, fast_bundle]))

        assert client.completed == [fast_bundle, slow_bundle]

    @pytest.mark.asyncio
    async def test_submit_returns_before_network(self, builder, logger, mint):
        client = FakeBlockEngine(delays={mint: 0.05})
        submitter = make_submitter(client, builder, logger)

        submitter.submit([tier_bundle(builder, mint)])

        assert client.completed == []
        assert submitter.pending == 1
        await submitter.drain()
        assert submitter.pending == 0
        assert len(client.completed) == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_abandoned_and_reported(self, builder, logger, mint):
        client = FakeBlockEngine(delays={mint: 1.0})
        submitter = make_submitter(client, builder, logger, timeout=0.05)

        (report,) = await asyncio.gather(*submitter.submit([tier_bundle(builder, mint)]))

        assert not report.accepted
        assert "0.05" in report.error
        assert len(client.sent) == 1
        assert submitter.health['timeouts'] == 1

    @pytest.mark.asyncio
    async def test_normal_rejection_is_not_retried(self, builder, logger, mint):
        client = FakeBlockEngine(results=[SubmissionResult(accepted=False, reason="bundle expired")])
        submitter = make_submitter(client, builder, logger)

        (report,) = await asyncio.gather(*submitter.submit([tier_bundle(builder, mint)]))

        assert not report.accepted
        assert report.error == "bundle expired"
        assert report.attempts == 1
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self, builder, logger, mint):
        client = FakeBlockEngine(results=[SubmissionError("connection reset")])
        submitter = make_submitter(client, builder, logger)

        (report,) = await asyncio.gather(*submitter.submit([tier_bundle(builder, mint)]))

        assert report.error == "connection reset"
        assert submitter.health['failed'] == 1


class TestEmergencyRetry:
    @pytest.mark.asyncio
    async def test_retried_once_with_fresh_tip(self, builder, logger, mint):
        client = FakeBlockEngine(results=[
            SubmissionResult(accepted=False, reason="bundle expired"),
            SubmissionResult(accepted=True, bundle_id="landed"),
        ])
        submitter = make_submitter(client, builder, logger)
        bundle = emergency_bundle(builder, mint)

        (report,) = await asyncio.gather(*submitter.submit([bundle]))

        assert report.accepted
        assert report.attempts == 2
        assert report.result.bundle_id == "landed"
        assert [b.attempt for b in client.sent] == [0, 1]
        assert client.sent[1].tip_lamports == 200_000
        assert client.sent[1].tip_account != bundle.tip_account
        assert submitter.health['retries'] == 1

    @pytest.mark.asyncio
    async def test_retry_after_timeout(self, builder, logger, mint):
        client = FakeBlockEngine(delays={mint: 1.0})
        submitter = make_submitter(client, builder, logger, timeout=0.05)

        (report,) = await asyncio.gather(*submitter.submit([emergency_bundle(builder, mint)]))

        assert report.accepted
        assert len(client.sent) == 2

    @pytest.mark.asyncio
    async def test_only_one_retry(self, builder, logger, mint, caplog):
        client = FakeBlockEngine(results=[SubmissionResult(accepted=False, reason="no")] * 3)
        submitter = make_submitter(client, builder, logger)

        with caplog.at_level(logging.CRITICAL):
            (report,) = await asyncio.gather(*submitter.submit([emergency_bundle(builder, mint)]))

        assert not report.accepted
        assert len(client.sent) == 2
        assert "failed after retry" in caplog.text

    @pytest.mark.asyncio
    async def test_retry_over_tip_cap_is_dropped(self, router, bundle_config, logger, mint, caplog):
        builder = BundleBuilder(router, TipConfig(emergency_amount=300_000, max_amount=500_000), bundle_config, logger)
        client = FakeBlockEngine(results=[SubmissionResult(accepted=False, reason="no")])
        submitter = make_submitter(client, builder, logger)

        with caplog.at_level(logging.CRITICAL):
            (report,) = await asyncio.gather(*submitter.submit([emergency_bundle(builder, mint)]))

        assert not report.accepted
        assert len(client.sent) == 1
        assert submitter.health['dropped_at_tip_cap'] == 1
        assert "exceeds cap" in caplog.text

    @pytest.mark.asyncio
    async def test_reports_reach_callbacks(self, builder, logger, mint):
        client = FakeBlockEngine()
        submitter = make_submitter(client, builder, logger)
        reports = []

        async def on_report(report):
            reports.append(report)

        submitter.add_callback(on_report)
        bundle = emergency_bundle(builder, mint)
        submitter.submit([bundle])
        await submitter.drain()

        assert len(reports) == 1
        assert reports[0].bundle is bundle
        assert reports[0].bundle.urgency is TipUrgency.EMERGENCY
