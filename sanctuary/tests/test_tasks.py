"""Tests for the background matching queue."""
from __future__ import annotations

import pytest

from sanctuary.errors import MatchingInProgressError, NotFoundError, UpstreamUnavailableError
from sanctuary.models import Bottleneck, BottleneckStatus
from sanctuary.tasks import MatchingQueue, MatchRunOutcome
from sanctuary.tests.fakes import FakeLLM, batch_reply, seed_bottleneck, seed_experiences


def _queue(session_factory, llm, settings) -> MatchingQueue:
    return MatchingQueue(session_factory=session_factory, client_factory=lambda: llm, settings=settings)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_runs_in_background_and_reports_outcome(self, session, session_factory, settings):
        bottleneck = seed_bottleneck(session)
        seed_experiences(session, 3)
        llm = FakeLLM(batch_reply(lambda exp_id: 70))
        queue = _queue(session_factory, llm, settings)
        seen: list[MatchRunOutcome] = []
        queue.add_listener(seen.append)

        assert queue.submit(bottleneck.id) is True
        assert queue.is_running(bottleneck.id)
        assert llm.calls == []  # nothing runs until the caller yields
        await queue.join()

        outcome = queue.outcomes[bottleneck.id]
        assert outcome.ok is True
        assert outcome.match_count == 3
        assert outcome.error is None
        assert seen == [outcome]
        assert not queue.is_running(bottleneck.id)
        with session_factory() as fresh:
            assert fresh.get(Bottleneck, bottleneck.id).status == BottleneckStatus.MATCHED

    @pytest.mark.asyncio
    async def test_second_submit_while_in_flight_is_dropped(self, session, session_factory, settings):
        bottleneck = seed_bottleneck(session)
        seed_experiences(session, 1)
        llm = FakeLLM(batch_reply(lambda exp_id: 70))
        queue = _queue(session_factory, llm, settings)

        assert queue.submit(bottleneck.id) is True
        assert queue.submit(bottleneck.id) is False
        await queue.join()
        assert len(llm.calls) == 1

        # Once finished, the bottleneck can be queued again.
        llm.queue(batch_reply(lambda exp_id: 70))
        assert queue.submit(bottleneck.id) is True
        await queue.join()
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, session, session_factory, settings, caplog):
        bottleneck = seed_bottleneck(session)
        seed_experiences(session, 2)
        llm = FakeLLM(UpstreamUnavailableError("LLM API call failed: 529 overloaded"))
        queue = _queue(session_factory, llm, settings)

        queue.submit(bottleneck.id)
        await queue.join()

        outcome = queue.outcomes[bottleneck.id]
        assert outcome.ok is False
        assert "overloaded" in outcome.error
        assert "Background matching failed" in caplog.text
        with session_factory() as fresh:
            assert fresh.get(Bottleneck, bottleneck.id).status == BottleneckStatus.MATCHING

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_the_queue(self, session, session_factory, settings):
        bottleneck = seed_bottleneck(session)
        queue = _queue(session_factory, FakeLLM(), settings)

        def broken(outcome):
            raise RuntimeError("listener bug")

        seen = []
        queue.add_listener(broken)
        queue.add_listener(seen.append)
        queue.submit(bottleneck.id)
        await queue.join()
        # No candidates: an empty but successful run.
        assert seen[0].ok is True and seen[0].match_count == 0


class TestRunNow:
    @pytest.mark.asyncio
    async def test_returns_results_and_records_outcome(self, session, session_factory, settings):
        bottleneck = seed_bottleneck(session)
        seed_experiences(session, 2)
        queue = _queue(session_factory, None, settings)
        results = await queue.run_now(bottleneck.id, session, FakeLLM(batch_reply(lambda exp_id: 88)))
        assert [r.score for r in results] == [88, 88]
        assert queue.outcomes[bottleneck.id].match_count == 2

    @pytest.mark.asyncio
    async def test_rejects_concurrent_run(self, session, session_factory, settings):
        bottleneck = seed_bottleneck(session)
        seed_experiences(session, 1)
        llm = FakeLLM(batch_reply(lambda exp_id: 70))
        queue = _queue(session_factory, llm, settings)
        queue.submit(bottleneck.id)
        with pytest.raises(MatchingInProgressError):
            await queue.run_now(bottleneck.id, session, FakeLLM())
        await queue.join()

    @pytest.mark.asyncio
    async def test_errors_propagate_and_are_recorded(self, session, session_factory, settings):
        queue = _queue(session_factory, None, settings)
        with pytest.raises(NotFoundError):
            await queue.run_now(4242, session, FakeLLM())
        assert queue.outcomes[4242].ok is False
        assert not queue.is_running(4242)


class TestOutcomeHistory:
    @pytest.mark.asyncio
    async def test_keeps_only_the_most_recent_outcomes(self, session, session_factory, settings):
        queue = MatchingQueue(session_factory=session_factory, client_factory=FakeLLM,
                              settings=settings, max_outcomes=2)
        for missing_id in (101, 102, 103):
            with pytest.raises(NotFoundError):
                await queue.run_now(missing_id, session, FakeLLM())
        assert list(queue.outcomes) == [102, 103]

        # A repeat run refreshes recency, so the older entry is evicted instead.
        with pytest.raises(NotFoundError):
            await queue.run_now(102, session, FakeLLM())
        with pytest.raises(NotFoundError):
            await queue.run_now(104, session, FakeLLM())
        assert list(queue.outcomes) == [102, 104]
