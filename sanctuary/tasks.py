"""Background matching runs.

Submissions hand matching to :class:`MatchingQueue` and return without
waiting. The queue runs at most one matching pass per bottleneck at a time
and reports every finished run as a :class:`MatchRunOutcome`.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from sanctuary.config import Settings
from sanctuary.db import session_scope
from sanctuary.errors import MatchingInProgressError
from sanctuary.llm import LLMClient
from sanctuary.matching import MatchResult, generate_matches
from sanctuary.models import utcnow

log = logging.getLogger(__name__)

MAX_OUTCOMES = 1000


@dataclass
class MatchRunOutcome:
    bottleneck_id: int
    ok: bool
    match_count: int = 0
    error: str | None = None
    finished_at: datetime = field(default_factory=utcnow)


OutcomeListener = Callable[[MatchRunOutcome], None]


class MatchingQueue:
    """In-process matching scheduler with at-most-once enqueue per bottleneck.

    ``outcomes`` keeps the latest outcome for the ``max_outcomes`` most
    recently finished bottlenecks; older entries are evicted first.
    """

    def __init__(
        self,
        session_factory: Callable[[], AbstractContextManager[Session]] = session_scope,
        client_factory: Callable[[], LLMClient] = LLMClient,
        settings: Settings | None = None,
        max_outcomes: int = MAX_OUTCOMES,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._settings = settings
        self._max_outcomes = max_outcomes
        self._in_flight: set[int] = set()
        self._tasks: dict[int, asyncio.Task] = {}
        self._listeners: list[OutcomeListener] = []
        self.outcomes: OrderedDict[int, MatchRunOutcome] = OrderedDict()

    def add_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    def is_running(self, bottleneck_id: int) -> bool:
        return bottleneck_id in self._in_flight

    def submit(self, bottleneck_id: int) -> bool:
        """Schedule a background run. Returns False if one is already in flight."""
        if bottleneck_id in self._in_flight:
            log.info("Matching already in flight for bottleneck %s; not enqueued", bottleneck_id)
            return False
        self._in_flight.add(bottleneck_id)
        task = asyncio.get_running_loop().create_task(
            self._run_background(bottleneck_id), name=f"match-bottleneck-{bottleneck_id}",
        )
        self._tasks[bottleneck_id] = task
        log.info("Queued matching for bottleneck %s", bottleneck_id)
        return True

    async def run_now(self, bottleneck_id: int, session: Session, client: LLMClient) -> list[MatchResult]:
        """Run matching in the caller's task; errors propagate to the caller."""
        if bottleneck_id in self._in_flight:
            raise MatchingInProgressError(f"Matching already in progress for bottleneck {bottleneck_id}")
        self._in_flight.add(bottleneck_id)
        try:
            results = await generate_matches(session, bottleneck_id, client, self._settings)
        except Exception as exc:
            self._record(MatchRunOutcome(bottleneck_id, ok=False, error=str(exc)))
            raise
        finally:
            self._in_flight.discard(bottleneck_id)
        self._record(MatchRunOutcome(bottleneck_id, ok=True, match_count=len(results)))
        return results

    async def join(self) -> None:
        """Wait for every scheduled background run to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_background(self, bottleneck_id: int) -> None:
        try:
            with self._session_factory() as session:
                results = await generate_matches(
                    session, bottleneck_id, self._client_factory(), self._settings,
                )
            outcome = MatchRunOutcome(bottleneck_id, ok=True, match_count=len(results))
        except Exception as exc:
            log.exception("Background matching failed for bottleneck %s", bottleneck_id)
            outcome = MatchRunOutcome(bottleneck_id, ok=False, error=str(exc))
        finally:
            self._in_flight.discard(bottleneck_id)
            self._tasks.pop(bottleneck_id, None)
        self._record(outcome)

    def _record(self, outcome: MatchRunOutcome) -> None:
        self.outcomes[outcome.bottleneck_id] = outcome
        self.outcomes.move_to_end(outcome.bottleneck_id)
        while len(self.outcomes) > self._max_outcomes:
            self.outcomes.popitem(last=False)
        if outcome.ok:
            log.info("Matching finished for bottleneck %s: %d matches", outcome.bottleneck_id, outcome.match_count)
        else:
            log.warning("Matching failed for bottleneck %s: %s", outcome.bottleneck_id, outcome.error)
        for listener in self._listeners:
            try:
                listener(outcome)
            except Exception:
                log.exception("Match outcome listener %r failed", listener)
