"""Periodic driver that advances ready requests and escalates stalled ones."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, List, Optional

from .contracts import StepStatus
from .models import TERMINAL_STATUSES, RequestFilter, RequestStatus, WorkflowRequest

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


def is_runnable(request: WorkflowRequest, now) -> bool:
    """True when an in-progress request has a pending, undeferred next step."""
    if request.status != RequestStatus.IN_PROGRESS:
        return False
    step = request.next_step()
    if step is None:
        return True
    if step.status != StepStatus.PENDING:
        return False
    return step.not_before is None or step.not_before <= now


class Scheduler:
    """Ticks the engine: escalations first, then up to ``concurrency`` advances.

    A tick returns only after every selected request has advanced as far as
    it can, so one long multi-step request delays the next tick and its
    escalation and purge passes for all other requests.
    """

    def __init__(self, engine: "WorkflowEngine") -> None:
        self.engine = engine
        self.config = engine.runtime.config.scheduler
        self._stopped = False

    @property
    def clock(self):
        return self.engine.runtime.clock

    async def tick(self) -> List[str]:
        """Run one scheduling pass and return the ids that were advanced."""
        engine = self.engine
        for request_id in engine.queue.ordered():
            try:
                await engine.escalate_overdue(request_id)
            except Exception:
                logger.exception(f"Escalation check failed for request_id={request_id}")

        now = self.clock.now()
        candidates: List[WorkflowRequest] = []
        for request_id in engine.queue.ordered():
            request = await engine.repository.get(request_id)
            if request is None or request.is_terminal:
                engine.queue.discard(request_id)
                continue
            if is_runnable(request, now):
                candidates.append(request)

        candidates.sort(key=lambda r: (r.priority.rank, r.submitted_at))
        selected = [r.request_id for r in candidates[: self.config.concurrency]]
        if not selected:
            return []

        results = await asyncio.gather(
            *(engine.advance(request_id) for request_id in selected),
            return_exceptions=True,
        )
        for request_id, result in zip(selected, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Advancing request_id={request_id} failed: "
                    f"{type(result).__name__}: {result}"
                )
        logger.debug(f"Tick advanced {len(selected)} request(s)")
        return selected

    async def purge(self) -> int:
        """Delete terminal requests completed more than ``retention_days`` ago."""
        engine = self.engine
        cutoff = self.clock.now() - timedelta(days=self.config.retention_days)
        expired = await engine.repository.list(
            RequestFilter(statuses=list(TERMINAL_STATUSES), completed_before=cutoff)
        )
        for request in expired:
            await engine.repository.delete(request.request_id)
            engine.queue.discard(request.request_id)
            engine.locks.discard(request.request_id)
        if expired:
            logger.info(f"Purged {len(expired)} terminal request(s) older than {cutoff}")
        return len(expired)

    async def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick until :meth:`stop` is called or ``max_ticks`` ticks have run."""
        self._stopped = False
        ticks = 0
        last_purge = self.clock.now()
        logger.info(
            f"Scheduler started: tick every {self.config.tick_interval}s, "
            f"concurrency {self.config.concurrency}"
        )
        while not self._stopped:
            await self.tick()
            ticks += 1
            now = self.clock.now()
            if (now - last_purge).total_seconds() >= self.config.purge_interval:
                await self.purge()
                last_purge = now
            if max_ticks is not None and ticks >= max_ticks:
                break
            await self.clock.sleep(self.config.tick_interval)
        logger.info(f"Scheduler stopped after {ticks} tick(s)")
        return ticks

    def stop(self) -> None:
        self._stopped = True
