from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verticalguard.core.config import get_settings
from verticalguard.domain.models import PolicyEvaluation
from verticalguard.persistence.repos import policies as policies_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationRecord:
    # One matched policy from one decision, captured before the context can change.
    policy_id: str
    user_id: str
    resource_type: str
    resource_id: str | None
    action: str
    effect: str
    context: dict[str, Any]
    duration_ms: int
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EvaluationWriter = Callable[[list[EvaluationRecord]], Awaitable[None]]


def session_writer(session_factory: async_sessionmaker[AsyncSession]) -> EvaluationWriter:
    # Write batches through a dedicated session so the decision path's session is never shared.
    async def _write(records: list[EvaluationRecord]) -> None:
        async with session_factory() as session:
            await policies_repo.add_evaluations(
                session,
                rows=[
                    PolicyEvaluation(
                        policy_id=record.policy_id,
                        user_id=record.user_id,
                        resource_type=record.resource_type,
                        resource_id=record.resource_id,
                        action=record.action,
                        effect=record.effect,
                        context_json=dict(record.context),
                        evaluated_at=record.evaluated_at,
                        duration_ms=record.duration_ms,
                    )
                    for record in records
                ],
            )
            await session.commit()

    return _write


class PolicyEvaluationSink:
    """Best-effort, bounded delivery of policy evaluation audit rows.

    ``submit`` only enqueues and never raises. A single consumer task drains the
    queue in batches, so a burst of matches cannot fan out into unbounded
    concurrent writes. When the queue is full the record is dropped and logged.
    """

    def __init__(
        self,
        writer: EvaluationWriter,
        *,
        max_size: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self._writer = writer
        self._queue: asyncio.Queue[EvaluationRecord] = asyncio.Queue(
            maxsize=max(1, int(max_size or settings.audit_queue_max_size))
        )
        self._batch_size = max(1, int(batch_size or settings.audit_batch_size))
        self._task: asyncio.Task[None] | None = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._consume(), name="policy-evaluation-sink")

    def submit(self, record: EvaluationRecord) -> None:
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "policy_evaluation_dropped policy_id=%s user_id=%s dropped_total=%s",
                record.policy_id,
                record.user_id,
                self.dropped,
            )

    async def drain(self) -> None:
        # Wait until everything submitted so far has been handed to the writer.
        if not self.running:
            self.start()
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        if self.running:
            await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _consume(self) -> None:
        while True:
            first = await self._queue.get()
            batch = [first]
            while len(batch) < self._batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self._writer(batch)
            except Exception as exc:  # noqa: BLE001 - audit is best-effort; keep consuming later batches.
                logger.warning(
                    "policy_evaluation_write_failed batch_size=%s policy_id=%s",
                    len(batch),
                    batch[0].policy_id,
                    exc_info=exc,
                )
            finally:
                for _ in batch:
                    self._queue.task_done()


class NullEvaluationSink:
    # Used by dry runs so no audit rows are produced.

    def submit(self, record: EvaluationRecord) -> None:
        return None
