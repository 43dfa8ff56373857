from __future__ import annotations

import logging

import pytest

from verticalguard.persistence.repos import policies as policies_repo
from verticalguard.services.audit import (
    EvaluationRecord,
    NullEvaluationSink,
    PolicyEvaluationSink,
    session_writer,
)


def _record(policy_id: str = "p-1") -> EvaluationRecord:
    return EvaluationRecord(
        policy_id=policy_id,
        user_id="u-1",
        resource_type="project",
        resource_id="r-1",
        action="project:read",
        effect="allow",
        context={"user.id": "u-1"},
        duration_ms=1,
    )


class _RecordingWriter:
    def __init__(self, fail_first: bool = False) -> None:
        self.batches: list[list[EvaluationRecord]] = []
        self._fail_next = fail_first

    async def __call__(self, records: list[EvaluationRecord]) -> None:
        if self._fail_next:
            self._fail_next = False
            raise RuntimeError("audit store unavailable")
        self.batches.append(list(records))


@pytest.mark.asyncio
async def test_submissions_are_written_in_bounded_batches() -> None:
    writer = _RecordingWriter()
    sink = PolicyEvaluationSink(writer, max_size=10, batch_size=2)
    for index in range(5):
        sink.submit(_record(f"p-{index}"))
    await sink.drain()
    await sink.stop()
    assert [len(batch) for batch in writer.batches] == [2, 2, 1]
    assert [record.policy_id for batch in writer.batches for record in batch] == [
        "p-0",
        "p-1",
        "p-2",
        "p-3",
        "p-4",
    ]
    assert sink.running is False


@pytest.mark.asyncio
async def test_full_queue_drops_with_warning(caplog) -> None:
    writer = _RecordingWriter()
    sink = PolicyEvaluationSink(writer, max_size=1)
    with caplog.at_level(logging.WARNING, logger="verticalguard.services.audit"):
        sink.submit(_record("kept"))
        sink.submit(_record("dropped-1"))
        sink.submit(_record("dropped-2"))
    assert sink.dropped == 2
    assert "policy_evaluation_dropped" in caplog.text
    await sink.drain()
    await sink.stop()
    assert [record.policy_id for batch in writer.batches for record in batch] == ["kept"]


@pytest.mark.asyncio
async def test_writer_failure_is_logged_and_consumption_continues(caplog) -> None:
    writer = _RecordingWriter(fail_first=True)
    sink = PolicyEvaluationSink(writer, max_size=10, batch_size=1)
    sink.start()
    with caplog.at_level(logging.WARNING, logger="verticalguard.services.audit"):
        sink.submit(_record("lost"))
        sink.submit(_record("written"))
        await sink.drain()
    await sink.stop()
    assert "policy_evaluation_write_failed" in caplog.text
    assert [record.policy_id for batch in writer.batches for record in batch] == ["written"]


@pytest.mark.asyncio
async def test_session_writer_persists_evaluation_rows(session_factory) -> None:
    sink = PolicyEvaluationSink(session_writer(session_factory))
    sink.submit(_record("p-audit"))
    sink.submit(_record("p-audit"))
    await sink.drain()
    await sink.stop()
    async with session_factory() as session:
        rows, total = await policies_repo.list_evaluations(
            session, policy_id="p-audit", user_id=None, limit=10, offset=0
        )
    assert total == 2
    assert rows[0].context_json == {"user.id": "u-1"}


def test_null_sink_discards() -> None:
    assert NullEvaluationSink().submit(_record()) is None
