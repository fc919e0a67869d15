import pytest

from stepwright.errors import PersistenceError
from stepwright.journal import RUN_FINISHED, RUN_STARTED, ActivityJournal
from stepwright.persistence import InMemoryStore, SQLiteStore


@pytest.mark.asyncio
async def test_query_by_trace_returns_records_in_append_order():
    journal = ActivityJournal(InMemoryStore())
    await journal.append("t1", "orchestrator", "run.started", {"flow_id": "f"})
    await journal.append("t2", "orchestrator", "run.started")
    await journal.append("t1", "executor", "step.succeeded", {"step_id": "a"})

    records = await journal.query_by_trace("t1")

    assert [r.action for r in records] == ["run.started", "step.succeeded"]
    assert records[0].payload == {"flow_id": "f"}
    assert records[1].actor == "executor"
    assert await journal.query_by_trace("missing") == []


@pytest.mark.asyncio
async def test_unfinished_runs_lack_terminal_record(tmp_path):
    journal = ActivityJournal(SQLiteStore(tmp_path / "journal.db"))
    for trace in ("t1", "t2", "t3"):
        await journal.append(trace, "orchestrator", RUN_STARTED)
    await journal.append("t2", "orchestrator", RUN_FINISHED, {"status": "succeeded"})

    assert await journal.unfinished_runs() == ["t1", "t3"]


@pytest.mark.asyncio
async def test_sqlite_journal_survives_reopen(tmp_path):
    db_path = tmp_path / "journal.db"
    first = SQLiteStore(db_path)
    await ActivityJournal(first).append("t1", "executor", "step.failed", {"error": "boom"})
    await first.close()

    reopened = SQLiteStore(db_path)
    records = await ActivityJournal(reopened).query_by_trace("t1")

    assert len(records) == 1
    assert records[0].payload == {"error": "boom"}
    assert records[0].occurred_at.tzinfo is not None
    assert await reopened.applied_migrations() == ["001_init"]


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_persistence_error(tmp_path):
    store = SQLiteStore(tmp_path / "journal.db")
    await store.close()

    with pytest.raises(PersistenceError):
        await ActivityJournal(store).append("t1", "executor", "step.ready")
