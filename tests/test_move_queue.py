"""
Tests for src/services/move_queue.py - the persisted queue of CRM writes.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.models.pipeline_move import (
    PipelineMove,
    StageMove,
    FieldUpdate,
    MoveStatus,
    ErrorKind,
)
from src.services.move_queue import (
    claim_batch,
    count_by_status,
    enqueue_field_update,
    enqueue_stage_move,
    has_newer_open_stage_move,
    has_open_stage_move,
    list_open_moves,
    mark_failed,
    mark_synced,
    purge_failed,
    purge_field_updates,
    reset_failed,
)

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_move(record_id="opp-1", status=MoveStatus.PENDING, attempts=0, minutes=0, **kwargs):
    return StageMove(
        id=uuid.uuid4(),
        record_id=record_id,
        clinic="TR01",
        from_stage="tx_plan",
        to_stage="closing",
        status=status,
        attempts=attempts,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


class TestEnqueue:
    async def test_stage_move_inserted_pending(self, db):
        move_id = await enqueue_stage_move(db, "opp-1", "TR01", "tx_plan", "closing")
        await db.commit()

        move = await db.get(PipelineMove, move_id)
        assert isinstance(move, StageMove)
        assert move.status == MoveStatus.PENDING
        assert move.attempts == 0
        assert move.to_stage == "closing"
        assert move.move_type == "stage_move"

    async def test_no_dedup_for_same_record(self, db):
        first = await enqueue_stage_move(db, "opp-1", "TR01", "tx_plan", "closing")
        second = await enqueue_stage_move(db, "opp-1", "TR01", "closing", "won")
        await db.commit()

        assert first != second
        result = await db.execute(select(PipelineMove).where(PipelineMove.record_id == "opp-1"))
        assert len(result.scalars().all()) == 2

    async def test_field_update_variant(self, db):
        move_id = await enqueue_field_update(db, "contact-1", "TR02", "deal_type", "Full Arch")
        await db.commit()

        move = await db.get(PipelineMove, move_id)
        assert isinstance(move, FieldUpdate)
        assert move.record_id == "contact-1"
        assert move.field_key == "deal_type"
        assert move.field_value == "Full Arch"

    async def test_field_update_none_value_stored_empty(self, db):
        move_id = await enqueue_field_update(db, "contact-1", "TR02", "deal_type", None)
        move = await db.get(PipelineMove, move_id)
        assert move.field_value == ""


class TestClaimBatch:
    async def test_oldest_first_and_limited(self, db):
        db.add_all([
            _make_move("opp-c", minutes=3),
            _make_move("opp-a", minutes=1),
            _make_move("opp-b", minutes=2),
        ])
        await db.commit()

        batch = await claim_batch(db, limit=2)
        assert [m.record_id for m in batch] == ["opp-a", "opp-b"]

    async def test_includes_failed_below_ceiling(self, db):
        db.add(_make_move("opp-f", status=MoveStatus.FAILED, attempts=1,
                          last_error_kind=ErrorKind.PROVIDER))
        await db.commit()

        batch = await claim_batch(db)
        assert [m.record_id for m in batch] == ["opp-f"]

    async def test_excludes_synced(self, db):
        db.add(_make_move("opp-s", status=MoveStatus.SYNCED))
        await db.commit()
        assert await claim_batch(db) == []

    async def test_excludes_rows_at_ceiling(self, db):
        db.add(_make_move("opp-x", status=MoveStatus.FAILED, attempts=3))
        await db.commit()
        assert await claim_batch(db, max_attempts=3) == []

    async def test_excludes_failed_config_errors(self, db):
        db.add(_make_move("opp-cfg", status=MoveStatus.FAILED, attempts=1,
                          last_error_kind=ErrorKind.CONFIG))
        await db.commit()
        assert await claim_batch(db) == []

    async def test_returns_both_variants(self, db):
        await enqueue_stage_move(db, "opp-1", "TR01", None, "won")
        await enqueue_field_update(db, "contact-1", "TR01", "deal_type", "Implant")
        await db.commit()

        batch = await claim_batch(db)
        assert {type(m) for m in batch} == {StageMove, FieldUpdate}

    async def test_variant_columns_loaded_in_fresh_session(self, session_factory):
        async with session_factory() as db:
            await enqueue_stage_move(db, "opp-1", "TR01", "tx_plan", "won")
            await enqueue_field_update(db, "contact-1", "TR01", "deal_type", "Implant")
            await db.commit()

        async with session_factory() as db:
            batch = await claim_batch(db)
            loaded = {type(m): m for m in batch}

        assert loaded[StageMove].from_stage == "tx_plan"
        assert loaded[StageMove].to_stage == "won"
        assert loaded[FieldUpdate].field_key == "deal_type"
        assert loaded[FieldUpdate].field_value == "Implant"


class TestMarkFailed:
    async def test_below_ceiling_stays_pending(self, db):
        move = _make_move()
        db.add(move)
        status = await mark_failed(db, move, "GHL API error: 500", attempts=1,
                                   error_kind=ErrorKind.PROVIDER)
        assert status == MoveStatus.PENDING
        assert move.attempts == 1
        assert move.last_error == "GHL API error: 500"
        assert move.last_error_kind == ErrorKind.PROVIDER
        assert move.last_attempt_at is not None

    async def test_at_ceiling_becomes_failed(self, db):
        move = _make_move(attempts=2)
        db.add(move)
        status = await mark_failed(db, move, "boom", attempts=3)
        assert status == MoveStatus.FAILED
        assert move.attempts == 3

    async def test_non_retryable_fails_immediately(self, db):
        move = _make_move()
        db.add(move)
        status = await mark_failed(db, move, "Unknown clinic: TR99", attempts=1,
                                   error_kind=ErrorKind.CONFIG, retryable=False)
        assert status == MoveStatus.FAILED
        assert move.attempts == 1

    async def test_attempts_never_decrease(self, db):
        move = _make_move(attempts=2)
        db.add(move)
        await mark_failed(db, move, "boom", attempts=1)
        assert move.attempts == 2

    async def test_error_truncated(self, db):
        move = _make_move()
        db.add(move)
        await mark_failed(db, move, "x" * 5000, attempts=1)
        assert len(move.last_error) == 2000

    async def test_mark_synced_sets_timestamp(self, db):
        move = _make_move()
        db.add(move)
        await mark_synced(db, move)
        assert move.status == MoveStatus.SYNCED
        assert move.synced_at is not None
        assert move.last_attempt_at == move.synced_at


class TestInspection:
    async def test_count_by_status(self, db):
        db.add_all([
            _make_move("a"),
            _make_move("b", status=MoveStatus.FAILED, attempts=3),
            _make_move("c", status=MoveStatus.SYNCED),
            _make_move("d", status=MoveStatus.SYNCED),
        ])
        await db.commit()

        counts = await count_by_status(db)
        assert counts == {"pending": 1, "failed": 1, "synced": 2}

    async def test_count_by_status_empty(self, db):
        assert await count_by_status(db) == {"pending": 0, "failed": 0, "synced": 0}

    async def test_list_open_moves_newest_first(self, db):
        db.add_all([
            _make_move("old", minutes=1),
            _make_move("new", minutes=5, status=MoveStatus.FAILED, attempts=3),
            _make_move("done", minutes=9, status=MoveStatus.SYNCED),
        ])
        await db.commit()

        moves = await list_open_moves(db)
        assert [m.record_id for m in moves] == ["new", "old"]

    async def test_has_open_stage_move(self, db):
        db.add(_make_move("opp-1"))
        db.add(_make_move("opp-2", status=MoveStatus.SYNCED))
        await enqueue_field_update(db, "opp-3", "TR01", "deal_type", "x")
        await db.commit()

        assert await has_open_stage_move(db, "opp-1") is True
        assert await has_open_stage_move(db, "opp-2") is False
        assert await has_open_stage_move(db, "opp-3") is False

    async def test_has_newer_open_stage_move(self, db):
        first = _make_move("opp-1", minutes=0)
        second = _make_move("opp-1", minutes=5)
        other_record = _make_move("opp-2", minutes=9)
        db.add_all([first, second, other_record])
        await db.commit()

        assert await has_newer_open_stage_move(db, first) is True
        assert await has_newer_open_stage_move(db, second) is False
        assert await has_newer_open_stage_move(db, other_record) is False

        second.status = MoveStatus.SYNCED
        await db.commit()
        assert await has_newer_open_stage_move(db, first) is False

    async def test_failed_newer_move_still_counts(self, db):
        first = _make_move("opp-1", minutes=0)
        db.add_all([first, _make_move("opp-1", minutes=5, status=MoveStatus.FAILED, attempts=3)])
        await db.commit()

        assert await has_newer_open_stage_move(db, first) is True


class TestOperatorTooling:
    async def test_reset_failed(self, db):
        failed = _make_move("f", status=MoveStatus.FAILED, attempts=3)
        synced = _make_move("s", status=MoveStatus.SYNCED, attempts=1)
        db.add_all([failed, synced])
        await db.commit()

        assert await reset_failed(db) == 1
        await db.commit()

        result = await db.execute(
            select(PipelineMove.status, PipelineMove.attempts).where(PipelineMove.record_id == "f")
        )
        assert result.one() == (MoveStatus.PENDING, 0)
        result = await db.execute(
            select(PipelineMove.status).where(PipelineMove.record_id == "s")
        )
        assert result.scalar() == MoveStatus.SYNCED

    async def test_purge_failed_returns_deleted(self, db):
        db.add_all([
            _make_move("f1", status=MoveStatus.FAILED, attempts=3),
            _make_move("p1"),
        ])
        await db.commit()

        deleted = await purge_failed(db)
        await db.commit()

        assert [m.record_id for m in deleted] == ["f1"]
        counts = await count_by_status(db)
        assert counts["failed"] == 0
        assert counts["pending"] == 1

    async def test_purge_field_updates_any_status(self, db):
        await enqueue_field_update(db, "c1", "TR01", "deal_type", "a")
        await enqueue_field_update(db, "c2", "TR01", "deal_type", "b")
        db.add(_make_move("opp-1"))
        await db.commit()

        assert await purge_field_updates(db) == 2
        await db.commit()

        result = await db.execute(select(PipelineMove.record_id))
        assert result.scalars().all() == ["opp-1"]
