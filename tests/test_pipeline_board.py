"""
Tests for src/services/pipeline_board.py - the board read path.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.models.opportunity import Opportunity
from src.models.pipeline_move import StageMove, MoveStatus
from src.services.pipeline_board import build_pipeline_board, days_in_stage
from src.services.stage_overrides import upsert_override

NOW = datetime.now(timezone.utc)


def _make_opportunity(opp_id, super_stage="tx_plan", clinic="TR01", days=0, value=10000.0, **kwargs):
    return Opportunity(
        id=opp_id,
        clinic=clinic,
        name=f"Patient {opp_id}",
        super_stage=super_stage,
        monetary_value=value,
        last_stage_change_at=NOW - timedelta(days=days, hours=1),
        **kwargs,
    )


class TestDaysInStage:
    def test_whole_days(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert days_in_stage(datetime(2026, 3, 7, 11, 0, tzinfo=timezone.utc), now) == 3

    def test_missing_is_zero(self):
        assert days_in_stage(None) == 0

    def test_future_clamped(self):
        now = datetime(2026, 3, 10, tzinfo=timezone.utc)
        assert days_in_stage(now + timedelta(days=2), now) == 0

    def test_naive_treated_as_utc(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert days_in_stage(datetime(2026, 3, 9, 12, 0), now) == 1


class TestBoard:
    async def test_empty_board_has_every_stage(self, db):
        board = await build_pipeline_board(db)

        assert list(board["pipeline"]) == [
            "virtual", "in_person", "tx_plan", "closing", "financing", "won", "archive",
        ]
        assert board["totals"]["count"] == 0
        assert board["stages"][3] == {"key": "closing", "label": "Closing"}

    async def test_override_moves_card_and_flags_pending(self, db):
        db.add(_make_opportunity("R1", super_stage="tx_plan"))
        await upsert_override(db, "R1", "closing")
        await db.commit()

        board = await build_pipeline_board(db)

        assert board["pipeline"]["tx_plan"] == []
        card = board["pipeline"]["closing"][0]
        assert card["id"] == "R1"
        assert card["stage"] == "closing"
        assert card["pending_sync"] is True
        assert card["sync_failed"] is False

    async def test_failed_move_flagged(self, db):
        db.add(_make_opportunity("R1"))
        await upsert_override(db, "R1", "closing")
        db.add(StageMove(
            id=uuid.uuid4(), record_id="R1", clinic="TR01", to_stage="closing",
            status=MoveStatus.FAILED, attempts=3, last_error="GHL API error: 500",
        ))
        await db.commit()

        board = await build_pipeline_board(db)

        card = board["pipeline"]["closing"][0]
        assert card["pending_sync"] is True
        assert card["sync_failed"] is True

    async def test_sorted_longest_in_stage_first(self, db):
        db.add(_make_opportunity("fresh", days=1))
        db.add(_make_opportunity("stale", days=30))
        db.add(_make_opportunity("middle", days=7))
        await db.commit()

        board = await build_pipeline_board(db)

        cards = board["pipeline"]["tx_plan"]
        assert [c["id"] for c in cards] == ["stale", "middle", "fresh"]
        assert cards[0]["days_in_stage"] == 30

    async def test_totals(self, db):
        db.add(_make_opportunity("a", "virtual", value=5000))
        db.add(_make_opportunity("b", "won", value=30000))
        db.add(_make_opportunity("c", "won", value=20000))
        await db.commit()

        totals = (await build_pipeline_board(db))["totals"]

        assert totals["count"] == 3
        assert totals["value"] == 55000
        assert totals["by_stage"]["won"] == {"count": 2, "value": 50000}
        assert totals["by_stage"]["closing"] == {"count": 0, "value": 0}

    async def test_filters(self, db):
        db.add(_make_opportunity("a", clinic="TR01", assigned_to="user-1"))
        db.add(_make_opportunity("b", clinic="TR02", assigned_to="user-1"))
        db.add(_make_opportunity("c", clinic="TR01", assigned_to="user-2"))
        await db.commit()

        by_clinic = await build_pipeline_board(db, clinic="TR01")
        assert {c["id"] for c in by_clinic["pipeline"]["tx_plan"]} == {"a", "c"}

        both = await build_pipeline_board(db, clinic="TR01", assigned_to="user-1")
        assert [c["id"] for c in both["pipeline"]["tx_plan"]] == ["a"]

    async def test_card_fields(self, db):
        db.add(_make_opportunity(
            "R1", contact_id="contact-1", deal_type="Full Arch",
            pipeline_stage_id="st-txplan", stage_name="TX Plan Ready",
        ))
        await db.commit()

        card = (await build_pipeline_board(db))["pipeline"]["tx_plan"][0]

        assert card["source"] == "Unknown"
        assert card["deal_type"] == "Full Arch"
        assert card["ghl_stage_name"] == "TX Plan Ready"
        assert card["contact_id"] == "contact-1"
        assert card["pending_sync"] is False
