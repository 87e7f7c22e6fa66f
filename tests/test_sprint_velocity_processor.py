"""Tests for sprint velocity."""

import pytest
from unittest.mock import Mock

from sprint_velocity_processor import (is_completed_status, calculate_velocity, process_sprint_velocity,
                                       process_squad_velocity)
from conftest import utc


def member(issue_id, close_status, sp_start=None, sp_close=None, current=0):
    return {
        "issue_id": issue_id,
        "status_at_sprint_close": close_status,
        "story_points_at_start": sp_start,
        "story_points_at_close": sp_close,
        "current_story_points": current,
    }


class TestIsCompletedStatus:
    """Completed status detection."""

    @pytest.mark.parametrize("status", ["DONE", "Development Done", "dev done", "Closed", "RESOLVED",
                                        "Completed", "DONE - VERIFIED"])
    def test_completed(self, status):
        assert is_completed_status(status) is True

    @pytest.mark.parametrize("status", ["TO DO", "TODO", "IN PROGRESS", "QA", "", None])
    def test_not_completed(self, status):
        assert is_completed_status(status) is False


class TestCalculateVelocity:
    """Commitment and completion sums."""

    def test_commitment_and_completed(self):
        members = [
            member(1, "DONE", sp_start=3, sp_close=5),
            member(2, "IN PROGRESS", sp_start=2),
            member(3, "DONE", current=8),
            member(4, "DONE"),
        ]
        commitment, commitment_tickets, completed, completed_tickets = calculate_velocity(members)
        assert commitment == 13
        assert commitment_tickets == {1, 2, 3}
        assert completed == 13
        assert completed_tickets == {1, 3}

    def test_history_fallback(self):
        members = [member(1, "QA", sp_start=3), member(2, None, sp_start=2)]
        _, _, completed, tickets = calculate_velocity(members, {1: "Done"})
        assert completed == 3
        assert tickets == {1}


class TestProcessSprintVelocity:
    """Stored velocity rows."""

    def test_stores_velocity(self, stored_sprint_closed):
        db = Mock()
        db.get_sprint_members.return_value = [member(1, "DONE", sp_start=3), member(2, "QA", sp_start=5)]

        velocity = process_sprint_velocity(db, stored_sprint_closed)

        assert velocity["commitment"] == 8
        assert velocity["completed"] == 3
        assert velocity["commitment_tickets"] == 2
        assert velocity["completed_tickets"] == 1
        assert velocity["total_tickets"] == 2
        assert velocity["complete_date"] == utc(2024, 1, 15, 10)
        db.upsert_sprint_velocity.assert_called_once_with(velocity)
        db.get_last_status_before.assert_not_called()

    def test_uses_history_when_nothing_completed(self, stored_sprint_closed):
        db = Mock()
        db.get_sprint_members.return_value = [member(1, "QA", sp_start=3)]
        db.get_last_status_before.return_value = {1: "Done"}

        velocity = process_sprint_velocity(db, stored_sprint_closed)

        db.get_last_status_before.assert_called_once_with([1], utc(2024, 1, 15, 10))
        assert velocity["completed"] == 3

    def test_sprint_without_issues(self, stored_sprint_closed):
        db = Mock()
        db.get_sprint_members.return_value = []
        assert process_sprint_velocity(db, stored_sprint_closed) is None
        db.upsert_sprint_velocity.assert_not_called()

    def test_squad_velocity_continues_after_errors(self, stored_sprint_closed):
        db = Mock()
        db.get_closed_sprints.return_value = [stored_sprint_closed, dict(stored_sprint_closed, id=8)]
        db.get_sprint_members.side_effect = [RuntimeError("boom"), [member(1, "DONE", sp_start=1)]]
        assert process_squad_velocity(db, 3) == 1
