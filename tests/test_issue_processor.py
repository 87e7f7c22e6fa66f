"""Tests for turning Jira issues into stored rows."""

import pytest
from datetime import datetime, timezone
from unittest.mock import call

from issue_processor import (normalize_status, extract_status_history, extract_dev_dates, status_at,
                             story_points_at, status_history_days, pick_current_sprint, build_issue_data,
                             process_issues_with_client, process_issue, process_epics)
from conftest import utc


NOW = utc(2024, 1, 20, 10)


class TestNormalizeStatus:
    """Status normalization."""

    @pytest.mark.parametrize("raw, expected", [
        ("to do", "TO DO"),
        ("To-Do", "TO DO"),
        ("todo", "TO DO"),
        ("En Progreso", "IN PROGRESS"),
        ("Re-opened", "REOPEN"),
        ("development-done", "DEVELOPMENT DONE"),
        ("  Qa External ", "QA EXTERNAL"),
        ("Waiting for customer", "WAITING FOR CUSTOMER"),
    ])
    def test_maps_known_variants(self, raw, expected):
        assert normalize_status(raw) == expected

    def test_empty_is_unknown(self):
        assert normalize_status(None) == "Unknown"
        assert normalize_status("") == "Unknown"
        assert normalize_status("   ") == "Unknown"


class TestStatusHistory:
    """Changelog based history and point-in-time lookups."""

    def test_history_is_chronological(self, jira_issue):
        histories = list(reversed(jira_issue["changelog"]["histories"]))
        history = extract_status_history({"histories": histories})
        assert [t["to"] for t in history] == ["In Progress", "QA", "In Progress"]
        assert history[0]["date"] == utc(2024, 1, 3, 10)

    def test_dev_dates(self):
        history = [
            {"from": "To Do", "to": "En progreso", "date": utc(2024, 1, 2)},
            {"from": "En progreso", "to": "Development Done", "date": utc(2024, 1, 5)},
            {"from": "Development Done", "to": "Done", "date": utc(2024, 1, 8)},
        ]
        assert extract_dev_dates(history) == (utc(2024, 1, 2), utc(2024, 1, 5))

    def test_dev_dates_absent(self):
        assert extract_dev_dates([]) == (None, None)

    def test_status_at_uses_last_transition_before(self, jira_issue):
        history = extract_status_history(jira_issue["changelog"])
        assert status_at(history, utc(2024, 1, 12), "In Progress") == "QA"

    def test_status_at_before_first_transition_uses_from(self, jira_issue):
        history = extract_status_history(jira_issue["changelog"])
        assert status_at(history, utc(2024, 1, 1), "In Progress") == "To Do"

    def test_status_at_without_history(self):
        assert status_at([], utc(2024, 1, 1), "Done") == "Done"

    def test_story_points_at(self, jira_issue):
        changelog = jira_issue["changelog"]
        assert story_points_at(changelog, utc(2024, 1, 1), 5) == 3.0
        assert story_points_at(changelog, utc(2024, 1, 6), 5) == 5.0
        assert story_points_at(changelog, None, 5) == 5.0
        assert story_points_at({"histories": []}, utc(2024, 1, 1), None) == 0.0

    def test_days_per_status(self, jira_issue):
        history = extract_status_history(jira_issue["changelog"])
        days = status_history_days(history, utc(2023, 12, 28, 10), NOW, "In Progress")
        assert days == {"TO DO": 6.0, "IN PROGRESS": 11.0, "QA": 6.0}


class TestPickCurrentSprint:
    """Current sprint selection."""

    def test_active_sprint_wins(self):
        sprints = [{"sprint_name": "S1", "state": "closed", "end_date": utc(2024, 2, 1)},
                   {"sprint_name": "S2", "state": "active", "end_date": utc(2024, 1, 1)}]
        assert pick_current_sprint(sprints) == "S2"

    def test_latest_end_date(self):
        sprints = [{"sprint_name": "S2", "state": "closed", "end_date": utc(2024, 2, 1)},
                   {"sprint_name": "S1", "state": "closed", "end_date": utc(2024, 1, 1)}]
        assert pick_current_sprint(sprints) == "S2"

    def test_backlog(self):
        assert pick_current_sprint([]) == "Backlog"


class TestBuildIssueData:
    """Derived issue fields."""

    def test_builds_full_record(self, jira_issue):
        data = build_issue_data(jira_issue, assignee_id=11, epic_id=21, epic_name="Payments", now=NOW)

        assert data["key"] == "OBD-10"
        assert data["issue_type"] == "Story"
        assert data["status"] == "IN PROGRESS"
        assert data["story_points"] == 5.0
        assert data["priority"] == "High"
        assert data["resolution"] is None
        assert data["created_date"] == utc(2023, 12, 28, 10)
        assert data["updated_date"] == utc(2024, 1, 20, 12)
        assert data["dev_start_date"] == utc(2024, 1, 3, 10)
        assert data["dev_close_date"] is None
        assert data["sprint_history"] == ["OBD Sprint 1", "OBD Sprint 2"]
        assert data["current_sprint"] == "OBD Sprint 2"
        assert data["status_by_sprint"] == {"OBD Sprint 1": "QA", "OBD Sprint 2": "IN PROGRESS"}
        assert data["story_points_by_sprint"] == {"OBD Sprint 1": 5.0, "OBD Sprint 2": 5.0}
        assert data["raw_data"] is jira_issue

    def test_defaults_for_sparse_issue(self):
        data = build_issue_data({"key": "OBD-2", "fields": {}}, now=NOW)
        assert data["status"] == "Unknown"
        assert data["story_points"] == 0.0
        assert data["issue_type"] == "Unknown"
        assert data["current_sprint"] == "Backlog"
        assert data["sprint_history"] == []
        assert data["status_history_days"] == {}


class TestProcessIssuesWithClient:
    """Batch processing against the database."""

    def test_writes_issue_and_relations(self, mock_db, mock_jira_client, jira_issue):
        mock_db.upsert_issues_batch.return_value = {"updated": [(501, "OBD-10")], "skipped": [], "errors": []}

        result = process_issues_with_client(mock_db, 3, [jira_issue], mock_jira_client, now=NOW)

        assert result == {"success_count": 1, "error_count": 0, "skipped_count": 0}
        mock_db.get_or_create_developer.assert_called_once_with("Ana Dev", "ana@example.com", "acc-1")
        mock_db.get_or_create_epic.assert_called_once_with(3, "OBD-1", "Payments", "2024-01-01", "2024-03-31")

        written = mock_db.upsert_issues_batch.call_args.args[1][0]
        assert written["assignee_id"] == 11
        assert written["epic_id"] == 21

        mock_db.upsert_issue_sprint.assert_has_calls([
            call(501, 7, "TO DO", "QA", 3.0, 5.0),
            call(501, 8, "QA", "IN PROGRESS", 5.0, 5.0),
        ])
        history = mock_db.upsert_issue_history.call_args.args[1]
        assert len(history) == 3

    def test_saves_scope_changes(self, mock_db, mock_jira_client, jira_issue):
        mock_db.upsert_issues_batch.return_value = {"updated": [(501, "OBD-10")], "skipped": [], "errors": []}

        process_issues_with_client(mock_db, 3, [jira_issue], mock_jira_client, now=NOW)

        mock_db.save_scope_change.assert_has_calls([
            call(7, 501, "story_points_changed", utc(2024, 1, 5, 10), 3.0, 5.0),
            call(8, 501, "added", utc(2024, 1, 16, 10), None, 5.0),
        ], any_order=True)
        assert mock_db.save_scope_change.call_count == 2

    def test_unchanged_issue_is_skipped(self, mock_db, mock_jira_client, jira_issue):
        mock_db.upsert_issues_batch.return_value = {"updated": [], "skipped": ["OBD-10"], "errors": []}

        result = process_issues_with_client(mock_db, 3, [jira_issue], mock_jira_client, now=NOW)

        assert result == {"success_count": 0, "error_count": 0, "skipped_count": 1}
        mock_db.upsert_issue_sprint.assert_not_called()
        mock_db.upsert_issue_history.assert_not_called()

    def test_failing_issue_does_not_stop_batch(self, mock_db, mock_jira_client, jira_issue):
        other = {"key": "OBD-11", "fields": {"status": {"name": "To Do"}, "assignee": {"displayName": "Bad"}}}
        mock_db.get_or_create_developer.side_effect = lambda name, *args: 11 if name == "Ana Dev" else 1 / 0
        mock_db.upsert_issues_batch.return_value = {"updated": [(501, "OBD-10")], "skipped": [], "errors": []}

        result = process_issues_with_client(mock_db, 3, [other, jira_issue], mock_jira_client, now=NOW)

        assert result["success_count"] == 1
        assert result["error_count"] == 1
        keys = [i["key"] for i in mock_db.upsert_issues_batch.call_args.args[1]]
        assert keys == ["OBD-10"]

    def test_storage_errors_are_counted(self, mock_db, mock_jira_client, jira_issue):
        mock_db.upsert_issues_batch.return_value = {"updated": [], "skipped": [], "errors": [("OBD-10", "boom")]}
        result = process_issues_with_client(mock_db, 3, [jira_issue], mock_jira_client, now=NOW)
        assert result == {"success_count": 0, "error_count": 1, "skipped_count": 0}

    def test_epic_details_fetched_once_per_run(self, mock_db, mock_jira_client, jira_issue):
        second = dict(jira_issue, key="OBD-12")
        process_issues_with_client(mock_db, 3, [jira_issue, second], mock_jira_client, now=NOW)
        mock_jira_client.fetch_issue_details.assert_called_once_with("OBD-1")


class TestProcessIssue:
    """Single issue processing."""

    def test_returns_issue_id(self, mock_db, mock_jira_client, jira_issue):
        mock_db.upsert_issues_batch.return_value = {"updated": [(501, "OBD-10")], "skipped": [], "errors": []}
        assert process_issue(mock_db, 3, jira_issue, mock_jira_client, now=NOW) == 501

    def test_raises_on_storage_error(self, mock_db, mock_jira_client, jira_issue):
        mock_db.upsert_issues_batch.return_value = {"updated": [], "skipped": [], "errors": [("OBD-10", "boom")]}
        with pytest.raises(RuntimeError, match="OBD-10"):
            process_issue(mock_db, 3, jira_issue, mock_jira_client, now=NOW)


class TestProcessEpics:
    """Epic upserts."""

    def test_only_epics_are_stored(self, mock_db, mock_jira_client, jira_issue):
        epic = {"key": "OBD-1", "fields": {"summary": "Payments", "issuetype": {"name": "Epic"}}}
        cache = process_epics(mock_db, 3, [epic, jira_issue], mock_jira_client)
        assert cache == {"OBD-1": 21}
        mock_db.get_or_create_epic.assert_called_once_with(3, "OBD-1", "Payments", "2024-01-01", "2024-03-31")
