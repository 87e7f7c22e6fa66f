"""Shared fixtures for the Jira sync tests."""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def project():
    """Configured project in snake_case form."""
    return {
        "project_key": "OBD",
        "project_name": "OBD Project",
        "jira_domain": "test.atlassian.net",
        "jira_email": "test@example.com",
        "jira_api_token": "test-token-123",
    }


@pytest.fixture
def jira_sprint_closed():
    """Sprint as returned in the Jira sprint field."""
    return {
        "id": 100,
        "name": "OBD Sprint 1",
        "state": "closed",
        "startDate": "2024-01-01T09:00:00.000Z",
        "endDate": "2024-01-14T18:00:00.000Z",
        "completeDate": "2024-01-15T10:00:00.000Z",
    }


@pytest.fixture
def jira_sprint_active():
    return {
        "id": 101,
        "name": "OBD Sprint 2",
        "state": "active",
        "startDate": "2024-01-15T09:00:00.000Z",
        "endDate": "2024-01-28T18:00:00.000Z",
    }


@pytest.fixture
def stored_sprint_closed():
    """Closed sprint as read back from the database."""
    return {
        "id": 7,
        "sprint_key": "100",
        "sprint_name": "OBD Sprint 1",
        "state": "closed",
        "start_date": utc(2024, 1, 1, 9),
        "end_date": utc(2024, 1, 14, 18),
        "complete_date": utc(2024, 1, 15, 10),
    }


@pytest.fixture
def jira_issue(jira_sprint_closed, jira_sprint_active):
    """Story that moved through the workflow across two sprints."""
    return {
        "key": "OBD-10",
        "fields": {
            "summary": "Checkout flow",
            "issuetype": {"name": "Story"},
            "status": {"name": "In Progress"},
            "priority": {"name": "High"},
            "assignee": {"displayName": "Ana Dev", "emailAddress": "ana@example.com", "accountId": "acc-1"},
            "resolution": None,
            "resolutiondate": None,
            "created": "2023-12-28T10:00:00.000+0000",
            "updated": "2024-01-20T12:00:00.000+0000",
            "customfield_10016": 5.0,
            "customfield_10020": [jira_sprint_closed, jira_sprint_active],
            "parent": {
                "key": "OBD-1",
                "fields": {"summary": "Payments", "issuetype": {"name": "Epic"}},
            },
        },
        "changelog": {
            "histories": [
                {
                    "created": "2024-01-03T10:00:00.000+0000",
                    "items": [{"field": "status", "fromString": "To Do", "toString": "In Progress"}],
                },
                {
                    "created": "2024-01-05T10:00:00.000+0000",
                    "items": [{"field": "Story Points", "fieldId": "customfield_10016",
                               "fromString": "3", "toString": "5"}],
                },
                {
                    "created": "2024-01-10T10:00:00.000+0000",
                    "items": [{"field": "status", "fromString": "In Progress", "toString": "QA"}],
                },
                {
                    "created": "2024-01-16T10:00:00.000+0000",
                    "items": [
                        {"field": "status", "fromString": "QA", "toString": "In Progress"},
                        {"field": "Sprint", "fromString": "OBD Sprint 1", "toString": "OBD Sprint 1, OBD Sprint 2"},
                    ],
                },
            ]
        },
    }


@pytest.fixture
def mock_db():
    """Database double with the lookups the processors use."""
    db = Mock()
    db.get_or_create_developer.return_value = 11
    db.get_or_create_epic.return_value = 21
    db.get_or_create_sprint.side_effect = lambda squad_id, sprint: {"100": 7, "101": 8}.get(sprint["sprint_key"])
    db.upsert_issues_batch.return_value = {"updated": [], "skipped": [], "errors": []}
    db.save_scope_change.return_value = True
    return db


@pytest.fixture
def mock_jira_client():
    client = Mock()
    client.story_points_field = "customfield_10016"
    client.sprint_field = "customfield_10020"
    client.fetch_issue_details.return_value = {"fields": {"customfield_10015": "2024-01-01", "duedate": "2024-03-31"}}
    client.extract_timeline_dates.return_value = ("2024-01-01", "2024-03-31")
    return client
