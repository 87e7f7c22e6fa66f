"""
Sprint scope change tracking: issues added to or removed from a sprint after
it started, and story point changes while it ran.
"""
import logging

from jira_client import parse_jira_datetime

logger = logging.getLogger(__name__)

SPRINT_FIELD_NAMES = ('sprint', 'customfield_10020')
STORY_POINTS_FIELD_NAMES = ('story points', 'story point estimate', 'customfield_10016')


def _field_changes(changelog, field_names):
    """Changelog items for the given fields as (changed_at, item), oldest first"""
    if not changelog or not changelog.get('histories'):
        return []

    changes = []
    for history in changelog['histories']:
        changed_at = parse_jira_datetime(history.get('created'))
        if changed_at is None:
            continue
        for item in history.get('items') or []:
            if (item.get('field') or '').lower() in field_names:
                changes.append((changed_at, item))

    changes.sort(key=lambda change: change[0])
    return changes


def _to_float(value):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def detect_issue_added_to_sprint(changelog, sprint_name, sprint_start):
    """Date the issue joined the sprint after it started, or None"""
    sprint_start = parse_jira_datetime(sprint_start)
    if sprint_start is None or not sprint_name:
        return None

    for changed_at, item in _field_changes(changelog, SPRINT_FIELD_NAMES):
        if changed_at <= sprint_start:
            continue
        to_string = item.get('toString') or ''
        from_string = item.get('fromString') or ''
        if sprint_name in to_string and sprint_name not in from_string:
            return changed_at

    return None


def detect_issue_removed_from_sprint(changelog, sprint_name, sprint_start, sprint_end):
    """Date of the last removal from the sprint while it ran, or None"""
    sprint_end = parse_jira_datetime(sprint_end)
    if sprint_end is None or not sprint_name:
        return None
    sprint_start = parse_jira_datetime(sprint_start)

    removed_at = None
    for changed_at, item in _field_changes(changelog, SPRINT_FIELD_NAMES):
        if sprint_start is not None and changed_at < sprint_start:
            continue
        if changed_at > sprint_end:
            break
        to_string = item.get('toString') or ''
        from_string = item.get('fromString') or ''
        if sprint_name in from_string and sprint_name not in to_string:
            removed_at = changed_at

    return removed_at


def detect_story_points_changes(changelog, sprint_start, sprint_end):
    """Story point changes within the sprint window as dicts with date, before and after"""
    sprint_start = parse_jira_datetime(sprint_start)
    sprint_end = parse_jira_datetime(sprint_end)
    if sprint_start is None or sprint_end is None:
        return []

    changes = []
    for changed_at, item in _field_changes(changelog, STORY_POINTS_FIELD_NAMES):
        if changed_at < sprint_start or changed_at > sprint_end:
            continue
        before = _to_float(item.get('fromString'))
        after = _to_float(item.get('toString'))
        if before != after:
            changes.append({'date': changed_at, 'before': before, 'after': after})

    return changes


def detect_and_save_scope_changes(db, sprint_id, issue_id, issue_data, sprint, initial_story_points=None):
    """Detect and store scope changes of one issue in one sprint.

    `sprint` carries sprint_name, state, start_date, end_date and complete_date;
    nothing is detected unless both a start and an end (or completion) date are known.
    """
    result = {'added': False, 'removed': False, 'sp_changes': 0}

    changelog = issue_data.get('changelog') or {}
    sprint_name = sprint.get('sprint_name')
    sprint_start = sprint.get('start_date')
    sprint_end = sprint.get('end_date') or sprint.get('complete_date')
    state = sprint.get('state')

    if not sprint_start or not sprint_end:
        return result

    if state in ('active', 'closed'):
        added_at = detect_issue_added_to_sprint(changelog, sprint_name, sprint_start)
        if added_at and db.save_scope_change(sprint_id, issue_id, 'added', added_at,
                                             None, issue_data.get('story_points') or 0):
            result['added'] = True
            logger.debug("Issue %s added to sprint %s after start", issue_data.get('key'), sprint_name)

    if state == 'closed':
        removed_at = detect_issue_removed_from_sprint(changelog, sprint_name, sprint_start, sprint_end)
        if removed_at and db.save_scope_change(sprint_id, issue_id, 'removed', removed_at,
                                               initial_story_points or issue_data.get('story_points') or 0,
                                               None):
            result['removed'] = True
            logger.debug("Issue %s removed from sprint %s", issue_data.get('key'), sprint_name)

    if state in ('active', 'closed'):
        for change in detect_story_points_changes(changelog, sprint_start, sprint_end):
            if db.save_scope_change(sprint_id, issue_id, 'story_points_changed', change['date'],
                                    change['before'], change['after']):
                result['sp_changes'] += 1
                logger.debug("SP change in sprint %s for %s: %s -> %s", sprint_name,
                             issue_data.get('key'), change['before'], change['after'])

    return result
