"""
Turns Jira issues into rows: issues, issue_sprints, issue_history and sprint
scope changes.
"""
import logging
from datetime import datetime, timezone

import sync_config
from jira_client import parse_jira_datetime
from scope_change_detector import detect_and_save_scope_changes

logger = logging.getLogger(__name__)

STATUS_MAP = {
    'to do': 'TO DO',
    'todo': 'TO DO',
    'to-do': 'TO DO',
    'in progress': 'IN PROGRESS',
    'in-progress': 'IN PROGRESS',
    'en progreso': 'IN PROGRESS',
    'done': 'DONE',
    'testing': 'TESTING',
    'test': 'TESTING',
    'blocked': 'BLOCKED',
    'security review': 'SECURITY REVIEW',
    'security-review': 'SECURITY REVIEW',
    'reopen': 'REOPEN',
    're-opened': 'REOPEN',
    'compliance check': 'COMPLIANCE CHECK',
    'compliance-check': 'COMPLIANCE CHECK',
    'development done': 'DEVELOPMENT DONE',
    'development-done': 'DEVELOPMENT DONE',
    'qa': 'QA',
    'qa external': 'QA EXTERNAL',
    'qa-external': 'QA EXTERNAL',
    'staging': 'STAGING',
    'ready to release': 'READY TO RELEASE',
    'ready-to-release': 'READY TO RELEASE',
    'in review': 'IN REVIEW',
    'in-review': 'IN REVIEW',
    'open': 'OPEN',
    'hold': 'HOLD',
    'requisitions': 'REQUISITIONS',
}

DEV_START_MARKERS = ('in progress', 'en progreso')
DEV_CLOSE_STATUSES = ('done', 'development done')
STORY_POINTS_FIELD_NAMES = ('story points', 'story point estimate')


def normalize_status(status):
    """Canonical upper-case status name; known spellings are mapped"""
    if not status or status == 'Unknown':
        return 'Unknown'
    normalized = status.strip()
    if not normalized:
        return 'Unknown'
    return STATUS_MAP.get(normalized.lower(), normalized.upper())


def extract_status_history(changelog):
    """Status transitions as {'from', 'to', 'date'}, oldest first"""
    history = []
    for entry in (changelog or {}).get('histories') or []:
        changed_at = parse_jira_datetime(entry.get('created'))
        if changed_at is None:
            continue
        for item in entry.get('items') or []:
            if item.get('field') == 'status':
                history.append({
                    'from': item.get('fromString'),
                    'to': item.get('toString'),
                    'date': changed_at,
                })
    history.sort(key=lambda transition: transition['date'])
    return history


def extract_dev_dates(history):
    """(dev_start_date, dev_close_date) from the first matching transitions"""
    dev_start = None
    dev_close = None
    for transition in history:
        to_status = (transition.get('to') or '').lower()
        if dev_start is None and any(marker in to_status for marker in DEV_START_MARKERS):
            dev_start = transition['date']
        if dev_close is None and to_status in DEV_CLOSE_STATUSES:
            dev_close = transition['date']
    return dev_start, dev_close


def status_at(history, moment, current_status):
    """Raw status the issue had at `moment`"""
    if moment is None or not history:
        return current_status

    status = None
    for transition in history:
        if transition['date'] <= moment:
            status = transition['to']
        else:
            break

    if status is None:
        # Every transition happened later: the issue was still in its first status
        return history[0].get('from') or current_status
    return status


def _parse_story_points(value):
    if value in (None, ''):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def extract_story_points_changes(changelog, story_points_field=None):
    """Story point changes as (date, before, after), oldest first"""
    field_id = (story_points_field or sync_config.STORY_POINTS_FIELD_ID).lower()
    changes = []
    for entry in (changelog or {}).get('histories') or []:
        changed_at = parse_jira_datetime(entry.get('created'))
        if changed_at is None:
            continue
        for item in entry.get('items') or []:
            field = (item.get('field') or '').lower()
            if field in STORY_POINTS_FIELD_NAMES or field == field_id or \
                    (item.get('fieldId') or '').lower() == field_id:
                changes.append((changed_at,
                                _parse_story_points(item.get('fromString')),
                                _parse_story_points(item.get('toString'))))
    changes.sort(key=lambda change: change[0])
    return changes


def story_points_at(changelog, moment, current_story_points, story_points_field=None):
    """Story points the issue had at `moment`"""
    current = _parse_story_points(current_story_points)
    if moment is None:
        return current

    changes = extract_story_points_changes(changelog, story_points_field)
    if not changes:
        return current

    value = None
    for changed_at, _, after in changes:
        if changed_at <= moment:
            value = after
        else:
            break

    if value is None:
        return changes[0][1]
    return value


def status_history_days(history, created, now, current_status):
    """Days spent in each (normalized) status from creation until now"""
    if created is None:
        return {}

    days = {}

    def add(status, start, end):
        if start is None or end is None or end <= start:
            return
        key = normalize_status(status)
        days[key] = days.get(key, 0.0) + (end - start).total_seconds() / 86400

    status = (history[0].get('from') if history else None) or current_status
    since = created
    for transition in history:
        add(status, since, transition['date'])
        status = transition.get('to') or status
        since = max(since, transition['date'])
    add(status, since, now)

    return {status: round(value, 2) for status, value in days.items()}


def sprint_ref(jira_sprint):
    """Sprint as stored: Jira id, name, state and parsed dates"""
    return {
        'sprint_key': str(jira_sprint['id']) if jira_sprint.get('id') is not None else None,
        'sprint_name': jira_sprint.get('name'),
        'state': jira_sprint.get('state'),
        'start_date': parse_jira_datetime(jira_sprint.get('startDate')),
        'end_date': parse_jira_datetime(jira_sprint.get('endDate')),
        'complete_date': parse_jira_datetime(jira_sprint.get('completeDate')),
    }


def pick_current_sprint(sprints):
    """Name of the active sprint, else the one ending last, else 'Backlog'"""
    if not sprints:
        return 'Backlog'
    for sprint in sprints:
        if sprint.get('state') == 'active':
            return sprint['sprint_name']
    dated = [s for s in sprints if s.get('end_date')]
    if dated:
        return max(dated, key=lambda s: s['end_date'])['sprint_name']
    return sprints[-1].get('sprint_name') or 'Backlog'


def _sprint_close_moment(sprint):
    return sprint.get('complete_date') or sprint.get('end_date')


def build_issue_data(jira_issue, assignee_id=None, epic_id=None, epic_name=None, now=None,
                     story_points_field=None, sprint_field=None):
    """Everything stored for an issue, derived from the Jira payload"""
    story_points_field = story_points_field or sync_config.STORY_POINTS_FIELD_ID
    sprint_field = sprint_field or sync_config.SPRINT_FIELD_ID
    now = now or datetime.now(timezone.utc)

    fields = jira_issue.get('fields') or {}
    changelog = jira_issue.get('changelog') or {}

    jira_status = (fields.get('status') or {}).get('name') or 'Unknown'
    status = normalize_status(jira_status)
    if jira_status != status:
        logger.debug("[%s] Normalizing status: %r -> %r", jira_issue.get('key'), jira_status, status)

    story_points = _parse_story_points(fields.get(story_points_field))
    history = extract_status_history(changelog)
    dev_start, dev_close = extract_dev_dates(history)
    created = parse_jira_datetime(fields.get('created'))

    raw_sprints = fields.get(sprint_field) or []
    sprints = [sprint_ref(s) for s in raw_sprints if isinstance(s, dict) and s.get('name')]

    status_by_sprint = {}
    story_points_by_sprint = {}
    for sprint in sprints:
        moment = _sprint_close_moment(sprint)
        if sprint.get('state') == 'active':
            moment = None
        status_by_sprint[sprint['sprint_name']] = normalize_status(status_at(history, moment, jira_status))
        story_points_by_sprint[sprint['sprint_name']] = story_points_at(changelog, moment, story_points,
                                                                        story_points_field)

    return {
        'key': jira_issue['key'],
        'issue_type': (fields.get('issuetype') or {}).get('name') or 'Unknown',
        'summary': fields.get('summary') or '',
        'assignee_id': assignee_id,
        'priority': (fields.get('priority') or {}).get('name'),
        'status': status,
        'story_points': story_points,
        'resolution': (fields.get('resolution') or {}).get('name'),
        'created_date': created,
        'resolved_date': parse_jira_datetime(fields.get('resolutiondate')),
        'updated_date': parse_jira_datetime(fields.get('updated')),
        'dev_start_date': dev_start,
        'dev_close_date': dev_close,
        'epic_id': epic_id,
        'epic_name': epic_name,
        'sprint_history': [s['sprint_name'] for s in sprints],
        'current_sprint': pick_current_sprint(sprints),
        'status_by_sprint': status_by_sprint,
        'story_points_by_sprint': story_points_by_sprint,
        'status_history_days': status_history_days(history, created, now, jira_status),
        'raw_data': jira_issue,
        # Not stored on the issue row, used for the per-sprint records
        'changelog': changelog,
        'status_history': history,
        'sprints': sprints,
    }


def resolve_assignee(db, fields):
    assignee = fields.get('assignee')
    if not assignee:
        return None
    return db.get_or_create_developer(
        assignee.get('displayName') or 'Unassigned',
        assignee.get('emailAddress'),
        assignee.get('accountId'),
    )


def resolve_epic(db, squad_id, fields, jira_client, epic_cache):
    """(epic_id, epic_name) of the parent epic; Jira is asked once per epic"""
    parent = fields.get('parent')
    if not parent:
        return None, None
    parent_fields = parent.get('fields') or {}
    if (parent_fields.get('issuetype') or {}).get('name') != 'Epic':
        return None, None

    epic_key = parent.get('key')
    epic_name = parent_fields.get('summary') or 'N/A'
    if epic_key in epic_cache:
        return epic_cache[epic_key], epic_name

    start_date, end_date = None, None
    if jira_client is not None:
        details = jira_client.fetch_issue_details(epic_key)
        if details and details.get('fields'):
            start_date, end_date = jira_client.extract_timeline_dates(details['fields'])
            logger.debug("Epic %s: start=%s, end=%s", epic_key, start_date, end_date)

    epic_id = db.get_or_create_epic(squad_id, epic_key, epic_name, start_date, end_date)
    epic_cache[epic_key] = epic_id
    return epic_id, epic_name


def prepare_issue(db, squad_id, jira_issue, jira_client=None, epic_cache=None, now=None):
    """Resolve references and build the issue data, without writing the issue itself"""
    if epic_cache is None:
        epic_cache = {}
    fields = jira_issue.get('fields') or {}

    assignee_id = resolve_assignee(db, fields)
    epic_id, epic_name = resolve_epic(db, squad_id, fields, jira_client, epic_cache)

    issue_data = build_issue_data(
        jira_issue, assignee_id, epic_id, epic_name, now=now,
        story_points_field=getattr(jira_client, 'story_points_field', None),
        sprint_field=getattr(jira_client, 'sprint_field', None),
    )

    issue_data['sprint_ids'] = []
    for sprint in issue_data['sprints']:
        sprint_id = db.get_or_create_sprint(squad_id, sprint)
        if sprint_id:
            issue_data['sprint_ids'].append((sprint_id, sprint))

    return issue_data


def store_issue_relations(db, issue_id, issue_data):
    """issue_sprints rows, status history and scope changes of a written issue"""
    history = issue_data['status_history']
    changelog = issue_data['changelog']
    current_status = issue_data['status']
    current_sp = issue_data['story_points']

    for sprint_id, sprint in issue_data['sprint_ids']:
        start = sprint.get('start_date')
        close = _sprint_close_moment(sprint)

        status_at_start = normalize_status(status_at(history, start, current_status)) if start else None
        status_at_close = normalize_status(status_at(history, close, current_status)) if close else current_status
        sp_at_start = story_points_at(changelog, start, current_sp) if start else current_sp
        sp_at_close = story_points_at(changelog, close, current_sp) if close else current_sp

        db.upsert_issue_sprint(issue_id, sprint_id, status_at_start, status_at_close, sp_at_start, sp_at_close)
        detect_and_save_scope_changes(db, sprint_id, issue_id, issue_data, sprint, sp_at_start)

    db.upsert_issue_history(issue_id, history)


def process_issue(db, squad_id, jira_issue, jira_client=None, epic_cache=None, now=None):
    """Process one issue end to end; returns its id, or None when nothing changed"""
    issue_data = prepare_issue(db, squad_id, jira_issue, jira_client, epic_cache, now)
    result = db.upsert_issues_batch(squad_id, [issue_data])
    if result['errors']:
        key, message = result['errors'][0]
        raise RuntimeError(f"Could not store issue {key}: {message}")

    for issue_id, _ in result['updated']:
        store_issue_relations(db, issue_id, issue_data)
        return issue_id
    return None


def process_issues_with_client(db, squad_id, issues, jira_client, epic_cache=None, now=None):
    """Process a batch of Jira issues; failures are logged and counted per issue"""
    logger.info("Processing %d issues...", len(issues))
    if epic_cache is None:
        epic_cache = {}

    prepared = {}
    error_count = 0
    for jira_issue in issues:
        try:
            issue_data = prepare_issue(db, squad_id, jira_issue, jira_client, epic_cache, now)
            prepared[issue_data['key']] = issue_data
        except Exception as e:
            error_count += 1
            logger.error("Error preparing issue %s: %s", jira_issue.get('key'), e)

    result = db.upsert_issues_batch(squad_id, list(prepared.values()))
    for key, message in result['errors']:
        error_count += 1
        logger.error("Error storing issue %s: %s", key, message)

    success_count = 0
    total = len(result['updated'])
    for issue_id, key in result['updated']:
        try:
            store_issue_relations(db, issue_id, prepared[key])
            success_count += 1
            if success_count % 10 == 0:
                logger.info("Processed: %d/%d", success_count, total)
        except Exception as e:
            error_count += 1
            logger.error("Error in issue %s: %s", key, e)

    skipped_count = len(result['skipped'])
    logger.info("Processing complete: %d stored, %d unchanged, %d errors",
                success_count, skipped_count, error_count)
    return {
        'success_count': success_count,
        'error_count': error_count,
        'skipped_count': skipped_count,
    }


def process_epics(db, squad_id, issues, jira_client, epic_cache=None):
    """Store the epics found among the fetched issues; returns {epic_key: initiative id}"""
    if epic_cache is None:
        epic_cache = {}

    epics = [i for i in issues if ((i.get('fields') or {}).get('issuetype') or {}).get('name') == 'Epic']
    if not epics:
        return epic_cache

    logger.info("Processing %d epics", len(epics))
    for epic in epics:
        try:
            start_date, end_date = None, None
            details = jira_client.fetch_issue_details(epic['key'])
            if details and details.get('fields'):
                start_date, end_date = jira_client.extract_timeline_dates(details['fields'])

            epic_id = db.get_or_create_epic(
                squad_id, epic['key'], (epic.get('fields') or {}).get('summary') or 'N/A',
                start_date, end_date
            )
            if epic_id:
                epic_cache[epic['key']] = epic_id
        except Exception as e:
            logger.warning("Error processing epic %s: %s", epic.get('key'), e)

    return epic_cache
