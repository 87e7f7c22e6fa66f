"""
Checks closed sprints against Jira and fills in missing completion dates.
"""
import logging
import requests
from sqlalchemy.exc import SQLAlchemyError

from jira_client import parse_jira_datetime

logger = logging.getLogger(__name__)


def validate_sprint_closure(db, sprint, jira_client):
    """Validate a stored sprint that is marked closed.

    Returns {'is_valid', 'issues', 'warnings', 'errors'}; `issues` holds dicts
    with a `type` and a `message` for things that processing can repair.
    """
    validation = {'is_valid': False, 'issues': [], 'warnings': [], 'errors': []}
    name = sprint.get('sprint_name')
    logger.info("Validating closure of sprint %s (%s)", name, sprint.get('id'))

    if sprint.get('state') != 'closed':
        validation['warnings'].append(f"Sprint {name} is not marked closed (state: {sprint.get('state')})")
        return validation

    if not sprint.get('end_date'):
        validation['errors'].append(f"Sprint {name} is closed but has no end_date")
        return validation

    if sprint.get('sprint_key') and jira_client is not None:
        try:
            jira_sprint = jira_client.fetch_sprint(sprint['sprint_key'])
            if jira_sprint.get('state') != 'closed':
                validation['warnings'].append(
                    f"Sprint {name} is closed in the database but {jira_sprint.get('state')} in Jira"
                )
            if jira_sprint.get('completeDate') and not sprint.get('complete_date'):
                validation['issues'].append({
                    'type': 'missing_complete_date',
                    'message': f"Jira has completeDate {jira_sprint['completeDate']} but the database does not",
                    'jira_complete_date': jira_sprint['completeDate'],
                })
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                validation['warnings'].append(f"Sprint {name} not found in Jira (it may have been deleted)")
            else:
                logger.warning("Error checking sprint %s in Jira: %s", name, e)
        except requests.RequestException as e:
            logger.warning("Error checking sprint %s in Jira: %s", name, e)

    try:
        members = db.get_sprint_members(sprint['id'])
    except SQLAlchemyError as e:
        validation['errors'].append(f"Error reading sprint issues: {e}")
        return validation

    if not members:
        validation['warnings'].append(f"Sprint {name} has no issues")
        validation['is_valid'] = True
        return validation

    without_status = [m for m in members if not m.get('status_at_sprint_close')]
    if without_status:
        validation['issues'].append({
            'type': 'missing_status_at_close',
            'message': f"{len(without_status)} of {len(members)} issues have no status_at_sprint_close",
            'count': len(without_status),
            'total': len(members),
            'issue_keys': [m['issue_key'] for m in without_status if m.get('issue_key')],
        })

    if not sprint.get('complete_date') and not any(
            i['type'] == 'missing_complete_date' for i in validation['issues']):
        validation['issues'].append({
            'type': 'missing_complete_date',
            'message': f"Sprint {name} is closed but has no complete_date",
        })

    validation['is_valid'] = not validation['errors']
    logger.info("Validation of %s: %s (%d issues, %d warnings)", name,
                "valid" if validation['is_valid'] else "invalid",
                len(validation['issues']), len(validation['warnings']))
    return validation


def process_sprint_closure(db, sprint, jira_client):
    """Validate a closed sprint and store its completion date when missing"""
    result = {'success': False, 'updated': False, 'validation': None}
    name = sprint.get('sprint_name')

    validation = validate_sprint_closure(db, sprint, jira_client)
    result['validation'] = validation
    if not validation['is_valid']:
        logger.warning("Sprint %s is not valid, skipping", name)
        return result

    complete_date = None
    if not sprint.get('complete_date'):
        jira_complete_date = next((i.get('jira_complete_date') for i in validation['issues']
                                   if i.get('jira_complete_date')), None)
        complete_date = parse_jira_datetime(jira_complete_date)
        if complete_date:
            logger.info("Setting complete_date of %s from Jira: %s", name, complete_date)

        if complete_date is None and sprint.get('end_date'):
            complete_date = sprint['end_date']
            logger.info("Setting complete_date of %s to its end_date %s", name, complete_date)

    if complete_date is not None:
        try:
            db.update_sprint_complete_date(sprint['id'], complete_date)
        except SQLAlchemyError as e:
            validation['errors'].append(f"Error updating sprint: {e}")
            return result
        sprint['complete_date'] = complete_date
        result['updated'] = True

    result['success'] = True
    return result


def process_all_closed_sprints(db, squad_id, jira_client, include_completed=False):
    """Run closure processing over the closed sprints of a squad.

    Sprints that already have a complete_date are skipped (and counted in
    `skipped`) unless include_completed is set.
    """
    result = {'processed': 0, 'updated': 0, 'errors': 0, 'skipped': 0, 'details': []}
    logger.info("Processing closed sprints for squad %s...", squad_id)

    closed_sprints = db.get_closed_sprints(squad_id)
    if not include_completed:
        pending = [s for s in closed_sprints if not s.get('complete_date')]
        result['skipped'] = len(closed_sprints) - len(pending)
        closed_sprints = pending
    if not closed_sprints:
        logger.info("No closed sprints to process")
        return result

    logger.info("Found %d closed sprints to process", len(closed_sprints))
    for sprint in closed_sprints:
        result['processed'] += 1
        try:
            outcome = process_sprint_closure(db, sprint, jira_client)
        except Exception as e:
            logger.error("Error processing sprint %s: %s", sprint.get('sprint_name'), e)
            result['errors'] += 1
            continue

        if outcome['updated']:
            result['updated'] += 1
        if not outcome['success']:
            result['errors'] += 1

        validation = outcome['validation'] or {}
        result['details'].append({
            'sprint_name': sprint.get('sprint_name'),
            'success': outcome['success'],
            'updated': outcome['updated'],
            'issues': len(validation.get('issues', [])),
            'warnings': len(validation.get('warnings', [])),
            'errors': len(validation.get('errors', [])),
        })

    logger.info("Closed sprints: %d processed, %d updated, %d errors",
                result['processed'], result['updated'], result['errors'])
    return result
