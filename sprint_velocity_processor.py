"""
Sprint velocity: story points committed at sprint start vs completed at close.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = ('DONE', 'DEVELOPMENT DONE', 'CLOSED', 'RESOLVED', 'COMPLETED')


def is_completed_status(status):
    if not status:
        return False
    status = status.strip().upper()
    if status in COMPLETED_STATUSES or 'DEV DONE' in status:
        return True
    return 'DONE' in status and 'TO DO' not in status and 'TODO' not in status


def _committed_points(member):
    return member.get('story_points_at_start') or member.get('current_story_points') or 0


def _closing_points(member):
    return (member.get('story_points_at_close') or member.get('story_points_at_start')
            or member.get('current_story_points') or 0)


def _completed(members, final_status):
    completed = 0
    tickets = set()
    for member in members:
        if is_completed_status(final_status(member)):
            points = _closing_points(member)
            if points > 0:
                completed += points
                tickets.add(member['issue_id'])
    return completed, tickets


def calculate_velocity(members, last_status_by_issue=None):
    """(commitment, commitment_tickets, completed, completed_tickets) for sprint members"""
    commitment = 0
    commitment_tickets = set()
    for member in members:
        points = _committed_points(member)
        if points > 0:
            commitment += points
            commitment_tickets.add(member['issue_id'])

    completed, completed_tickets = _completed(members, lambda m: m.get('status_at_sprint_close'))

    if completed == 0 and last_status_by_issue:
        completed, completed_tickets = _completed(
            members,
            lambda m: last_status_by_issue.get(m['issue_id']) or m.get('status_at_sprint_close')
        )

    return commitment, commitment_tickets, completed, completed_tickets


def process_sprint_velocity(db, sprint):
    """Compute and store the velocity of one sprint; None when it has no issues"""
    if not sprint or not sprint.get('id'):
        logger.warning("Invalid sprint for velocity: %s", sprint)
        return None

    sprint_id = sprint['id']
    sprint_name = sprint.get('sprint_name')
    complete_date = sprint.get('complete_date') or sprint.get('end_date')
    logger.info("Processing velocity for sprint %s (id %s)", sprint_name, sprint_id)

    members = db.get_sprint_members(sprint_id)
    if not members:
        logger.warning("No issues found for sprint %s", sprint_name)
        return None

    commitment, commitment_tickets, completed, completed_tickets = calculate_velocity(members)

    if completed == 0 and complete_date:
        logger.info("No completed issues at close for %s, checking issue_history", sprint_name)
        last_status = db.get_last_status_before([m['issue_id'] for m in members], complete_date)
        commitment, commitment_tickets, completed, completed_tickets = calculate_velocity(members, last_status)

    velocity = {
        'sprint_id': sprint_id,
        'sprint_name': sprint_name,
        'start_date': sprint.get('start_date'),
        'end_date': sprint.get('end_date'),
        'complete_date': complete_date,
        'commitment': commitment,
        'completed': completed,
        'commitment_tickets': len(commitment_tickets),
        'completed_tickets': len(completed_tickets),
        'total_tickets': len(members),
        'calculated_at': datetime.now(timezone.utc),
    }
    db.upsert_sprint_velocity(velocity)

    logger.info("Velocity for %s: commitment=%s, completed=%s", sprint_name, commitment, completed)
    return velocity


def process_squad_velocity(db, squad_id):
    """Velocity for every closed sprint of a squad; returns the number stored"""
    stored = 0
    for sprint in db.get_closed_sprints(squad_id):
        try:
            if process_sprint_velocity(db, sprint):
                stored += 1
        except Exception as e:
            logger.error("Error processing velocity for sprint %s: %s", sprint.get('sprint_name'), e)
    logger.info("Velocity stored for %d sprints of squad %s", stored, squad_id)
    return stored
