#!/usr/bin/env python3
"""
Per-sprint and per-developer metrics snapshots.

Usage:
    python sprint_metrics.py [SQUAD_KEY]
"""
import argparse
import logging
from datetime import datetime, timezone

import sync_config
from supabase_db import get_database_connection

logger = logging.getLogger(__name__)

TARGET_STATUSES = ['To Do', 'Reopen', 'In Progress', 'QA', 'Blocked', 'Done']
NO_SNAPSHOT = 'N/A (Sin Foto)'

STATUS_COUNT_COLUMNS = {
    'To Do': 'tickets_to_do',
    'In Progress': 'tickets_in_progress',
    'QA': 'tickets_qa',
    'Blocked': 'tickets_blocked',
    'Done': 'tickets_done',
    'Reopen': 'tickets_reopen',
}


def map_to_target_status(status):
    """Collapse a Jira status into one of TARGET_STATUSES"""
    if not status or status == NO_SNAPSHOT:
        return 'QA'
    status = status.strip().lower()

    if status in ('done', 'development done', 'resolved', 'closed', 'finished'):
        return 'Done'
    if status in ('blocked', 'impediment'):
        return 'Blocked'
    if 'in progress' in status or status in ('in development', 'doing', 'desarrollo'):
        return 'In Progress'
    if 'reopen' in status:
        return 'Reopen'
    if any(marker in status for marker in ('qa', 'test', 'review', 'staging', 'compliance check')):
        return 'QA'
    if status in ('to do', 'backlog') or 'pendiente' in status:
        return 'To Do'
    return 'QA'


def snapshot_date(sprint, now):
    """Moment the sprint is measured at, or None when it is still running"""
    if sprint.get('complete_date'):
        return sprint['complete_date']
    if sprint.get('end_date') and (sprint.get('state') == 'closed' or sprint['end_date'] < now):
        return sprint['end_date']
    return None


def status_for_sprint(row, sprint, photo_date):
    """Status of a sprint member as of the snapshot"""
    if photo_date is None and sprint.get('state') == 'active':
        return row.get('current_status') or 'N/A'
    if photo_date is not None and row.get('status_at_sprint_close'):
        return row['status_at_sprint_close']
    return row.get('current_status') or NO_SNAPSHOT


def initial_story_points(row, sprint):
    """Story points the issue brought into the sprint"""
    if row.get('story_points_at_start') is not None:
        return row['story_points_at_start']
    created = row.get('created_date')
    if created and sprint.get('start_date') and created > sprint['start_date']:
        return 0
    return row.get('current_story_points') or 0


def lead_time_days(row):
    start, close = row.get('dev_start_date'), row.get('dev_close_date')
    if not start or not close:
        return None
    days = (close - start).total_seconds() / 86400
    return days if days >= 0 else None


def _status_columns(counts):
    return {column: counts.get(status, 0) for status, column in STATUS_COUNT_COLUMNS.items()}


def summarize_sprint(rows, sprint, now):
    """sprint_metrics values (without sprint_id / calculated_at) for a sprint's members"""
    photo_date = snapshot_date(sprint, now)
    counts = {status: 0 for status in TARGET_STATUSES}
    total_sp = completed_sp = 0
    completed_tickets = impediments = 0
    with_sp = no_sp = 0
    lead_times = []

    for row in rows:
        mapped = map_to_target_status(status_for_sprint(row, sprint, photo_date))
        counts[mapped] += 1

        points = row.get('current_story_points') or 0
        total_sp += points
        if points > 0:
            with_sp += 1
        else:
            no_sp += 1

        if mapped == 'Done':
            completed_sp += points
            completed_tickets += 1
        if mapped == 'Blocked':
            impediments += 1

        lead_time = lead_time_days(row)
        if lead_time is not None:
            lead_times.append(lead_time)

    total = len(rows)
    return {
        'total_story_points': total_sp,
        'completed_story_points': completed_sp,
        'carryover_story_points': total_sp - completed_sp,
        'total_tickets': total,
        'completed_tickets': completed_tickets,
        'pending_tickets': total - completed_tickets,
        'impediments': impediments,
        'avg_lead_time_days': sum(lead_times) / len(lead_times) if lead_times else None,
        'completion_percentage': (completed_tickets / total) * 100 if total else 0,
        'tickets_with_sp': with_sp,
        'tickets_no_sp': no_sp,
        **_status_columns(counts),
    }


def summarize_developers(rows, sprint, now):
    """developer_sprint_metrics values keyed by assignee id (None for unassigned)"""
    photo_date = snapshot_date(sprint, now)
    developers = {}

    for row in rows:
        developer_id = row.get('assignee_id')
        metrics = developers.setdefault(developer_id, {
            'developer_name': row.get('assignee_name') or 'Unassigned',
            'tickets': 0,
            'workload': 0,
            'velocity': 0,
            'completed': 0,
            'lead_times': [],
            'counts': {status: 0 for status in TARGET_STATUSES},
        })

        metrics['tickets'] += 1
        mapped = map_to_target_status(status_for_sprint(row, sprint, photo_date))
        metrics['counts'][mapped] += 1
        metrics['workload'] += initial_story_points(row, sprint)

        if mapped == 'Done':
            metrics['velocity'] += row.get('current_story_points') or 0
            metrics['completed'] += 1
            lead_time = lead_time_days(row)
            if lead_time is not None:
                metrics['lead_times'].append(lead_time)

    summary = {}
    for developer_id, metrics in developers.items():
        lead_times = metrics['lead_times']
        summary[developer_id] = {
            'developer_name': metrics['developer_name'],
            'workload_sp': metrics['workload'],
            'velocity_sp': metrics['velocity'],
            'carryover_sp': metrics['workload'] - metrics['velocity'],
            'tickets_assigned': metrics['tickets'],
            'tickets_completed': metrics['completed'],
            'avg_lead_time_days': sum(lead_times) / len(lead_times) if lead_times else None,
            **_status_columns(metrics['counts']),
        }
    return summary


def needs_snapshot(sprint, last_snapshot, now):
    """Active sprints, sprints never measured and sprints that ended after their last snapshot"""
    if last_snapshot is None or sprint.get('state') == 'active':
        return True
    photo_date = snapshot_date(sprint, now)
    return photo_date is not None and photo_date > last_snapshot


def squad_sprints(db, squad_key, now=None, refresh_all=False):
    """Sprints of the squad that need a new snapshot (all of them with refresh_all)"""
    now = now or datetime.now(timezone.utc)
    squad_id = db.get_squad_id(squad_key)
    if squad_id is None:
        raise ValueError(f"Squad {squad_key} not found")
    sprints = db.get_sprints(squad_id)
    if not sprints:
        logger.warning("No sprints found for squad %s", squad_key)
        return []
    if refresh_all:
        return sprints

    last_snapshots = db.get_last_metrics_snapshots(squad_id)
    pending = [s for s in sprints if needs_snapshot(s, last_snapshots.get(s['id']), now)]
    logger.info("%d of %d sprints need a new snapshot", len(pending), len(sprints))
    return pending


def calculate_sprint_metrics(db, squad_key, now=None, sprints=None):
    """Store a sprint_metrics snapshot for each sprint that needs one; returns the count"""
    now = now or datetime.now(timezone.utc)
    logger.info("Calculating sprint metrics for squad %s", squad_key)
    if sprints is None:
        sprints = squad_sprints(db, squad_key, now)

    saved = 0
    for sprint in sprints:
        rows = db.get_sprint_members(sprint['id'])
        if not rows:
            logger.debug("Sprint %s has no issues", sprint['sprint_name'])
            continue

        metrics = summarize_sprint(rows, sprint, now)
        db.save_sprint_metrics({'sprint_id': sprint['id'], 'calculated_at': now, **metrics})
        saved += 1
        avg = metrics['avg_lead_time_days']
        logger.info("%s: %s SP total, %s done, %s carryover; %d tickets, %d done; lead time %s days",
                    sprint['sprint_name'], metrics['total_story_points'], metrics['completed_story_points'],
                    metrics['carryover_story_points'], metrics['total_tickets'], metrics['completed_tickets'],
                    f"{avg:.2f}" if avg is not None else "N/A")

    logger.info("Sprint metrics stored for %d sprints", saved)
    return saved


def calculate_developer_metrics(db, squad_key, now=None, sprints=None):
    """Store developer_sprint_metrics snapshots for each sprint that needs one; returns the row count"""
    now = now or datetime.now(timezone.utc)
    logger.info("Calculating developer metrics for squad %s", squad_key)
    if sprints is None:
        sprints = squad_sprints(db, squad_key, now)

    saved = 0
    for sprint in sprints:
        rows = db.get_sprint_members(sprint['id'])
        if not rows:
            continue

        records = []
        for developer_id, metrics in summarize_developers(rows, sprint, now).items():
            name = metrics.pop('developer_name')
            records.append({'developer_id': developer_id, 'sprint_id': sprint['id'], 'calculated_at': now,
                            **metrics})
            logger.debug("%s in %s: workload=%s, velocity=%s, carryover=%s", name, sprint['sprint_name'],
                         metrics['workload_sp'], metrics['velocity_sp'], metrics['carryover_sp'])
        saved += db.save_developer_metrics(records)

    logger.info("Developer metrics stored: %d rows", saved)
    return saved


def calculate_all_metrics(db, squad_key, now=None, refresh_all=False):
    """Sprint and developer metrics with one shared snapshot time.

    Sprints are picked once so both tables snapshot the same sprints.
    """
    now = now or datetime.now(timezone.utc)
    sprints = squad_sprints(db, squad_key, now, refresh_all=refresh_all)
    return {
        'sprint_metrics': calculate_sprint_metrics(db, squad_key, now, sprints=sprints),
        'developer_metrics': calculate_developer_metrics(db, squad_key, now, sprints=sprints),
    }


def main():
    parser = argparse.ArgumentParser(description='Calculate sprint and developer metrics')
    parser.add_argument('squad_key', nargs='?', default=sync_config.PROJECT_KEY,
                        help='Squad (Jira project) key (default: PROJECT_KEY)')
    parser.add_argument('--all', action='store_true', dest='refresh_all',
                        help='Snapshot every sprint, not only active and newly ended ones')
    args = parser.parse_args()

    sync_config.configure_logging()
    logger.info("Starting metrics calculation for %s", args.squad_key.upper())

    try:
        db = get_database_connection()
        result = calculate_all_metrics(db, args.squad_key.upper(), refresh_all=args.refresh_all)
    except Exception as e:
        logger.error("Metrics calculation failed: %s", e)
        return 1

    logger.info("Metrics calculation complete: %d sprint snapshots, %d developer rows",
                result['sprint_metrics'], result['developer_metrics'])
    return 0


if __name__ == "__main__":
    exit(main())
