#!/usr/bin/env python3
"""
Jira -> Supabase sync.

    python jira_sync.py                 # one pass: incremental, or full when never synced
    python jira_sync.py --full          # one forced full pass
    python jira_sync.py --service       # incremental every SYNC_INTERVAL_MINUTES plus the daily full sync
    python jira_sync.py --daily-full    # only the daily full sync
"""
import time
import argparse
import logging
from datetime import datetime, timedelta, timezone

import sync_config
from jira_client import create_jira_clients
from supabase_db import get_database_connection
from issue_processor import process_epics, process_issues_with_client
from sprint_closure_processor import process_all_closed_sprints
from sprint_velocity_processor import process_squad_velocity
from sprint_metrics import calculate_all_metrics

logger = logging.getLogger(__name__)

DAILY_FULL_CHECK_MINUTES = 15


def _run_sync(db, project, squad_id, jira_client, sync_type, fetch_issues):
    """Shared body of full and incremental syncs: fetch, process and log the run"""
    project_key = project['project_key'].upper()
    started = time.monotonic()
    log_id = db.log_sync(squad_id, sync_type, 'running')

    try:
        issues = fetch_issues()
        logger.info("[%s] %d issues to process", project_key, len(issues))

        epic_cache = process_epics(db, squad_id, issues, jira_client)
        counts = process_issues_with_client(db, squad_id, issues, jira_client, epic_cache=epic_cache)

        db.log_sync(squad_id, sync_type, 'completed', counts['success_count'], log_id=log_id)
    except Exception as e:
        logger.error("[%s] %s sync failed: %s", project_key, sync_type.capitalize(), e)
        db.log_sync(squad_id, sync_type, 'failed', 0, str(e), log_id=log_id)
        raise

    duration = round(time.monotonic() - started, 2)
    logger.info("[%s] %s sync finished in %.2fs: %d stored, %d unchanged, %d errors",
                project_key, sync_type.capitalize(), duration,
                counts['success_count'], counts['skipped_count'], counts['error_count'])
    return {
        'success': True,
        'issues_processed': counts['success_count'],
        'errors': counts['error_count'],
        'skipped': counts['skipped_count'],
        'duration': duration,
    }


def full_sync_for_project(db, project, squad_id, jira_client):
    """Fetch and process every issue of the project"""
    project_key = project['project_key'].upper()
    logger.info("[%s] Starting full sync", project_key)

    jql_query = f'project = "{project_key}" AND issuetype != "Sub-task" ORDER BY created DESC'
    return _run_sync(db, project, squad_id, jira_client, 'full',
                     lambda: jira_client.fetch_all_issues(jql_query))


def fetch_active_sprint_issues(db, squad_id, jira_client, known_keys, today=None):
    """Issues of the squad's running sprints that are not in known_keys"""
    today = today or datetime.now(timezone.utc).date()
    keys = [key for key in db.get_active_sprint_issue_keys(squad_id, today) if key not in known_keys]
    if not keys:
        return []

    logger.info("Refreshing %d issues from active sprints", len(keys))
    issues = []
    for key in keys:
        issue = jira_client.fetch_issue(key)
        if issue:
            issues.append(issue)
    return issues


def incremental_sync_for_project(db, project, squad_id, jira_client, last_sync=None):
    """Process issues updated since the last successful sync plus the issues of active sprints"""
    project_key = project['project_key'].upper()
    if last_sync is None:
        last_sync = db.get_last_sync(squad_id)
    since = last_sync or datetime.now(timezone.utc) - timedelta(days=sync_config.INCREMENTAL_DEFAULT_DAYS)
    logger.info("[%s] Starting incremental sync of changes since %s", project_key, since.isoformat())

    def fetch_issues():
        issues = jira_client.fetch_updated_issues(since, f'project = "{project_key}" AND issuetype != "Sub-task"')
        logger.info("[%s] Updated issues found: %d", project_key, len(issues))

        known_keys = {issue['key'] for issue in issues}
        try:
            issues.extend(fetch_active_sprint_issues(db, squad_id, jira_client, known_keys))
        except Exception as e:
            logger.warning("[%s] Could not refresh active sprint issues: %s", project_key, e)
        return issues

    return _run_sync(db, project, squad_id, jira_client, 'incremental', fetch_issues)


def recalculate_squad(db, squad_id, squad_key, jira_client):
    """Closed sprint checks, velocity and metrics after a sync"""
    closure = process_all_closed_sprints(db, squad_id, jira_client)
    velocity = process_squad_velocity(db, squad_id)
    metrics = calculate_all_metrics(db, squad_key)
    return {'closed_sprints': closure, 'velocity': velocity, 'metrics': metrics}


def sync_project(db, project, jira_client, force_full=False, recalculate=True):
    """Sync one project; errors are logged and reported in the result, never raised"""
    project_key = project['project_key'].upper()
    try:
        squad_id = db.get_or_create_squad(project_key, project.get('project_name'), project.get('jira_domain'))
        last_sync = db.get_last_sync(squad_id)

        if force_full or last_sync is None:
            if last_sync is None:
                logger.info("[%s] No previous sync found, running full sync", project_key)
            result = full_sync_for_project(db, project, squad_id, jira_client)
        else:
            result = incremental_sync_for_project(db, project, squad_id, jira_client, last_sync=last_sync)
    except Exception as e:
        logger.error("[%s] Sync failed: %s", project_key, e)
        return {'success': False, 'project_key': project_key, 'error': str(e)}

    if recalculate:
        try:
            recalculate_squad(db, squad_id, project_key, jira_client)
        except Exception as e:
            logger.error("[%s] Metrics recalculation failed: %s", project_key, e)

    return {'success': True, 'project_key': project_key, 'error': None, 'result': result}


def sync_projects(db, projects, clients, force_full=False, recalculate=True):
    results = []
    for project in projects:
        jira_client = clients.get(project['project_key'])
        if jira_client is None:
            results.append({'success': False, 'project_key': project['project_key'],
                            'error': 'No Jira client available'})
            continue
        results.append(sync_project(db, project, jira_client, force_full=force_full, recalculate=recalculate))
    return results


def log_summary(results):
    successful = [r for r in results if r['success']]
    logger.info("Sync summary: %d of %d projects succeeded", len(successful), len(results))
    for result in results:
        if not result['success']:
            logger.error("  %s: %s", result['project_key'], result['error'])


def run_sync_once(db, projects, force_full=False, recalculate=True):
    """One sync pass over all projects; returns a process exit code"""
    try:
        sync_config.validate_projects(projects)
    except ValueError as e:
        logger.error("%s", e)
        return 1

    clients = create_jira_clients(projects)
    results = sync_projects(db, projects, clients, force_full=force_full, recalculate=recalculate)
    log_summary(results)
    return 0 if results and all(r['success'] for r in results) else 1


def is_full_sync_due(last_full_sync, now, full_sync_hour_utc):
    """True once per UTC day, at or after the configured hour"""
    scheduled = now.replace(hour=full_sync_hour_utc, minute=0, second=0, microsecond=0)
    if now < scheduled:
        return False
    return last_full_sync is None or last_full_sync < scheduled


def _full_sync_due_projects(db, projects, now, full_sync_hour_utc):
    due = []
    for project in projects:
        squad_id = db.get_squad_id(project['project_key'])
        last_full_sync = db.get_last_full_sync(squad_id) if squad_id else None
        if is_full_sync_due(last_full_sync, now, full_sync_hour_utc):
            due.append(project)
    return due


def run_service(db, projects, interval_minutes=None, full_sync_hour_utc=None,
                incremental=True, daily_full=True, recalculate=True):
    """Sync continuously until interrupted.

    Each cycle runs an incremental pass (when `incremental`) and, once per UTC
    day at or after `full_sync_hour_utc`, a forced full pass (when `daily_full`).
    """
    interval_minutes = interval_minutes or sync_config.SYNC_INTERVAL_MINUTES
    if full_sync_hour_utc is None:
        full_sync_hour_utc = sync_config.FULL_SYNC_HOUR_UTC
    sleep_interval = interval_minutes * 60

    sync_config.validate_projects(projects)
    clients = create_jira_clients(projects)

    logger.info("Starting sync service with %s minute intervals", interval_minutes)
    if daily_full:
        logger.info("Daily full sync at %02d:00 UTC", full_sync_hour_utc)
    logger.info("Press Ctrl+C to stop the service")

    while True:
        try:
            now = datetime.now(timezone.utc)
            logger.info("=== Starting sync cycle at %s ===", now.strftime("%Y-%m-%d %H:%M:%S"))

            full_projects = _full_sync_due_projects(db, projects, now, full_sync_hour_utc) if daily_full else []
            if full_projects:
                logger.info("Running daily full sync for %s", ", ".join(p['project_key'] for p in full_projects))
                log_summary(sync_projects(db, full_projects, clients, force_full=True, recalculate=recalculate))

            if incremental:
                full_keys = {p['project_key'] for p in full_projects}
                remaining = [p for p in projects if p['project_key'] not in full_keys]
                if remaining:
                    log_summary(sync_projects(db, remaining, clients, recalculate=recalculate))

            logger.info("=== Sync cycle completed, sleeping for %s minutes ===", interval_minutes)
            time.sleep(sleep_interval)

        except KeyboardInterrupt:
            logger.info("Received interrupt signal. Shutting down gracefully...")
            break
        except Exception as e:
            logger.error("Error during sync cycle: %s", e)
            logger.info("Will retry in the next cycle, sleeping for %s minutes...", interval_minutes)
            try:
                time.sleep(sleep_interval)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal. Shutting down gracefully...")
                break


def main():
    parser = argparse.ArgumentParser(description='Sync Jira issues, sprints and metrics into Supabase')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true', help='Run a single sync pass (default)')
    mode.add_argument('--service', action='store_true', help='Run continuously')
    mode.add_argument('--daily-full', action='store_true', help='Only run the daily full sync, continuously')
    parser.add_argument('--full', action='store_true', help='Force a full sync')
    parser.add_argument('--project', help='Only sync this project key')
    parser.add_argument('--skip-metrics', action='store_true',
                        help='Skip closed sprint, velocity and metrics recalculation')
    parser.add_argument('--no-daily-full', action='store_true',
                        help='With --service, leave the daily full sync to a separate --daily-full process')
    args = parser.parse_args()

    sync_config.configure_logging()

    try:
        projects = sync_config.get_projects()
    except ValueError as e:
        logger.error("%s", e)
        return 1

    if args.project:
        projects = [p for p in projects if p['project_key'].upper() == args.project.upper()]
        if not projects:
            logger.error("Project %s is not configured", args.project)
            return 1

    logger.info("Projects: %s", ", ".join(p['project_key'] for p in projects))
    db = get_database_connection()
    recalculate = not args.skip_metrics

    if args.service or args.daily_full:
        try:
            if args.daily_full:
                run_service(db, projects, interval_minutes=DAILY_FULL_CHECK_MINUTES,
                            incremental=False, daily_full=True, recalculate=recalculate)
            else:
                run_service(db, projects, incremental=True, daily_full=not args.no_daily_full,
                            recalculate=recalculate)
        except ValueError as e:
            logger.error("%s", e)
            return 1
        return 0

    return run_sync_once(db, projects, force_full=args.full, recalculate=recalculate)


if __name__ == "__main__":
    exit(main())
