"""
Supabase (Postgres) storage for synced Jira data.
"""
import logging
from datetime import datetime, timedelta, timezone
from sqlalchemy import (create_engine, text, Table, Column, Integer, String, DateTime, Date, Float,
                        Boolean, MetaData, ForeignKey, UniqueConstraint, select)
from sqlalchemy.dialects.postgresql import TEXT as PG_TEXT, JSONB, insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

import sync_config

logger = logging.getLogger(__name__)

BATCH_SIZE = 1000  # keys per IN (...) lookup and rows per upsert statement

ISSUE_COMPARE_COLUMNS = ('id', 'issue_key', 'current_status', 'current_story_points',
                         'updated_date', 'current_sprint', 'assignee_id')


def status_count_columns():
    """Ticket counts per target status, shared by the metrics snapshot tables"""
    return [
        Column(name, Integer, nullable=False, server_default=text('0'))
        for name in ('tickets_to_do', 'tickets_in_progress', 'tickets_qa',
                     'tickets_blocked', 'tickets_done', 'tickets_reopen')
    ]


def describe_issue_changes(existing, issue_data):
    """Differences between a stored issue row and freshly built issue data (empty when unchanged)"""
    changes = []
    new_sp = issue_data.get('story_points') or 0
    new_sprint = issue_data.get('current_sprint') or 'Backlog'

    if existing.get('current_status') != issue_data.get('status'):
        changes.append(f"status: {existing.get('current_status')} -> {issue_data.get('status')}")
    if (existing.get('current_story_points') or 0) != new_sp:
        changes.append(f"SP: {existing.get('current_story_points')} -> {new_sp}")
    if existing.get('current_sprint') != new_sprint:
        changes.append(f"sprint: {existing.get('current_sprint')} -> {new_sprint}")
    if existing.get('assignee_id') != issue_data.get('assignee_id'):
        changes.append("assignee changed")
    if existing.get('updated_date') != issue_data.get('updated_date'):
        changes.append("updated_date changed")
    return changes


def build_upsert_data(squad_id, issue_data):
    """Row for the issues table from processed issue data"""
    return {
        'squad_id': squad_id,
        'issue_key': issue_data['key'],
        'issue_type': issue_data.get('issue_type'),
        'summary': issue_data.get('summary'),
        'assignee_id': issue_data.get('assignee_id'),
        'priority': issue_data.get('priority'),
        'current_status': issue_data.get('status'),
        'current_story_points': issue_data.get('story_points') or 0,
        'resolution': issue_data.get('resolution'),
        'created_date': issue_data.get('created_date'),
        'resolved_date': issue_data.get('resolved_date'),
        'updated_date': issue_data.get('updated_date'),
        'dev_start_date': issue_data.get('dev_start_date'),
        'dev_close_date': issue_data.get('dev_close_date'),
        'initiative_id': issue_data.get('epic_id'),
        'epic_name': issue_data.get('epic_name'),
        'sprint_history': issue_data.get('sprint_history') or None,
        'current_sprint': issue_data.get('current_sprint') or 'Backlog',
        'status_by_sprint': issue_data.get('status_by_sprint') or {},
        'story_points_by_sprint': issue_data.get('story_points_by_sprint') or {},
        'status_history_days': issue_data.get('status_history_days') or None,
        'raw_data': issue_data.get('raw_data'),
    }


class SupabaseDatabaseConnection:
    def __init__(self, schema_name=None, engine=None, setup=True):
        self.schema_name = schema_name or sync_config.SUPABASE_SCHEMA
        self.engine = engine if engine is not None else self._create_engine()
        self.metadata = MetaData(schema=self.schema_name)
        self.define_tables()
        if setup:
            self.setup_schema()
            self.setup_tables()

    def _create_engine(self):
        return create_engine(sync_config.get_database_url(), pool_pre_ping=True)

    def _table(self, name):
        return f"{self.schema_name}.{name}"

    def _create_index(self, connection, index_name, table_name, columns):
        connection.execute(text(f"""
            CREATE INDEX IF NOT EXISTS {index_name} ON {self.schema_name}.{table_name}({columns})
        """))

    def setup_schema(self):
        """Create the schema if it doesn't exist"""
        try:
            with self.engine.connect() as connection:
                connection.execute(text(f"CREATE SCHEMA IF NOT EXISTS {self.schema_name}"))
                connection.commit()
        except SQLAlchemyError as e:
            logger.error("Error creating schema %s: %s", self.schema_name, e)
            raise

    def define_tables(self):
        ts = DateTime(timezone=True)
        now = text('CURRENT_TIMESTAMP')

        self.squads = Table(
            'squads', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('squad_key', String(50), nullable=False, unique=True),
            Column('squad_name', String(200), nullable=True),
            Column('jira_domain', String(200), nullable=True),
            Column('created_at', ts, nullable=False, server_default=now),
        )

        self.developers = Table(
            'developers', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('display_name', String(200), nullable=False),
            Column('email', String(200), nullable=True),
            Column('jira_account_id', String(128), nullable=True, unique=True),
            Column('active', Boolean, nullable=False, server_default=text('true')),
            Column('created_at', ts, nullable=False, server_default=now),
        )

        # Epics
        self.initiatives = Table(
            'initiatives', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('squad_id', Integer, ForeignKey(f'{self.schema_name}.squads.id'), nullable=False),
            Column('initiative_key', String(50), nullable=False),
            Column('initiative_name', String(500), nullable=True),
            Column('start_date', Date, nullable=True),
            Column('end_date', Date, nullable=True),
            Column('created_at', ts, nullable=False, server_default=now),
            UniqueConstraint('squad_id', 'initiative_key', name='uq_initiatives_squad_key'),
        )

        self.sprints = Table(
            'sprints', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('squad_id', Integer, ForeignKey(f'{self.schema_name}.squads.id'), nullable=False),
            Column('sprint_key', String(50), nullable=True),
            Column('sprint_name', String(200), nullable=False),
            Column('state', String(20), nullable=True),
            Column('start_date', ts, nullable=True),
            Column('end_date', ts, nullable=True),
            Column('complete_date', ts, nullable=True),
            Column('created_at', ts, nullable=False, server_default=now),
            Column('updated_at', ts, nullable=False, server_default=now),
            UniqueConstraint('squad_id', 'sprint_name', name='uq_sprints_squad_name'),
        )

        self.issues = Table(
            'issues', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('squad_id', Integer, ForeignKey(f'{self.schema_name}.squads.id'), nullable=False),
            Column('issue_key', String(50), nullable=False, unique=True),
            Column('issue_type', String(50), nullable=True),
            Column('summary', PG_TEXT, nullable=True),
            Column('assignee_id', Integer, ForeignKey(f'{self.schema_name}.developers.id'), nullable=True),
            Column('priority', String(50), nullable=True),
            Column('current_status', String(100), nullable=True),
            Column('current_story_points', Float, nullable=False, server_default=text('0')),
            Column('resolution', String(100), nullable=True),
            Column('created_date', ts, nullable=True),
            Column('resolved_date', ts, nullable=True),
            Column('updated_date', ts, nullable=True),
            Column('dev_start_date', ts, nullable=True),
            Column('dev_close_date', ts, nullable=True),
            Column('initiative_id', Integer, ForeignKey(f'{self.schema_name}.initiatives.id'), nullable=True),
            Column('epic_name', String(500), nullable=True),
            Column('sprint_history', JSONB, nullable=True),
            Column('current_sprint', String(200), nullable=True),
            Column('status_by_sprint', JSONB, nullable=True),
            Column('story_points_by_sprint', JSONB, nullable=True),
            Column('status_history_days', JSONB, nullable=True),
            Column('raw_data', JSONB, nullable=True),
            Column('synced_at', ts, nullable=False, server_default=now),
        )

        self.issue_sprints = Table(
            'issue_sprints', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('issue_id', Integer, ForeignKey(f'{self.schema_name}.issues.id'), nullable=False),
            Column('sprint_id', Integer, ForeignKey(f'{self.schema_name}.sprints.id'), nullable=False),
            Column('status_at_sprint_start', String(100), nullable=True),
            Column('status_at_sprint_close', String(100), nullable=True),
            Column('story_points_at_start', Float, nullable=True),
            Column('story_points_at_close', Float, nullable=True),
            UniqueConstraint('issue_id', 'sprint_id', name='uq_issue_sprints_issue_sprint'),
        )

        # Status transitions
        self.issue_history = Table(
            'issue_history', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('issue_id', Integer, ForeignKey(f'{self.schema_name}.issues.id'), nullable=False),
            Column('field_name', String(100), nullable=False),
            Column('field_type', String(50), nullable=True),
            Column('from_value', PG_TEXT, nullable=True),
            Column('to_value', PG_TEXT, nullable=True),
            Column('changed_at', ts, nullable=False),
            UniqueConstraint('issue_id', 'field_name', 'changed_at', name='uq_issue_history_change'),
        )

        self.sprint_scope_changes = Table(
            'sprint_scope_changes', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('sprint_id', Integer, ForeignKey(f'{self.schema_name}.sprints.id'), nullable=False),
            Column('issue_id', Integer, ForeignKey(f'{self.schema_name}.issues.id'), nullable=False),
            Column('change_type', String(30), nullable=False),
            Column('change_date', ts, nullable=False),
            Column('story_points_before', Float, nullable=True),
            Column('story_points_after', Float, nullable=True),
            Column('created_at', ts, nullable=False, server_default=now),
        )

        self.sprint_velocity = Table(
            'sprint_velocity', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('sprint_id', Integer, ForeignKey(f'{self.schema_name}.sprints.id'), nullable=False, unique=True),
            Column('sprint_name', String(200), nullable=True),
            Column('start_date', ts, nullable=True),
            Column('end_date', ts, nullable=True),
            Column('complete_date', ts, nullable=True),
            Column('commitment', Float, nullable=False, server_default=text('0')),
            Column('completed', Float, nullable=False, server_default=text('0')),
            Column('commitment_tickets', Integer, nullable=False, server_default=text('0')),
            Column('completed_tickets', Integer, nullable=False, server_default=text('0')),
            Column('total_tickets', Integer, nullable=False, server_default=text('0')),
            Column('calculated_at', ts, nullable=False, server_default=now),
            Column('updated_at', ts, nullable=False, server_default=now),
        )

        self.sprint_metrics = Table(
            'sprint_metrics', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('sprint_id', Integer, ForeignKey(f'{self.schema_name}.sprints.id'), nullable=False),
            Column('calculated_at', ts, nullable=False),
            Column('total_story_points', Float, nullable=False),
            Column('completed_story_points', Float, nullable=False),
            Column('carryover_story_points', Float, nullable=False),
            Column('total_tickets', Integer, nullable=False),
            Column('completed_tickets', Integer, nullable=False),
            Column('pending_tickets', Integer, nullable=False),
            Column('impediments', Integer, nullable=False),
            Column('avg_lead_time_days', Float, nullable=True),
            Column('completion_percentage', Float, nullable=False),
            Column('tickets_with_sp', Integer, nullable=False),
            Column('tickets_no_sp', Integer, nullable=False),
            *status_count_columns(),
            UniqueConstraint('sprint_id', 'calculated_at', name='uq_sprint_metrics_snapshot'),
        )

        self.developer_sprint_metrics = Table(
            'developer_sprint_metrics', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('developer_id', Integer, ForeignKey(f'{self.schema_name}.developers.id'), nullable=True),
            Column('sprint_id', Integer, ForeignKey(f'{self.schema_name}.sprints.id'), nullable=False),
            Column('calculated_at', ts, nullable=False),
            Column('workload_sp', Float, nullable=False),
            Column('velocity_sp', Float, nullable=False),
            Column('carryover_sp', Float, nullable=False),
            Column('tickets_assigned', Integer, nullable=False),
            Column('tickets_completed', Integer, nullable=False),
            Column('avg_lead_time_days', Float, nullable=True),
            *status_count_columns(),
            UniqueConstraint('developer_id', 'sprint_id', 'calculated_at', name='uq_developer_metrics_snapshot'),
        )

        self.data_sync_log = Table(
            'data_sync_log', self.metadata,
            Column('id', Integer, primary_key=True, autoincrement=True),
            Column('squad_id', Integer, ForeignKey(f'{self.schema_name}.squads.id'), nullable=False),
            Column('sync_type', String(20), nullable=False),
            Column('sync_started_at', ts, nullable=False, server_default=now),
            Column('sync_completed_at', ts, nullable=True),
            Column('issues_imported', Integer, nullable=False, server_default=text('0')),
            Column('status', String(20), nullable=False),
            Column('error_message', PG_TEXT, nullable=True),
        )

    def setup_tables(self):
        """Create tables and indexes if they don't exist"""
        try:
            self.metadata.create_all(self.engine, checkfirst=True)

            with self.engine.connect() as connection:
                try:
                    self._create_index(connection, "idx_issues_squad", "issues", "squad_id")
                    self._create_index(connection, "idx_issues_updated_date", "issues", "updated_date")
                    self._create_index(connection, "idx_issues_assignee", "issues", "assignee_id")
                    self._create_index(connection, "idx_sprints_squad_key", "sprints", "squad_id, sprint_key")
                    self._create_index(connection, "idx_sprints_end_date", "sprints", "end_date")
                    self._create_index(connection, "idx_issue_sprints_sprint", "issue_sprints", "sprint_id")
                    self._create_index(connection, "idx_issue_history_issue", "issue_history", "issue_id, changed_at")
                    self._create_index(connection, "idx_scope_changes_sprint", "sprint_scope_changes",
                                       "sprint_id, issue_id, change_type")
                    self._create_index(connection, "idx_sync_log_squad", "data_sync_log",
                                       "squad_id, status, sync_completed_at DESC")
                    connection.commit()
                except SQLAlchemyError as e:
                    logger.error("Error creating indexes: %s", e)
                    connection.rollback()
                    raise

        except SQLAlchemyError as e:
            logger.error("Error setting up database: %s", e)
            raise

    def get_squad_id(self, squad_key):
        with self.engine.connect() as connection:
            row = connection.execute(
                text(f"SELECT id FROM {self._table('squads')} WHERE squad_key = :squad_key"),
                {"squad_key": squad_key.upper()}
            ).first()
        return row[0] if row else None

    def get_or_create_squad(self, squad_key, squad_name, jira_domain):
        """Squad id for a Jira project key, created on first sight"""
        with self.engine.connect() as connection:
            try:
                row = connection.execute(
                    text(f"""
                        INSERT INTO {self._table('squads')} (squad_key, squad_name, jira_domain)
                        VALUES (:squad_key, :squad_name, :jira_domain)
                        ON CONFLICT (squad_key) DO UPDATE SET jira_domain = EXCLUDED.jira_domain
                        RETURNING id
                    """),
                    {"squad_key": squad_key.upper(), "squad_name": squad_name, "jira_domain": jira_domain}
                ).first()
                connection.commit()
                return row[0]
            except SQLAlchemyError as e:
                logger.error("Error creating squad %s: %s", squad_key, e)
                connection.rollback()
                raise

    def get_or_create_developer(self, display_name, email=None, account_id=None):
        """Developer id, matched by account id, then email, then display name"""
        if not display_name:
            return None

        lookups = []
        if account_id:
            lookups.append(("jira_account_id", account_id))
        if email:
            lookups.append(("email", email))
        lookups.append(("display_name", display_name))

        with self.engine.connect() as connection:
            try:
                for column, value in lookups:
                    row = connection.execute(
                        text(f"SELECT id FROM {self._table('developers')} WHERE {column} = :value LIMIT 1"),
                        {"value": value}
                    ).first()
                    if row:
                        return row[0]

                row = connection.execute(
                    text(f"""
                        INSERT INTO {self._table('developers')} (display_name, email, jira_account_id, active)
                        VALUES (:display_name, :email, :account_id, true)
                        RETURNING id
                    """),
                    {"display_name": display_name, "email": email, "account_id": account_id}
                ).first()
                connection.commit()
                return row[0]
            except SQLAlchemyError as e:
                logger.error("Error creating developer %s: %s", display_name, e)
                connection.rollback()
                return None

    def get_or_create_epic(self, squad_id, epic_key, epic_name, start_date=None, end_date=None):
        """Initiative id for an epic; known epics get their timeline dates refreshed"""
        if not epic_key:
            return None

        with self.engine.connect() as connection:
            try:
                row = connection.execute(
                    text(f"""
                        INSERT INTO {self._table('initiatives')}
                            (squad_id, initiative_key, initiative_name, start_date, end_date)
                        VALUES (:squad_id, :epic_key, :epic_name, :start_date, :end_date)
                        ON CONFLICT (squad_id, initiative_key) DO UPDATE SET
                            start_date = COALESCE(EXCLUDED.start_date, {self._table('initiatives')}.start_date),
                            end_date = COALESCE(EXCLUDED.end_date, {self._table('initiatives')}.end_date)
                        RETURNING id
                    """),
                    {
                        "squad_id": squad_id,
                        "epic_key": epic_key,
                        "epic_name": epic_name,
                        "start_date": start_date,
                        "end_date": end_date
                    }
                ).first()
                connection.commit()
                return row[0]
            except SQLAlchemyError as e:
                logger.error("Error upserting epic %s: %s", epic_key, e)
                connection.rollback()
                return None

    def get_or_create_sprint(self, squad_id, sprint):
        """Sprint id; `sprint` carries sprint_key, sprint_name, state and parsed dates.

        Existing sprints are found by Jira id first, then by name, and get
        their state and dates refreshed.
        """
        if not sprint.get('sprint_key') or not sprint.get('sprint_name'):
            return None

        params = {
            "squad_id": squad_id,
            "sprint_key": str(sprint['sprint_key']),
            "sprint_name": sprint['sprint_name'],
            "state": sprint.get('state'),
            "start_date": sprint.get('start_date'),
            "end_date": sprint.get('end_date'),
            "complete_date": sprint.get('complete_date'),
        }

        with self.engine.connect() as connection:
            try:
                row = connection.execute(
                    text(f"SELECT id FROM {self._table('sprints')} WHERE squad_id = :squad_id AND sprint_key = :sprint_key"),
                    params
                ).first()
                if row is None:
                    row = connection.execute(
                        text(f"SELECT id FROM {self._table('sprints')} WHERE squad_id = :squad_id AND sprint_name = :sprint_name"),
                        params
                    ).first()

                if row:
                    connection.execute(
                        text(f"""
                            UPDATE {self._table('sprints')}
                            SET state = COALESCE(:state, state),
                                start_date = COALESCE(:start_date, start_date),
                                end_date = COALESCE(:end_date, end_date),
                                complete_date = COALESCE(:complete_date, complete_date),
                                updated_at = CURRENT_TIMESTAMP
                            WHERE id = :id
                        """),
                        {**params, "id": row[0]}
                    )
                    connection.commit()
                    return row[0]

                row = connection.execute(
                    text(f"""
                        INSERT INTO {self._table('sprints')}
                            (squad_id, sprint_key, sprint_name, state, start_date, end_date, complete_date)
                        VALUES (:squad_id, :sprint_key, :sprint_name, :state, :start_date, :end_date, :complete_date)
                        ON CONFLICT (squad_id, sprint_name) DO UPDATE SET
                            sprint_key = EXCLUDED.sprint_key,
                            updated_at = CURRENT_TIMESTAMP
                        RETURNING id
                    """),
                    params
                ).first()
                connection.commit()
                return row[0]
            except SQLAlchemyError as e:
                logger.error("Error upserting sprint %s: %s", sprint.get('sprint_name'), e)
                connection.rollback()
                return None

    def get_existing_issues(self, issue_keys):
        """Stored comparison columns for the given keys, as {issue_key: row}"""
        existing = {}
        columns = [self.issues.c[name] for name in ISSUE_COMPARE_COLUMNS]

        with self.engine.connect() as connection:
            for i in range(0, len(issue_keys), BATCH_SIZE):
                batch_keys = issue_keys[i:i + BATCH_SIZE]
                try:
                    result = connection.execute(select(*columns).where(self.issues.c.issue_key.in_(batch_keys)))
                    for row in result.mappings():
                        existing[row['issue_key']] = dict(row)
                except SQLAlchemyError as e:
                    logger.error("Error reading existing issues (batch %d): %s", i // BATCH_SIZE + 1, e)
                    connection.rollback()

        return existing

    def upsert_issues_batch(self, squad_id, issues_data):
        """Write new and changed issues; unchanged ones are skipped.

        Returns {'updated': [(id, key)], 'skipped': [key], 'errors': [(key, message)]}.
        """
        result = {'updated': [], 'skipped': [], 'errors': []}

        # Last occurrence wins when the same key shows up twice
        by_key = {}
        for issue in issues_data or []:
            if issue.get('key'):
                by_key[issue['key']] = issue
        if not by_key:
            return result

        existing = self.get_existing_issues(list(by_key))
        logger.debug("Existing issues found: %d of %d", len(existing), len(by_key))

        to_write = []
        new_count = 0
        for key, issue in by_key.items():
            current = existing.get(key)
            if current is None:
                new_count += 1
                to_write.append(build_upsert_data(squad_id, issue))
                continue

            changes = describe_issue_changes(current, issue)
            if changes:
                logger.debug("[%s] Changes detected: %s", key, ", ".join(changes))
                to_write.append(build_upsert_data(squad_id, issue))
            else:
                result['skipped'].append(key)

        logger.info("Batch analysis: %d new, %d changed, %d unchanged",
                    new_count, len(to_write) - new_count, len(result['skipped']))

        for i in range(0, len(to_write), BATCH_SIZE):
            batch = to_write[i:i + BATCH_SIZE]
            stmt = pg_insert(self.issues).values(batch)
            stmt = stmt.on_conflict_do_update(
                index_elements=['issue_key'],
                set_={name: stmt.excluded[name] for name in batch[0] if name != 'issue_key'}
            ).returning(self.issues.c.id, self.issues.c.issue_key)

            with self.engine.connect() as connection:
                try:
                    rows = connection.execute(stmt).fetchall()
                    connection.commit()
                    result['updated'].extend((row[0], row[1]) for row in rows)
                except SQLAlchemyError as e:
                    logger.error("Error in batch upsert (batch %d): %s", i // BATCH_SIZE + 1, e)
                    connection.rollback()
                    result['errors'].extend((row['issue_key'], str(e)) for row in batch)

        return result

    def upsert_issue_sprint(self, issue_id, sprint_id, status_at_start, status_at_close,
                            story_points_at_start, story_points_at_close):
        with self.engine.connect() as connection:
            try:
                connection.execute(
                    text(f"""
                        INSERT INTO {self._table('issue_sprints')} (
                            issue_id, sprint_id, status_at_sprint_start, status_at_sprint_close,
                            story_points_at_start, story_points_at_close
                        ) VALUES (
                            :issue_id, :sprint_id, :status_at_start, :status_at_close,
                            :sp_start, :sp_close
                        )
                        ON CONFLICT (issue_id, sprint_id) DO UPDATE SET
                            status_at_sprint_start = EXCLUDED.status_at_sprint_start,
                            status_at_sprint_close = EXCLUDED.status_at_sprint_close,
                            story_points_at_start = EXCLUDED.story_points_at_start,
                            story_points_at_close = EXCLUDED.story_points_at_close
                    """),
                    {
                        "issue_id": issue_id,
                        "sprint_id": sprint_id,
                        "status_at_start": status_at_start,
                        "status_at_close": status_at_close,
                        "sp_start": story_points_at_start,
                        "sp_close": story_points_at_close
                    }
                )
                connection.commit()
            except SQLAlchemyError as e:
                logger.error("Error upserting issue %s in sprint %s: %s", issue_id, sprint_id, e)
                connection.rollback()
                raise

    def upsert_issue_history(self, issue_id, transitions):
        """Store status transitions ({'from', 'to', 'date'}) for an issue"""
        if not transitions:
            return 0

        with self.engine.connect() as connection:
            try:
                for transition in transitions:
                    connection.execute(
                        text(f"""
                            INSERT INTO {self._table('issue_history')}
                                (issue_id, field_name, field_type, from_value, to_value, changed_at)
                            VALUES (:issue_id, 'status', 'status', :from_value, :to_value, :changed_at)
                            ON CONFLICT (issue_id, field_name, changed_at) DO UPDATE SET
                                from_value = EXCLUDED.from_value,
                                to_value = EXCLUDED.to_value
                        """),
                        {
                            "issue_id": issue_id,
                            "from_value": transition.get('from'),
                            "to_value": transition.get('to'),
                            "changed_at": transition['date']
                        }
                    )
                connection.commit()
                return len(transitions)
            except SQLAlchemyError as e:
                logger.error("Error storing history for issue %s: %s", issue_id, e)
                connection.rollback()
                raise

    def save_scope_change(self, sprint_id, issue_id, change_type, change_date,
                          story_points_before=None, story_points_after=None):
        """Insert a scope change unless one of the same type exists on the same day"""
        day_start = change_date.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)

        with self.engine.connect() as connection:
            try:
                existing = connection.execute(
                    text(f"""
                        SELECT 1 FROM {self._table('sprint_scope_changes')}
                        WHERE sprint_id = :sprint_id AND issue_id = :issue_id AND change_type = :change_type
                          AND change_date >= :day_start AND change_date < :day_end
                        LIMIT 1
                    """),
                    {
                        "sprint_id": sprint_id,
                        "issue_id": issue_id,
                        "change_type": change_type,
                        "day_start": day_start,
                        "day_end": day_end
                    }
                ).first()
                if existing:
                    logger.debug("Scope change already stored: sprint %s, issue %s, %s on %s",
                                 sprint_id, issue_id, change_type, day_start.date())
                    return False

                connection.execute(
                    text(f"""
                        INSERT INTO {self._table('sprint_scope_changes')}
                            (sprint_id, issue_id, change_type, change_date, story_points_before, story_points_after)
                        VALUES (:sprint_id, :issue_id, :change_type, :change_date, :sp_before, :sp_after)
                    """),
                    {
                        "sprint_id": sprint_id,
                        "issue_id": issue_id,
                        "change_type": change_type,
                        "change_date": change_date,
                        "sp_before": story_points_before,
                        "sp_after": story_points_after
                    }
                )
                connection.commit()
                return True
            except SQLAlchemyError as e:
                logger.error("Error saving scope change for sprint %s, issue %s: %s", sprint_id, issue_id, e)
                connection.rollback()
                return False

    def get_last_sync(self, squad_id):
        """Completion time of the last successful sync of any type"""
        with self.engine.connect() as connection:
            row = connection.execute(
                text(f"""
                    SELECT sync_completed_at
                    FROM {self._table('data_sync_log')}
                    WHERE squad_id = :squad_id AND status = 'completed'
                    ORDER BY sync_completed_at DESC NULLS LAST
                    LIMIT 1
                """),
                {"squad_id": squad_id}
            ).first()
        return row[0] if row else None

    def get_last_full_sync(self, squad_id):
        with self.engine.connect() as connection:
            row = connection.execute(
                text(f"""
                    SELECT sync_completed_at
                    FROM {self._table('data_sync_log')}
                    WHERE squad_id = :squad_id AND status = 'completed' AND sync_type = 'full'
                    ORDER BY sync_completed_at DESC NULLS LAST
                    LIMIT 1
                """),
                {"squad_id": squad_id}
            ).first()
        return row[0] if row else None

    def log_sync(self, squad_id, sync_type, status, issues_count=0, error_message=None, log_id=None):
        """Record a sync run; with log_id the existing row is updated. Returns the row id."""
        completed_at = datetime.now(timezone.utc) if status == 'completed' else None
        with self.engine.connect() as connection:
            try:
                if log_id is None:
                    row = connection.execute(
                        text(f"""
                            INSERT INTO {self._table('data_sync_log')}
                                (squad_id, sync_type, sync_started_at, sync_completed_at,
                                 issues_imported, status, error_message)
                            VALUES (:squad_id, :sync_type, CURRENT_TIMESTAMP, :completed_at,
                                    :issues_count, :status, :error_message)
                            RETURNING id
                        """),
                        {
                            "squad_id": squad_id,
                            "sync_type": sync_type,
                            "completed_at": completed_at,
                            "issues_count": issues_count,
                            "status": status,
                            "error_message": error_message
                        }
                    ).first()
                    log_id = row[0]
                else:
                    connection.execute(
                        text(f"""
                            UPDATE {self._table('data_sync_log')}
                            SET status = :status,
                                sync_completed_at = :completed_at,
                                issues_imported = :issues_count,
                                error_message = :error_message
                            WHERE id = :id
                        """),
                        {
                            "id": log_id,
                            "completed_at": completed_at,
                            "issues_count": issues_count,
                            "status": status,
                            "error_message": error_message
                        }
                    )
                connection.commit()
                return log_id
            except SQLAlchemyError as e:
                logger.error("Error recording sync log: %s", e)
                connection.rollback()
                return log_id

    def get_active_sprint_issue_keys(self, squad_id, today):
        """Keys of issues in sprints with no end date or ending today or later"""
        with self.engine.connect() as connection:
            result = connection.execute(
                text(f"""
                    SELECT DISTINCT i.issue_key
                    FROM {self._table('issue_sprints')} isp
                    JOIN {self._table('sprints')} s ON s.id = isp.sprint_id
                    JOIN {self._table('issues')} i ON i.id = isp.issue_id
                    WHERE s.squad_id = :squad_id
                      AND (s.end_date IS NULL OR s.end_date >= :today)
                """),
                {"squad_id": squad_id, "today": today}
            )
            return [row[0] for row in result if row[0]]

    def get_sprints(self, squad_id, state=None):
        query = f"""
            SELECT id, sprint_key, sprint_name, state, start_date, end_date, complete_date
            FROM {self._table('sprints')}
            WHERE squad_id = :squad_id
        """
        params = {"squad_id": squad_id}
        if state:
            query += " AND state = :state"
            params["state"] = state
        query += " ORDER BY end_date DESC NULLS LAST"

        with self.engine.connect() as connection:
            result = connection.execute(text(query), params)
            return [dict(row) for row in result.mappings()]

    def get_closed_sprints(self, squad_id):
        return self.get_sprints(squad_id, state='closed')

    def get_sprint_members(self, sprint_id):
        """issue_sprints rows of a sprint joined with the issue and its assignee"""
        with self.engine.connect() as connection:
            result = connection.execute(
                text(f"""
                    SELECT isp.issue_id, i.issue_key,
                           isp.status_at_sprint_start, isp.status_at_sprint_close,
                           isp.story_points_at_start, isp.story_points_at_close,
                           i.current_status, i.current_story_points, i.created_date,
                           i.dev_start_date, i.dev_close_date,
                           i.assignee_id, d.display_name AS assignee_name
                    FROM {self._table('issue_sprints')} isp
                    JOIN {self._table('issues')} i ON i.id = isp.issue_id
                    LEFT JOIN {self._table('developers')} d ON d.id = i.assignee_id
                    WHERE isp.sprint_id = :sprint_id
                """),
                {"sprint_id": sprint_id}
            )
            return [dict(row) for row in result.mappings()]

    def get_last_status_before(self, issue_ids, moment):
        """{issue_id: status} of the last recorded transition at or before moment"""
        if not issue_ids:
            return {}
        with self.engine.connect() as connection:
            result = connection.execute(
                text(f"""
                    SELECT DISTINCT ON (issue_id) issue_id, to_value
                    FROM {self._table('issue_history')}
                    WHERE issue_id = ANY(:issue_ids)
                      AND field_name = 'status'
                      AND changed_at <= :moment
                    ORDER BY issue_id, changed_at DESC
                """),
                {"issue_ids": list(issue_ids), "moment": moment}
            )
            return {row[0]: row[1] for row in result}

    def update_sprint_complete_date(self, sprint_id, complete_date):
        with self.engine.connect() as connection:
            try:
                connection.execute(
                    text(f"""
                        UPDATE {self._table('sprints')}
                        SET complete_date = :complete_date, updated_at = CURRENT_TIMESTAMP
                        WHERE id = :id
                    """),
                    {"id": sprint_id, "complete_date": complete_date}
                )
                connection.commit()
            except SQLAlchemyError as e:
                logger.error("Error updating sprint %s: %s", sprint_id, e)
                connection.rollback()
                raise

    def upsert_sprint_velocity(self, velocity):
        stmt = pg_insert(self.sprint_velocity).values(**velocity)
        stmt = stmt.on_conflict_do_update(
            index_elements=['sprint_id'],
            set_={**{name: stmt.excluded[name] for name in velocity if name != 'sprint_id'},
                  'updated_at': text('CURRENT_TIMESTAMP')}
        )
        with self.engine.connect() as connection:
            try:
                connection.execute(stmt)
                connection.commit()
            except SQLAlchemyError as e:
                logger.error("Error saving velocity for sprint %s: %s", velocity.get('sprint_id'), e)
                connection.rollback()
                raise

    def _insert_snapshots(self, table, rows, conflict_columns):
        if not rows:
            return 0
        stmt = pg_insert(table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={name: stmt.excluded[name] for name in rows[0] if name not in conflict_columns}
        )
        with self.engine.connect() as connection:
            try:
                connection.execute(stmt)
                connection.commit()
                return len(rows)
            except SQLAlchemyError as e:
                logger.error("Error saving %s: %s", table.name, e)
                connection.rollback()
                raise

    def get_last_metrics_snapshots(self, squad_id):
        """{sprint_id: calculated_at of the latest sprint_metrics snapshot} for a squad"""
        with self.engine.connect() as connection:
            result = connection.execute(
                text(f"""
                    SELECT m.sprint_id, MAX(m.calculated_at)
                    FROM {self._table('sprint_metrics')} m
                    JOIN {self._table('sprints')} s ON s.id = m.sprint_id
                    WHERE s.squad_id = :squad_id
                    GROUP BY m.sprint_id
                """),
                {"squad_id": squad_id}
            )
            return {row[0]: row[1] for row in result}

    def save_sprint_metrics(self, metrics):
        return self._insert_snapshots(self.sprint_metrics, [metrics], ('sprint_id', 'calculated_at'))

    def save_developer_metrics(self, rows):
        return self._insert_snapshots(self.developer_sprint_metrics, rows,
                                      ('developer_id', 'sprint_id', 'calculated_at'))


def get_database_connection(schema_name=None):
    """Factory function to create the database connection"""
    try:
        return SupabaseDatabaseConnection(schema_name)
    except ModuleNotFoundError as e:
        if "psycopg2" in str(e):
            raise ModuleNotFoundError(
                "PostgreSQL driver (psycopg2) is not installed. "
                "Please install it using: pip install psycopg2-binary"
            ) from e
        raise
