"""
Configuration for the Jira -> Supabase sync.

Values come from the environment; a .env file next to this module is loaded
first so the scripts can be run from anywhere.
"""
import os
import re
import json
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / '.env'
load_dotenv(dotenv_path=env_path)

logger = logging.getLogger(__name__)

JIRA_DOMAIN = os.getenv('JIRA_DOMAIN', '')
JIRA_EMAIL = os.getenv('JIRA_EMAIL', '')
JIRA_API_TOKEN = os.getenv('JIRA_API_TOKEN')
STORY_POINTS_FIELD_ID = os.getenv('STORY_POINTS_FIELD_ID', 'customfield_10016')
SPRINT_FIELD_ID = os.getenv('SPRINT_FIELD_ID', 'customfield_10020')
EPIC_START_DATE_FIELD_ID = os.getenv('EPIC_START_DATE_FIELD_ID') or None
EPIC_END_DATE_FIELD_ID = os.getenv('EPIC_END_DATE_FIELD_ID') or None

PROJECT_KEY = os.getenv('PROJECT_KEY', 'OBD')
SYNC_INTERVAL_MINUTES = int(os.getenv('SYNC_INTERVAL_MINUTES', '30'))
# 5 AM UTC is midnight EST
FULL_SYNC_HOUR_UTC = int(os.getenv('FULL_SYNC_HOUR_UTC', '5'))
INCREMENTAL_DEFAULT_DAYS = 7

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
DEBUG = os.getenv('DEBUG', 'false').lower() == 'true'

SUPABASE_SCHEMA = os.getenv('SUPABASE_SCHEMA', 'public')

REQUIRED_PROJECT_FIELDS = ('project_key', 'jira_domain', 'jira_email', 'jira_api_token')

_CAMEL_TO_SNAKE = {
    'projectKey': 'project_key',
    'projectName': 'project_name',
    'jiraDomain': 'jira_domain',
    'jiraEmail': 'jira_email',
    'jiraApiToken': 'jira_api_token',
}


def configure_logging(level=None):
    """Set up root logging for the command line entry points"""
    if level is None:
        level = 'DEBUG' if DEBUG else LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )


def get_database_url():
    """Supabase Postgres connection string, either given whole or from PG_* parts"""
    url = os.getenv('SUPABASE_DB_URL')
    if url:
        return url
    return (
        f"postgresql://{os.getenv('PG_USERNAME')}:{os.getenv('PG_PASSWORD')}@"
        f"{os.getenv('PG_HOST')}:{os.getenv('PG_PORT', '5432')}/"
        f"{os.getenv('PG_DATABASE')}"
    )


def _strip_json_comments(raw):
    cleaned = raw.strip()
    cleaned = re.sub(r'/\*[\s\S]*?\*/', '', cleaned)
    cleaned = re.sub(r'^\s*//.*$', '', cleaned, flags=re.MULTILINE)
    return cleaned


def normalize_project(project):
    """Accept camelCase keys (as written in PROJECTS_CONFIG) and return snake_case"""
    normalized = {}
    for key, value in project.items():
        normalized[_CAMEL_TO_SNAKE.get(key, key)] = value
    normalized.setdefault('project_name', normalized.get('project_key'))
    return normalized


def parse_projects_config(raw):
    """Parse the PROJECTS_CONFIG JSON array"""
    try:
        parsed = json.loads(_strip_json_comments(raw))
    except json.JSONDecodeError as e:
        start = max(0, e.pos - 50)
        logger.error("Could not parse PROJECTS_CONFIG near: %s", raw[start:e.pos + 50])
        raise ValueError(f"Error parsing PROJECTS_CONFIG: {e}") from e

    if not isinstance(parsed, list):
        raise ValueError("PROJECTS_CONFIG must be a JSON array of projects")

    for index, project in enumerate(parsed):
        if not isinstance(project, dict):
            raise ValueError(f"PROJECTS_CONFIG entry {index} is not an object")

    return [normalize_project(p) for p in parsed]


def get_projects():
    """Projects to sync: PROJECTS_CONFIG when set, else a single default project"""
    raw = os.getenv('PROJECTS_CONFIG')
    if raw:
        return parse_projects_config(raw)

    return [{
        'project_key': PROJECT_KEY.upper(),
        'project_name': f"{PROJECT_KEY.upper()} Project",
        'jira_domain': JIRA_DOMAIN,
        'jira_email': JIRA_EMAIL,
        'jira_api_token': JIRA_API_TOKEN,
    }]


def validate_projects(projects):
    """Raise ValueError listing every project with missing settings"""
    errors = []
    if not projects:
        errors.append("No projects configured")

    for index, project in enumerate(projects):
        for field in REQUIRED_PROJECT_FIELDS:
            if not project.get(field):
                errors.append(f"Project {index}: missing {field}")

    if errors:
        raise ValueError("Invalid project configuration:\n" + "\n".join(errors))

    return True
