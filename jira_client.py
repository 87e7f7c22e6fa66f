"""
Jira Cloud REST client used by the sync.
"""
import re
import base64
import logging
from datetime import datetime, timezone
import requests

import sync_config
from retry_helper import retry_with_backoff, delay_between_pages

logger = logging.getLogger(__name__)

PAGE_SIZE = 100  # JIRA Cloud recommended page size
PAGE_DELAY_SECONDS = 0.5
REQUEST_TIMEOUT = 30

_DATE_PREFIX = re.compile(r'^\d{4}-\d{2}-\d{2}')


def parse_jira_datetime(value):
    """Parse a Jira timestamp into an aware UTC datetime (None when empty or invalid)"""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = None
        for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
            except ValueError:
                try:
                    parsed = datetime.strptime(value[:10], "%Y-%m-%d")
                except ValueError:
                    logger.warning("Could not parse Jira date %r", value)
                    return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _date_only(value):
    if isinstance(value, str) and _DATE_PREFIX.match(value):
        return value[:10]
    return None


class JiraClient:
    def __init__(self, domain, email, api_token, story_points_field=None, sprint_field=None):
        self.domain = domain
        self.email = email
        self.api_token = api_token
        self.base_url = f"https://{domain}".rstrip('/')
        self.story_points_field = story_points_field or sync_config.STORY_POINTS_FIELD_ID
        self.sprint_field = sprint_field or sync_config.SPRINT_FIELD_ID
        self.epic_start_date_field = sync_config.EPIC_START_DATE_FIELD_ID
        self.epic_end_date_field = sync_config.EPIC_END_DATE_FIELD_ID

        # Setup authentication header
        auth_string = f"{email}:{api_token}"
        auth_b64 = base64.b64encode(auth_string.encode('ascii')).decode('ascii')
        self.headers = {
            "Accept": "application/json",
            "Authorization": f"Basic {auth_b64}"
        }

    def _get(self, path, params=None, context=None):
        """GET a Jira endpoint with retries; returns the decoded JSON body"""
        url = f"{self.base_url}{path}"

        def do_request():
            response = requests.get(url, headers=self.headers, params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json()

        return retry_with_backoff(do_request, context=context or f"jira:{path}")

    def _fields_param(self):
        return ",".join([
            'summary', 'issuetype', 'status', 'priority', 'assignee', 'resolution',
            'resolutiondate', 'updated', 'created', 'parent',
            self.story_points_field, self.sprint_field,
        ])

    def fetch_all_issues(self, jql_query):
        """Fetch every issue matching the JQL, following nextPageToken pagination"""
        all_issues = []
        next_page_token = None
        page = 0

        while True:
            page += 1
            params = {
                'jql': jql_query,
                'maxResults': PAGE_SIZE,
                'fields': self._fields_param(),
                'expand': 'changelog',
            }
            if next_page_token:
                params['nextPageToken'] = next_page_token

            logger.info("Fetching page %d of issues", page)
            data = self._get("/rest/api/3/search/jql", params=params, context=f"search:page{page}")

            issues = data.get('issues') or []
            for issue in issues:
                self._complete_changelog(issue)
            all_issues.extend(issues)
            logger.info("Page %d: %d issues (total %d)", page, len(issues), len(all_issues))

            next_page_token = data.get('nextPageToken')
            if not next_page_token:
                break
            delay_between_pages(PAGE_DELAY_SECONDS)

        logger.info("Total issues fetched: %d", len(all_issues))
        return all_issues

    def _complete_changelog(self, issue):
        """Replace a truncated search changelog with the full history of the issue"""
        changelog = issue.get('changelog') or {}
        histories = changelog.get('histories') or []
        if (changelog.get('total') or 0) <= len(histories):
            return

        logger.debug("Changelog of %s truncated (%d of %d), fetching the rest",
                     issue.get('key'), len(histories), changelog['total'])
        full = self.fetch_issue_changelog(issue['key'])
        if full is not None:
            issue['changelog'] = {**changelog, 'histories': full, 'maxResults': len(full)}

    def fetch_updated_issues(self, since, base_jql, order_by='updated DESC'):
        """Issues from base_jql updated on or after the given date"""
        since_str = since.strftime('%Y-%m-%d') if isinstance(since, datetime) else str(since)[:10]
        jql_query = f'{base_jql} AND updated >= "{since_str}"'
        if order_by:
            jql_query += f' ORDER BY {order_by}'
        return self.fetch_all_issues(jql_query)

    def fetch_issue(self, issue_key, expand='changelog', fields=None):
        """Single issue, or None when it does not exist or cannot be read"""
        params = {'expand': expand}
        params['fields'] = fields or self._fields_param()
        try:
            issue = self._get(f"/rest/api/3/issue/{issue_key}", params=params, context=f"issue:{issue_key}")
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                logger.debug("Issue %s not found", issue_key)
            else:
                logger.warning("Error fetching issue %s: %s", issue_key, e)
            return None
        except requests.RequestException as e:
            logger.warning("Error fetching issue %s: %s", issue_key, e)
            return None

        if 'changelog' in expand:
            self._complete_changelog(issue)
        return issue

    def fetch_issue_details(self, issue_key):
        """All fields of an issue, including custom fields (used for epic timeline dates)"""
        return self.fetch_issue(issue_key, expand='names', fields='*all')

    def fetch_issue_changelog(self, issue_key):
        """Every changelog history of an issue (oldest first), or None when it cannot be read"""
        histories = []
        start_at = 0
        try:
            while True:
                data = self._get(f"/rest/api/3/issue/{issue_key}/changelog",
                                 params={'startAt': start_at, 'maxResults': PAGE_SIZE},
                                 context=f"changelog:{issue_key}")
                values = data.get('values') or []
                histories.extend(values)
                if data.get('isLast', True) or not values:
                    break
                start_at += len(values)
                delay_between_pages(PAGE_DELAY_SECONDS)
        except requests.RequestException as e:
            logger.warning("Error fetching changelog for %s: %s", issue_key, e)
            return None
        return histories

    def fetch_sprint(self, sprint_id):
        """Sprint from the Agile API; raises requests exceptions (callers decide about 404)"""
        return self._get(f"/rest/agile/1.0/sprint/{sprint_id}", context=f"sprint:{sprint_id}")

    def extract_timeline_dates(self, fields):
        """Start and end date (YYYY-MM-DD) of an epic's timeline bar"""
        if not fields:
            return None, None

        start_date = None
        end_date = None

        if self.epic_start_date_field:
            start_date = _date_only(fields.get(self.epic_start_date_field))
        if self.epic_end_date_field:
            end_date = _date_only(fields.get(self.epic_end_date_field))

        # customfield_10015 is "Start date" on most Jira Cloud sites
        if not start_date:
            start_date = _date_only(fields.get('customfield_10015'))
        if not end_date:
            end_date = _date_only(fields.get('duedate'))
        if not start_date:
            start_date = _date_only(fields.get('startdate'))
        if not end_date:
            end_date = _date_only(fields.get('enddate'))
        if not start_date:
            start_date = _date_only(fields.get('created'))

        if not start_date or not end_date:
            candidates = sorted(
                date for key, value in fields.items()
                if key.startswith('customfield_')
                for date in [_date_only(value)] if date
            )
            if candidates:
                if not start_date:
                    start_date = candidates[0]
                if not end_date and len(candidates) > 1:
                    end_date = candidates[-1]

        return start_date, end_date


def create_jira_client(domain, email, api_token):
    if not domain or not email or not api_token:
        raise ValueError(
            f"Missing Jira credentials: domain={domain}, email={email}, "
            f"token={'***' if api_token else 'missing'}"
        )
    return JiraClient(domain, email, api_token)


def create_jira_clients(projects):
    """Map of project key -> JiraClient; projects with bad credentials are logged and left out"""
    clients = {}
    for project in projects:
        try:
            clients[project['project_key']] = create_jira_client(
                project.get('jira_domain'),
                project.get('jira_email'),
                project.get('jira_api_token'),
            )
            logger.info("Jira client ready for %s (%s)", project['project_key'], project.get('jira_domain'))
        except ValueError as e:
            logger.error("Could not create Jira client for %s: %s", project.get('project_key'), e)
    return clients
