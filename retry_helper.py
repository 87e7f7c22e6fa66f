"""
Retry with exponential backoff for calls to external APIs (mainly Jira).

Rate limiting (429) honours the Retry-After header, temporary server errors
back off exponentially and permanent client errors are raised straight away.
"""
import time
import requests
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_BACKOFF_MULTIPLIER = 2
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
NON_RETRYABLE_STATUSES = (400, 401, 403, 404)


def calculate_backoff_delay(attempt, initial_delay, max_delay, multiplier):
    """Delay in seconds before retry number `attempt` (0-based)"""
    return min(initial_delay * (multiplier ** attempt), max_delay)


def extract_retry_after(response):
    """Seconds to wait according to a Retry-After header, or None"""
    if response is None or not getattr(response, 'headers', None):
        return None

    retry_after = response.headers.get('Retry-After') or response.headers.get('retry-after')
    if not retry_after:
        return None

    try:
        return float(int(retry_after))
    except ValueError:
        pass

    try:
        retry_date = parsedate_to_datetime(retry_after)
    except (TypeError, ValueError):
        logger.warning("Could not parse Retry-After header: %s", retry_after)
        return None

    if retry_date.tzinfo is None:
        retry_date = retry_date.replace(tzinfo=timezone.utc)
    diff = (retry_date - datetime.now(timezone.utc)).total_seconds()
    return diff if diff > 0 else None


def _status_of(error):
    response = getattr(error, 'response', None)
    return getattr(response, 'status_code', None) if response is not None else None


def is_retryable_error(error, retryable_statuses=RETRYABLE_STATUSES,
                       non_retryable_statuses=NON_RETRYABLE_STATUSES):
    """Network errors and temporary HTTP statuses are retryable"""
    if getattr(error, 'response', None) is None:
        return True

    status = _status_of(error)
    if status in non_retryable_statuses:
        return False
    if status == 429:
        return True
    return status in retryable_statuses


def retry_with_backoff(fn, max_retries=DEFAULT_MAX_RETRIES, initial_delay=DEFAULT_INITIAL_DELAY,
                       max_delay=DEFAULT_MAX_DELAY, backoff_multiplier=DEFAULT_BACKOFF_MULTIPLIER,
                       retryable_statuses=RETRYABLE_STATUSES,
                       non_retryable_statuses=NON_RETRYABLE_STATUSES, context='retry'):
    """Call fn() until it succeeds, retrying up to max_retries times.

    Only requests exceptions are retried; anything else propagates at once.
    """
    attempt = 0
    while True:
        try:
            if attempt > 0:
                logger.info("[%s] Retry %d/%d", context, attempt, max_retries)
            result = fn()
            if attempt > 0:
                logger.info("[%s] Retry %d succeeded", context, attempt)
            return result
        except requests.RequestException as e:
            status = _status_of(e)

            if not is_retryable_error(e, retryable_statuses, non_retryable_statuses):
                logger.error("[%s] Non-retryable error (%s): %s", context, status, e)
                raise

            if attempt >= max_retries:
                logger.error("[%s] Giving up after %d attempts (%s): %s",
                             context, max_retries + 1, status, e)
                raise

            delay = None
            if status == 429:
                delay = extract_retry_after(getattr(e, 'response', None))
                if delay:
                    logger.warning("[%s] Rate limited (429), waiting %.1fs per Retry-After", context, delay)
            if not delay:
                delay = calculate_backoff_delay(attempt, initial_delay, max_delay, backoff_multiplier)
                logger.warning("[%s] Temporary error (%s), waiting %.1fs before retrying", context, status, delay)

            time.sleep(delay)
            attempt += 1


def delay_between_pages(seconds=0.2):
    """Pause between paginated requests to stay under rate limits"""
    time.sleep(seconds)
