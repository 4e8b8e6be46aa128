"""
Stale Pull Request Bumper

Posts a reminder comment on open pull requests whose discussion has been
quiet for at least the repository's 'max_days_since_update' days. The first
reminder uses the 'initial' template; once the bot has commented on a thread
the 'secondary' template is used instead.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from batch_processing import process_all
from concierge_settings import (
    INITIAL_STALE_PULL_REQUEST,
    SECONDARY_STALE_PULL_REQUEST,
    RepositorySettings,
    Settings,
    create_github_client,
)


logger = logging.getLogger(__name__)


SECONDS_PER_DAY = 24 * 60 * 60


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def days_since(moment: datetime, now: Optional[datetime] = None) -> float:
    """Return the fractional number of days between moment and now."""
    if now is None:
        now = datetime.now(timezone.utc)
    return (_as_utc(now) - _as_utc(moment)).total_seconds() / SECONDS_PER_DAY


def get_last_activity_date(pull_request, comments: List) -> datetime:
    """
    Get the date of the most recent comment on a pull request thread.

    Falls back to the pull request's creation date for an empty thread.
    """
    if comments:
        return comments[-1].created_at
    return pull_request.created_at


def has_bot_commented(comments: List, bot_login: str) -> bool:
    """Check whether any comment in the thread was written by the bot."""
    for comment in comments:
        user = getattr(comment, 'user', None)
        if user is not None and user.login == bot_login:
            return True
    return False


def process_pull_request(
    pull_request,
    repository_settings: RepositorySettings,
    bot_login: str,
    now: Optional[datetime] = None,
    dry_run: bool = False
) -> Optional[str]:
    """
    Bump a single pull request if its thread has gone stale.

    Args:
        pull_request: PyGithub PullRequest object
        repository_settings: Settings of the pull request's repository
        bot_login: GitHub login the bot comments as
        now: Current time (defaults to now)
        dry_run: If True, don't actually post the comment

    Returns:
        The template variant used, or None if the pull request is not stale
    """
    comments = list(pull_request.get_issue_comments())
    last_activity = get_last_activity_date(pull_request, comments)
    threshold = repository_settings.max_days_since_update

    if days_since(last_activity, now) < threshold:
        logger.debug(
            f"PR #{pull_request.number} in {repository_settings.name} "
            f"was active within {threshold} days"
        )
        return None

    if has_bot_commented(comments, bot_login):
        variant = SECONDARY_STALE_PULL_REQUEST
    else:
        variant = INITIAL_STALE_PULL_REQUEST

    body = repository_settings.render(variant, {'max_days_since_update': threshold})

    if dry_run:
        logger.info(
            f"[DRY RUN] Would post {variant} comment to PR #{pull_request.number} "
            f"in {repository_settings.name}"
        )
        logger.debug(f"Comment text: {body[:100]}...")
        return variant

    pull_request.create_issue_comment(body)
    logger.info(f"Posted {variant} comment to PR #{pull_request.number} in {repository_settings.name}")
    return variant


def process_repository(
    gh,
    repository_settings: RepositorySettings,
    bot_login: str,
    now: Optional[datetime] = None,
    dry_run: bool = False
) -> dict:
    """
    Bump every stale open pull request targeting the default branch.

    Args:
        gh: Authenticated GitHub client
        repository_settings: Settings of the repository
        bot_login: GitHub login the bot comments as
        now: Current time (defaults to now)
        dry_run: If True, don't actually post comments

    Returns:
        Summary dict for this repository
    """
    repository = gh.get_repo(repository_settings.name)
    pulls = repository.get_pulls(state='open', base=repository.default_branch)

    summary = {
        'pull_requests_checked': 0,
        'comments_posted': 0,
        'commented_pull_requests': []
    }

    for pull_request in pulls:
        summary['pull_requests_checked'] += 1
        variant = process_pull_request(
            pull_request, repository_settings, bot_login, now=now, dry_run=dry_run
        )
        if variant is None:
            continue

        summary['comments_posted'] += 1
        summary['commented_pull_requests'].append({
            'repository': repository_settings.name,
            'number': pull_request.number,
            'title': pull_request.title,
            'variant': variant,
        })

    return summary


def bump_stale_pull_requests(
    settings: Settings,
    now: Optional[datetime] = None,
    dry_run: bool = False
) -> dict:
    """
    Bump stale pull requests in all configured repositories.

    Repositories are processed one at a time. A repository that fails is
    logged and skipped; the others are still processed.

    Args:
        settings: Concierge settings
        now: Current time (defaults to now)
        dry_run: If True, don't actually post comments

    Returns:
        Combined summary of the run
    """
    def bump(name: str) -> dict:
        repository_settings = settings.repositories[name]
        gh = create_github_client(repository_settings.github_token, settings.github_api_url)
        bot_login = settings.bot_login or gh.get_user().login
        return process_repository(gh, repository_settings, bot_login, now=now, dry_run=dry_run)

    results = process_all(list(settings.repositories), bump, "repository")

    combined_summary = {
        'repositories_processed': 0,
        'repositories_failed': [],
        'pull_requests_checked': 0,
        'comments_posted': 0,
        'commented_pull_requests': []
    }

    for result in results:
        if not result.ok:
            combined_summary['repositories_failed'].append(result.item)
            continue
        combined_summary['repositories_processed'] += 1
        combined_summary['pull_requests_checked'] += result.value['pull_requests_checked']
        combined_summary['comments_posted'] += result.value['comments_posted']
        combined_summary['commented_pull_requests'].extend(result.value['commented_pull_requests'])

    return combined_summary
