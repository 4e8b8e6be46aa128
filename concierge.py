#!/usr/bin/env python3
"""
Repository Concierge

Runs one of the concierge's scheduled jobs to completion:

- stale-pull-requests: bump open pull requests that have gone quiet
- release-reminders:   remind people on the release schedule in Slack
- weekly-stats:        post last week's pull request statistics to Slack

Each job is meant to be started by cron (or any other scheduler).
"""

import argparse
import logging
import sys
from typing import List, Optional

import yaml

from concierge_settings import (
    ConfigurationError,
    Settings,
    load_settings,
    refresh_repository_settings,
)
from slack_bot import SlackBot
from stale_pull_request import bump_stale_pull_requests
from template_renderer import TemplateCompileError


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run_stale_pull_requests(settings: Settings, dry_run: bool = False, refresh: bool = True) -> int:
    if refresh:
        settings = refresh_repository_settings(settings)

    summary = bump_stale_pull_requests(settings, dry_run=dry_run)

    logger.info("=" * 50)
    logger.info("Stale Pull Request Summary")
    logger.info("=" * 50)
    logger.info(f"Repositories processed: {summary['repositories_processed']}")
    logger.info(f"Pull requests checked: {summary['pull_requests_checked']}")
    logger.info(f"Comments posted: {summary['comments_posted']}")
    if summary['commented_pull_requests']:
        logger.info("PRs commented:")
        for pr in summary['commented_pull_requests']:
            logger.info(f"  - #{pr['number']} in {pr['repository']} ({pr['variant']}): {pr['title']}")
    if summary['repositories_failed']:
        logger.warning(f"Repositories failed: {', '.join(summary['repositories_failed'])}")

    return 0


def _start_slack_bot(settings: Settings, dry_run: bool) -> Optional[SlackBot]:
    bot = SlackBot(settings, dry_run=dry_run)
    if not bot.start():
        return None
    return bot


def run_release_reminders(settings: Settings, dry_run: bool = False) -> int:
    bot = _start_slack_bot(settings, dry_run)
    if bot is None:
        return 0 if not settings.slack_bot.token else 1

    summary = bot.send_release_reminders()

    logger.info("=" * 50)
    logger.info("Release Reminder Summary")
    logger.info("=" * 50)
    logger.info(f"Users on the release schedule: {summary['users_scheduled']}")
    logger.info(f"Reminders sent: {summary['reminders_sent']}")
    for reminder in summary['reminded_users']:
        logger.info(f"  - {reminder['user']}: {reminder['variant']}")
    if summary['users_unresolved']:
        logger.warning(f"Users without a Slack ID: {', '.join(summary['users_unresolved'])}")
    if summary['users_failed']:
        logger.warning(f"Users failed: {', '.join(summary['users_failed'])}")

    return 0


def run_weekly_stats(settings: Settings, dry_run: bool = False) -> int:
    bot = _start_slack_bot(settings, dry_run)
    if bot is None:
        return 0 if not settings.slack_bot.token else 1

    # An unknown stats channel is logged by the bot and skipped
    bot.send_weekly_stats()
    return 0


STALE_PULL_REQUESTS_JOB = 'stale-pull-requests'

JOBS = {
    STALE_PULL_REQUESTS_JOB: run_stale_pull_requests,
    'release-reminders': run_release_reminders,
    'weekly-stats': run_weekly_stats,
}


def main(argv: Optional[List[str]] = None) -> Optional[int]:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Repository concierge: bump stale pull requests on GitHub, '
                    'send release reminders and weekly statistics to Slack.'
    )
    parser.add_argument(
        'job',
        choices=sorted(JOBS),
        help='Job to run'
    )
    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run without posting comments or messages'
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help="Don't load repository settings from each repository's .concierge directory "
             "(stale-pull-requests only)"
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = load_settings(args.config)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {args.config}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        return 1
    except (ConfigurationError, TemplateCompileError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    job_kwargs = {'dry_run': args.dry_run}
    # Only the stale job reads per-repository settings
    if args.job == STALE_PULL_REQUESTS_JOB:
        job_kwargs['refresh'] = not args.no_refresh

    try:
        return JOBS[args.job](settings, **job_kwargs)
    except Exception:
        logger.exception(f"Job {args.job} failed")
        return 1


if __name__ == '__main__':
    sys.exit(main())
