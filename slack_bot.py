"""
Slack Bot

Sends release reminders to the people on the release schedule and posts
weekly pull request statistics to a channel.

The release schedule and optional template overrides live in the
configuration repository:

    .concierge/slackbot.yml        release_schedule: {slack user name: date}
    .concierge/templates/*.j2      e.g. release_reminder_early.j2

Slack users and channels are addressed by ID. Names are resolved through a
metadata snapshot built by sync_metadata(); nothing is sent before that.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from types import MappingProxyType
from typing import List, Mapping, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from batch_processing import process_all
from concierge_settings import Settings, create_github_client
from repo_config_loader import CONFIG_DIRECTORY, load_repo_config
from stale_pull_request import days_since
from template_renderer import compile_template, load_bundled_template


logger = logging.getLogger(__name__)


SLACKBOT_CONFIG_PATH = f"{CONFIG_DIRECTORY}/slackbot.yml"

RELEASE_REMINDER_EARLY = "release_reminder_early"
RELEASE_REMINDER = "release_reminder"
RELEASE_REMINDER_LATE = "release_reminder_late"
WEEKLY_STATS = "weekly_stats"
SLACK_TEMPLATES = (RELEASE_REMINDER_EARLY, RELEASE_REMINDER, RELEASE_REMINDER_LATE, WEEKLY_STATS)

# Days before the release date -> template variant
RELEASE_REMINDER_VARIANTS = {
    14: RELEASE_REMINDER_EARLY,
    7: RELEASE_REMINDER,
    0: RELEASE_REMINDER_LATE,
}
RELEASE_DATE_FORMATS = ('%m/%d/%Y',)

WEEKLY_STATS_WINDOW_DAYS = 7
WEEKLY_STATS_WEEKDAY = 4  # Friday
WEEKLY_STATS_GREETING = "Happy Friday everyone!"
DEFAULT_GREETING = "Hello everyone!"
LONG_MERGE_THRESHOLD_DAYS = 700

ALL_CHANNEL_TYPES = "public_channel,private_channel"
PUBLIC_CHANNEL_TYPES = "public_channel"
MISSING_SCOPE_ERROR = "missing_scope"


class MetadataNotReadyError(Exception):
    """Raised when Slack is used before the user/channel metadata is synced."""


class UnresolvedRecipientError(Exception):
    """Raised when a notification target has no known Slack ID."""


@dataclass(frozen=True)
class SlackMetadata:
    """Snapshot of the workspace's user and channel directories."""
    version: int
    user_ids: Mapping[str, str]
    user_data: Mapping[str, dict]
    channel_ids: Mapping[str, str]

    @classmethod
    def from_directory(cls, channels: List[dict], members: List[dict], version: int) -> 'SlackMetadata':
        user_ids = {}
        user_data = {}
        for member in members:
            user_ids[member['name']] = member['id']
            user_data[member['id']] = member

        channel_ids = {channel['name']: channel['id'] for channel in channels}
        return cls(
            version=version,
            user_ids=MappingProxyType(user_ids),
            user_data=MappingProxyType(user_data),
            channel_ids=MappingProxyType(channel_ids),
        )

    def display_name(self, user_id: str) -> str:
        member = self.user_data.get(user_id, {})
        profile = member.get('profile') or {}
        return (
            profile.get('display_name')
            or member.get('real_name')
            or member.get('name')
            or user_id
        )


def parse_release_date(value) -> date:
    """
    Parse a release date from the release schedule.

    Accepts date objects (as produced by YAML), ISO strings and MM/DD/YYYY
    strings.

    Raises:
        ValueError: If the value is not a recognizable date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        for date_format in RELEASE_DATE_FORMATS:
            try:
                return datetime.strptime(text, date_format).date()
            except ValueError:
                continue
    raise ValueError(f"Unrecognized release date: {value!r}")


def get_release_reminder_variant(release_date: date, today: date) -> Optional[str]:
    """Select the reminder variant due today, or None if no reminder is due."""
    return RELEASE_REMINDER_VARIANTS.get((release_date - today).days)


def get_greeting(today: date) -> str:
    if today.weekday() == WEEKLY_STATS_WEEKDAY:
        return WEEKLY_STATS_GREETING
    return DEFAULT_GREETING


def get_merge_time_days(issue) -> float:
    return days_since(issue.created_at, now=issue.closed_at)


def compute_merge_statistics(issues: List) -> dict:
    """
    Compute the weekly statistics template variables.

    Only pull requests with both a creation and a close date are counted.
    The pull request with the longest merge time is reported separately if
    it took at least LONG_MERGE_THRESHOLD_DAYS.

    Args:
        issues: Closed PyGithub Issue objects

    Returns:
        Dict with 'number_of_pull_requests' and 'average_merge_time', plus
        'long_merge_title', 'long_merge_url' and 'long_merge_time' when a
        long merge was found
    """
    merge_times = [
        (issue, get_merge_time_days(issue))
        for issue in issues
        if issue.pull_request is not None and issue.created_at and issue.closed_at
    ]

    if merge_times:
        average = sum(days for _, days in merge_times) / len(merge_times)
    else:
        average = 0.0

    statistics = {
        'number_of_pull_requests': len(merge_times),
        'average_merge_time': f"{average:.1f}",
    }

    longest = max(merge_times, key=lambda item: item[1], default=None)
    if longest is not None and longest[1] >= LONG_MERGE_THRESHOLD_DAYS:
        issue, days = longest
        statistics['long_merge_title'] = issue.title
        statistics['long_merge_url'] = issue.html_url
        statistics['long_merge_time'] = f"{days:.1f}"

    return statistics


class SlackBot:
    """Posts release reminders and weekly statistics to Slack."""

    def __init__(self, settings: Settings, client: Optional[WebClient] = None,
                 github_client=None, dry_run: bool = False) -> None:
        self.settings = settings
        self.slack_settings = settings.slack_bot
        self.dry_run = dry_run
        self._client = client
        self._github_client = github_client
        self._metadata: Optional[SlackMetadata] = None

    @property
    def is_disabled(self) -> bool:
        return not self.slack_settings.token and self._client is None

    @property
    def client(self) -> WebClient:
        if self._client is None:
            self._client = WebClient(token=self.slack_settings.token)
        return self._client

    @property
    def metadata(self) -> Optional[SlackMetadata]:
        return self._metadata

    def require_metadata(self) -> SlackMetadata:
        if self._metadata is None:
            raise MetadataNotReadyError(
                "Slack metadata is not ready; call sync_metadata() before sending messages"
            )
        return self._metadata

    def start(self) -> bool:
        """
        Prepare the bot for sending.

        Returns:
            True if the bot is enabled and its metadata was synced
        """
        if self.is_disabled:
            logger.info("Slack bot is disabled: no Slack token configured")
            return False

        try:
            metadata = self.sync_metadata()
        except SlackApiError as e:
            logger.error(f"Failed to obtain Slack metadata: {e.response.get('error', e)}")
            return False

        logger.info(
            f"Synced Slack metadata: {len(metadata.user_ids)} users, "
            f"{len(metadata.channel_ids)} channels"
        )
        return True

    def _get_all_channels(self) -> List[dict]:
        try:
            return self._list_channels(ALL_CHANNEL_TYPES)
        except SlackApiError as e:
            if e.response.get("error") != MISSING_SCOPE_ERROR:
                raise
        # Token cannot read private channels (no groups:read scope)
        logger.warning("Slack token cannot list private channels; listing public channels only")
        return self._list_channels(PUBLIC_CHANNEL_TYPES)

    def _list_channels(self, types: str) -> List[dict]:
        channels: List[dict] = []
        cursor: Optional[str] = None
        while True:
            resp = self.client.conversations_list(
                types=types,
                exclude_archived=True,
                limit=1000,
                cursor=cursor,
            )
            channels.extend(resp.get("channels", []))
            cursor = resp.get("response_metadata", {}).get("next_cursor") or None
            if not cursor:
                break
        return channels

    def _get_all_users(self) -> List[dict]:
        members: List[dict] = []
        cursor: Optional[str] = None
        while True:
            resp = self.client.users_list(limit=200, cursor=cursor)
            members.extend(resp.get("members", []))
            cursor = resp.get("response_metadata", {}).get("next_cursor") or None
            if not cursor:
                break
        return members

    def sync_metadata(self) -> SlackMetadata:
        """
        Rebuild the user and channel lookup from scratch.

        The previous snapshot is replaced only once both directories were
        listed successfully.

        Raises:
            SlackApiError: If listing channels or users fails
        """
        channels = self._get_all_channels()
        members = self._get_all_users()
        version = self._metadata.version + 1 if self._metadata else 1
        self._metadata = SlackMetadata.from_directory(channels, members, version)
        return self._metadata

    def post_message(self, channel_id: str, text: str) -> None:
        """
        Post a message to a Slack user or channel ID.

        Raises:
            MetadataNotReadyError: If metadata has not been synced
            SlackApiError: If Slack rejects the message
        """
        self.require_metadata()
        if not channel_id:
            raise UnresolvedRecipientError("Cannot post a message without a recipient ID")

        if self.dry_run:
            logger.info(f"[DRY RUN] Would post message to {channel_id}")
            logger.debug(f"Message text: {text[:100]}...")
            return

        self.client.chat_postMessage(channel=channel_id, text=text)
        logger.info(f"Posted message to {channel_id}")

    def _github_for(self, repository_name: str):
        if self._github_client is not None:
            return self._github_client
        repository_settings = self.settings.repositories.get(repository_name)
        token = repository_settings.github_token if repository_settings else self.slack_settings.github_token
        return create_github_client(token, self.settings.github_api_url)

    def get_config(self) -> dict:
        """
        Load the Slack bot configuration from the configuration repository.

        Returns:
            Configuration with 'release_schedule' and the '<variant>_template'
            texts; the bundled templates are used where the repository has
            none

        Raises:
            RemoteFetchError: If the configuration repository cannot be read
        """
        defaults = {'release_schedule': {}}
        for name in SLACK_TEMPLATES:
            defaults[f"{name}_template"] = load_bundled_template(name)

        repository_name = self.slack_settings.config_repository
        if not repository_name:
            return defaults

        return load_repo_config(
            self._github_for(repository_name),
            repository_name,
            defaults,
            config_path=SLACKBOT_CONFIG_PATH,
        )

    @staticmethod
    def render(config: dict, variant: str, variables: Optional[Mapping] = None) -> str:
        return compile_template(config[f"{variant}_template"], variant)(variables)

    def send_release_reminders(self, today: Optional[date] = None) -> dict:
        """
        Send the reminder due today to every user on the release schedule.

        Users are processed one at a time; a failure for one user is logged
        and does not stop the others.

        Args:
            today: Current date (defaults to today)

        Returns:
            Summary dict of the run

        Raises:
            MetadataNotReadyError: If metadata has not been synced
        """
        metadata = self.require_metadata()
        if today is None:
            today = date.today()

        config = self.get_config()
        schedule = config.get('release_schedule') or {}
        if not isinstance(schedule, dict):
            logger.error("'release_schedule' must map Slack user names to dates; skipping reminders")
            schedule = {}

        def remind(user: str) -> Optional[str]:
            release_date = parse_release_date(schedule[user])
            variant = get_release_reminder_variant(release_date, today)
            if variant is None:
                return None

            user_id = metadata.user_ids.get(user)
            if user_id is None:
                raise UnresolvedRecipientError(f"No Slack user named '{user}'")

            text = self.render(config, variant, {'name': metadata.display_name(user_id)})
            self.post_message(user_id, text)
            return variant

        results = process_all(list(schedule), remind, "release reminder for")

        summary = {
            'users_scheduled': len(results),
            'reminders_sent': 0,
            'users_unresolved': [],
            'users_failed': [],
            'reminded_users': [],
        }
        for result in results:
            if result.ok:
                if result.value is not None:
                    summary['reminders_sent'] += 1
                    summary['reminded_users'].append({'user': result.item, 'variant': result.value})
            elif isinstance(result.error, UnresolvedRecipientError):
                summary['users_unresolved'].append(result.item)
            else:
                summary['users_failed'].append(result.item)

        return summary

    def _get_all_issues_last_week(self, now: datetime) -> List:
        since = now - timedelta(days=WEEKLY_STATS_WINDOW_DAYS)

        def fetch(repository_name: str) -> List:
            repository = self._github_for(repository_name).get_repo(repository_name)
            return [
                issue
                for issue in repository.get_issues(state='closed', since=since)
                if issue.closed_at and days_since(issue.closed_at, now) <= WEEKLY_STATS_WINDOW_DAYS
            ]

        issues = []
        for result in process_all(self.slack_settings.stats_repositories, fetch, "weekly stats for"):
            if result.ok:
                issues.extend(result.value)
        return issues

    def send_weekly_stats(self, now: Optional[datetime] = None) -> bool:
        """
        Post last week's pull request statistics to the stats channel.

        Args:
            now: Current time (defaults to now)

        Returns:
            True if the message was posted, False if the channel is unknown

        Raises:
            MetadataNotReadyError: If metadata has not been synced
        """
        metadata = self.require_metadata()
        if now is None:
            now = datetime.now(timezone.utc)

        config = self.get_config()
        issues = self._get_all_issues_last_week(now)

        variables = compute_merge_statistics(issues)
        variables['greeting'] = get_greeting(now.date())

        channel_name = self.slack_settings.weekly_stats_channel
        channel_id = metadata.channel_ids.get(channel_name)
        if channel_id is None:
            logger.warning(f"No Slack channel named '{channel_name}'; skipping weekly statistics")
            return False

        self.post_message(channel_id, self.render(config, WEEKLY_STATS, variables))
        logger.info(
            f"Weekly statistics: {variables['number_of_pull_requests']} pull requests, "
            f"average merge time {variables['average_merge_time']} days"
        )
        return True
