"""
Process-wide settings for the concierge.

Settings come from a local YAML file listing the repositories the concierge
looks after, their GitHub tokens and thresholds, and the optional Slack bot
section. Each repository's settings can then be refreshed from the
repository's own ``.concierge`` directory.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

import yaml
from github import Auth, Github

from batch_processing import process_all
from repo_config_loader import load_repo_config
from template_renderer import compile_template, load_bundled_template


logger = logging.getLogger(__name__)


DEFAULT_MAX_DAYS_SINCE_UPDATE = 30
DEFAULT_WEEKLY_STATS_CHANNEL = "general"
SLACK_TOKEN_ENV_VAR = "SLACK_BOT_TOKEN"

INITIAL_STALE_PULL_REQUEST = "initial_stale_pull_request"
SECONDARY_STALE_PULL_REQUEST = "secondary_stale_pull_request"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


def _bundled(name: str):
    return lambda: load_bundled_template(name)


def get_validated_max_days(raw_value, repository_name: str) -> int:
    """
    Validate a max_days_since_update value.

    Invalid values are logged and replaced with the default.

    Args:
        raw_value: Value found in the configuration
        repository_name: Repository the value belongs to, for logging

    Returns:
        A positive number of days
    """
    try:
        days = int(raw_value)
    except (TypeError, ValueError):
        logger.warning(
            f"Invalid 'max_days_since_update' value {raw_value!r} for {repository_name}; "
            f"falling back to default {DEFAULT_MAX_DAYS_SINCE_UPDATE}"
        )
        return DEFAULT_MAX_DAYS_SINCE_UPDATE

    if days < 1:
        logger.warning(
            f"Configured 'max_days_since_update' ({days}) for {repository_name} "
            f"must be at least 1; using 1 instead"
        )
        return 1

    return days


@dataclass(frozen=True)
class RepositorySettings:
    """Settings for one repository. Replaced as a whole, never mutated."""
    name: str
    github_token: str = field(repr=False)
    max_days_since_update: int = DEFAULT_MAX_DAYS_SINCE_UPDATE
    initial_stale_pull_request_template: str = field(
        default_factory=_bundled(INITIAL_STALE_PULL_REQUEST), repr=False
    )
    secondary_stale_pull_request_template: str = field(
        default_factory=_bundled(SECONDARY_STALE_PULL_REQUEST), repr=False
    )
    options: Mapping = field(default_factory=dict)

    def __post_init__(self):
        # Fail while building the settings rather than when a comment is due
        for variant in (INITIAL_STALE_PULL_REQUEST, SECONDARY_STALE_PULL_REQUEST):
            compile_template(getattr(self, f"{variant}_template"), variant)

    def render(self, variant: str, variables: Optional[Mapping] = None) -> str:
        """Render one of the repository's template variants."""
        template_text = getattr(self, f"{variant}_template")
        return compile_template(template_text, variant)(variables)

    def to_config(self) -> dict:
        """Return the settings as a config dict, without the token."""
        config = dict(self.options)
        config['max_days_since_update'] = self.max_days_since_update
        config['initial_stale_pull_request_template'] = self.initial_stale_pull_request_template
        config['secondary_stale_pull_request_template'] = self.secondary_stale_pull_request_template
        return config

    @classmethod
    def from_config(cls, name: str, github_token: str, config: Mapping) -> 'RepositorySettings':
        """
        Build repository settings from a config mapping.

        Keys other than the known ones are kept in 'options'.
        """
        known_keys = {
            'github_token',
            'max_days_since_update',
            'initial_stale_pull_request_template',
            'secondary_stale_pull_request_template',
        }
        kwargs = {}
        for key in ('initial_stale_pull_request_template', 'secondary_stale_pull_request_template'):
            if config.get(key):
                kwargs[key] = config[key]

        return cls(
            name=name,
            github_token=github_token,
            max_days_since_update=get_validated_max_days(
                config.get('max_days_since_update', DEFAULT_MAX_DAYS_SINCE_UPDATE), name
            ),
            options={key: value for key, value in config.items() if key not in known_keys},
            **kwargs
        )


@dataclass(frozen=True)
class SlackBotSettings:
    """Settings for the Slack side of the concierge."""
    token: Optional[str] = field(default=None, repr=False)
    config_repository: Optional[str] = None
    github_token: Optional[str] = field(default=None, repr=False)
    weekly_stats_channel: str = DEFAULT_WEEKLY_STATS_CHANNEL
    stats_repositories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Settings:
    repositories: Mapping[str, RepositorySettings]
    slack_bot: SlackBotSettings = field(default_factory=SlackBotSettings)
    github_api_url: Optional[str] = None
    bot_login: Optional[str] = None


def validate_config(config: dict) -> None:
    """
    Validate that all required configuration keys are present.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If required keys are missing
    """
    if not config:
        raise ConfigurationError("Configuration is empty")
    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping of section names to settings")

    repositories = config.get('repositories')
    if not repositories:
        raise ConfigurationError(
            "No repositories configured. Add repositories to the 'repositories' section."
        )
    if not isinstance(repositories, dict):
        raise ConfigurationError(
            "'repositories' must map repository names to their settings"
        )

    for name, repository in repositories.items():
        if not name or not str(name).strip():
            raise ConfigurationError("Found a repository without a name in 'repositories'")
        if not isinstance(repository, dict) or not repository.get('github_token'):
            raise ConfigurationError(f"Missing required 'github_token' for repository '{name}'")

    slack_bot = config.get('slack_bot') or {}
    if not isinstance(slack_bot, dict):
        raise ConfigurationError("'slack_bot' section must be a mapping")
    if slack_bot.get('config_repository') and not slack_bot.get('github_token'):
        raise ConfigurationError(
            "Missing required 'github_token' in 'slack_bot' section for the config repository"
        )

    github = config.get('github') or {}
    if not isinstance(github, dict):
        raise ConfigurationError("'github' section must be a mapping")


def load_config(config_path: str) -> dict:
    """Load and validate configuration from a YAML file."""
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    validate_config(config)
    return config


def build_settings(config: dict) -> Settings:
    """
    Build Settings from a validated configuration dictionary.

    The Slack token falls back to the SLACK_BOT_TOKEN environment variable.
    """
    repositories = {}
    for name, entry in config['repositories'].items():
        repositories[name] = RepositorySettings.from_config(name, entry['github_token'], entry)

    slack_config = config.get('slack_bot') or {}
    stats_repositories = slack_config.get('stats_repositories') or list(repositories)
    slack_bot = SlackBotSettings(
        token=slack_config.get('token') or os.environ.get(SLACK_TOKEN_ENV_VAR),
        config_repository=slack_config.get('config_repository'),
        github_token=slack_config.get('github_token'),
        weekly_stats_channel=slack_config.get('weekly_stats_channel', DEFAULT_WEEKLY_STATS_CHANNEL),
        stats_repositories=tuple(stats_repositories),
    )

    github = config.get('github') or {}
    return Settings(
        repositories=repositories,
        slack_bot=slack_bot,
        github_api_url=github.get('api_url'),
        bot_login=github.get('bot_login'),
    )


def load_settings(config_path: str) -> Settings:
    """Load, validate and build Settings from a YAML file."""
    return build_settings(load_config(config_path))


def create_github_client(token: str, api_url: Optional[str] = None) -> Github:
    """
    Create a GitHub client authenticated with the given token.

    Args:
        token: GitHub personal access token
        api_url: Optional API base URL (GitHub Enterprise)

    Returns:
        PyGithub Github client
    """
    if api_url:
        return Github(auth=Auth.Token(token), base_url=api_url)
    return Github(auth=Auth.Token(token))


def refresh_repository_settings(settings: Settings) -> Settings:
    """
    Refresh every repository's settings from its remote configuration.

    A repository whose configuration cannot be loaded keeps its local
    settings; the failure is logged and the other repositories are refreshed.

    Args:
        settings: Current settings

    Returns:
        New Settings with refreshed repository settings
    """
    def refresh(name: str) -> RepositorySettings:
        current = settings.repositories[name]
        gh = create_github_client(current.github_token, settings.github_api_url)
        config = load_repo_config(gh, name, current.to_config())
        return RepositorySettings.from_config(name, current.github_token, config)

    results = process_all(list(settings.repositories), refresh, "repository config")

    repositories = {}
    for result in results:
        if result.ok:
            repositories[result.item] = result.value
        else:
            logger.warning(f"Keeping local settings for {result.item}")
            repositories[result.item] = settings.repositories[result.item]

    return dataclasses.replace(settings, repositories=repositories)
