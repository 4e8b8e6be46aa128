"""
Remote per-repository configuration for the concierge.

A repository can customize the concierge by committing a ``.concierge``
directory:

    .concierge/config.yml          options merged over the local defaults
    .concierge/templates/*.j2      message templates, one file per variant

Both are read through the GitHub contents API. A missing file or directory is
not an error: the defaults are used as they are.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

import yaml
from github import GithubException

from template_renderer import TEMPLATE_EXTENSION


logger = logging.getLogger(__name__)


CONFIG_DIRECTORY = ".concierge"
CONFIG_FILE = "config.yml"
CONFIG_PATH = f"{CONFIG_DIRECTORY}/{CONFIG_FILE}"
TEMPLATE_DIRECTORY = f"{CONFIG_DIRECTORY}/templates"
TEMPLATE_KEY_SUFFIX = "_template"

NOT_FOUND_STATUS = 404


class RemoteFetchError(Exception):
    """Raised when a remote read fails with anything other than 'not found'."""

    def __init__(self, path: str, status: Optional[int], message: str):
        super().__init__(f"Failed to fetch {path} (status {status}): {message}")
        self.path = path
        self.status = status


@dataclass(frozen=True)
class LayeredConfig:
    """
    Configuration made of a defaults layer and a remote-override layer.

    Merging is shallow: each top-level key of the overrides replaces the key
    of the same name in the defaults as a whole.
    """
    defaults: Mapping
    overrides: Mapping = field(default_factory=dict)

    def get(self, key, default=None):
        if key in self.overrides:
            return self.overrides[key]
        return self.defaults.get(key, default)

    def as_dict(self) -> dict:
        merged = dict(self.defaults)
        merged.update(self.overrides)
        return merged


def _github_error_message(e: GithubException) -> str:
    data = getattr(e, 'data', None)
    if isinstance(data, dict) and data.get('message'):
        return data['message']
    return str(e)


def template_key(file_name: str) -> Optional[str]:
    """
    Derive the config key for a template file.

    Args:
        file_name: Name of the file in the template directory

    Returns:
        The config key (e.g. 'signature.j2' -> 'signature_template'), or None
        if the file is not a template
    """
    if not file_name.endswith(TEMPLATE_EXTENSION):
        return None
    stem = file_name[:-len(TEMPLATE_EXTENSION)]
    if not stem:
        return None
    return stem + TEMPLATE_KEY_SUFFIX


def get_template(repository, path: str) -> str:
    """
    Read the content of a single template file.

    Args:
        repository: PyGithub Repository object
        path: Path of the file inside the repository

    Returns:
        The decoded file content

    Raises:
        GithubException: If the read fails
    """
    content_file = repository.get_contents(path)
    return content_file.decoded_content.decode('utf-8')


def get_config(repository, defaults: dict, path: str = CONFIG_PATH) -> dict:
    """
    Fetch the repository's configuration document and merge it over defaults.

    Args:
        repository: PyGithub Repository object
        defaults: Default configuration
        path: Path of the configuration file inside the repository

    Returns:
        The defaults object itself if the file does not exist, otherwise a
        new dict with the document's top-level keys overriding the defaults

    Raises:
        RemoteFetchError: If the read fails or the document is not a mapping
    """
    try:
        content_file = repository.get_contents(path)
    except GithubException as e:
        if e.status == NOT_FOUND_STATUS:
            logger.debug(f"No {path} in {repository.full_name}, using defaults")
            return defaults
        raise RemoteFetchError(path, e.status, _github_error_message(e)) from e

    if isinstance(content_file, list):
        raise RemoteFetchError(path, None, "expected a file but found a directory")

    try:
        document = yaml.safe_load(content_file.decoded_content.decode('utf-8'))
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise RemoteFetchError(path, None, f"could not parse document: {e}") from e

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise RemoteFetchError(
            path, None, f"expected a mapping but found {type(document).__name__}"
        )

    logger.debug(f"Loaded {len(document)} option(s) from {repository.full_name}/{path}")
    return LayeredConfig(defaults, document).as_dict()


def get_templates(repository, defaults: dict, path: str = TEMPLATE_DIRECTORY) -> dict:
    """
    Fetch every template in the repository's template directory.

    Files ending in the template extension are stored under '<stem>_template'
    as raw text. Other files are ignored.

    Args:
        repository: PyGithub Repository object
        defaults: Default configuration
        path: Path of the template directory inside the repository

    Returns:
        The defaults object itself if the directory does not exist, otherwise
        a new dict with the fetched templates set over the defaults

    Raises:
        RemoteFetchError: If listing the directory or reading a file fails
    """
    templates = {}
    try:
        entries = repository.get_contents(path)
        if not isinstance(entries, list):
            entries = [entries]

        for entry in entries:
            key = template_key(entry.name)
            if key is None:
                logger.debug(f"Ignoring non-template file {entry.name} in {path}")
                continue
            templates[key] = get_template(repository, entry.path)
    except GithubException as e:
        if e.status == NOT_FOUND_STATUS:
            logger.debug(f"No {path} in {repository.full_name}, using default templates")
            return defaults
        raise RemoteFetchError(path, e.status, _github_error_message(e)) from e

    logger.debug(f"Loaded {len(templates)} template(s) from {repository.full_name}/{path}")
    return LayeredConfig(defaults, templates).as_dict()


def load_repo_config(
    gh,
    repository_name: str,
    defaults: dict,
    config_path: str = CONFIG_PATH,
    template_path: str = TEMPLATE_DIRECTORY
) -> dict:
    """
    Load a repository's configuration document and templates.

    Args:
        gh: Authenticated GitHub client
        repository_name: Repository name in "owner/repo" format
        defaults: Default configuration
        config_path: Path of the configuration file
        template_path: Path of the template directory

    Returns:
        Configuration with the document merged over the defaults and the
        templates merged over that

    Raises:
        RemoteFetchError: If the repository or any of its files cannot be read
    """
    try:
        repository = gh.get_repo(repository_name)
    except GithubException as e:
        raise RemoteFetchError(repository_name, e.status, _github_error_message(e)) from e

    config = get_config(repository, defaults, config_path)
    return get_templates(repository, config, template_path)
