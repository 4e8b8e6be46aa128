"""
Template rendering for concierge notifications.

Templates are plain Jinja2 text. They are either bundled with the bot in the
``templates`` folder or fetched from a repository's ``.concierge/templates``
directory. Compilation is kept free of any network access.
"""

import functools
import logging
import os
from typing import Callable, Mapping, Optional

from jinja2 import Environment, TemplateSyntaxError


logger = logging.getLogger(__name__)


DEFAULT_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
TEMPLATE_EXTENSION = ".j2"

# Chat messages and GitHub comments are markdown, not HTML
_ENVIRONMENT = Environment(autoescape=False, keep_trailing_newline=False)


class TemplateCompileError(Exception):
    """Raised when a template cannot be compiled."""


@functools.lru_cache(maxsize=64)
def compile_template(template_text: str, name: Optional[str] = None) -> Callable[..., str]:
    """
    Compile template text into a renderer.

    Args:
        template_text: Jinja2 template source
        name: Optional template name, used in error messages

    Returns:
        A function taking a mapping of variable name to value and returning
        the rendered text. Missing variables render as empty strings.

    Raises:
        TemplateCompileError: If the template has a syntax error
    """
    try:
        template = _ENVIRONMENT.from_string(template_text)
    except TemplateSyntaxError as e:
        raise TemplateCompileError(
            f"Invalid template {name or '<string>'} (line {e.lineno}): {e.message}"
        ) from e

    def render(variables: Optional[Mapping] = None) -> str:
        return template.render(**dict(variables or {}))

    return render


def render_template(template_text: str, variables: Optional[Mapping] = None) -> str:
    """Compile and render template text in one step."""
    return compile_template(template_text)(variables)


@functools.lru_cache(maxsize=16)
def load_bundled_template(name: str, template_dir: str = DEFAULT_TEMPLATE_DIR) -> str:
    """
    Load the text of a template shipped with the bot.

    Args:
        name: Template name without extension (e.g. 'weekly_stats')
        template_dir: Folder holding the bundled templates

    Returns:
        The template source text

    Raises:
        FileNotFoundError: If no such template exists
    """
    file_path = os.path.join(template_dir, name + TEMPLATE_EXTENSION)
    with open(file_path, 'r', encoding='utf-8') as f:
        text = f.read()
    logger.debug(f"Loaded bundled template {name} from {file_path}")
    return text
