"""
Sequential batch processing with per-unit error isolation.

Every concierge job walks a list of units (repositories, users, pull
requests). A failure in one unit is logged and recorded, and processing moves
on to the next one.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitResult:
    """Outcome of processing a single unit."""
    item: Any
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def process_all(
    items: Iterable,
    fn: Callable[[Any], Any],
    description: str = "item"
) -> List[UnitResult]:
    """
    Apply fn to every item in order, never stopping on errors.

    Args:
        items: Units to process
        fn: Function called with each unit
        description: Label used in log messages (e.g. 'repository')

    Returns:
        One UnitResult per item, in input order
    """
    results = []
    for item in items:
        try:
            value = fn(item)
        except Exception as e:
            logger.error(f"Error processing {description} {item}: {e}")
            results.append(UnitResult(item=item, error=e))
        else:
            results.append(UnitResult(item=item, value=value))
    return results
