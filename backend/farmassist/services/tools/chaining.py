"""
Chained tool use - deciding whether the next round may call tools again

After a round's results are merged the model normally only narrates them. Some
questions need a second, dependent lookup (a field boundary first, then the
weather at its coordinates). A chain policy inspects what just ran and the
user's question and says whether the next generation gets tools back.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from farmassist.services.tools.schema import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutedToolCall:
    """A retained call together with the result it produced"""
    call: ToolCall
    result: ToolResult


ChainPolicy = Callable[[Sequence[ExecutedToolCall], str], bool]


# Tools whose successful result carries field geometry
BOUNDARY_TOOLS = frozenset({"get_field_boundary", "getFields", "getFieldBoundary"})

_COORDINATE_KEYS = frozenset({
    "coordinates", "coordinate", "lat", "latitude", "lon", "lng", "longitude",
    "boundary", "boundaries", "geometry", "points", "centroid",
})

# Questions about quantities that can only be looked up by location
_COORDINATE_DEPENDENT_TERMS = re.compile(
    r"\b(weather|forecast|rain\w*|precipitation|temperature|wind\w*|spray\w*|"
    r"humidity|frost|ndvi|satellite|imagery|vegetation)\b",
    re.IGNORECASE,
)


def _has_coordinates(payload: Any, depth: int = 0) -> bool:
    if depth > 6:
        return False
    if isinstance(payload, dict):
        for key, value in payload.items():
            if str(key).lower() in _COORDINATE_KEYS and value not in (None, "", [], {}):
                return True
            if _has_coordinates(value, depth + 1):
                return True
    elif isinstance(payload, list):
        return any(_has_coordinates(item, depth + 1) for item in payload[:50])
    return False


def boundary_weather_chain(executed: Sequence[ExecutedToolCall], user_query: str) -> bool:
    """
    Re-enable tools when a boundary lookup returned coordinates and the user
    asked for something that is looked up by location (weather, imagery, ...).
    """
    if not _COORDINATE_DEPENDENT_TERMS.search(user_query or ""):
        return False

    for item in executed:
        if item.call.name in BOUNDARY_TOOLS and item.result.success and _has_coordinates(item.result.data):
            logger.info(f"Chained tool use enabled after {item.call.name} returned coordinates")
            return True
    return False


def never_chain(executed: Sequence[ExecutedToolCall], user_query: str) -> bool:
    return False


def any_policy(*policies: ChainPolicy) -> ChainPolicy:
    """Combine policies; the next round gets tools when any of them asks for it"""
    def combined(executed: Sequence[ExecutedToolCall], user_query: str) -> bool:
        return any(policy(executed, user_query) for policy in policies)
    return combined


DEFAULT_CHAIN_POLICY: ChainPolicy = boundary_weather_chain
