"""
Capability sets - which tools a session may run

Each session carries an explicit set of enabled capability tags and every tool
declares the one it needs. Filtering a round's tool calls is a subset check
against that set instead of scattered per-source name lists.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from farmassist.services.tools.registry import ToolRegistry
from farmassist.services.tools.schema import ToolCall, ToolCapability

logger = logging.getLogger(__name__)


def parse_capabilities(values: Iterable[str]) -> FrozenSet[ToolCapability]:
    """
    Convert client-supplied data source ids into capability tags.

    Unknown ids are ignored with a warning so an outdated client cannot break a turn.
    """
    capabilities = set()
    for value in values:
        try:
            capabilities.add(ToolCapability(value.strip().lower()))
        except ValueError:
            logger.warning(f"Ignoring unknown capability: {value!r}")
    return frozenset(capabilities)


@dataclass(frozen=True)
class SessionContext:
    """Per-turn session state handed to the driver and to every tool handler"""
    session_id: str
    enabled_capabilities: FrozenSet[ToolCapability] = frozenset()
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def allows(self, required: Optional[ToolCapability]) -> bool:
        """True when a tool needing `required` may run in this session"""
        if required is None:
            return True
        return {required} <= self.enabled_capabilities


def filter_tool_calls(
    tool_calls: List[ToolCall],
    session: SessionContext,
    registry: ToolRegistry
) -> Tuple[List[ToolCall], List[ToolCall]]:
    """
    Split a round's tool calls into (retained, dropped).

    Calls to tools the registry does not know are retained: the executor turns
    them into failure results the model can narrate.
    """
    retained: List[ToolCall] = []
    dropped: List[ToolCall] = []

    for call in tool_calls:
        if call.name in registry and not session.allows(registry.capability_for(call.name)):
            dropped.append(call)
        else:
            retained.append(call)

    if dropped:
        logger.info(
            f"Filtered out {len(dropped)} tool call(s) for disabled data sources: "
            f"{[c.name for c in dropped]} (enabled: {sorted(c.value for c in session.enabled_capabilities)})"
        )

    return retained, dropped
