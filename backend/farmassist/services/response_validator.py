"""
Response Validator - advisory cross-check of a narration against tool results

Collects facts from the tool payloads (numbers, short strings, list sizes) and
measures how many of them the narration mentions. The score is only logged and
attached to the message metadata; it never blocks or alters a response.
"""

import logging
import re
from typing import Any, List, Sequence, Set

from farmassist.schemas.chat import ValidationResult
from farmassist.services.tools.schema import ToolResult

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"-?\d+(?:[.,]\d+)?")

_FAILURE_TERMS = (
    "unable", "not able", "couldn't", "could not", "can't", "cannot", "error",
    "failed", "unavailable", "not available", "problem", "issue", "connect",
    "permission", "try again", "sorry",
)

# Keep fact extraction bounded for large payloads
_MAX_FACTS = 200
_MAX_DEPTH = 5
_MAX_STRING_LENGTH = 60


def _normalize_number(raw: str) -> str:
    value = float(raw.replace(",", "."))
    if value.is_integer():
        return str(int(value))
    return f"{value:.1f}"


def _numbers_in(text: str) -> Set[str]:
    return {_normalize_number(match) for match in _NUMBER.findall(text)}


class ResponseValidator:
    """
    Heuristic grounding check.

    Usage:
        validator = ResponseValidator()
        result = validator.validate(query, narration, tool_results)
        logger.info(f"confidence={result.confidence}")
    """

    LOW_CONFIDENCE = 20
    NO_FACTS_CONFIDENCE = 70

    def validate(
        self,
        user_query: str,
        llm_response: str,
        tool_results: Sequence[ToolResult]
    ) -> ValidationResult:
        """
        Score how well `llm_response` reflects `tool_results`.

        Returns:
            ValidationResult with confidence in [0, 100] and explanatory notes
        """
        if not tool_results:
            return ValidationResult(confidence=100, notes=["No tool results to check against"])

        response = llm_response or ""
        successful = [r for r in tool_results if r.success]

        if not successful:
            lowered = response.lower()
            if any(term in lowered for term in _FAILURE_TERMS):
                return ValidationResult(
                    confidence=80,
                    notes=["All tool calls failed and the response acknowledges it"]
                )
            return ValidationResult(
                confidence=self.LOW_CONFIDENCE,
                notes=["All tool calls failed but the response does not mention a problem"]
            )

        facts: List[str] = []
        for result in successful:
            self._collect_facts(result.data, facts, depth=0)
            if len(facts) >= _MAX_FACTS:
                break

        if not facts:
            return ValidationResult(
                confidence=self.NO_FACTS_CONFIDENCE,
                notes=["Tool results carried no checkable facts"]
            )

        response_numbers = _numbers_in(response)
        lowered = response.lower()
        unique_facts = list(dict.fromkeys(facts))
        matched = [fact for fact in unique_facts if self._mentions(fact, lowered, response_numbers)]

        coverage = len(matched) / len(unique_facts)
        notes = [f"{len(matched)} of {len(unique_facts)} facts from tool results appear in the response"]

        if not matched:
            confidence = self.LOW_CONFIDENCE
            notes.append("Response does not reflect any tool result")
        else:
            # One grounded fact already earns a passing score; more coverage raises it
            confidence = 50 + round(50 * min(1.0, coverage * 2))

        failed = len(tool_results) - len(successful)
        if failed:
            confidence -= 10
            notes.append(f"{failed} tool call(s) failed")

        confidence = max(0, min(100, confidence))
        logger.debug(f"Validation for query {user_query[:60]!r}: confidence={confidence}")
        return ValidationResult(confidence=confidence, notes=notes)

    def _collect_facts(self, payload: Any, facts: List[str], depth: int) -> None:
        if depth > _MAX_DEPTH or len(facts) >= _MAX_FACTS:
            return

        if isinstance(payload, bool) or payload is None:
            return
        if isinstance(payload, (int, float)):
            facts.append(_normalize_number(str(payload)))
        elif isinstance(payload, str):
            value = payload.strip()
            if _NUMBER.fullmatch(value):
                facts.append(_normalize_number(value))
            elif 2 < len(value) <= _MAX_STRING_LENGTH:
                facts.append(value.lower())
        elif isinstance(payload, dict):
            for key, value in payload.items():
                # Ids and geometry are never narrated
                if str(key).lower() in ("id", "ids", "uuid", "coordinates", "geometry", "links", "href"):
                    continue
                self._collect_facts(value, facts, depth + 1)
        elif isinstance(payload, list):
            if payload:
                facts.append(str(len(payload)))
            for item in payload[:20]:
                self._collect_facts(item, facts, depth + 1)

    def _mentions(self, fact: str, lowered_response: str, response_numbers: Set[str]) -> bool:
        if _NUMBER.fullmatch(fact):
            return fact in response_numbers
        return fact in lowered_response
