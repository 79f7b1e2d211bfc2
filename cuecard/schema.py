from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cuecard.errors import MalformedPayloadError
from cuecard.models import Suggestion

logger = logging.getLogger(__name__)

FALLBACK_SUGGESTION = Suggestion("suggestion-fallback", "statement", "Continue the conversation")

MAX_PER_SECTION = 3

_INSIGHTS_RE = re.compile(r"^INSIGHTS:\s*\n((?:-\s+.+\n?)+)", re.M)
_TALKING_RE = re.compile(r"TALKING POINTS:\s*\n((?:\d+\.\s+.+\n?)+)", re.M)
_ACTIONS_RE = re.compile(r"FOLLOW-UP ACTIONS:\s*\n((?:\d+\.\s+.+\n?)+)", re.M)
_NUMBERED_RE = re.compile(r"^\d+\.\s+(.+)$")
_DASH_RE = re.compile(r"^-\s+(.+)$")

# Loose patterns for text still streaming in
_LOOSE_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")
_LOOSE_HEADER_RE = re.compile(
    r"^[\s#*_]*(insights?|key insights|talking points?|suggestions?|follow[- ]?up actions?|actions?|next steps)"
    r"[\s*_]*:?[\s*_]*$",
    re.I,
)


@dataclass
class ParsedResponse:
    insights: List[str] = field(default_factory=list)
    suggestions: List[Suggestion] = field(default_factory=list)
    used_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "insights": list(self.insights),
            "suggestions": [s.to_dict() for s in self.suggestions],
            "used_fallback": self.used_fallback,
        }


def normalize_newlines(text: str) -> str:
    return (text or "").replace("\r\n", "\n").replace("\r", "\n")


def clip_words(label: str, max_words: int = 15) -> str:
    parts = label.split()
    if max_words > 0 and len(parts) > max_words:
        parts = parts[:max_words]
    return " ".join(parts)


def talking_point_kind(label: str) -> str:
    return "question" if label.rstrip().endswith("?") else "statement"


def try_parse_json(text: str) -> Dict[str, Any]:
    """
    Best-effort JSON extraction (handles occasional extra text around JSON).
    """
    if text is None:
        raise MalformedPayloadError("Empty response")
    s = text.strip()

    if s.startswith("{") and s.endswith("}"):
        obj = json.loads(s)
    else:
        start = s.find("{")
        end = s.rfind("}")
        if start == -1 or end <= start:
            raise MalformedPayloadError("No JSON object in response")
        obj = json.loads(s[start:end + 1])

    if not isinstance(obj, dict):
        raise MalformedPayloadError("JSON response is not an object")
    return obj


def _section_lines(block: str, line_re: "re.Pattern[str]") -> List[str]:
    out: List[str] = []
    for line in block.split("\n"):
        line = line.strip()
        if not line:
            continue
        m = line_re.match(line)
        if m and m.group(1).strip():
            out.append(m.group(1).strip())
    return out


def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(x).strip() for x in value if str(x).strip()]


def _build_suggestions(talking: List[str], actions: List[str], max_label_words: int) -> List[Suggestion]:
    suggestions: List[Suggestion] = []
    for i, label in enumerate(talking[:MAX_PER_SECTION]):
        label = clip_words(label, max_label_words)
        if label:
            suggestions.append(Suggestion(f"talking-{i}", talking_point_kind(label), label))
    for i, label in enumerate(actions[:MAX_PER_SECTION]):
        label = clip_words(label, max_label_words)
        if label:
            suggestions.append(Suggestion(f"action-{i}", "action", label))
    return suggestions


def parse_strict(text: str, max_label_words: int = 15) -> ParsedResponse:
    """Parse a finished response against the labelled three-section layout.

    Falls back to a JSON object with `insights`, `talking_points` and
    `follow_up_actions` keys when none of the sections are present. The
    result always carries at least one suggestion.
    """
    normalized = normalize_newlines(text).strip()

    insights: List[str] = []
    talking: List[str] = []
    actions: List[str] = []
    matched = False

    m = _INSIGHTS_RE.search(normalized)
    if m:
        matched = True
        insights = _section_lines(m.group(1), _DASH_RE)[:MAX_PER_SECTION]
    m = _TALKING_RE.search(normalized)
    if m:
        matched = True
        talking = _section_lines(m.group(1), _NUMBERED_RE)
    m = _ACTIONS_RE.search(normalized)
    if m:
        matched = True
        actions = _section_lines(m.group(1), _NUMBERED_RE)

    if not matched and "{" in normalized:
        try:
            obj = try_parse_json(normalized)
        except ValueError as e:
            logger.warning("[Suggest] Unparsable JSON response: %s", e)
        else:
            insights = _as_list(obj.get("insights"))[:MAX_PER_SECTION]
            talking = _as_list(obj.get("talking_points"))
            actions = _as_list(obj.get("follow_up_actions"))

    suggestions = _build_suggestions(talking, actions, max_label_words)

    if len(talking) < MAX_PER_SECTION or len(actions) < MAX_PER_SECTION:
        logger.debug(
            "[Suggest] Short response: %d talking points, %d actions, %d insights",
            len(talking), len(actions), len(insights),
        )

    if not suggestions:
        logger.warning("[Suggest] No suggestions extracted, using fallback")
        return ParsedResponse(insights=insights, suggestions=[FALLBACK_SUGGESTION], used_fallback=True)
    return ParsedResponse(insights=insights, suggestions=suggestions)


def extract_partial(text: str, limit: int = 6, max_label_words: int = 15) -> List[Suggestion]:
    """Tolerant extraction from a response that is still streaming.

    Only complete lines are considered, so a half-written item is never shown.
    """
    normalized = normalize_newlines(text)
    cut = normalized.rfind("\n")
    if cut == -1:
        return []

    out: List[Suggestion] = []
    section: Optional[str] = None
    for line in normalized[:cut].split("\n"):
        if not line.strip():
            continue

        header = _LOOSE_HEADER_RE.match(line)
        if header:
            name = header.group(1).lower()
            if name.startswith(("insight", "key insight")):
                section = "insights"
            elif "action" in name or name == "next steps":
                section = "actions"
            else:
                section = "talking"
            continue

        m = _LOOSE_BULLET_RE.match(line)
        if not m or section == "insights":
            continue
        label = clip_words(m.group(1).strip("*_ "), max_label_words)
        if not label:
            continue

        if section == "actions":
            out.append(Suggestion(f"partial-action-{len(out)}", "action", label))
        else:
            out.append(Suggestion(f"partial-talking-{len(out)}", talking_point_kind(label), label))
        if len(out) >= limit:
            break
    return out
