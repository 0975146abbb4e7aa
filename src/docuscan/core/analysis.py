"""
Derive structured letter data from a scan's analysis payload.

The analysis worker stores its answer as free text in
``analysis["content"][0]["text"]``. That text holds a JSON object, usually
wrapped in a fenced code block. Anything that does not decode to a JSON
object is treated as unavailable.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from .errors import ParseFailure
from .models import Scan
from ..utils.log_utils import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

URGENCY_LEVELS = ("low", "medium", "high")

# Reply templates the webhook knows how to write, keyed by template type.
TEMPLATE_LABELS: Dict[str, str] = {
    "bezwaar": "Object to the decision",
    "betalingsregeling": "Ask for a payment plan",
    "uitstel": "Ask for more time",
    "foto_opvragen": "Request photo evidence",
    "adresbevestiging": "Confirm address",
}

STILL_ANALYZING = "still analyzing"


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    UNAVAILABLE = "unavailable"
    READY = "ready"


def _text(data: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise ParseFailure(f"analysis field {key!r} is a {type(value).__name__}, expected text")
        return value
    return None


def _text_list(data: Mapping[str, Any], key: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ParseFailure(f"analysis field {key!r} must be a list of strings")
    return [item for item in value if item]


@dataclass(frozen=True)
class ParsedAnalysis:
    summary: str = ""
    sender: Optional[str] = None
    type: Optional[str] = None
    deadline: Optional[str] = None
    amount: Optional[float] = None
    urgency: str = "low"
    templates: List[str] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParsedAnalysis":
        """
        Build from the decoded JSON object.

        Raises:
            ParseFailure: if a text or list field holds a value of the wrong type.
        """
        urgency = str(data.get("urgency") or "low").lower()
        if urgency not in URGENCY_LEVELS:
            urgency = "low"
        amount = data.get("amount")
        if isinstance(amount, bool):
            amount = None
        elif amount is not None:
            try:
                amount = float(amount)
            except (TypeError, ValueError):
                amount = None
        return cls(
            summary=_text(data, "summary_ua", "summary") or "",
            sender=_text(data, "sender"),
            type=_text(data, "type"),
            deadline=_text(data, "deadline"),
            amount=amount,
            urgency=urgency,
            templates=_text_list(data, "templates"),
            steps=_text_list(data, "steps"),
            raw=dict(data),
        )


def _analysis_text(analysis: Mapping[str, Any]) -> str:
    content = analysis.get("content")
    if not isinstance(content, list) or not content:
        raise ParseFailure("analysis has no content entries")
    first = content[0]
    text = first.get("text") if isinstance(first, Mapping) else None
    if not isinstance(text, str):
        raise ParseFailure("analysis content[0] has no text")
    return text


def extract_analysis(analysis: Mapping[str, Any]) -> ParsedAnalysis:
    """
    Decode the JSON object embedded in an analysis payload.

    Raises:
        ParseFailure: if the payload has no text or the text is not a JSON object.
    """
    text = _analysis_text(analysis)
    match = _FENCE_RE.search(text)
    candidate = match.group(1).strip() if match else text.strip()
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as err:
        raise ParseFailure(f"analysis text is not valid JSON: {err}")
    if not isinstance(data, dict):
        raise ParseFailure(f"analysis JSON is a {type(data).__name__}, expected an object")
    return ParsedAnalysis.from_dict(data)


def parse_analysis(analysis: Optional[Mapping[str, Any]], scan_id: Optional[str] = None) -> Optional[ParsedAnalysis]:
    """Return the parsed analysis, or None when it is absent or unreadable."""
    if not analysis:
        logger.debug("Scan %s not analyzed yet", scan_id)
        return None
    try:
        return extract_analysis(analysis)
    except ParseFailure as err:
        logger.warning("Unreadable analysis for scan %s: %s", scan_id, err)
        return None


def analysis_status(scan: Scan) -> AnalysisStatus:
    if not scan.has_analysis:
        return AnalysisStatus.PENDING
    try:
        extract_analysis(scan.analysis)
    except ParseFailure as err:
        logger.warning("Unreadable analysis for scan %s: %s", scan.id, err)
        return AnalysisStatus.UNAVAILABLE
    return AnalysisStatus.READY


def display_status(scan: Scan) -> str:
    """User-facing status; unreadable payloads look like pending ones."""
    if analysis_status(scan) is AnalysisStatus.READY:
        return "analyzed"
    return STILL_ANALYZING


def calendar_url(sender: str, deadline: str, summary: str) -> str:
    """Google Calendar 'create event' link for a letter deadline (YYYYMMDD or ISO date)."""
    day = deadline.replace("-", "")
    title = quote(f"Deadline: {sender}", safe="")
    details = quote(summary, safe="")
    return (
        "https://calendar.google.com/calendar/render?action=TEMPLATE"
        f"&text={title}&dates={day}/{day}&details={details}"
    )
