"""
Data model for scans and the change events that reach the client.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

DEFAULT_LANGUAGE = "uk"

# Codes accepted by the scans.language column, with their display labels.
LANGUAGES: Dict[str, str] = {
    "uk": "Українська",
    "ru": "Русский",
    "en": "English",
    "pl": "Polski",
    "tr": "Türkçe",
    "de": "Deutsch",
    "fr": "Français",
    "es": "Español",
    "ar": "العربية",
}


def validate_language(code: str) -> str:
    if code not in LANGUAGES:
        raise ValueError(f"Unsupported language code {code!r}; expected one of {', '.join(LANGUAGES)}")
    return code


def language_label(code: str) -> str:
    """Return the display label for a language code, or the code itself if unknown."""
    return LANGUAGES.get(code, code)


def parse_timestamp(value: Any) -> datetime:
    """Parse a database timestamp into an aware datetime (naive values are taken as UTC)."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class SessionContext:
    """The authenticated owner and the language chosen for new scans."""
    owner_id: str
    language: str = DEFAULT_LANGUAGE

    def __post_init__(self):
        if not self.owner_id:
            raise ValueError("owner_id must not be empty")
        validate_language(self.language)


@dataclass(frozen=True)
class Scan:
    """A stored letter image plus its eventual analysis payload."""
    id: str
    image_url: str
    created_at: datetime
    language: str = DEFAULT_LANGUAGE
    user_id: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = field(default=None, compare=True, hash=False)

    @property
    def has_analysis(self) -> bool:
        return bool(self.analysis)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Scan":
        """Build a Scan from a scans-table row (select result or change-feed record)."""
        scan_id = row.get("id")
        if not scan_id:
            raise ValueError(f"Scan row without id: {dict(row)!r}")
        analysis = row.get("analysis")
        if analysis is not None and not isinstance(analysis, dict):
            # json columns occasionally come back as a string
            analysis = {"content": [{"text": str(analysis)}]}
        return cls(
            id=str(scan_id),
            image_url=row.get("image_url") or "",
            created_at=parse_timestamp(row.get("created_at")),
            language=row.get("language") or DEFAULT_LANGUAGE,
            user_id=row.get("user_id"),
            analysis=analysis or None,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image_url": self.image_url,
            "created_at": self.created_at.isoformat(),
            "language": self.language,
            "user_id": self.user_id,
            "analysis": self.analysis,
        }


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ScanChange:
    """One event from the push channel. ``scan`` is None for deletes."""
    kind: ChangeKind
    scan_id: str
    scan: Optional[Scan] = None


class AnalysisState(str, Enum):
    UNANALYZED = "unanalyzed"
    ANALYZED = "analyzed"
