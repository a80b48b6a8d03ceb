"""
PDF Normalization

Shared text cleanup, status/severity normalization, sorting and KPI math used
by every proof-pack PDF so the documents agree with each other.
"""

import os
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}

_ASCII_CONTROL = re.compile(r"[\x00-\x1f\x7f]")
_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_BROKEN_GLYPH = re.compile("[\ufffd-\uffff]")
_PRIVATE_USE = re.compile("[\ue000-\uf8ff]")
_DASHES = re.compile("[\u2010-\u2015\u2212]")
_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# TEXT
# =============================================================================

def _is_noncharacter(cp: int) -> bool:
    return 0xFDD0 <= cp <= 0xFDEF or (cp & 0xFFFF) in (0xFFFE, 0xFFFF)


def sanitize_text(text: Optional[str]) -> str:
    """NFKC-normalize and strip control/format/private-use characters and noncharacters."""
    if not text:
        return ""
    sanitized = unicodedata.normalize("NFKC", str(text))
    sanitized = "".join(
        ch for ch in sanitized
        if unicodedata.category(ch) not in ("Cc", "Cf", "Co") or ch in "\t\n\r"
    )
    sanitized = "".join(ch for ch in sanitized if not _is_noncharacter(ord(ch)))
    sanitized = sanitized.replace("\u2028", " ").replace("\u2029", " ").replace("\ufffd", "-")
    sanitized = _DASHES.sub("-", sanitized)
    sanitized = sanitized.replace("\u2018", "'").replace("\u2019", "'")
    sanitized = sanitized.replace("\u201c", '"').replace("\u201d", '"')
    return _WHITESPACE.sub(" ", sanitized).strip()


def assert_no_bad_chars(text: str, context: Optional[str] = None):
    """Raise ValueError if text still holds characters that render as broken glyphs. PDF_STRICT=0 disables."""
    if os.environ.get("PDF_STRICT") == "0":
        return

    errors = []
    controls = _ASCII_CONTROL.findall(text)
    if controls:
        errors.append("ASCII control characters: " + ", ".join(f"\\u{ord(c):04x}" for c in controls))
    if _ZERO_WIDTH.search(text):
        errors.append("Zero-width characters detected")
    if _BROKEN_GLYPH.search(text):
        errors.append("Unicode replacement/broken glyph characters (U+FFFD-U+FFFF)")
    if _PRIVATE_USE.search(text):
        errors.append("Private-use area characters (U+E000-U+F8FF)")
    if any(unicodedata.category(ch) in ("Cc", "Cf", "Co") for ch in text):
        errors.append("Unicode Control/Format/Private-use category characters")

    if errors:
        context_msg = f" ({context})" if context else ""
        raise ValueError(f"PDF text forbidden chars{context_msg}: {', '.join(errors)}")


def safe_text_for_pdf(text: Optional[str], context: Optional[str] = None) -> str:
    sanitized = sanitize_text(text)
    assert_no_bad_chars(sanitized, context)
    return sanitized


def truncate_text(text: Optional[str], max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_hash_short(value: Optional[str], length: int = 16) -> str:
    if not value:
        return "N/A"
    if len(value) <= length:
        return value
    return value[:length] + "..."


# =============================================================================
# DATES
# =============================================================================

def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def format_date(value: Any, style: str = "short") -> str:
    """short: 'Jan 5, 2025'; long: 'January 5, 2025 03:04 PM'; iso. 'N/A' when unparseable."""
    parsed = _parse_datetime(value)
    if parsed is None:
        return "N/A"
    if style == "iso":
        return parsed.isoformat()
    if style == "long":
        return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year} {parsed.strftime('%I:%M %p')}"
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"


def format_datetime(value: Any) -> str:
    return format_date(value, "long")


# =============================================================================
# STATUS / SEVERITY
# =============================================================================

def normalize_control_status(status: Optional[str]) -> str:
    normalized = (status or "").lower().strip()
    if normalized in ("completed", "done", "verified"):
        return "completed"
    return "pending"


def normalize_attestation_status(status: Optional[str]) -> str:
    normalized = (status or "").lower().strip()
    if normalized in ("completed", "signed", "verified"):
        return "completed"
    return "pending"


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def is_control_overdue(status: Optional[str], due_date: Any, now: Optional[datetime] = None) -> bool:
    if normalize_control_status(status) == "completed":
        return False
    due = _parse_datetime(due_date)
    if due is None:
        return False
    now = now or datetime.now(timezone.utc)
    return _as_aware(due) < _as_aware(now)


def normalize_severity(severity: Optional[str]) -> str:
    normalized = (severity or "info").lower().strip()
    if normalized in ("critical", "crit"):
        return "critical"
    if normalized in ("high", "h"):
        return "high"
    if normalized in ("medium", "med", "m"):
        return "medium"
    if normalized in ("low", "l"):
        return "low"
    return "info"


def is_high_severity(severity: Optional[str]) -> bool:
    return normalize_severity(severity) in ("high", "critical")


def compare_severity(a: Optional[str], b: Optional[str]) -> int:
    """Negative when a is more severe than b."""
    return SEVERITY_ORDER[normalize_severity(a)] - SEVERITY_ORDER[normalize_severity(b)]


# =============================================================================
# SORTING / KPIs
# =============================================================================

def sort_controls(controls: List[Dict[str, Any]], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Overdue first, then high severity, then due date ascending (undated last)."""
    def key(control):
        overdue = is_control_overdue(control.get("status_at_export"), control.get("due_date"), now)
        due = _parse_datetime(control.get("due_date"))
        due_ts = _as_aware(due).timestamp() if due else float("inf")
        return (0 if overdue else 1, 0 if is_high_severity(control.get("severity")) else 1, due_ts)

    return sorted(controls, key=key)


def sort_attestations(attestations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Pending first, then most recently attested."""
    def key(attestation):
        completed = normalize_attestation_status(attestation.get("status_at_export")) == "completed"
        attested = _parse_datetime(attestation.get("attested_at"))
        return (1 if completed else 0, -(_as_aware(attested).timestamp() if attested else 0))

    return sorted(attestations, key=key)


def calculate_control_kpis(controls: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, int]:
    completed = sum(1 for c in controls if normalize_control_status(c.get("status_at_export")) == "completed")
    return {
        "total": len(controls),
        "completed": completed,
        "pending": len(controls) - completed,
        "overdue": sum(1 for c in controls if is_control_overdue(c.get("status_at_export"), c.get("due_date"), now)),
        "high_severity": sum(1 for c in controls if is_high_severity(c.get("severity"))),
    }


def calculate_attestation_kpis(attestations: List[Dict[str, Any]]) -> Dict[str, int]:
    completed = sum(
        1 for a in attestations if normalize_attestation_status(a.get("status_at_export")) == "completed"
    )
    return {"total": len(attestations), "completed": completed, "pending": len(attestations) - completed}


def active_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (filters or {}).items() if v not in (None, "")}


def format_filter_context(filters: Optional[Dict[str, Any]]) -> str:
    active = active_filters(filters)
    if not active:
        return "No filters applied"
    return ", ".join(f"{key.replace('_', ' ')}: {value}" for key, value in active.items())
