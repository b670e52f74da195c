"""
Raw incident payload -> canonical Incident.

Upstream payloads disagree on field names (lat / latitude / location.lat),
on how severity is written ("high", "H", "3", a numeric score) and on
timestamps. Each field is resolved by an ordered list of extractors; the
first one that yields a usable value wins.

Coordinate problems are fatal (no Incident is produced). A missing id, an
unparseable timestamp or an undeterminable severity are soft: the Incident
is produced and the issue is reported next to it.
"""
import logging
import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .models import (
    Incident,
    IssueCode,
    NormalizationResult,
    Severity,
    SeverityThresholds,
    ValidationIssue,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = SeverityThresholds()

SEVERITY_TOKENS: Dict[str, Severity] = {
    "high": Severity.HIGH, "h": Severity.HIGH, "3": Severity.HIGH,
    "medium": Severity.MEDIUM, "m": Severity.MEDIUM, "2": Severity.MEDIUM,
    "low": Severity.LOW, "l": Severity.LOW, "1": Severity.LOW,
}

_CANONICAL_SEVERITY = {s.value.lower(): s for s in Severity}

# textual `risk` values mapped onto representative scores
RISK_TEXT_SCORES = {"high": 85.0, "medium": 55.0, "low": 20.0}

COORDINATE_FIELDS: List[Tuple[str, str]] = [
    ("lat", "lon"),
    ("lat", "lng"),
    ("latitude", "longitude"),
    ("location.lat", "location.lon"),
    ("location.lat", "location.lng"),
    ("latLng.lat", "latLng.lng"),
]
ID_FIELDS = ["id", "_id"]
SCORE_FIELDS = ["riskScore", "risk_score", "score"]
SEVERITY_FIELDS = ["severity", "category"]
TIMESTAMP_FIELDS = ["timestamp", "time", "timestampIso", "timestamp_iso"]
TITLE_FIELDS = ["title", "type", "event"]
DETAIL_FIELDS = ["details", "props", "meta"]
SOURCE_FIELDS = ["source", "sourceId"]


# =========================
# Coercion helpers
# =========================

def safe_num(value: Any) -> Optional[float]:
    """Finite float or None. Booleans, blank strings and ints beyond float range are not numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _dig(raw: Mapping[str, Any], path: str) -> Any:
    node: Any = raw
    for part in path.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _first(raw: Mapping[str, Any], fields: Iterable[str],
           convert: Callable[[Any], Any] = lambda v: v) -> Any:
    for field in fields:
        value = convert(_dig(raw, field))
        if value is not None:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Enum):
        value = value.value
    text = str(value).strip()
    return text or None


def _iso_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[str]:
    """
    Parse a timestamp into a UTC ISO-8601 string ending in "Z".

    Accepts datetimes, ISO strings (date-only or date-time, "Z" allowed)
    and epoch numbers (milliseconds above 1e11, otherwise seconds).
    Returns None when the value cannot be read as a point in time.
    """
    if isinstance(value, datetime):
        return _iso_z(value)
    number = safe_num(value)
    if number is not None:
        seconds = number / 1000.0 if abs(number) > 1e11 else number
        try:
            return _iso_z(datetime.fromtimestamp(seconds, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return _iso_z(datetime.fromisoformat(text))
    except ValueError:
        return None


def categorize_risk(score: Optional[float],
                    thresholds: SeverityThresholds = DEFAULT_THRESHOLDS) -> Severity:
    if score is None:
        return Severity.UNKNOWN
    if score >= thresholds.high:
        return Severity.HIGH
    if score >= thresholds.medium:
        return Severity.MEDIUM
    return Severity.LOW


# =========================
# Field extractors
# =========================

def extract_coordinates(raw: Mapping[str, Any]) -> Optional[Tuple[float, float]]:
    for lat_field, lon_field in COORDINATE_FIELDS:
        lat = safe_num(_dig(raw, lat_field))
        lon = safe_num(_dig(raw, lon_field))
        if lat is not None and lon is not None:
            return lat, lon
    return None


def extract_risk_score(raw: Mapping[str, Any]) -> Optional[float]:
    score = _first(raw, SCORE_FIELDS, safe_num)
    if score is not None:
        return score

    risk = raw.get("risk")
    score = safe_num(risk)
    if score is None and isinstance(risk, str):
        score = RISK_TEXT_SCORES.get(risk.strip().lower())
    if score is not None:
        return score

    # a numeric severity that is not one of the 1/2/3 tokens is a score
    for field in SEVERITY_FIELDS:
        value = raw.get(field)
        text = _text(value)
        if text is not None and text.lower() not in SEVERITY_TOKENS:
            score = safe_num(value)
            if score is not None:
                return score
    return None


def extract_severity_token(raw: Mapping[str, Any]) -> Optional[Severity]:
    for field in SEVERITY_FIELDS:
        text = _text(raw.get(field))
        if text is None:
            continue
        severity = SEVERITY_TOKENS.get(text.lower())
        if severity is None:
            # a canonical value coming back round ("High", "Unknown")
            severity = _CANONICAL_SEVERITY.get(text.lower())
        if severity is not None and severity is not Severity.UNKNOWN:
            return severity
    return None


# =========================
# Normalize
# =========================

def normalize(raw: Any,
              thresholds: SeverityThresholds = DEFAULT_THRESHOLDS,
              default_source: str = "unknown") -> NormalizationResult:
    issues: List[ValidationIssue] = []

    if not isinstance(raw, Mapping):
        issues.append(ValidationIssue(code=IssueCode.EMPTY_RECORD, message="empty or non-object record"))
        return NormalizationResult(incident=None, issues=issues, raw=raw)

    coords = extract_coordinates(raw)
    if coords is None:
        issues.append(ValidationIssue(code=IssueCode.MISSING_COORDINATES,
                                      message="missing/invalid coordinates"))
        return NormalizationResult(incident=None, issues=issues, raw=raw)

    lat, lon = coords
    if not -90 <= lat <= 90:
        issues.append(ValidationIssue(code=IssueCode.COORDINATES_OUT_OF_RANGE,
                                      message=f"lat out of range: {lat}"))
    if not -180 <= lon <= 180:
        issues.append(ValidationIssue(code=IssueCode.COORDINATES_OUT_OF_RANGE,
                                      message=f"lon out of range: {lon}"))
    if issues:
        return NormalizationResult(incident=None, issues=issues, raw=raw)

    incident_id = _first(raw, ID_FIELDS, _text)
    if incident_id is None:
        incident_id = f"{lat}-{lon}-{uuid.uuid4().hex[:6]}"
        issues.append(ValidationIssue(code=IssueCode.MISSING_ID,
                                      message=f"missing id, synthesized {incident_id}"))

    risk_score = extract_risk_score(raw)
    severity = extract_severity_token(raw)
    if severity is None:
        severity = categorize_risk(risk_score, thresholds)
    if severity is Severity.UNKNOWN:
        issues.append(ValidationIssue(code=IssueCode.UNKNOWN_SEVERITY,
                                      message="no severity text or risk score"))

    timestamp_iso = None
    raw_time = _first(raw, TIMESTAMP_FIELDS)
    if raw_time is not None and raw_time != "":
        timestamp_iso = parse_timestamp(raw_time)
        if timestamp_iso is None:
            issues.append(ValidationIssue(code=IssueCode.INVALID_TIMESTAMP,
                                          message=f"invalid timestamp: {raw_time!r}"))

    details = _first(raw, DETAIL_FIELDS)
    incident = Incident(
        id=incident_id,
        lat=lat,
        lon=lon,
        risk_score=risk_score,
        severity=severity,
        title=_first(raw, TITLE_FIELDS, _text) or "Incident",
        timestamp_iso=timestamp_iso,
        source=_first(raw, SOURCE_FIELDS, _text) or default_source,
        details=dict(details) if isinstance(details, Mapping) else {},
    )

    for issue in issues:
        logger.debug("[Normalize] %s: %s", incident.id, issue.message)
    return NormalizationResult(incident=incident, issues=issues, raw=raw)


def extract_source(raw: Any, default: str = "unknown") -> str:
    """Source label for quality accounting, also for records that fail."""
    if not isinstance(raw, Mapping):
        return default
    return _first(raw, SOURCE_FIELDS, _text) or default
