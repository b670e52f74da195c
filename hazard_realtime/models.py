from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    UNKNOWN = "Unknown"


class SeverityThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    high: float = 70
    medium: float = 40


class Incident(BaseModel):
    """Canonical hazard report point. Only valid records ever reach the table."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    risk_score: Optional[float] = Field(default=None, alias="riskScore")
    severity: Severity = Severity.UNKNOWN
    title: str = "Incident"
    timestamp_iso: Optional[str] = Field(default=None, alias="timestampIso")
    source: str = "unknown"
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def date(self) -> Optional[str]:
        return self.timestamp_iso[:10] if self.timestamp_iso else None


# =========================
# Validation / quality
# =========================

class IssueCode(str, Enum):
    # fatal: the record never reaches the table
    EMPTY_RECORD = "EmptyRecord"
    MISSING_COORDINATES = "MissingCoordinates"
    COORDINATES_OUT_OF_RANGE = "CoordinatesOutOfRange"
    MALFORMED_RECORD = "MalformedRecord"
    # soft: the record is kept
    MISSING_ID = "MissingId"
    INVALID_TIMESTAMP = "InvalidTimestamp"
    UNKNOWN_SEVERITY = "UnknownSeverity"


FATAL_ISSUES = frozenset({
    IssueCode.EMPTY_RECORD,
    IssueCode.MISSING_COORDINATES,
    IssueCode.COORDINATES_OUT_OF_RANGE,
    IssueCode.MALFORMED_RECORD,
})


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: IssueCode
    message: str

    @property
    def fatal(self) -> bool:
        return self.code in FATAL_ISSUES


class NormalizationResult(BaseModel):
    incident: Optional[Incident] = None
    issues: List[ValidationIssue] = Field(default_factory=list)
    raw: Any = None

    @property
    def valid(self) -> bool:
        return self.incident is not None and not self.fatal

    @property
    def fatal(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.fatal]

    @property
    def soft(self) -> List[ValidationIssue]:
        return [i for i in self.issues if not i.fatal]

    @property
    def codes(self) -> List[IssueCode]:
        return [i.code for i in self.issues]


class SourceQuality(BaseModel):
    total: int = 0
    invalid: int = 0


class RejectedRecord(BaseModel):
    id: Optional[str] = None
    source: str
    issues: List[ValidationIssue]


class QualitySummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    valid: int = 0
    invalid: int = 0
    per_source: Dict[str, SourceQuality] = Field(default_factory=dict, alias="perSource")
    issues: Dict[str, int] = Field(default_factory=dict)
    rejected: List[RejectedRecord] = Field(default_factory=list)


# =========================
# Analytics products
# =========================

class Centroid(BaseModel):
    lat: float
    lon: float


class HotspotCell(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cell_key: str = Field(alias="cellKey")
    x_idx: int = Field(alias="xIdx")
    y_idx: int = Field(alias="yIdx")
    centroid: Centroid
    counts_by_severity: Dict[str, int] = Field(alias="countsBySeverity")
    points: List[Incident] = Field(default_factory=list)

    @property
    def count_high(self) -> int:
        return self.counts_by_severity.get(Severity.HIGH.value, 0)

    @property
    def count_medium(self) -> int:
        return self.counts_by_severity.get(Severity.MEDIUM.value, 0)

    @property
    def total(self) -> int:
        return len(self.points)


class TrendBucket(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: str
    high: int = Field(default=0, alias="High")
    medium: int = Field(default=0, alias="Medium")
    low: int = Field(default=0, alias="Low")
    unknown: int = Field(default=0, alias="Unknown")

    @property
    def total(self) -> int:
        return self.high + self.medium + self.low + self.unknown


class AnomalyFlag(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["spike", "outlier"]
    date: Optional[str] = None
    message: str
    value: Optional[int] = None
    z_score: Optional[float] = Field(default=None, alias="zScore")


class AnomalyReport(BaseModel):
    anomalies: List[AnomalyFlag] = Field(default_factory=list)
    summary: str = ""
    status: Literal["ok", "insufficient_data"] = "ok"


# =========================
# Markers
# =========================

class MarkerStyle(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    color: str
    radius: int
    weight: float = 1.25
    outline: str = "#111"
    fill_opacity: float = Field(default=0.95, alias="fillOpacity")


class MarkerState(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    lat: float
    lon: float
    severity: Severity
    title: str
    source: str
    style: MarkerStyle
    selected: bool = False


class MarkerDiff(BaseModel):
    added: List[MarkerState] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    updated: List[MarkerState] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)


# =========================
# Feeds / wire
# =========================

class FeedStatus(BaseModel):
    """Health of one upstream feed; the staleness indicator shown to dashboards."""
    name: str
    kind: Literal["poll", "push"]
    connected: bool = False
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    batches: int = 0
    records: int = 0

    def record_success(self, n_records: int) -> None:
        self.last_success_at = _now()
        self.consecutive_failures = 0
        self.batches += 1
        self.records += n_records

    def record_failure(self, error: Any) -> None:
        self.last_failure_at = _now()
        self.last_error = str(error)
        self.consecutive_failures += 1

    def is_stale(self, max_age_s: float, now: Optional[datetime] = None) -> bool:
        if self.last_success_at is None:
            return True
        now = now or _now()
        return (now - self.last_success_at).total_seconds() > max_age_s


class WSMsg(BaseModel):
    type: str
    data: Dict[str, Any]
