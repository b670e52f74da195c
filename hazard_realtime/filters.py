from typing import FrozenSet, List, Optional, Sequence

from pydantic import BaseModel, Field

from .models import Incident, Severity

ALL_SEVERITIES = frozenset(Severity)

SEARCH_DETAIL_KEYS = ("note", "platform", "officerId")


class IncidentFilter(BaseModel):
    q: str = ""
    severities: FrozenSet[Severity] = Field(default=ALL_SEVERITIES)
    source: str = "all"
    start: Optional[str] = None
    end: Optional[str] = None


def _haystack(incident: Incident) -> str:
    fields = [incident.id, incident.source, incident.title, incident.severity.value]
    fields += [str(incident.details.get(k) or "") for k in SEARCH_DETAIL_KEYS]
    return " ".join(fields).lower()


def matches(incident: Incident, f: IncidentFilter) -> bool:
    if f.q and f.q.lower() not in _haystack(incident):
        return False
    if incident.severity not in f.severities:
        return False
    if f.source != "all" and incident.source != f.source:
        return False
    if f.start or f.end:
        ts = incident.timestamp_iso
        if ts is None:
            return False
        if f.start and ts < f.start:
            return False
        # date-only upper bounds include the whole day
        if f.end and ts[:len(f.end)] > f.end:
            return False
    return True


def apply_filters(snapshot: Sequence[Incident], f: Optional[IncidentFilter] = None) -> List[Incident]:
    if f is None:
        return list(snapshot)
    return [p for p in snapshot if matches(p, f)]
