"""
Marker reconciliation.

Keeps the set of markers a map client has already drawn and turns each new
snapshot into the smallest change set: ids that vanished are removed, new
ids are added, and ids whose position or style changed (selection included)
are updated in place rather than removed and re-added.
"""
import math
from typing import Dict, Optional, Sequence, Tuple

from .models import Incident, MarkerDiff, MarkerState, MarkerStyle, Severity

DEFAULT_CENTER = (20.5937, 78.9629)

SEVERITY_COLORS = {
    Severity.HIGH: "#f472b6",
    Severity.MEDIUM: "#a78bfa",
    Severity.LOW: "#7c3aed",
    Severity.UNKNOWN: "#64748b",
}
# stand-in scores for sizing markers that carry no risk score
SEVERITY_DEFAULT_SCORE = {
    Severity.HIGH: 85.0,
    Severity.MEDIUM: 55.0,
}


def marker_radius(incident: Incident) -> int:
    score = incident.risk_score
    if score is None:
        score = SEVERITY_DEFAULT_SCORE.get(incident.severity, 25.0)
    adjustment = min(20.0, max(0.0, score / 4))
    return max(6, min(30, math.floor(8 + adjustment + 0.5)))


def marker_style(incident: Incident, selected: bool = False) -> MarkerStyle:
    color = SEVERITY_COLORS.get(incident.severity, SEVERITY_COLORS[Severity.UNKNOWN])
    radius = marker_radius(incident)
    if selected:
        return MarkerStyle(color=color, radius=radius, weight=3, outline="#fff", fill_opacity=1.0)
    return MarkerStyle(color=color, radius=radius)


def map_center(points: Sequence[Incident]) -> Tuple[float, float]:
    valid = [p for p in points if p.lat is not None and p.lon is not None]
    if not valid:
        return DEFAULT_CENTER
    return (sum(p.lat for p in valid) / len(valid),
            sum(p.lon for p in valid) / len(valid))


class MarkerLayer:

    def __init__(self):
        self._markers: Dict[str, MarkerState] = {}
        self._selected: Optional[str] = None

    @property
    def markers(self) -> Dict[str, MarkerState]:
        return dict(self._markers)

    @property
    def selected(self) -> Optional[str]:
        return self._selected

    def select(self, incident_id: Optional[str]) -> bool:
        """Select a tracked marker; the restyle shows up in the next diff."""
        if incident_id is None:
            self._selected = None
            return True
        if incident_id not in self._markers:
            return False
        self._selected = incident_id
        return True

    def clear_selection(self) -> None:
        self._selected = None

    def reset(self) -> None:
        self._markers.clear()
        self._selected = None

    def reconcile(self, snapshot: Sequence[Incident]) -> MarkerDiff:
        diff = MarkerDiff()
        current = {p.id: p for p in snapshot if p.lat is not None and p.lon is not None}

        for marker_id in list(self._markers):
            if marker_id not in current:
                del self._markers[marker_id]
                diff.removed.append(marker_id)

        if self._selected is not None and self._selected not in current:
            self._selected = None

        for marker_id, incident in current.items():
            selected = marker_id == self._selected
            state = MarkerState(
                id=marker_id,
                lat=incident.lat,
                lon=incident.lon,
                severity=incident.severity,
                title=incident.title,
                source=incident.source,
                style=marker_style(incident, selected),
                selected=selected,
            )
            previous = self._markers.get(marker_id)
            if previous is None:
                diff.added.append(state)
            elif previous != state:
                diff.updated.append(state)
            self._markers[marker_id] = state

        return diff
