"""
Shared factories for hazard_realtime tests.
"""

import pytest

from hazard_realtime.models import Incident, Severity


def make_incident(id="i1", lat=19.07, lon=72.87, severity=Severity.HIGH,
                  timestamp_iso="2024-03-01T10:00:00Z", risk_score=None,
                  source="test", title="Incident", details=None):
    return Incident(
        id=id,
        lat=lat,
        lon=lon,
        severity=severity,
        timestamp_iso=timestamp_iso,
        risk_score=risk_score,
        source=source,
        title=title,
        details=details or {},
    )


def raw_record(id="r1", lat=19.07, lon=72.87, severity="high", **extra):
    """Raw feed payload in the common lat/lon shape."""
    rec = {"id": id, "lat": lat, "lon": lon, "severity": severity}
    rec.update(extra)
    return rec


@pytest.fixture
def incident_factory():
    return make_incident


@pytest.fixture
def raw_factory():
    return raw_record
