"""
Tests for marker reconciliation.

- Minimal diffs between snapshots
- Selection restyling
- Marker sizing and map centre
"""

import pytest

from hazard_realtime.markers import (
    DEFAULT_CENTER,
    MarkerLayer,
    map_center,
    marker_radius,
    marker_style,
)
from hazard_realtime.models import Severity


@pytest.fixture
def layer():
    return MarkerLayer()


class TestReconcile:
    """Diffs between consecutive snapshots."""

    def test_first_snapshot_adds_everything(self, layer, incident_factory):
        diff = layer.reconcile([incident_factory("a"), incident_factory("b")])
        assert [m.id for m in diff.added] == ["a", "b"]
        assert diff.removed == [] and diff.updated == []

    def test_unchanged_snapshot_is_empty_diff(self, layer, incident_factory):
        snap = [incident_factory("a"), incident_factory("b")]
        layer.reconcile(snap)
        assert layer.reconcile(snap).is_empty

    def test_one_removal(self, layer, incident_factory):
        a, b, c = (incident_factory(x) for x in "abc")
        layer.reconcile([a, b, c])
        diff = layer.reconcile([a, c])
        assert diff.removed == ["b"]
        assert diff.added == []
        assert diff.updated == []
        assert set(layer.markers) == {"a", "c"}

    def test_moved_point_is_updated_not_readded(self, layer, incident_factory):
        layer.reconcile([incident_factory("a", lat=1, lon=1)])
        diff = layer.reconcile([incident_factory("a", lat=2, lon=1)])
        assert diff.added == [] and diff.removed == []
        assert [m.lat for m in diff.updated] == [2]

    def test_severity_change_restyles(self, layer, incident_factory):
        layer.reconcile([incident_factory("a", severity=Severity.LOW)])
        diff = layer.reconcile([incident_factory("a", severity=Severity.HIGH)])
        assert diff.updated[0].style.color == marker_style(incident_factory("a")).color

    def test_reset(self, layer, incident_factory):
        layer.reconcile([incident_factory("a")])
        layer.reset()
        assert [m.id for m in layer.reconcile([incident_factory("a")]).added] == ["a"]


class TestSelection:
    """Selected marker styling."""

    def test_select_unknown_id(self, layer):
        assert layer.select("ghost") is False
        assert layer.selected is None

    def test_selection_restyles_on_next_reconcile(self, layer, incident_factory):
        snap = [incident_factory("a"), incident_factory("b")]
        layer.reconcile(snap)
        assert layer.select("b")
        diff = layer.reconcile(snap)
        assert [m.id for m in diff.updated] == ["b"]
        styled = diff.updated[0]
        assert styled.selected
        assert styled.style.weight == 3
        assert styled.style.outline == "#fff"
        assert styled.style.fill_opacity == 1.0

    def test_switching_selection_updates_both(self, layer, incident_factory):
        snap = [incident_factory("a"), incident_factory("b")]
        layer.reconcile(snap)
        layer.select("a")
        layer.reconcile(snap)
        layer.select("b")
        diff = layer.reconcile(snap)
        assert sorted(m.id for m in diff.updated) == ["a", "b"]

    def test_removed_selection_is_cleared(self, layer, incident_factory):
        layer.reconcile([incident_factory("a"), incident_factory("b")])
        layer.select("a")
        layer.reconcile([incident_factory("b")])
        assert layer.selected is None

    def test_select_none_clears(self, layer, incident_factory):
        layer.reconcile([incident_factory("a")])
        layer.select("a")
        assert layer.select(None)
        assert layer.selected is None


class TestStyle:
    """Radius, colour and centre."""

    def test_radius_from_score(self, incident_factory):
        assert marker_radius(incident_factory(risk_score=0)) == 8
        assert marker_radius(incident_factory(risk_score=100)) == 28
        assert marker_radius(incident_factory(risk_score=1000)) == 28

    def test_radius_from_severity_default(self, incident_factory):
        assert marker_radius(incident_factory(severity=Severity.HIGH)) == 28
        assert marker_radius(incident_factory(severity=Severity.MEDIUM)) == 22
        assert marker_radius(incident_factory(severity=Severity.UNKNOWN)) == 14

    def test_default_style(self, incident_factory):
        style = marker_style(incident_factory())
        assert style.weight == 1.25
        assert style.outline == "#111"
        assert style.fill_opacity == 0.95

    def test_map_center(self, incident_factory):
        assert map_center([]) == DEFAULT_CENTER
        lat, lon = map_center([incident_factory("a", lat=10, lon=20), incident_factory("b", lat=20, lon=40)])
        assert (lat, lon) == (15, 30)
