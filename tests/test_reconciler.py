"""
Tests for the canonical incident table.

- Upsert by id, last writer wins
- Snapshot immutability and delivery to subscribers
- Quality accounting per source
- Re-entrant merges and teardown
"""

import json

import pytest

from hazard_realtime import reconciler as reconciler_module

from hazard_realtime.models import IssueCode, Severity
from hazard_realtime.reconciler import IncidentReconciler


@pytest.fixture
def reconciler():
    return IncidentReconciler()


class TestMerge:
    """Upsert semantics."""

    def test_inserts_valid_records(self, reconciler, raw_factory):
        snap = reconciler.merge([raw_factory("a"), raw_factory("b")], source="poll")
        assert [i.id for i in snap] == ["a", "b"]
        assert len(reconciler) == 2
        assert "a" in reconciler

    def test_last_write_wins(self, reconciler, raw_factory):
        reconciler.merge([raw_factory("a", severity="low")], source="poll")
        reconciler.merge([raw_factory("a", severity="high")], source="push")
        assert len(reconciler) == 1
        assert reconciler.get("a").severity is Severity.HIGH

    def test_update_moves_to_end(self, reconciler, raw_factory):
        reconciler.merge([raw_factory("a"), raw_factory("b")])
        snap = reconciler.merge([raw_factory("a", severity="low")])
        assert [i.id for i in snap] == ["b", "a"]

    def test_invalid_records_never_enter(self, reconciler, raw_factory):
        snap = reconciler.merge([raw_factory("a"), {"id": "bad"}, None])
        assert [i.id for i in snap] == ["a"]

    def test_single_mapping_is_a_batch(self, reconciler, raw_factory):
        snap = reconciler.merge(raw_factory("solo"))
        assert [i.id for i in snap] == ["solo"]

    def test_empty_batch_still_versions(self, reconciler):
        reconciler.merge([])
        assert reconciler.version == 1
        assert reconciler.snapshot() == ()

    def test_replace_drops_absent_ids(self, reconciler, raw_factory):
        reconciler.merge([raw_factory("a"), raw_factory("b")])
        snap = reconciler.replace([raw_factory("c")])
        assert [i.id for i in snap] == ["c"]


class TestSnapshots:
    """Snapshot delivery."""

    def test_old_snapshot_unchanged(self, reconciler, raw_factory):
        first = reconciler.merge([raw_factory("a")])
        reconciler.merge([raw_factory("b")])
        assert [i.id for i in first] == ["a"]

    def test_subscribers_receive_each_snapshot(self, reconciler, raw_factory):
        seen = []
        reconciler.on_snapshot(lambda s: seen.append([i.id for i in s]))
        reconciler.merge([raw_factory("a")])
        reconciler.merge([raw_factory("b")])
        assert seen == [["a"], ["a", "b"]]

    def test_unsubscribe(self, reconciler, raw_factory):
        seen = []
        unsubscribe = reconciler.on_snapshot(seen.append)
        unsubscribe()
        reconciler.merge([raw_factory("a")])
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self, reconciler, raw_factory):
        seen = []

        def broken(_):
            raise RuntimeError("boom")

        reconciler.on_snapshot(broken)
        reconciler.on_snapshot(seen.append)
        reconciler.merge([raw_factory("a")])
        assert len(seen) == 1
        assert "a" in reconciler

    def test_reentrant_merge_is_queued(self, reconciler, raw_factory):
        seen = []

        def echo(snap):
            seen.append(tuple(i.id for i in snap))
            if len(snap) == 1:
                reconciler.merge([raw_factory("b")])

        reconciler.on_snapshot(echo)
        reconciler.merge([raw_factory("a")])
        assert seen == [("a",), ("a", "b")]
        assert reconciler.version == 2


class TestQuality:
    """Quality counters."""

    def test_counts(self, reconciler, raw_factory):
        reconciler.merge([raw_factory("a"), {"id": "x"}, raw_factory("b", lat=200)], source="poll")
        q = reconciler.quality()
        assert (q.total, q.valid, q.invalid) == (3, 1, 2)
        assert q.per_source["poll"].total == 3
        assert q.per_source["poll"].invalid == 2
        assert q.issues[IssueCode.MISSING_COORDINATES.value] == 1
        assert q.issues[IssueCode.COORDINATES_OUT_OF_RANGE.value] == 1

    def test_rejected_history(self, raw_factory):
        r = IncidentReconciler(rejected_history=2)
        r.merge([{"id": str(n)} for n in range(5)], source="push")
        rejected = r.quality().rejected
        assert [x.id for x in rejected] == ["3", "4"]
        assert all(x.source == "push" for x in rejected)

    def test_invalid_counted_under_record_source(self, reconciler):
        reconciler.merge([{"id": "x", "source": "cam"}], source="poll")
        q = reconciler.quality()
        assert q.per_source["cam"].invalid == 1
        assert "poll" not in q.per_source

    def test_quality_totals_add_up(self, reconciler, raw_factory):
        reconciler.merge([raw_factory("a"), None, {}])
        q = reconciler.quality()
        assert q.valid + q.invalid == q.total


class TestClose:
    """Teardown."""

    def test_merge_after_close_is_discarded(self, reconciler, raw_factory):
        seen = []
        reconciler.on_snapshot(seen.append)
        reconciler.merge([raw_factory("a")])
        reconciler.close()
        snap = reconciler.merge([raw_factory("b")])
        assert reconciler.closed
        assert [i.id for i in snap] == ["a"]
        assert len(seen) == 1


HUGE = json.loads('{"id": "big", "lat": 1' + "0" * 400 + ', "lon": 2}')


class TestUnreadableRecords:
    """One bad record never aborts the rest of its batch."""

    def test_huge_int_record_is_rejected(self, reconciler, raw_factory):
        snap = reconciler.merge([raw_factory("ok"), HUGE, raw_factory("ok2")], source="poll")
        assert [i.id for i in snap] == ["ok", "ok2"]
        q = reconciler.quality()
        assert (q.total, q.valid, q.invalid) == (3, 2, 1)
        assert q.rejected[0].id == "big"

    def test_normalize_crash_becomes_rejection(self, reconciler, raw_factory, monkeypatch):
        real = reconciler_module.normalize

        def flaky(raw, *args, **kwargs):
            if raw.get("id") == "boom":
                raise RuntimeError("parser bug")
            return real(raw, *args, **kwargs)

        monkeypatch.setattr(reconciler_module, "normalize", flaky)
        snap = reconciler.merge([raw_factory("a"), raw_factory("boom"), raw_factory("b")], source="push")
        assert [i.id for i in snap] == ["a", "b"]
        q = reconciler.quality()
        assert q.invalid == 1
        assert q.issues[IssueCode.MALFORMED_RECORD.value] == 1
        assert q.rejected[0].id == "boom"
        assert q.per_source["push"].invalid == 1
        assert reconciler.version == 1
