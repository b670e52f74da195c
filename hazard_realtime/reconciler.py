"""
Canonical incident table.

The reconciler is the only writer. Poll and push feeds both hand their raw
batches to merge(); every item is normalized, invalid ones are counted in the
quality report and dropped, valid ones are upserted by id (last writer wins).
After each merge a snapshot - an immutable tuple of all incidents in
insertion/update order - is delivered synchronously to every subscriber.
"""
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from .models import (
    Incident,
    IssueCode,
    NormalizationResult,
    QualitySummary,
    RejectedRecord,
    SeverityThresholds,
    SourceQuality,
    ValidationIssue,
)
from .normalizer import DEFAULT_THRESHOLDS, extract_source, normalize

logger = logging.getLogger(__name__)

Snapshot = Tuple[Incident, ...]
SnapshotCallback = Callable[[Snapshot], None]


def _rejected_identity(raw: Any, default_source: str) -> Tuple[Optional[str], str]:
    """(id, source) of a rejected record, as far as they can be read."""
    try:
        raw_id = raw.get("id") if isinstance(raw, Mapping) else None
        return (None if raw_id is None else str(raw_id)), extract_source(raw, default_source)
    except ValueError:
        # int ids past the int->str digit limit
        return None, default_source


class IncidentReconciler:

    def __init__(self,
                 thresholds: SeverityThresholds = DEFAULT_THRESHOLDS,
                 rejected_history: int = 200):
        self.thresholds = thresholds
        self.version = 0
        self._table: Dict[str, Incident] = {}
        self._snapshot: Snapshot = ()
        self._subscribers: List[SnapshotCallback] = []
        self._pending: Deque[Tuple[str, List[Any], Optional[str]]] = deque()
        self._merging = False
        self._closed = False

        self._total = 0
        self._valid = 0
        self._invalid = 0
        self._per_source: Dict[str, SourceQuality] = {}
        self._issue_counts: Dict[str, int] = {}
        self._rejected: Deque[RejectedRecord] = deque(maxlen=max(0, rejected_history))

    # -------------------------
    # Read side
    # -------------------------

    def snapshot(self) -> Snapshot:
        return self._snapshot

    def get(self, incident_id: str) -> Optional[Incident]:
        return self._table.get(incident_id)

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, incident_id: object) -> bool:
        return incident_id in self._table

    @property
    def closed(self) -> bool:
        return self._closed

    def quality(self) -> QualitySummary:
        return QualitySummary(
            total=self._total,
            valid=self._valid,
            invalid=self._invalid,
            per_source={k: v.model_copy() for k, v in self._per_source.items()},
            issues=dict(self._issue_counts),
            rejected=list(self._rejected),
        )

    def on_snapshot(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Subscribe to snapshots. Returns a function that unsubscribes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -------------------------
    # Write side
    # -------------------------

    def merge(self, batch: Iterable[Any], source: Optional[str] = None) -> Snapshot:
        """
        Upsert a raw batch into the table and return the resulting snapshot.

        A merge issued from inside a subscriber callback is queued and runs
        as soon as the current one has been delivered; in that case the
        snapshot returned is the one current at call time.
        """
        return self._submit("merge", batch, source)

    def replace(self, batch: Iterable[Any], source: Optional[str] = None) -> Snapshot:
        """Full snapshot replacement: the table becomes the batch's valid records."""
        return self._submit("replace", batch, source)

    def close(self) -> None:
        self._closed = True
        self._pending.clear()
        self._subscribers.clear()

    def _submit(self, op: str, batch: Iterable[Any], source: Optional[str]) -> Snapshot:
        if self._closed:
            logger.info("[Merge] reconciler closed; dropping %s from %s", op, source or "unknown")
            return self._snapshot

        if isinstance(batch, Mapping):
            batch = [batch]
        self._pending.append((op, list(batch or []), source))
        if self._merging:
            return self._snapshot

        self._merging = True
        try:
            while self._pending:
                op, items, src = self._pending.popleft()
                self._apply(op, items, src)
                self._emit()
        finally:
            self._merging = False
        return self._snapshot

    def _apply(self, op: str, items: List[Any], source: Optional[str]) -> None:
        default_source = source or "unknown"
        accepted: List[Incident] = []
        rejected = 0

        for raw in items:
            result = self._normalize(raw, default_source)
            self._total += 1
            for issue in result.issues:
                self._issue_counts[issue.code.value] = self._issue_counts.get(issue.code.value, 0) + 1

            if result.valid:
                incident = result.incident
                self._valid += 1
                self._per_source.setdefault(incident.source, SourceQuality()).total += 1
                accepted.append(incident)
            else:
                rejected += 1
                self._invalid += 1
                raw_id, src = _rejected_identity(raw, default_source)
                stats = self._per_source.setdefault(src, SourceQuality())
                stats.total += 1
                stats.invalid += 1
                self._rejected.append(RejectedRecord(
                    id=raw_id,
                    source=src,
                    issues=result.issues,
                ))

        if op == "replace":
            table: Dict[str, Incident] = {}
        else:
            table = self._table
        for incident in accepted:
            # pop first so an update moves to the end of the snapshot order
            table.pop(incident.id, None)
            table[incident.id] = incident

        self._table = table
        self._snapshot = tuple(table.values())
        self.version += 1
        logger.info("[Merge] op=%s source=%s batch=%d accepted=%d rejected=%d table=%d",
                    op, default_source, len(items), len(accepted), rejected, len(table))

    def _normalize(self, raw: Any, default_source: str) -> NormalizationResult:
        """normalize(), but a record it cannot read is rejected instead of aborting the batch."""
        try:
            return normalize(raw, self.thresholds, default_source=default_source)
        except Exception as e:
            logger.exception("[Merge] unreadable record from %s", default_source)
            issue = ValidationIssue(code=IssueCode.MALFORMED_RECORD,
                                    message=f"unreadable record: {type(e).__name__}")
            return NormalizationResult(incident=None, issues=[issue], raw=raw)

    def _emit(self) -> None:
        snap = self._snapshot
        for callback in list(self._subscribers):
            try:
                callback(snap)
            except Exception:
                logger.exception("[Merge] snapshot subscriber %r failed", callback)
