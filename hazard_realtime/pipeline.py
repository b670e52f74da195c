import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .anomalies import anomaly_report
from .config import PipelineConfig
from .exceptions import PipelineClosedError
from .hotspots import detect_hotspots
from .ingestors import poll_stream, push_stream
from .markers import MarkerLayer
from .models import (
    AnomalyReport,
    FeedStatus,
    HotspotCell,
    Incident,
    MarkerDiff,
    QualitySummary,
    TrendBucket,
)
from .reconciler import IncidentReconciler, Snapshot
from .trends import compute_trends

logger = logging.getLogger(__name__)


class AnalyticsState(BaseModel):
    """Everything derived from one snapshot. Replaced wholesale, never edited."""
    model_config = ConfigDict(frozen=True)

    version: int = 0
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    incidents: Tuple[Incident, ...] = ()
    hotspots: List[HotspotCell] = Field(default_factory=list)
    trends: List[TrendBucket] = Field(default_factory=list)
    anomalies: AnomalyReport = Field(default_factory=AnomalyReport)
    quality: QualitySummary = Field(default_factory=QualitySummary)
    marker_diff: MarkerDiff = Field(default_factory=MarkerDiff)


StateListener = Callable[[AnalyticsState], None]


class AnalyticsPipeline:
    """
    Reconciler + feeds + analytics.

    Feeds push raw batches through ingest(); every merge produces a snapshot,
    and every snapshot produces a fresh AnalyticsState for listeners.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.reconciler = IncidentReconciler(
            thresholds=self.config.thresholds,
            rejected_history=self.config.rejected_history,
        )
        self.markers = MarkerLayer()
        self.feeds: Dict[str, FeedStatus] = {}
        if self.config.poll_url:
            self.feeds["poll"] = FeedStatus(name="poll", kind="poll")
        if self.config.push_url:
            self.feeds["push"] = FeedStatus(name="push", kind="push")

        self._state = AnalyticsState()
        self._listeners: List[StateListener] = []
        self._tasks: List[asyncio.Task] = []
        self._stopped = False
        self.reconciler.on_snapshot(self._on_snapshot)

    @property
    def state(self) -> AnalyticsState:
        return self._state

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def analyze(self, snapshot: Snapshot) -> AnalyticsState:
        """Pure analytics over one snapshot (marker diff excluded)."""
        cfg = self.config
        trends = compute_trends(snapshot)
        return AnalyticsState(
            version=self.reconciler.version,
            incidents=snapshot,
            hotspots=detect_hotspots(snapshot, cfg.grid_size),
            trends=trends,
            anomalies=anomaly_report(trends, cfg.spike_ratio, cfg.outlier_z, cfg.spike_window),
            quality=self.reconciler.quality(),
        )

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        state = self.analyze(snapshot).model_copy(
            update={"marker_diff": self.markers.reconcile(snapshot)}
        )
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("[Pipeline] listener %r failed", listener)

    # =========================
    # Ingestion
    # =========================

    def ingest(self, batch: Iterable[Any], source: Optional[str] = None) -> Snapshot:
        if self._stopped:
            logger.info("[Pipeline] stopped; discarding batch from %s", source or "unknown")
            return self.reconciler.snapshot()
        return self.reconciler.merge(batch, source=source)

    def feed_statuses(self) -> Dict[str, Dict[str, Any]]:
        out = {}
        for name, status in self.feeds.items():
            entry = status.model_dump(mode="json")
            entry["stale"] = status.is_stale(self.config.stale_after)
            out[name] = entry
        return out

    async def _feeder(self, name: str, gen: AsyncGenerator[list, None]) -> None:
        try:
            async for batch in gen:
                if self._stopped:
                    break
                try:
                    self.ingest(batch, source=name)
                except Exception:
                    logger.exception("[Pipeline] %s batch of %d dropped", name, len(batch))
        finally:
            await gen.aclose()

    def start(self) -> None:
        """Launch one feeder task per configured feed. Needs a running loop."""
        if self._stopped:
            raise PipelineClosedError("pipeline has been stopped and cannot be restarted")
        if self.running:
            return
        cfg = self.config
        if cfg.poll_url:
            gen = poll_stream(cfg.poll_url,
                              interval_s=cfg.poll_interval_s,
                              timeout_s=cfg.request_timeout_s,
                              status=self.feeds["poll"])
            self._tasks.append(asyncio.create_task(self._feeder("poll", gen)))
        if cfg.push_url:
            gen = push_stream(cfg.push_url,
                              status=self.feeds["push"],
                              initial_backoff_s=cfg.reconnect_initial_s,
                              factor=cfg.reconnect_factor,
                              max_backoff_s=cfg.reconnect_max_s)
            self._tasks.append(asyncio.create_task(self._feeder("push", gen)))
        logger.info("[Pipeline] started feeds: %s", ", ".join(self.feeds) or "none")

    async def stop(self) -> None:
        """Cancel feeds and close the table; in-flight results are discarded."""
        if self._stopped:
            return
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.reconciler.close()
        self._listeners.clear()
        logger.info("[Pipeline] stopped")
