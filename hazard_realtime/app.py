import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import PipelineConfig
from .filters import ALL_SEVERITIES, IncidentFilter, apply_filters
from .hotspots import nearest_hotspot
from .ingestors import incident_array
from .logging_config import setup_logging
from .markers import map_center
from .models import Severity, WSMsg
from .pipeline import AnalyticsPipeline, AnalyticsState
from .report import build_report

logger = logging.getLogger(__name__)


# =========================
# Helpers / Models (local)
# =========================

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def _json_default(o):
    if isinstance(o, datetime):
        return o.isoformat()
    raise TypeError(f"Type not serializable: {type(o)}")

def _dump(model) -> Any:
    return model.model_dump(mode="json", by_alias=True)


class SelectRequest(BaseModel):
    id: Optional[str] = None


def state_message(state: AnalyticsState) -> dict:
    return WSMsg(
        type="analytics.updated",
        data={
            "version": state.version,
            "computedAt": state.computed_at.isoformat(),
            "incidents": [_dump(i) for i in state.incidents],
            "hotspots": [_dump(c) for c in state.hotspots],
            "trends": [_dump(b) for b in state.trends],
            "anomalies": _dump(state.anomalies),
            "quality": _dump(state.quality),
            "markers": _dump(state.marker_diff),
        },
    ).model_dump()


# =========================
# App
# =========================

def create_app(config: Optional[PipelineConfig] = None,
               pipeline: Optional[AnalyticsPipeline] = None) -> FastAPI:
    if pipeline is None:
        config = config or PipelineConfig.from_env()
        pipeline = AnalyticsPipeline(config)
    setup_logging(pipeline.config.log_level)

    app = FastAPI(title="Hazard Realtime Analytics")
    app.state.pipeline = pipeline
    clients: set = set()  # active websocket clients

    async def broadcast(msg: dict):
        total = len(clients)
        if total == 0:
            return
        text = json.dumps(msg, default=_json_default)
        delivered = 0
        dead = []
        for ws in list(clients):
            try:
                await ws.send_text(text)
                delivered += 1
            except WebSocketDisconnect:
                dead.append(ws)
            except Exception as e:
                logger.warning("[WS] send failed: %s", e)
                dead.append(ws)
        for d in dead:
            clients.discard(d)
        logger.debug("[WS] delivered type=%s to %d/%d clients", msg.get("type"), delivered, total)

    # one sender drains the outbox so clients see versions in merge order
    outbox: asyncio.Queue = asyncio.Queue()

    async def sender():
        while True:
            msg = await outbox.get()
            try:
                await broadcast(msg)
            except Exception:
                logger.exception("[WS] broadcast failed")
            finally:
                outbox.task_done()

    def on_state(state: AnalyticsState) -> None:
        if clients:
            outbox.put_nowait(state_message(state))

    pipeline.add_listener(on_state)

    # -------------------------
    # Lifecycle
    # -------------------------

    @app.on_event("startup")
    async def on_start():
        app.state.sender = asyncio.create_task(sender())
        pipeline.start()

    @app.on_event("shutdown")
    async def on_stop():
        await pipeline.stop()
        task = getattr(app.state, "sender", None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        clients.add(ws)
        await ws.accept()
        logger.info("[WS] client connected; now %d client(s)", len(clients))
        try:
            while True:
                await ws.receive_text()  # ignore client messages
        except WebSocketDisconnect:
            clients.discard(ws)
            logger.info("[WS] client disconnected; now %d client(s)", len(clients))

    # -------------------------
    # Read endpoints
    # -------------------------

    @app.get("/incidents")
    async def incidents(q: str = "",
                        severity: Optional[List[Severity]] = Query(None),
                        source: str = "all",
                        start: Optional[str] = None,
                        end: Optional[str] = None):
        f = IncidentFilter(q=q, severities=frozenset(severity) if severity else ALL_SEVERITIES,
                           source=source, start=start, end=end)
        return [_dump(i) for i in apply_filters(pipeline.state.incidents, f)]

    @app.get("/hotspots")
    async def hotspots(limit: int = Query(10, ge=1), points: bool = True):
        cells = pipeline.state.hotspots[:limit]
        exclude = None if points else {"points"}
        return [c.model_dump(mode="json", by_alias=True, exclude=exclude) for c in cells]

    @app.get("/hotspots/nearest")
    async def hotspots_nearest(lat: float = Query(..., ge=-90, le=90),
                               lon: float = Query(..., ge=-180, le=180)):
        found = nearest_hotspot(lat, lon, pipeline.state.hotspots)
        if found is None:
            raise HTTPException(status_code=404, detail="no hotspots")
        cell, distance_m = found
        return {"hotspot": cell.model_dump(mode="json", by_alias=True, exclude={"points"}),
                "distance_m": round(distance_m, 1)}

    @app.get("/trends")
    async def trends():
        return [_dump(b) for b in pipeline.state.trends]

    @app.get("/anomalies")
    async def anomalies():
        return _dump(pipeline.state.anomalies)

    @app.get("/quality")
    async def quality():
        return _dump(pipeline.state.quality)

    @app.get("/feeds")
    async def feeds():
        return pipeline.feed_statuses()

    @app.get("/markers")
    async def markers():
        lat, lon = map_center(pipeline.state.incidents)
        return {
            "center": {"lat": lat, "lon": lon},
            "selected": pipeline.markers.selected,
            "markers": [_dump(m) for m in pipeline.markers.markers.values()],
        }

    @app.get("/export")
    async def export():
        report = build_report(pipeline.state, feeds=pipeline.feed_statuses())
        stamp = now_iso()[:19].replace(":", "-")
        return JSONResponse(
            report,
            headers={"Content-Disposition": f'attachment; filename="analyst_report_{stamp}.json"'},
        )

    # -------------------------
    # Write endpoints
    # -------------------------

    @app.post("/markers/select")
    async def select_marker(req: SelectRequest):
        if not pipeline.markers.select(req.id):
            raise HTTPException(status_code=404, detail=f"unknown marker {req.id!r}")
        diff = pipeline.markers.reconcile(pipeline.reconciler.snapshot())
        return {"selected": pipeline.markers.selected, "diff": _dump(diff)}

    @app.post("/ingest")
    async def ingest(payload: Any = Body(...), source: str = "api"):
        """
        POST a raw array, {"data": [...]} or a single incident object, e.g.
        [{"id": "r1", "lat": 19.07, "lon": 72.87, "severity": "high"}]
        """
        batch = [payload] if isinstance(payload, dict) and "data" not in payload else incident_array(payload)
        if batch is None:
            raise HTTPException(status_code=422, detail="expected an incident, an array or {data: [...]}")
        before = pipeline.reconciler.quality()
        snapshot = pipeline.ingest(batch, source=source)
        after = pipeline.reconciler.quality()
        return {
            "ok": True,
            "received": len(batch),
            "accepted": after.valid - before.valid,
            "rejected": after.invalid - before.invalid,
            "incidents": len(snapshot),
            "version": pipeline.reconciler.version,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
