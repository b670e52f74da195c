from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .models import Incident, QualitySummary


def risk_distribution(snapshot: Sequence[Incident]) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = {}
    for incident in snapshot:
        counts[incident.severity.value] = counts.get(incident.severity.value, 0) + 1
    rows = [{"name": name, "value": value} for name, value in counts.items() if value > 0]
    return sorted(rows, key=lambda r: -r["value"])


def quality_score(quality: QualitySummary) -> float:
    if not quality.total:
        return 0.0
    return round(quality.valid / quality.total * 100, 1)


def build_report(state, top_n: int = 5,
                 feeds: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Analyst export of one AnalyticsState as a JSON-ready dict: quality
    summary, risk distribution, insights, top hotspots and the trend series.
    """
    quality = state.quality
    anomalies = state.anomalies
    if anomalies.anomalies:
        insights = [{"text": a.message} for a in anomalies.anomalies]
    else:
        insights = [{"text": anomalies.summary}] if anomalies.summary else []

    top = []
    for cell in state.hotspots[:top_n]:
        top.append({
            "cellKey": cell.cell_key,
            "centroid": cell.centroid.model_dump(),
            "countHigh": cell.count_high,
            "countMedium": cell.count_medium,
            "totalPoints": cell.total,
        })

    return {
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "version": state.version,
        "summary": {
            "totalRecords": quality.total,
            "valid": quality.valid,
            "invalid": quality.invalid,
            "qualityScore": quality_score(quality),
            "incidents": len(state.incidents),
        },
        "riskDistribution": risk_distribution(state.incidents),
        "insights": insights,
        "topHotspots": top,
        "trends": [b.model_dump(by_alias=True) for b in state.trends],
        "feeds": feeds or {},
    }
