from typing import Dict, List, Sequence

from .models import Incident, TrendBucket

UNKNOWN_DATE = "unknown"


def compute_trends(snapshot: Sequence[Incident]) -> List[TrendBucket]:
    """
    Per-day severity counts, ascending by date.

    Incidents without a timestamp land in the "unknown" bucket, which sorts
    after every ISO date. Unknown-severity incidents are counted on their
    own and never added to the High/Medium/Low tiers.
    """
    by_day: Dict[str, Dict[str, int]] = {}
    for incident in snapshot:
        day = incident.date or UNKNOWN_DATE
        counts = by_day.setdefault(day, {"High": 0, "Medium": 0, "Low": 0, "Unknown": 0})
        counts[incident.severity.value] += 1

    return [TrendBucket(date=day, **counts) for day, counts in sorted(by_day.items())]
