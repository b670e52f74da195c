import math
from typing import List, Sequence

from .models import AnomalyFlag, AnomalyReport, TrendBucket
from .trends import UNKNOWN_DATE

MIN_BUCKETS = 3
# daily counts are integers; spread below one incident is treated as one
MIN_STD = 1.0

INSUFFICIENT_DATA = "Insufficient data for anomaly detection."
NO_ANOMALIES = "No significant anomalies detected in current data."


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    m = _mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def _chronological(trends: Sequence[TrendBucket]) -> List[TrendBucket]:
    return [b for b in trends if b.date != UNKNOWN_DATE]


def _spike(buckets: List[TrendBucket], ratio: float, window: int) -> List[AnomalyFlag]:
    highs = [b.high for b in buckets]
    n = len(highs)
    recent = highs[max(0, n - window):]
    previous = highs[max(0, n - 2 * window):max(0, n - window)]
    recent_mean = _mean(recent)
    previous_mean = _mean(previous)

    if previous_mean > 0 and recent_mean > previous_mean * ratio:
        pct = round((ratio - 1) * 100)
        return [AnomalyFlag(
            kind="spike",
            date=buckets[-1].date,
            message=(f"Recent High average ({recent_mean:.1f}) exceeds previous period "
                     f"({previous_mean:.1f}) by >{pct}%"),
        )]
    return []


def _outliers(buckets: List[TrendBucket], z_threshold: float) -> List[AnomalyFlag]:
    highs = [b.high for b in buckets]
    if _pstdev(highs) == 0:
        return []

    flags = []
    for i, bucket in enumerate(buckets):
        # score each day against the others, so one extreme day cannot
        # dilute its own z-score on a short series
        others = highs[:i] + highs[i + 1:]
        mean, std = _mean(others), max(_pstdev(others), MIN_STD)
        z = (bucket.high - mean) / std
        if z > z_threshold:
            flags.append(AnomalyFlag(
                kind="outlier",
                date=bucket.date,
                value=bucket.high,
                z_score=z,
                message=(f"High count {bucket.high} on {bucket.date} is a statistical "
                         f"outlier (z-score: {z:.2f})"),
            ))
    return flags


def detect_anomalies(trends: Sequence[TrendBucket],
                     spike_ratio: float = 1.25,
                     z_threshold: float = 2.5,
                     window: int = 3) -> List[AnomalyFlag]:
    """
    Spike and outlier flags over the High counts of a trend series.

    The "unknown" bucket is not part of the time series. Fewer than three
    dated buckets yields no flags. Spikes come first, then outliers in date
    order; one day may appear in both.
    """
    buckets = _chronological(trends)
    if len(buckets) < MIN_BUCKETS:
        return []
    return _spike(buckets, spike_ratio, window) + _outliers(buckets, z_threshold)


def anomaly_report(trends: Sequence[TrendBucket],
                   spike_ratio: float = 1.25,
                   z_threshold: float = 2.5,
                   window: int = 3) -> AnomalyReport:
    if len(_chronological(trends)) < MIN_BUCKETS:
        return AnomalyReport(anomalies=[], summary=INSUFFICIENT_DATA, status="insufficient_data")

    flags = detect_anomalies(trends, spike_ratio, z_threshold, window)
    if flags:
        summary = f"Detected {len(flags)} anomalies requiring attention."
    else:
        summary = NO_ANOMALIES
    return AnomalyReport(anomalies=flags, summary=summary, status="ok")
