"""Real-time geospatial incident analytics: ingestion, hotspots, trends and anomalies."""

__version__ = "0.1.0"
