import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator

from .exceptions import ConfigError
from .models import SeverityThresholds

# =========================
# Helpers
# =========================

def _getenv_str(key: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(key)
    if val is None or not val.strip():
        return default
    return val.strip()

def _getenv_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default

def _getenv_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


# =========================
# Config
# =========================

class PipelineConfig(BaseModel):
    poll_url: Optional[str] = None
    push_url: Optional[str] = None
    poll_interval_ms: int = 15000
    request_timeout_s: float = 10.0

    grid_size: int = 18
    spike_ratio: float = 1.25
    spike_window: int = 3
    outlier_z: float = 2.5
    high_threshold: float = 70
    medium_threshold: float = 40

    # push reconnect: 2s, x1.5 per failed attempt, capped
    reconnect_initial_s: float = 2.0
    reconnect_factor: float = 1.5
    reconnect_max_s: float = 10.0

    rejected_history: int = 200
    stale_after_s: Optional[float] = None
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check(self):
        if self.grid_size < 1:
            raise ConfigError(f"grid_size must be >= 1, got {self.grid_size}")
        if self.poll_interval_ms <= 0:
            raise ConfigError(f"poll_interval_ms must be > 0, got {self.poll_interval_ms}")
        if self.request_timeout_s <= 0:
            raise ConfigError(f"request_timeout_s must be > 0, got {self.request_timeout_s}")
        if self.spike_window < 1:
            raise ConfigError(f"spike_window must be >= 1, got {self.spike_window}")
        if self.medium_threshold > self.high_threshold:
            raise ConfigError(
                f"medium_threshold ({self.medium_threshold}) exceeds high_threshold ({self.high_threshold})"
            )
        if self.reconnect_initial_s <= 0 or self.reconnect_factor < 1:
            raise ConfigError("reconnect backoff must start > 0 and never shrink")
        return self

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def stale_after(self) -> float:
        if self.stale_after_s is not None:
            return self.stale_after_s
        return 2 * self.poll_interval_s

    @property
    def thresholds(self) -> SeverityThresholds:
        return SeverityThresholds(high=self.high_threshold, medium=self.medium_threshold)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from HAZARD_* variables (a .env file is honoured)."""
        load_dotenv()
        d = cls.model_construct()
        return cls(
            poll_url=_getenv_str("HAZARD_POLL_URL"),
            push_url=_getenv_str("HAZARD_PUSH_URL"),
            poll_interval_ms=_getenv_int("HAZARD_POLL_INTERVAL_MS", d.poll_interval_ms),
            request_timeout_s=_getenv_float("HAZARD_REQUEST_TIMEOUT_S", d.request_timeout_s),
            grid_size=_getenv_int("HAZARD_GRID_SIZE", d.grid_size),
            spike_ratio=_getenv_float("HAZARD_SPIKE_RATIO", d.spike_ratio),
            spike_window=_getenv_int("HAZARD_SPIKE_WINDOW", d.spike_window),
            outlier_z=_getenv_float("HAZARD_OUTLIER_Z", d.outlier_z),
            high_threshold=_getenv_float("HAZARD_HIGH_THRESHOLD", d.high_threshold),
            medium_threshold=_getenv_float("HAZARD_MEDIUM_THRESHOLD", d.medium_threshold),
            reconnect_initial_s=_getenv_float("HAZARD_RECONNECT_INITIAL_S", d.reconnect_initial_s),
            reconnect_factor=_getenv_float("HAZARD_RECONNECT_FACTOR", d.reconnect_factor),
            reconnect_max_s=_getenv_float("HAZARD_RECONNECT_MAX_S", d.reconnect_max_s),
            rejected_history=_getenv_int("HAZARD_REJECTED_HISTORY", d.rejected_history),
            log_level=_getenv_str("HAZARD_LOG_LEVEL", d.log_level),
        )
