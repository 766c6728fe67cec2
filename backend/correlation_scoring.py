"""Weighted correlation scoring and confidence tiers."""
from __future__ import annotations

from dataclasses import asdict, dataclass

from backend import config
from backend.correlation_signals import SignalVector


@dataclass(frozen=True)
class CorrelationConfig:
    weight_path: float = 0.35
    weight_files: float = 0.30
    weight_time: float = 0.25
    weight_cwd: float = 0.10
    file_overlap_trigger: float = 0.2
    time_proximity_trigger: float = 0.5
    time_horizon_hours: float = 4.0
    high_threshold: float = 0.7
    medium_threshold: float = 0.4

    def __post_init__(self) -> None:
        weights = (self.weight_path, self.weight_files, self.weight_time, self.weight_cwd)
        if any(w < 0 for w in weights):
            raise ValueError("correlation weights must be non-negative")
        total = sum(weights)
        if total <= 0:
            raise ValueError("at least one correlation weight must be positive")
        if abs(total - 1.0) > 1e-9:
            object.__setattr__(self, "weight_path", self.weight_path / total)
            object.__setattr__(self, "weight_files", self.weight_files / total)
            object.__setattr__(self, "weight_time", self.weight_time / total)
            object.__setattr__(self, "weight_cwd", self.weight_cwd / total)
        if not 0.0 <= self.medium_threshold <= self.high_threshold <= 1.0:
            raise ValueError("confidence thresholds must satisfy 0 <= medium <= high <= 1")

    @property
    def horizon_seconds(self) -> float:
        return max(0.0, self.time_horizon_hours) * 3600.0

    @classmethod
    def from_settings(cls) -> "CorrelationConfig":
        return cls(
            weight_path=config.WEIGHT_PATH,
            weight_files=config.WEIGHT_FILES,
            weight_time=config.WEIGHT_TIME,
            weight_cwd=config.WEIGHT_CWD,
            file_overlap_trigger=config.FILE_OVERLAP_TRIGGER,
            time_proximity_trigger=config.TIME_PROXIMITY_TRIGGER,
            time_horizon_hours=config.TIME_HORIZON_HOURS,
            high_threshold=config.HIGH_CONFIDENCE,
            medium_threshold=config.MEDIUM_CONFIDENCE,
        )

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


DEFAULT_CORRELATION_CONFIG = CorrelationConfig()


@dataclass(frozen=True)
class CorrelationResult:
    score: float
    reasons: tuple[str, ...]


def triggered_reasons(signals: SignalVector, cfg: CorrelationConfig) -> tuple[str, ...]:
    reasons: list[str] = []
    if signals.path_match:
        reasons.append("project_path_match")
    if signals.file_overlap > cfg.file_overlap_trigger:
        reasons.append("file_overlap")
    if signals.time_proximity > cfg.time_proximity_trigger:
        reasons.append("time_proximity")
    if signals.cwd_match:
        reasons.append("cwd_match")
    return tuple(reasons)


def score_signals(
    signals: SignalVector, cfg: CorrelationConfig = DEFAULT_CORRELATION_CONFIG,
) -> CorrelationResult:
    """Combine a signal vector into a [0, 1] score plus the reasons that fired."""
    reasons = triggered_reasons(signals, cfg)
    if not reasons:
        return CorrelationResult(score=0.0, reasons=())
    raw = (
        cfg.weight_path * (1.0 if signals.path_match else 0.0)
        + cfg.weight_files * signals.file_overlap
        + cfg.weight_time * signals.time_proximity
        + cfg.weight_cwd * (1.0 if signals.cwd_match else 0.0)
    )
    # Rounded so stored scores compare equal across runs.
    return CorrelationResult(score=round(min(1.0, max(0.0, raw)), 6), reasons=reasons)


def confidence_tier(score: float, cfg: CorrelationConfig = DEFAULT_CORRELATION_CONFIG) -> str:
    if score >= cfg.high_threshold:
        return "high"
    if score >= cfg.medium_threshold:
        return "medium"
    return "low"


def is_eligible(result: CorrelationResult, cfg: CorrelationConfig = DEFAULT_CORRELATION_CONFIG) -> bool:
    """Automatic grouping needs at least one reason and a medium-tier score."""
    return bool(result.reasons) and result.score >= cfg.medium_threshold
