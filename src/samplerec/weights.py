"""
Tunable scoring parameters.

The popularity formula, preference weights, jitter range and diversity
probabilities are configuration rather than fixed constants. They are stored
as a flat JSON object; when no file is available the defaults below apply.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from .config import SCORING_WEIGHTS_PATH

logger = logging.getLogger(__name__)


@dataclass
class ScoringWeights:
    """Container for every tunable weight and probability."""

    # Popularity score: likes*like + downloads*download + views*view
    popularity_like: float = 5.0
    popularity_download: float = 3.0
    popularity_view: float = 1.0

    # Preference profiler signal weights
    preference_like: float = 3.0
    preference_download: float = 2.0
    preference_view: float = 1.0

    # Multiplicative jitter applied to normalized preferences
    jitter_min: float = 0.8
    jitter_max: float = 1.2
    # Weight given to tags that carry no signal
    baseline_weight: float = 0.1

    # Recommendation diversity
    repeat_probability: float = 0.25
    shuffle_probability: float = 0.2
    trending_relevance: float = 0.3

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            try:
                setattr(self, f.name, float(value))
            except (TypeError, ValueError):
                raise ValueError(f"{f.name} must be a number, got {value!r}")
        self.validate()

    def validate(self) -> None:
        for name in (
            "popularity_like", "popularity_download", "popularity_view",
            "preference_like", "preference_download", "preference_view",
            "baseline_weight", "trending_relevance",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if not (0 < self.jitter_min <= self.jitter_max):
            raise ValueError("jitter range must satisfy 0 < jitter_min <= jitter_max")
        for name in ("repeat_probability", "shuffle_probability"):
            if not (0.0 <= getattr(self, name) <= 1.0):
                raise ValueError(f"{name} must be in [0, 1]")

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ScoringWeights":
        known = {f.name for f in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            logger.warning("Ignoring unknown scoring weights: %s", ", ".join(sorted(unknown)))
        return cls(**{k: v for k, v in payload.items() if k in known})


DEFAULT_WEIGHTS = ScoringWeights()


def load_scoring_weights(path: str | Path | None = None) -> ScoringWeights:
    """Load weights from disk; fall back to defaults if missing or invalid."""
    weight_path = Path(path) if path else SCORING_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Scoring weights file not found at %s; using defaults", weight_path)
        return ScoringWeights()

    try:
        payload = json.loads(weight_path.read_text())
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")
        return ScoringWeights.from_dict(payload)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load scoring weights from %s: %s", weight_path, exc)
        return ScoringWeights()


def save_scoring_weights(weights: ScoringWeights, path: str | Path | None = None) -> Path:
    weight_path = Path(path) if path else SCORING_WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(weights.to_dict(), indent=2))
    return weight_path
