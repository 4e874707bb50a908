"""Risk Scoring Engine: GAR totals, bands and per-factor severity."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


# Canonical factor order, used everywhere factors are listed
RISK_FACTORS = [
    "supervision",
    "planning",
    "team_selection",
    "team_fitness",
    "environment",
    "complexity",
]

FACTOR_LABELS = {
    "supervision": "Supervision",
    "planning": "Planning",
    "team_selection": "Team Selection",
    "team_fitness": "Team Fitness",
    "environment": "Environment",
    "complexity": "Event Complexity",
}

FACTOR_MIN = 0
FACTOR_MAX = 10
MAX_TOTAL_SCORE = FACTOR_MAX * len(RISK_FACTORS)

# Inclusive upper bounds of the low and moderate bands
LOW_BAND_MAX = 23
MODERATE_BAND_MAX = 44

# A factor scoring at or above this needs a mitigation
HIGH_RISK_FACTOR_THRESHOLD = 5

RISK_BANDS = ["low", "moderate", "high"]

LABEL_SCHEMES = {
    "risk": {"low": "LOW RISK", "moderate": "MODERATE RISK", "high": "HIGH RISK"},
    "color": {"low": "GREEN", "moderate": "AMBER", "high": "RED"},
}

BAND_COLORS = {"low": "green", "moderate": "amber", "high": "red"}


@dataclass(frozen=True)
class RiskClassification:
    """The categorical result of classifying a total score."""

    band: str
    level: str
    color: str

    def as_dict(self) -> dict[str, str]:
        return {"band": self.band, "level": self.level, "color": self.color}


def validate_factor(name: str, value: Any) -> int:
    """Return ``value`` if it is a legal score for factor ``name``."""
    if name not in FACTOR_LABELS:
        raise ValueError(f"Unknown risk factor: {name!r}")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Risk factor {name!r} must be an integer, got {value!r}")
    if not FACTOR_MIN <= value <= FACTOR_MAX:
        raise ValueError(f"Risk factor {name!r} must be between {FACTOR_MIN} and {FACTOR_MAX}, got {value}")
    return value


def empty_risk_factors() -> dict[str, int]:
    return {name: 0 for name in RISK_FACTORS}


def total_score(risk_factors: Mapping[str, int]) -> int:
    """Sum the six factor scores.

    Missing factors count as zero. Unknown keys or out-of-range values raise
    ``ValueError`` so an invalid map can never produce a score outside 0..60.
    """
    total = 0
    for name, value in risk_factors.items():
        total += validate_factor(name, value)
    return total


def score_band(score: int) -> str:
    """Map a total score to exactly one of ``low``, ``moderate`` or ``high``."""
    if not 0 <= score <= MAX_TOTAL_SCORE:
        raise ValueError(f"Total score must be between 0 and {MAX_TOTAL_SCORE}, got {score}")
    if score <= LOW_BAND_MAX:
        return "low"
    if score <= MODERATE_BAND_MAX:
        return "moderate"
    return "high"


def classify(score: int, scheme: str = "risk") -> RiskClassification:
    """Classify a total score using the deployment's label scheme."""
    if scheme not in LABEL_SCHEMES:
        raise ValueError(f"Unknown risk label scheme: {scheme!r}")
    band = score_band(score)
    return RiskClassification(band=band, level=LABEL_SCHEMES[scheme][band], color=BAND_COLORS[band])


def classify_factors(risk_factors: Mapping[str, int], scheme: str = "risk") -> RiskClassification:
    return classify(total_score(risk_factors), scheme)


def factor_severity(value: int) -> str:
    """Severity of a single factor: 0-4 low, 5-7 moderate, 8-10 high."""
    if not FACTOR_MIN <= value <= FACTOR_MAX:
        raise ValueError(f"Factor value must be between {FACTOR_MIN} and {FACTOR_MAX}, got {value}")
    if value >= 8:
        return "high"
    if value >= HIGH_RISK_FACTOR_THRESHOLD:
        return "moderate"
    return "low"


def is_high_risk(value: int) -> bool:
    return value >= HIGH_RISK_FACTOR_THRESHOLD


def high_risk_factors(risk_factors: Mapping[str, int]) -> list[str]:
    """Factors that require a mitigation, in canonical order."""
    return [name for name in RISK_FACTORS if is_high_risk(risk_factors.get(name, 0))]


def missing_mitigations(
    risk_factors: Mapping[str, int],
    mitigations: Mapping[str, str],
) -> list[str]:
    """High-risk factors whose mitigation text is still blank.

    Used to nudge the author on the review step; never blocks publishing.
    """
    return [
        name for name in high_risk_factors(risk_factors)
        if not (mitigations.get(name) or "").strip()
    ]


def band_for_level(level: str) -> str | None:
    """Reverse-map a stored level label (either scheme) to its band."""
    normalised = (level or "").strip().upper()
    for labels in LABEL_SCHEMES.values():
        for band, label in labels.items():
            if normalised == label:
                return band
    return None
