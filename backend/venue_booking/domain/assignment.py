from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..models import CourtType
from .entities import Court


@dataclass(frozen=True)
class ScoringWeights:
    court_affinity: float = 10.0
    court_type: float = 3.0
    sport_type: float = 4.0
    tag: float = 1.0


@dataclass(frozen=True)
class CourtPreferences:
    preferred_court_id: Optional[str] = None
    preferred_court_type: Optional[CourtType] = None
    preferred_sport_type: Optional[str] = None
    preferred_tags: Tuple[str, ...] = ()
    required_court_type: Optional[CourtType] = None
    required_sport_type: Optional[str] = None
    weights: ScoringWeights = field(default_factory=ScoringWeights)


@dataclass(frozen=True)
class ScoredCourt:
    court: Court
    score: float


def eligible_courts(candidates: Sequence[Court], preferences: CourtPreferences) -> List[Court]:
    """Active courts that satisfy every hard constraint."""
    courts: List[Court] = []
    for court in candidates:
        if not court.is_active:
            continue
        if preferences.required_court_type is not None and court.court_type != preferences.required_court_type:
            continue
        if preferences.required_sport_type is not None and preferences.required_sport_type not in court.sport_types:
            continue
        courts.append(court)
    return courts


def score_court(court: Court, preferences: CourtPreferences) -> float:
    weights = preferences.weights
    score = 0.0
    if preferences.preferred_court_id is not None and court.id == preferences.preferred_court_id:
        score += weights.court_affinity
    if preferences.preferred_court_type is not None and court.court_type == preferences.preferred_court_type:
        score += weights.court_type
    if preferences.preferred_sport_type is not None and preferences.preferred_sport_type in court.sport_types:
        score += weights.sport_type
    score += weights.tag * sum(1 for tag in preferences.preferred_tags if tag in court.tags)
    return score


def rank_courts(candidates: Sequence[Court], preferences: CourtPreferences) -> List[ScoredCourt]:
    """
    Order eligible courts by descending score.
    Ties go to the lower base hourly rate, then to the lower court id, so the
    order is reproducible for identical inputs.
    """
    scored = [ScoredCourt(court=c, score=score_court(c, preferences)) for c in eligible_courts(candidates, preferences)]
    scored.sort(key=lambda s: (-s.score, s.court.rate_table.base_hourly_rate, s.court.id))
    return scored
