from decimal import Decimal

from venue_booking.domain.assignment import CourtPreferences, ScoringWeights, eligible_courts, rank_courts, score_court
from venue_booking.domain.entities import Court, RateTable
from venue_booking.models import CourtStatus, CourtType


def _court(
    court_id: str,
    *,
    rate: str = "20",
    court_type: CourtType = CourtType.OUTDOOR,
    sports: tuple[str, ...] = ("padel",),
    tags: tuple[str, ...] = (),
    status: CourtStatus = CourtStatus.ACTIVE,
) -> Court:
    return Court(
        id=court_id,
        name=f"Court {court_id}",
        venue_id="venue-1",
        court_type=court_type,
        sport_types=list(sports),
        tags=list(tags),
        rate_table=RateTable(base_hourly_rate=Decimal(rate)),
        status=status,
    )


def test_inactive_courts_are_not_eligible() -> None:
    courts = [_court("a", status=CourtStatus.MAINTENANCE), _court("b")]
    assert [c.id for c in eligible_courts(courts, CourtPreferences())] == ["b"]


def test_hard_requirements_filter() -> None:
    courts = [
        _court("a", court_type=CourtType.INDOOR, sports=("tennis",)),
        _court("b", court_type=CourtType.INDOOR, sports=("padel",)),
        _court("c", court_type=CourtType.OUTDOOR, sports=("padel",)),
    ]
    prefs = CourtPreferences(required_court_type=CourtType.INDOOR, required_sport_type="padel")
    assert [c.id for c in eligible_courts(courts, prefs)] == ["b"]


def test_score_adds_weighted_matches() -> None:
    court = _court("a", court_type=CourtType.INDOOR, tags=("lights", "glass"))
    prefs = CourtPreferences(
        preferred_court_id="a",
        preferred_court_type=CourtType.INDOOR,
        preferred_sport_type="padel",
        preferred_tags=("lights", "glass", "covered"),
    )
    assert score_court(court, prefs) == 10.0 + 3.0 + 4.0 + 2.0


def test_custom_weights() -> None:
    prefs = CourtPreferences(preferred_court_id="a", weights=ScoringWeights(court_affinity=1.5))
    assert score_court(_court("a"), prefs) == 1.5


def test_affinity_outranks_cheaper_court() -> None:
    courts = [_court("cheap", rate="10"), _court("favourite", rate="30")]
    ranked = rank_courts(courts, CourtPreferences(preferred_court_id="favourite"))
    assert [s.court.id for s in ranked] == ["favourite", "cheap"]


def test_ties_break_on_rate_then_id() -> None:
    courts = [_court("c", rate="20"), _court("b", rate="20"), _court("a", rate="25")]
    ranked = rank_courts(courts, CourtPreferences())
    assert [s.court.id for s in ranked] == ["b", "c", "a"]


def test_ranking_is_reproducible_regardless_of_input_order() -> None:
    courts = [_court("x", tags=("lights",)), _court("y"), _court("z", tags=("lights",))]
    prefs = CourtPreferences(preferred_tags=("lights",))
    first = [s.court.id for s in rank_courts(courts, prefs)]
    second = [s.court.id for s in rank_courts(list(reversed(courts)), prefs)]
    assert first == second == ["x", "z", "y"]
