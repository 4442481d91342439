import logging
from datetime import datetime
from typing import Iterable, Sequence

from pydantic import BaseModel, ConfigDict

from .availability import AvailabilityRegistry
from .config import MATCH_DEFAULT_RADIUS_KM, MATCH_MAX_RADIUS_KM, MATCH_WEIGHTS
from .errors import InvalidCoordinates
from .geo import distance_km, is_valid
from .schemas import (
    LocationBasedRequestMatch,
    MatchFactors,
    MechanicAvailability,
    Request,
    Urgency,
)

_LOGGER = logging.getLogger(__name__)

PARTIAL_SPECIALIZATION_SCORE = 40.0  # generalists still get some credit
UNRATED_SCORE = 70.0
EMERGENCY_PENALTY = 20

TRAVEL_SPEED_KMH = {Urgency.LOW: 40.0, Urgency.MEDIUM: 50.0, Urgency.HIGH: 60.0}
PREP_MINUTES = {Urgency.LOW: 15, Urgency.MEDIUM: 15, Urgency.HIGH: 5}


class ScoringWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    proximity: float = 0.30
    availability: float = 0.20
    specialization: float = 0.20
    rating: float = 0.15
    price: float = 0.15

    @classmethod
    def from_config(cls) -> "ScoringWeights":
        return cls(**MATCH_WEIGHTS)


def proximity_score(distance: float, service_radius_km: float) -> float:
    if service_radius_km <= 0:
        return 100.0 if distance == 0 else 0.0
    return max(0.0, 100 - (distance / service_radius_km) * 100)


def availability_score(current_active_jobs: int, max_concurrent_jobs: int) -> float:
    if max_concurrent_jobs <= 0:
        return 0.0
    return max(0.0, 100 * (1 - current_active_jobs / max_concurrent_jobs))


def specialization_score(implied: str | None, specializations: set[str]) -> float:
    if not implied:
        return 100.0
    return 100.0 if implied in specializations else PARTIAL_SPECIALIZATION_SCORE


def rating_score(rating: float | None) -> float:
    if rating is None:
        return UNRATED_SCORE
    return (rating / 5) * 100


def price_score(hourly_rate: float, batch_min: float, batch_max: float) -> float:
    """Cheapest in the batch gets 100; others drop linearly against the batch max."""
    if batch_max <= 0 or hourly_rate <= batch_min:
        return 100.0
    return max(0.0, 100 - ((hourly_rate - batch_min) / batch_max) * 100)


def travel_minutes(distance: float, urgency: Urgency) -> int:
    minutes = distance / TRAVEL_SPEED_KMH[urgency] * 60
    return round(minutes + PREP_MINUTES[urgency])


def score(factors: MatchFactors, weights: ScoringWeights) -> int:
    total = (
        factors.proximity * weights.proximity
        + factors.availability * weights.availability
        + factors.specialization * weights.specialization
        + factors.rating * weights.rating
        + factors.price * weights.price
    )
    return max(0, min(100, round(total)))


class MatchingEngine:

    def __init__(self, registry: AvailabilityRegistry | None = None, weights: ScoringWeights | None = None):
        self.registry = registry
        self.weights = weights or ScoringWeights()

    def rank(
        self,
        request: Request,
        candidates: Sequence[MechanicAvailability],
    ) -> list[LocationBasedRequestMatch]:
        if not candidates:
            return []
        if not is_valid(request.location):
            raise InvalidCoordinates(
                "Request location has invalid coordinates",
                {"request_id": request.id},
            )

        rates = [c.hourly_rate for c in candidates]
        batch_min, batch_max = min(rates), max(rates)
        implied = request.implied_specialization

        matches = []
        for c in candidates:
            distance = distance_km(request.location, c.location)
            factors = MatchFactors(
                proximity=proximity_score(distance, c.service_radius_km),
                availability=availability_score(c.current_active_jobs, c.max_concurrent_jobs),
                specialization=specialization_score(implied, c.specializations),
                rating=rating_score(c.rating),
                price=price_score(c.hourly_rate, batch_min, batch_max),
            )

            compatibility = score(factors, self.weights)
            if request.urgency == Urgency.HIGH and not c.emergency_service:
                compatibility = max(0, compatibility - EMERGENCY_PENALTY)

            matches.append(
                LocationBasedRequestMatch(
                    request_id=request.id,
                    mechanic_id=c.mechanic_id,
                    distance_km=distance,
                    travel_minutes_est=travel_minutes(distance, request.urgency),
                    compatibility_score=compatibility,
                    factors=factors,
                )
            )

        matches.sort(key=lambda m: (-m.compatibility_score, m.distance_km, m.mechanic_id))
        return matches

    async def match(
        self,
        request: Request,
        max_radius_km: float | None = None,
        required_specializations: Iterable[str] = (),
        at: datetime | None = None,
    ) -> list[LocationBasedRequestMatch]:
        if self.registry is None:
            raise RuntimeError("MatchingEngine.match needs an AvailabilityRegistry")

        radius = min(max_radius_km or MATCH_DEFAULT_RADIUS_KM, MATCH_MAX_RADIUS_KM)
        candidates = await self.registry.find_candidates(
            request.location, radius, required_specializations, at=at
        )
        ranked = self.rank(request, candidates)

        _LOGGER.info(
            "Ranked %d mechanics for request %s within %.1fkm",
            len(ranked), request.id, radius,
        )
        return ranked
