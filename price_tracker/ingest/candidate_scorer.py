"""Stage-agnostic ranking of price candidates.

Candidates come from rendered DOM text nodes or from regex matches over raw
HTML/JSON blobs; both are reduced to the same observation shape and ranked by
the same rule, so the winner only depends on the observation set.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from price_tracker.ingest.price_parser import ParsedPrice, parse_price

logger = logging.getLogger(__name__)

VISIBLE_BONUS = 100.0
ABOVE_FOLD_BONUS = 30.0
ABOVE_FOLD_MAX_PX = 1200.0
BELOW_FOLD_PX_PER_POINT = 100.0
BELOW_FOLD_MAX_PENALTY = 30.0
BUY_BOX_BONUS = 35.0
SECONDARY_GROUP_PENALTY = 10.0
NON_BUYABLE_PENALTY = 60.0
MAX_INDEX_PENALTY = 25.0

BUY_BOX_KEYWORDS = (
    "desktop_buybox_group_1",
    "buybox",
    "coreprice",
    "pricetopay",
    "apex",
    "priceblock_ourprice",
    "priceblock_dealprice",
)

SECONDARY_GROUP_KEYWORDS = ("group_2", "group_3")

# Strike-through, list and used-offer prices
NON_BUYABLE_KEYWORDS = (
    "basisprice",
    "a-text-price",
    "strike",
    "wasprice",
    "listprice",
    "used",
    "buying options",
)


@dataclass
class CandidateObservation:
    """A raw price observation before parsing and scoring."""

    index: int
    text: str
    vertical_position: Optional[float] = None  # px from page top, None if unknown
    is_visible: Optional[bool] = None  # None if the source cannot tell
    context_hint: str = ""
    source: str = "dom"
    bonus: float = 0.0  # Source-specific adjustment, e.g. structured JSON amounts


@dataclass
class ScoredCandidate:
    """A parsed, scored candidate."""

    observation: CandidateObservation
    parsed: ParsedPrice
    score: float

    @property
    def has_buy_box_context(self) -> bool:
        return _contains_any(self.observation.context_hint, BUY_BOX_KEYWORDS)


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    lower = str(text or "").lower()
    return any(keyword in lower for keyword in keywords)


def position_score(vertical_position: Optional[float]) -> float:
    """Bonus inside the above-the-fold band, linearly growing penalty below it."""
    if vertical_position is None:
        return 0.0
    if vertical_position <= ABOVE_FOLD_MAX_PX:
        return ABOVE_FOLD_BONUS
    overshoot = (vertical_position - ABOVE_FOLD_MAX_PX) / BELOW_FOLD_PX_PER_POINT
    return -min(BELOW_FOLD_MAX_PENALTY, overshoot)


def context_score(context_hint: str) -> float:
    score = 0.0
    if _contains_any(context_hint, BUY_BOX_KEYWORDS):
        score += BUY_BOX_BONUS
    if _contains_any(context_hint, SECONDARY_GROUP_KEYWORDS):
        score -= SECONDARY_GROUP_PENALTY
    if _contains_any(context_hint, NON_BUYABLE_KEYWORDS):
        score -= NON_BUYABLE_PENALTY
    return score


def score_candidate(observation: CandidateObservation) -> float:
    """Score one observation; higher is more likely the buy-box price."""
    score = observation.bonus
    if observation.is_visible:
        score += VISIBLE_BONUS
    score += position_score(observation.vertical_position)
    score += context_score(observation.context_hint)
    score -= min(float(observation.index), MAX_INDEX_PENALTY)
    return score


def rank_candidates(
    observations: Iterable[CandidateObservation],
    fallback_currency: Optional[str] = None,
) -> list[ScoredCandidate]:
    """
    Parse and score observations, best first.

    Candidates that fail to parse or parse to a non-positive amount are dropped.
    Ties go to the earliest index.
    """
    scored = []
    for observation in observations:
        parsed = parse_price(observation.text, fallback_currency)
        if parsed is None or parsed.numeric <= 0:
            continue
        scored.append(ScoredCandidate(observation, parsed, score_candidate(observation)))

    scored.sort(key=lambda c: (-c.score, c.observation.index))
    return scored


def select_best_candidate(
    observations: Iterable[CandidateObservation],
    fallback_currency: Optional[str] = None,
) -> Optional[ScoredCandidate]:
    """Return the highest-ranked candidate, or None if nothing parses."""
    ranked = rank_candidates(observations, fallback_currency)
    if not ranked:
        return None
    best = ranked[0]
    logger.debug(
        f"Best price candidate {best.observation.text!r} "
        f"(score {best.score:.1f}, {len(ranked)} candidates, source {best.observation.source})"
    )
    return best
