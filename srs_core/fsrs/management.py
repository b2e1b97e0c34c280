"""
Management View Handling

When a learner sees a card's answer outside a graded review (editing,
browsing a deck) the memory state must not change. The only effect is a
bounded push ("fuzz") of next_review for cards that are due soon.

Also here:
- Management risk: how much a management session would spoil a card
- Content change detection: whether an edit invalidates the memory state
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Literal, Optional
import logging
import random

from srs_core.config import ManagementPenaltyConfig
from srs_core.fsrs.memory_state import (
    MemoryState,
    calculate_retrievability,
    elapsed_days,
    elapsed_hours,
)
from srs_core.fsrs.phases import NewCard
from srs_core.fsrs.weights import DEFAULT_WEIGHTS

logger = logging.getLogger(__name__)


RiskLevel = Literal["low", "medium", "high", "critical"]
RecommendedAction = Literal["safe", "pre-study", "avoid"]

# Content change thresholds (percent)
SIGNIFICANT_CHANGE_PERCENT = 30.0
RESET_CHANGE_PERCENT = 50.0

PRE_STUDY_TARGET_RETENTION = 0.95
PRE_STUDY_LIMIT = 50


# ---- Management penalty ----

class ManagementPenaltyEngine:
    """
    Push next_review forward after a passive answer reveal.

    Stability and difficulty are never touched and next_review never moves
    backwards. Randomness (non-adaptive mode) comes from the injected rng.
    """

    def __init__(
        self,
        config: Optional[ManagementPenaltyConfig] = None,
        decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay,
        rng: Optional[random.Random] = None
    ):
        self.config = config or ManagementPenaltyConfig()
        self.decay = decay
        self.rng = rng or random.Random()

    def apply(self, state: MemoryState, revealed_for_seconds: float, now: datetime) -> MemoryState:
        """
        Apply the management penalty to a long-term state.

        Args:
            state: Current long-term state
            revealed_for_seconds: How long the answer was visible
            now: Current time

        Returns:
            The same state, or a copy with next_review pushed forward
        """
        if revealed_for_seconds < self.config.min_reveal_seconds:
            return state
        if state.stability is None or state.stability <= 0:
            return state

        hours_until_due = elapsed_hours(now, state.next_review)
        if hours_until_due > self.config.due_horizon_hours:
            return state

        fuzz_hours = self.fuzzing_hours(state, hours_until_due, now)
        if fuzz_hours <= 0:
            return state

        logger.debug("Management penalty: +%.2fh on card due in %.1fh", fuzz_hours, hours_until_due)
        return replace(state, next_review=state.next_review + timedelta(hours=fuzz_hours))

    def fuzzing_hours(self, state: MemoryState, hours_until_due: float, now: datetime) -> float:
        """
        Size of the push, in hours.

        Adaptive mode starts from the middle of the configured window and
        scales by:
        - stability: strong cards (S > 7d) x0.5, fragile cards (S < 1d) x1.25
        - retrievability: fresh (R > 0.9) x0.7, at risk (R < 0.7) x1.2
        - time until due: < 2h x1.5, < 6h x1.2
        and is clamped back into [fuzzing_hours_min, fuzzing_hours_max].
        """
        low = min(self.config.fuzzing_hours_min, self.config.fuzzing_hours_max)
        high = max(self.config.fuzzing_hours_min, self.config.fuzzing_hours_max)

        if not self.config.adaptive_fuzzing:
            return self.rng.uniform(low, high)

        retrievability = calculate_retrievability(
            max(0.0, elapsed_days(state.anchor, now)), state.stability, self.decay
        )

        stability_multiplier = 1.0
        if state.stability > 7:
            stability_multiplier = 0.5
        elif state.stability < 1:
            stability_multiplier = 1.25

        r_multiplier = 1.0
        if retrievability > 0.9:
            r_multiplier = 0.7
        elif retrievability < 0.7:
            r_multiplier = 1.2

        time_multiplier = 1.0
        if hours_until_due < 2:
            time_multiplier = 1.5
        elif hours_until_due < 6:
            time_multiplier = 1.2

        base = (low + high) / 2.0
        fuzz = base * stability_multiplier * r_multiplier * time_multiplier
        return max(low, min(high, fuzz))


# ---- Management risk ----

@dataclass(frozen=True)
class ManagementRisk:
    card_id: object
    risk_level: RiskLevel
    risk_percent: float
    retrievability: float
    stability: float
    hours_until_due: float
    recommended_action: RecommendedAction


@dataclass(frozen=True)
class DeckManagementRisk:
    total_cards: int
    at_risk_cards: int
    risk_percent: float
    critical_cards: int
    high_risk_cards: int
    medium_risk_cards: int
    low_risk_cards: int
    recommended_pre_study_count: int


def calculate_management_risk(
    state: MemoryState,
    now: datetime,
    card_id: object = None,
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> ManagementRisk:
    """
    Risk that revealing this card during management spoils its next review.

    Formula:
        risk% = (1 - R) * 50 + time_factor * 30 + stability_factor * 20

    Where:
    - time_factor = max(0, 1 - hours_until_due / 24)
    - stability_factor = 1 if S < 1 else min(1, 1 / S)

    Levels: >= 70 critical (avoid), >= 50 high, >= 30 medium (pre-study), else low (safe)
    """
    retrievability = calculate_retrievability(
        max(0.0, elapsed_days(state.anchor, now)), state.stability, decay
    )
    hours_until_due = elapsed_hours(now, state.next_review)

    r_factor = 1.0 - retrievability
    time_factor = max(0.0, 1.0 - hours_until_due / 24.0)
    stability_factor = 1.0 if state.stability < 1 else min(1.0, 1.0 / state.stability)

    risk_percent = min(100.0, r_factor * 50 + time_factor * 30 + stability_factor * 20)

    if risk_percent >= 70:
        level, action = "critical", "avoid"
    elif risk_percent >= 50:
        level, action = "high", "pre-study"
    elif risk_percent >= 30:
        level, action = "medium", "pre-study"
    else:
        level, action = "low", "safe"

    return ManagementRisk(
        card_id=card_id,
        risk_level=level,
        risk_percent=risk_percent,
        retrievability=retrievability,
        stability=state.stability,
        hours_until_due=hours_until_due,
        recommended_action=action,
    )


def calculate_deck_management_risk(
    cards: Iterable[tuple[object, MemoryState]],
    now: datetime,
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> DeckManagementRisk:
    """Aggregate management risk over all reviewed cards of a deck."""
    risks = [calculate_management_risk(state, now, card_id, decay) for card_id, state in cards]

    counts = {"critical": 0, "high": 0, "medium": 0, "low": 0}
    for risk in risks:
        counts[risk.risk_level] += 1

    average = sum(r.risk_percent for r in risks) / len(risks) if risks else 0.0
    return DeckManagementRisk(
        total_cards=len(risks),
        at_risk_cards=counts["critical"] + counts["high"] + counts["medium"],
        risk_percent=average,
        critical_cards=counts["critical"],
        high_risk_cards=counts["high"],
        medium_risk_cards=counts["medium"],
        low_risk_cards=counts["low"],
        recommended_pre_study_count=counts["critical"] + counts["high"],
    )


def get_pre_study_cards(
    cards: Iterable[tuple[object, MemoryState]],
    now: datetime,
    target_retention: float = PRE_STUDY_TARGET_RETENTION,
    limit: int = PRE_STUDY_LIMIT,
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> list[ManagementRisk]:
    """
    Cards worth studying before a management session.

    Keeps non-low-risk cards below the (higher) pre-study retention, highest
    risk first.
    """
    candidates = [
        risk for risk in (
            calculate_management_risk(state, now, card_id, decay) for card_id, state in cards
        )
        if risk.risk_level != "low" and risk.retrievability < target_retention
    ]
    candidates.sort(key=lambda r: r.risk_percent, reverse=True)
    return candidates[:limit]


# ---- Content change ----

@dataclass(frozen=True)
class ContentChange:
    change_percent: float
    is_significant: bool  # > 30% changed
    should_reset: bool  # > 50% changed


def levenshtein_distance(first: str, second: str) -> int:
    """Edit distance (insertions, deletions, substitutions)."""
    if len(first) < len(second):
        first, second = second, first
    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def detect_content_change(old_content: str, new_content: str) -> ContentChange:
    """
    Compare card text before and after an edit.

    change% = edit distance / length of the longer string * 100
    """
    if old_content == new_content:
        return ContentChange(change_percent=0.0, is_significant=False, should_reset=False)

    if not old_content or not new_content:
        change_percent = 100.0
    else:
        longest = max(len(old_content), len(new_content))
        change_percent = levenshtein_distance(old_content, new_content) / longest * 100.0

    return ContentChange(
        change_percent=change_percent,
        is_significant=change_percent > SIGNIFICANT_CHANGE_PERCENT,
        should_reset=change_percent > RESET_CHANGE_PERCENT,
    )


def reset_card_state(now: datetime) -> NewCard:
    """Discard all memory state: the card is new again and due immediately."""
    return NewCard(due=now)
