"""
Card Phases

A card is in exactly one of four phases. Each variant carries only the
fields that are meaningful for it, so a card can never be "half learning,
half graduated":

    NewCard         never reviewed
    LearningCard    short-term model active, no long-term state yet
                    (or a previous long-term state kept for re-graduation)
    ReviewCard      long-term model active
    RelearningCard  lapsed; short-term model active again, with the
                    post-lapse long-term state held for re-graduation
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from srs_core.fsrs.constants import ReviewState
from srs_core.fsrs.memory_state import MemoryState


@dataclass(frozen=True)
class NewCard:
    due: Optional[datetime] = None


@dataclass(frozen=True)
class LearningCard:
    short_stability_minutes: float
    learning_review_count: int
    last_review: datetime
    next_review: datetime
    # Long-term state from an earlier graduation, seeds the graduation review
    prior_long_term: Optional[MemoryState] = None


@dataclass(frozen=True)
class ReviewCard:
    memory: MemoryState
    graduated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RelearningCard:
    short_stability_minutes: float
    learning_review_count: int
    last_review: datetime
    next_review: datetime
    # Post-lapse stability/difficulty, applied once the card re-graduates
    lapse_memory: MemoryState


CardPhase = Union[NewCard, LearningCard, ReviewCard, RelearningCard]


def review_state_of(phase: CardPhase) -> ReviewState:
    """Review-state label recorded in the review log for a card in this phase."""
    if isinstance(phase, NewCard):
        return ReviewState.NEW
    if isinstance(phase, LearningCard):
        return ReviewState.LEARNING
    if isinstance(phase, RelearningCard):
        return ReviewState.RELEARNING
    return ReviewState.REVIEW


def next_review_of(phase: CardPhase) -> Optional[datetime]:
    if isinstance(phase, NewCard):
        return phase.due
    if isinstance(phase, ReviewCard):
        return phase.memory.next_review
    return phase.next_review


def last_review_of(phase: CardPhase) -> Optional[datetime]:
    if isinstance(phase, NewCard):
        return None
    if isinstance(phase, ReviewCard):
        return phase.memory.last_review
    return phase.last_review


def long_term_state_of(phase: CardPhase) -> Optional[MemoryState]:
    """Active long-term state, or None while the card is not graduated."""
    if isinstance(phase, ReviewCard):
        return phase.memory
    return None


def is_in_learning(phase: CardPhase) -> bool:
    return isinstance(phase, (LearningCard, RelearningCard))
