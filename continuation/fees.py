from __future__ import annotations

from typing import Sequence

from continuation.records import RateCardInfo

FALLBACK_RATE_MINOR = 3000


def resolve_rate(
    duration_mins: int,
    rate_cards: Sequence[RateCardInfo],
    fallback_minor: int = FALLBACK_RATE_MINOR,
) -> int:
    """Per-lesson fee for a lesson length.

    Order: a card with the exact duration, the org's default card, the first
    card, then ``fallback_minor``. Never fails; an unusable (zero/negative)
    amount also falls through to the fallback.
    """
    if not rate_cards:
        return fallback_minor
    for card in rate_cards:
        if card.duration_mins == duration_mins and card.rate_amount > 0:
            return card.rate_amount
    for card in rate_cards:
        if card.is_default and card.rate_amount > 0:
            return card.rate_amount
    first = rate_cards[0].rate_amount
    return first if first and first > 0 else fallback_minor


def rate_for_student(
    default_rate_card_id: str | None,
    duration_mins: int,
    rate_cards: Sequence[RateCardInfo],
    fallback_minor: int = FALLBACK_RATE_MINOR,
) -> int:
    """The student's own rate card wins; otherwise resolve by lesson length."""
    if default_rate_card_id:
        for card in rate_cards:
            if card.id == default_rate_card_id and card.rate_amount > 0:
                return card.rate_amount
    return resolve_rate(duration_mins, rate_cards, fallback_minor)


def format_minor(amount_minor: int | None, symbol: str = "£") -> str:
    if not amount_minor:
        return ""
    return f"{symbol}{amount_minor / 100:.2f}"
