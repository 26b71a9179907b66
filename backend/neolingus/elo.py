from __future__ import annotations
from typing import NamedTuple

from . import swipe_config as cfg


class EloUpdate(NamedTuple):
    user_rating: int
    item_rating: int
    user_delta: int
    item_delta: int
    expected: float


def expected_score(player: float, opponent: float) -> float:
    return 1.0 / (1.0 + 10.0 ** ((opponent - player) / 400.0))


def rating_delta(k: int, actual: float, expected: float) -> int:
    return int(round(k * (actual - expected)))


def clamp_rating(rating: float) -> int:
    return int(max(cfg.MIN_ELO, min(round(rating), cfg.MAX_ELO)))


def k_factor(rating: int, rated_answers: int) -> int:
    if rated_answers < cfg.NEW_PLAYER_ANSWERS:
        return cfg.K_NEW_PLAYER
    if rating >= cfg.EXPERT_THRESHOLD:
        return cfg.K_EXPERT
    return cfg.K_ESTABLISHED


def update_pair(user_rating: int, item_rating: int, user_correct: bool, k: int = cfg.K_ESTABLISHED) -> EloUpdate:
    """One user-vs-item match. A miss makes the item look harder."""
    expected = expected_score(user_rating, item_rating)
    actual = 1.0 if user_correct else 0.0
    user_delta = rating_delta(k, actual, expected)
    new_user = clamp_rating(user_rating + user_delta)
    new_item = clamp_rating(item_rating - user_delta)
    return EloUpdate(
        user_rating=new_user,
        item_rating=new_item,
        user_delta=new_user - user_rating,
        item_delta=new_item - item_rating,
        expected=expected,
    )


def decay_deviation(rd: float) -> float:
    # Each rated answer removes 5% of the remaining uncertainty
    return max(cfg.MIN_RD, rd - (rd - cfg.MIN_RD) * 0.05)
