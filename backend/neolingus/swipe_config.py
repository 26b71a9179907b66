"""Rules and thresholds for the swipe game ("apta" / "no apta" exam register drill)."""

from __future__ import annotations
from typing import Dict, List, Optional


LANGUAGES: List[str] = ["es", "val", "en"]
LEVELS: List[str] = ["A1", "A2", "B1", "B2", "C1", "C2"]
EXAMS: List[str] = ["EOI", "JQCV", "Cambridge", "DELE", "SIELE"]
SKILLS: List[str] = ["reading", "writing", "listening", "speaking", "vocabulary", "grammar"]
# Clients send single-letter skill codes
SKILL_ALIASES: Dict[str, str] = {
    "R": "reading",
    "W": "writing",
    "L": "listening",
    "S": "speaking",
    "V": "vocabulary",
    "G": "grammar",
}
USER_CHOICES: List[str] = ["apta", "no_apta"]
INPUT_METHODS: List[str] = ["keyboard", "mouse", "touch"]

SESSION_DURATIONS: List[int] = [20, 30, 60, 120]
DEFAULT_DURATION_S = 60
SECONDS_PER_ITEM = 3
MAX_INITIAL_DECK = 40

# Scoring
CORRECT_POINTS = 1.0
INCORRECT_POINTS = -1.33
SUSPICIOUS_LATENCY_MS = 250
MAX_LATENCY_MS = 300_000

# Deck
DEFAULT_DECK_SIZE = 50
MIN_DECK_SIZE = 10
MAX_DECK_SIZE = 100
RECOMMENDED_PACK_SIZE = 20

# ELO
DEFAULT_ELO = 1500
MIN_ELO = 800
MAX_ELO = 2400
K_NEW_PLAYER = 24
K_ESTABLISHED = 20
K_EXPERT = 16
NEW_PLAYER_ANSWERS = 30
EXPERT_THRESHOLD = 1800
DEFAULT_RD = 350.0
MIN_RD = 50.0
GENERAL_TAG = "general"

# Adaptive deck mix
TARGET_OFFSET = 50
IN_RANGE_SHARE = 0.6
EASIER_SHARE = 0.2
HARDER_SHARE = 0.2
SKILL_RANGE_SPREAD = 200

DIFFICULTY_TARGETS: Dict[str, int] = {"easy": 1300, "medium": 1500, "hard": 1700}

# Performance grading (accuracy %)
EXCELLENT_ACCURACY = 85.0
GOOD_ACCURACY = 70.0
LEVEL_DOWN_ACCURACY = 50.0
SYSTEMATIC_ERROR_COUNT = 3

SPANS: Dict[str, int] = {"7d": 7, "30d": 30, "90d": 90}


def normalize_skill(skill: Optional[str]) -> Optional[str]:
    if not skill:
        return None
    value = skill.strip()
    if value.upper() in SKILL_ALIASES:
        return SKILL_ALIASES[value.upper()]
    value = value.lower()
    return value if value in SKILLS else None


def clamp_deck_size(size: int) -> int:
    return max(MIN_DECK_SIZE, min(int(size), MAX_DECK_SIZE))


def next_level(level: str, step: int) -> str:
    idx = LEVELS.index(level) if level in LEVELS else 2
    idx = max(0, min(idx + step, len(LEVELS) - 1))
    return LEVELS[idx]
