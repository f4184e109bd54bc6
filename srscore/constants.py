"""
SM-2 scheduling constants.

This module contains static scheduler parameters and deck option defaults.
No runtime configuration or path defaults - pure constants only.
"""
from typing import Dict, Tuple

# Default deck options, applied when a deck's options row is first created.
DEFAULT_NEW_PER_DAY: int = 10
DEFAULT_REVIEWS_PER_DAY: int = 50
DEFAULT_LEARNING_STEPS_MINUTES: Tuple[int, ...] = (10, 1440)
DEFAULT_RELEARN_STEPS_MINUTES: Tuple[int, ...] = (10, 1440)
DEFAULT_LEECH_THRESHOLD: int = 8
DEFAULT_BURY_SIBLINGS: bool = True

# Ease factor bounds and the starting ease of an unseen card.
DEFAULT_EASE: float = 2.5
MIN_EASE: float = 1.3
MAX_EASE: float = 3.0

# Grade (0-3) to SM-2 quality (0-5): again=0, hard=3, good=4, easy=5.
GRADE_TO_QUALITY: Dict[int, int] = {
    0: 0,
    1: 3,
    2: 4,
    3: 5,
}

# Interval multipliers for graduated cards.
HARD_INTERVAL_MULTIPLIER: float = 1.2
EASY_BONUS: float = 1.3

# Fixed onboarding intervals (days) for the first two successful reps.
FIRST_INTERVAL_DAYS: int = 1
SECOND_INTERVAL_DAYS: int = 6

# Confidence is an optional 0-3 self-report stored alongside the grade.
MIN_CONFIDENCE: int = 0
MAX_CONFIDENCE: int = 3

# Source type recorded on cards created without provenance.
DEFAULT_CARD_SOURCE_TYPE: str = "manual"

# Analytics windows.
RECENT_REVIEWS_LIMIT: int = 50
ANALYTICS_WINDOW_DAYS: int = 7
