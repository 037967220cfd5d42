"""
Queue code generation.

Codes are what customers type to join, so they are short and uppercase.
Collisions are possible; the service retries the insert with a fresh code.
"""

import random
import string
from typing import Optional

QUEUE_CODE_ALPHABET = string.ascii_uppercase + string.digits
MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 6

_system_random = random.SystemRandom()


def generate_queue_code(length: int = 6, rng: Optional[random.Random] = None) -> str:
    """
    Generate a random queue code.

    Args:
        length: number of characters, 4 to 6.
        rng: optional RNG (useful for deterministic tests).
    """
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValueError(f"length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")

    r = rng or _system_random
    return "".join(r.choice(QUEUE_CODE_ALPHABET) for _ in range(length))


def normalize_queue_code(text: str) -> str:
    """Codes are typed by hand; accept any case and stray whitespace."""
    return text.strip().upper()
