"""
Join Code Generator

Short, human-shareable codes that diners type on their phones. The alphabet
drops characters that are easy to confuse when read aloud or off a receipt
(0/O, 1/I/L). Six characters from 31 symbols gives ~887 million codes, far
more than the per-restaurant active-session cap ever uses.
"""

import logging
import secrets
from typing import Callable

from group_ordering.core.errors import CapacityExceeded, CodeCollision

logger = logging.getLogger(__name__)

DEFAULT_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


class JoinCodeGenerator:
    """
    Generates join codes and retries on collision.

    Args:
        length: Characters per code
        max_attempts: Collision retries before giving up
        alphabet: Symbols to draw from
    """

    def __init__(
        self,
        length: int = 6,
        max_attempts: int = 10,
        alphabet: str = DEFAULT_ALPHABET,
    ):
        if length < 1:
            raise ValueError("length must be positive")
        if len(set(alphabet)) < 2:
            raise ValueError("alphabet needs at least two distinct symbols")
        self.length = length
        self.max_attempts = max_attempts
        self.alphabet = alphabet

    def candidate(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    def _claim(self, is_taken: Callable[[str], bool]) -> str:
        code = self.candidate()
        if is_taken(code):
            raise CodeCollision(code)
        return code

    def generate(self, is_taken: Callable[[str], bool]) -> str:
        """
        Return a code for which ``is_taken`` is False.

        The caller must hold whatever lock makes ``is_taken`` and the later
        insert atomic; the registry does.

        Raises:
            CapacityExceeded: Every attempt collided
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._claim(is_taken)
            except CodeCollision as e:
                logger.debug(f"Join code collision on {e} (attempt {attempt}/{self.max_attempts})")

        logger.warning(f"Join code space exhausted after {self.max_attempts} attempts")
        raise CapacityExceeded(
            "Could not allocate a free join code, try again later",
            attempts=self.max_attempts,
        )

    @staticmethod
    def normalize(code: str) -> str:
        """Codes are case-insensitive and tolerate surrounding spaces or dashes."""
        return code.strip().replace("-", "").replace(" ", "").upper()
