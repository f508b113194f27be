from __future__ import annotations

import random
import secrets
from collections.abc import Collection

from paydesk.errors import ValidationError

UNIQUE_CODE_MIN = 100
UNIQUE_CODE_MAX = 999


class UniqueCodeAllocator:
    """Draws the 3-digit suffix that makes a pending payment's amount distinguishable."""

    def __init__(self, *, rng: random.Random | None = None, max_attempts: int = 32) -> None:
        self._rng = rng or secrets.SystemRandom()
        self._max_attempts = max(1, max_attempts)

    def allocate(self, *, avoid: Collection[int] = ()) -> int:
        # Codes already pending for the same base amount are skipped while the
        # range has room; once it is nearly exhausted a plain draw is returned
        # and operators disambiguate by order id.
        code = self._draw()
        if not avoid:
            return code
        attempts = 1
        while code in avoid and attempts < self._max_attempts:
            code = self._draw()
            attempts += 1
        return code

    def _draw(self) -> int:
        return self._rng.randint(UNIQUE_CODE_MIN, UNIQUE_CODE_MAX)


def validate_unique_code(code: int) -> int:
    if isinstance(code, bool) or not isinstance(code, int):
        raise ValidationError("unique code must be an integer", code="INVALID_UNIQUE_CODE")
    if not UNIQUE_CODE_MIN <= code <= UNIQUE_CODE_MAX:
        raise ValidationError(
            f"unique code must be between {UNIQUE_CODE_MIN} and {UNIQUE_CODE_MAX}",
            code="INVALID_UNIQUE_CODE",
        )
    return code


def parse_unique_code(raw: str | int) -> int:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return validate_unique_code(raw)
    text = str(raw).strip()
    if not text.isdigit():
        raise ValidationError("unique code must be numeric", code="INVALID_UNIQUE_CODE")
    return validate_unique_code(int(text))


def compose_amount(base: int, code: int) -> int:
    if isinstance(base, bool) or not isinstance(base, int) or base < 0:
        raise ValidationError("base amount must be a non-negative integer", code="INVALID_AMOUNT")
    return base + validate_unique_code(code)
