"""
kprovision/utils/password.py

Generates the cluster administrator password.

`generate_password` builds a password satisfying a PasswordRequirements.
`generate_alphanumeric_password` asks it for an alphanumeric password with
randomized uppercase/digit minimums, re-checks the result, and retries. After
`max_attempts` failures it returns WEAK_PASSWORD instead of looping forever,
logging a warning because that value is not fit for a real deployment.
"""

from __future__ import annotations

import logging
import random
import re
import string
from typing import Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

WEAK_PASSWORD = "weakpassword"
MIN_PASSWORD_LENGTH = 16
MAX_ATTEMPTS = 50

ALPHANUMERIC = re.compile(r"^[a-zA-Z0-9]+$")


class PasswordRequirements(BaseModel):
    """Minimum character-class counts for a generated password.

    Attributes:
        minimum_total_length: Minimum length of the password.
        uppercase: Minimum number of uppercase letters.
        digits: Minimum number of digits.
        punctuation: Minimum number of punctuation characters; -1 disables them.
    """

    minimum_total_length: int = Field(default=MIN_PASSWORD_LENGTH, ge=1)
    uppercase: int = Field(default=0, ge=0)
    digits: int = Field(default=0, ge=0)
    punctuation: int = Field(default=0, ge=-1)


PasswordGenerator = Callable[[PasswordRequirements, random.Random], str]


def generate_password(requirements: PasswordRequirements, rng: random.Random) -> str:
    """
    Build a random password meeting `requirements`.

    Lowercase letters fill the password; the required uppercase letters, digits
    and punctuation are placed at distinct random positions.

    Raises:
        ValueError: If the required characters do not fit in the length.
    """
    length = requirements.minimum_total_length
    punctuation = max(requirements.punctuation, 0)
    required = requirements.uppercase + requirements.digits + punctuation
    if required > length:
        raise ValueError(
            f"{required} required characters do not fit in a password of length {length}"
        )

    chars = [rng.choice(string.ascii_lowercase) for _ in range(length)]
    positions = rng.sample(range(length), required)
    pools = (
        [string.ascii_uppercase] * requirements.uppercase
        + [string.digits] * requirements.digits
        + [string.punctuation] * punctuation
    )
    for pos, pool in zip(positions, pools):
        chars[pos] = rng.choice(pool)
    return "".join(chars)


def is_acceptable(password: str) -> bool:
    return len(password) >= MIN_PASSWORD_LENGTH and bool(ALPHANUMERIC.match(password))


def generate_alphanumeric_password(
    rng: Optional[random.Random] = None,
    generator: PasswordGenerator = generate_password,
    max_attempts: int = MAX_ATTEMPTS,
) -> str:
    """
    Produce a random alphanumeric password of at least 16 characters.

    Args:
        rng: Source of randomness; a SystemRandom when not given. Pass a
            seeded random.Random for reproducible output.
        generator: The strength-constrained generator to draw candidates from.
        max_attempts: Failed attempts tolerated before falling back.

    Returns:
        The password, or WEAK_PASSWORD once `max_attempts` attempts failed.
    """
    source = rng if rng is not None else random.SystemRandom()

    for attempt in range(1, max_attempts + 1):
        requirements = PasswordRequirements(
            minimum_total_length=MIN_PASSWORD_LENGTH,
            uppercase=source.randint(0, 5),
            digits=source.randint(0, 5),
            punctuation=-1,
        )
        try:
            candidate = generator(requirements, source)
        except ValueError as exc:
            logger.debug("Password attempt %d failed: %s", attempt, exc)
            continue

        # the generator is not trusted to honour "no punctuation"
        if is_acceptable(candidate):
            return candidate
        logger.debug("Password attempt %d rejected by validation", attempt)

    logger.warning(
        "Could not generate an admin password after %d attempts; using the "
        "fixed fallback '%s'. Change it before using this cluster for anything real.",
        max_attempts,
        WEAK_PASSWORD,
    )
    return WEAK_PASSWORD
