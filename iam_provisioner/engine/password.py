"""
Random password generation for IAM login profiles.

Passwords are drawn from the operating system's CSPRNG. Composition follows
a simple policy: an exact number of digits and symbols, letters for the
rest, characters placed at random positions.
"""

import logging
import secrets
import string
from typing import List

logger = logging.getLogger(__name__)

LOWER_LETTERS = string.ascii_lowercase
UPPER_LETTERS = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "~!@#$%^&*()_+`-={}|[]\\:\"<>?,./"

# Policy used for every new login profile
LOGIN_PASSWORD_LENGTH = 20
LOGIN_PASSWORD_DIGITS = 3
LOGIN_PASSWORD_SYMBOLS = 3


class PasswordGenerator:
    """Generates passwords matching a composition policy."""

    def __init__(
        self,
        lower_letters: str = LOWER_LETTERS,
        upper_letters: str = UPPER_LETTERS,
        digits: str = DIGITS,
        symbols: str = SYMBOLS,
    ):
        self.lower_letters = lower_letters
        self.upper_letters = upper_letters
        self.digits = digits
        self.symbols = symbols
        self._random = secrets.SystemRandom()

    def generate(
        self,
        length: int,
        num_digits: int,
        num_symbols: int,
        no_upper: bool = False,
        allow_repeat: bool = True,
    ) -> str:
        """
        Generate a password.

        Args:
            length: Total number of characters
            num_digits: Exact number of digits
            num_symbols: Exact number of symbols
            no_upper: Exclude uppercase letters
            allow_repeat: Allow a character to appear more than once

        Returns:
            The generated password

        Raises:
            ValueError: If the policy cannot be satisfied
        """
        if length < 0 or num_digits < 0 or num_symbols < 0:
            raise ValueError("Password length and character counts must be non-negative")

        num_letters = length - num_digits - num_symbols
        if num_letters < 0:
            raise ValueError("Number of digits and symbols exceeds the password length")

        letters = self.lower_letters if no_upper else self.lower_letters + self.upper_letters

        if not allow_repeat:
            if num_letters > len(letters):
                raise ValueError("Number of letters exceeds available letters and repeats are not allowed")
            if num_digits > len(self.digits):
                raise ValueError("Number of digits exceeds available digits and repeats are not allowed")
            if num_symbols > len(self.symbols):
                raise ValueError("Number of symbols exceeds available symbols and repeats are not allowed")

        chars: List[str] = []
        chars.extend(self._pick(letters, num_letters, allow_repeat))
        chars.extend(self._pick(self.digits, num_digits, allow_repeat))
        chars.extend(self._pick(self.symbols, num_symbols, allow_repeat))
        self._random.shuffle(chars)

        return "".join(chars)

    def generate_login_password(self) -> str:
        """Password for a new IAM login profile."""
        return self.generate(
            LOGIN_PASSWORD_LENGTH,
            LOGIN_PASSWORD_DIGITS,
            LOGIN_PASSWORD_SYMBOLS,
            no_upper=False,
            allow_repeat=True,
        )

    def _pick(self, alphabet: str, count: int, allow_repeat: bool) -> List[str]:
        if count == 0:
            return []
        if not alphabet:
            raise ValueError("Cannot pick characters from an empty alphabet")
        if allow_repeat:
            return [secrets.choice(alphabet) for _ in range(count)]
        return self._random.sample(list(alphabet), count)
