"""
Initial password generation for new accounts.
"""

import secrets
import string

SYMBOLS = '!@#$%^&*()-_=+'
CHARACTER_CLASSES = (string.ascii_lowercase, string.ascii_uppercase, string.digits, SYMBOLS)
MIN_LENGTH = 8


def generate_password(length: int = 16) -> str:
    """
    Generate a random password with at least one character from each class
    (lowercase, uppercase, digit, symbol).
    """
    if length < MIN_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_LENGTH}")

    alphabet = ''.join(CHARACTER_CLASSES)
    chars = [secrets.choice(chars) for chars in CHARACTER_CLASSES]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


def meets_complexity(password: str, min_length: int = MIN_LENGTH) -> bool:
    """Check length and that every character class is represented."""
    if len(password) < min_length:
        return False
    return all(any(c in chars for c in password) for chars in CHARACTER_CLASSES)
