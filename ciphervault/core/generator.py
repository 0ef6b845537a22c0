import random
import secrets
import string

from .errors import ValidationError
from .models import GeneratorConfig

SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

CHARACTER_CLASSES = {
    "uppercase": string.ascii_uppercase,
    "lowercase": string.ascii_lowercase,
    "numbers": string.digits,
    "symbols": SYMBOLS,
}


def _strip(chars: str, excluded: str) -> str:
    return "".join(c for c in chars if c not in excluded)


def generate_password(config: GeneratorConfig) -> str:
    """One character from every required class, the rest drawn from the union."""
    if config.length < 1:
        raise ValidationError("Password length must be at least 1")
    excluded = config.exclude_chars or ""

    flags = {
        "uppercase": config.require_uppercase,
        "lowercase": config.require_lowercase,
        "numbers": config.require_numbers,
        "symbols": config.require_symbols,
    }
    required = [name for name, wanted in flags.items() if wanted]

    pool_map = []
    for name in required:
        pool = _strip(CHARACTER_CLASSES[name], excluded)
        if not pool:
            raise ValidationError(f"Every {name} character is excluded")
        pool_map.append(pool)

    if len(pool_map) > config.length:
        raise ValidationError(
            f"Length {config.length} is too short for {len(pool_map)} required character types"
        )

    if pool_map:
        full_alphabet = "".join(pool_map)
    else:
        # nothing required: draw from every class
        full_alphabet = _strip("".join(CHARACTER_CLASSES.values()), excluded)
    if not full_alphabet:
        raise ValidationError("All allowed characters are excluded")
    full_alphabet_set = sorted(set(full_alphabet))

    password_chars = [secrets.choice(pool) for pool in pool_map]
    for _ in range(config.length - len(password_chars)):
        password_chars.append(secrets.choice(full_alphabet_set))
    random.SystemRandom().shuffle(password_chars)
    return "".join(password_chars)
