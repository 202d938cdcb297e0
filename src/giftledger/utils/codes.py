"""Gift card code generation."""

import re
import secrets

CODE_PATTERN = re.compile(r"^GIFT-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}$")


def generate_gift_card_code() -> str:
    """Return a random code in the form GIFT-XXXX-XXXX-XXXX (48 random bits)."""

    segments = [secrets.token_hex(2).upper() for _ in range(3)]
    return "GIFT-" + "-".join(segments)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def is_valid_code(code: str) -> bool:
    return bool(CODE_PATTERN.match(normalize_code(code)))
