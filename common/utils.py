import secrets
import string
import time
from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")
CODE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def generate_code(prefix, suffix_length=4):
    """Return ``{prefix}-{epoch millis}-{random suffix}``, e.g. ``PO-1718000000000-X7QK``."""
    suffix = "".join(secrets.choice(CODE_SUFFIX_ALPHABET) for _ in range(suffix_length))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def split_tags(value):
    if not value:
        return []
    return [tag.strip() for tag in str(value).split(",") if tag.strip()]
