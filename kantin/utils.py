import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import bleach


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Clean free text (menu descriptions, transaction notes) before storing it.

    - Strips HTML tags using bleach.clean(..., strip=True)
    - Removes NULL bytes and collapses runs of whitespace
    - Returns None for None or for text that is empty after cleaning
    """
    if value is None:
        return None
    val = value.replace("\x00", "")
    val = bleach.clean(val, tags=[], strip=True)
    val = re.sub(r"\s+", " ", val).strip()
    return val or None


def format_rupiah(value) -> str:
    """Format an amount the way the canteen displays prices, e.g. ``Rp 15.000``."""
    if value is None:
        return "-"
    amount = Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    return f"{sign}Rp {abs(amount):,}".replace(",", ".")
