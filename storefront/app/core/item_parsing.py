"""
Centralized parsing of legacy order messages.

Orders placed before ``subtotal`` existed only carry a free-text message, e.g.:
  "2x Capulana @ $12.50, 1x Bag @ $30\nTotal: $55.00"
  "Capulana $12.50, Bag $30"
"""
import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional

# Compiled patterns (reused across all calls)
TOTAL_RE = re.compile(r'Total[:\s]+\$?(\d+(?:\.\d+)?)', re.IGNORECASE)
PRICE_RE = re.compile(r'\$(\d+(?:\.\d+)?)')


def _to_decimal(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def parse_prices(message: Optional[str]) -> List[Decimal]:
    """All ``$<amount>`` tokens found in the message, in order."""
    values = (_to_decimal(m) for m in PRICE_RE.findall(message or ""))
    return [v for v in values if v is not None]


def parse_message_total(message: Optional[str]) -> Optional[Decimal]:
    """Extract an order total from a legacy message.

    An explicit ``Total: X`` line wins; otherwise every ``$`` price is summed.
    Returns None when the message carries no amount at all.
    """
    text = message or ""

    match = TOTAL_RE.search(text)
    if match:
        total = _to_decimal(match.group(1))
        if total is not None:
            return total

    prices = parse_prices(text)
    if prices:
        return sum(prices, Decimal("0"))
    return None
