"""Wei/ether conversion and chain helpers.

Amounts are kept as decimal strings of wei so they never lose precision.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_DOWN

from .config import DEFAULT_NETWORK_ID, PLATFORM_FEE_PERCENTAGE

ETHER_DECIMALS = 18

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

EXPLORER_URLS = {
    "1": "https://etherscan.io",
    "11155111": "https://sepolia.etherscan.io",
}


def _shift(value: Decimal, places: int) -> Decimal:
    # Moves the exponent directly; arithmetic would round to the context precision
    sign, digits, exponent = value.as_tuple()
    return Decimal((sign, digits, exponent + places))


def ether_to_wei(ether: str) -> str:
    try:
        value = Decimal(str(ether))
    except InvalidOperation:
        raise ValueError(f"Invalid ether amount: {ether!r}") from None
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid ether amount: {ether!r}")
    return str(int(_shift(value, ETHER_DECIMALS).to_integral_value(rounding=ROUND_DOWN)))


def wei_to_ether(wei: str) -> str:
    text = format(_shift(Decimal(int(wei)), -ETHER_DECIMALS), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(address))


def etherscan_url(tx_hash: str, network_id: str = DEFAULT_NETWORK_ID) -> str:
    base_url = EXPLORER_URLS.get(str(network_id), EXPLORER_URLS["11155111"])
    return f"{base_url}/tx/{tx_hash}"


def platform_fee(value_in_wei: str, percentage: int = PLATFORM_FEE_PERCENTAGE) -> tuple[str, str]:
    """Split a bounty into ``(fee, payout)``, rounding the fee down."""
    value = int(value_in_wei)
    fee = value * percentage // 100
    return str(fee), str(value - fee)
