"""Postal-code delivery fees for the Montreal delivery area."""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

# Keys are either a full code ("H1A 0A1") or a forward sortation area ("H1C").
# Fees are in cents.
_DELIVERY_FEES_CENTS: Dict[str, int] = {
    "H1A 0A1": 5000,
    "H1A 0A2": 5000,
    "H1A 0A5": 5000,
    "H1B 4H6": 3600,
    "H1C": 3200,
    "H1C 0C7": 3000,
    "H1C 0C9": 3000,
    "H1C 1N9": 3000,
    "H1C 1X2": 4500,
    "H1E": 3000,
    "H1G": 3000,
    "H1H": 3000,
    "H1J": 3000,
    "H1K": 3000,
    "H1K 1V1": 3500,
    "H1L": 3000,
    "H1M": 2800,
    "H1N": 3000,
    "H1N 0A7": 3000,
    "H1N 1C7": 2500,
    "H1N 1C9": 2500,
    "H1N 3B1": 3000,
    "H1N 5L5": 3000,
    "H1P": 2500,
    "H1P 1H5": 3000,
    "H1R": 2500,
    "H1S": 2000,
    "H1S 0C5": 3000,
    "H1T": 3000,
    "H1T 3G6": 1800,
    "H1V 3C4": 2800,
    "H1V 3E9": 2200,
    "H1W": 2500,
    "H1X": 2500,
    "H1X 2S2": 2500,
    "H1Y": 3000,
    "H1Z": 2500,
    "H2A": 2500,
    "H2B": 2500,
    "H2B 2X1": 2500,
    "H2C": 2500,
    "H2E": 2500,
    "H2G": 2500,
    "H2G 1K4": 2500,
    "H2H": 2500,
    "H2I": 2000,
    "H2J": 2500,
    "H2K": 2500,
    "H2L": 2500,
    "H2M": 2500,
    "H2N": 2000,
    "H2O": 1500,
    "H2P": 2000,
    "H2Q": 2100,
    "H2R": 2000,
    "H2S": 2000,
    "H2S 1P3": 1500,
    "H2T": 1500,
    "H2U": 1500,
    "H2V": 1500,
    "H2W": 1500,
    "H2X": 1600,
    "H2Y": 2000,
    "H2Z": 2200,
    "H3A": 2000,
    "H3B": 1500,
    "H3C": 2200,
    "H3C 1T3": 1700,
    "H3C 2M8": 2000,
    "H3E": 2000,
    "H3G": 1600,
    "H3G 1T7": 1600,
    "H3H": 1500,
    "H3H 2V1": 2000,
    "H3J": 1500,
    "H3K": 2000,
    "H3K 2N9": 2000,
    "H3L": 2500,
    "H3L 3M7": 2500,
    "H3M": 2000,
    "H3N": 1500,
    "H3P": 1500,
    "H3P 2H2": 1500,
    "H3R": 1600,
    "H3R 1A7": 1600,
    "H3S": 1000,
    "H3T": 1000,
    "H3T 1E2": 1000,
    "H3T 1L5": 1000,
    "H3T 1M5": 1000,
    "H3V": 1200,
    "H3W": 1200,
    "H3W 1C1": 1200,
    "H3W 1K8": 1200,
    "H3X": 1500,
    "H3Y": 1500,
    "H3Z": 1500,
    "H4A": 2000,
    "H4B": 1800,
    "H4C": 1500,
    "H4E": 1300,
    "H4G": 2000,
    "H4H": 1300,
    "H4J": 2000,
    "H4J 1C5": 2000,
    "H4K": 2800,
    "H4L": 2000,
    "H4M": 2000,
    "H4N": 2200,
    "H4P": 1600,
    "H4R": 2000,
    "H4R 2T6": 1600,
    "H4S": 2200,
    "H4T": 1600,
    "H4V": 1600,
    "H4V 2H6": 1500,
    "H4W": 1800,
    "H4X": 2000,
    "H4Y": 2000,
    "H4Z": 1500,
    "H5A": 2000,
    "H5B": 1500,
    "H7A": 4500,
    "H7B": 4500,
    "H7C": 4500,
    "H7E": 4500,
    "H7E 3T2": 3000,
    "H7E 4N9": 3000,
    "H7E 5J2": 3500,
    "H7G": 4000,
    "H7H": 4500,
    "H7J": 5000,
    "H7K": 5000,
    "H7L": 4500,
    "H7M": 4500,
    "H7N": 3000,
    "H7P": 4500,
    "H7R": 4500,
    "H7S": 2500,
    "H7T": 3000,
    "H7V": 3000,
    "H7W": 3000,
    "H7X": 4000,
    "H7X 4B8": 2500,
    "H7Y": 4500,
    "H8N": 2000,
    "H8P": 2500,
    "H8R": 2500,
    "H8S": 2500,
    "H8T": 2500,
    "H8Y": 3000,
    "H8Z": 3000,
    "H9A": 3000,
    "H9B": 3000,
    "H9C": 5000,
    "H9E": 5000,
    "H9H": 5000,
    "H9J": 3000,
    "H9K": 4500,
    "H9P": 3000,
    "H9R": 3200,
    "H9S": 3000,
    "H9W": 2800,
    "H9X": 4500,
    "J3E 0H7": 6000,
    "J3G 3V9": 5500,
    "J3L": 4200,
    "J3N 1L1": 5000,
    "J3Y": 3200,
    "J3Y 0R2": 3200,
    "J4K": 2800,
    "J4M": 3800,
    "J4R 2C8": 2800,
    "J4R 2H3": 2500,
    "J4W": 2500,
    "J4X 2R1": 2800,
    "J4Z 1J1": 3000,
    "J5C": 2500,
    "J5C 1Y4": 3000,
    "J5W 3W5": 3000,
    "J6Z 4C2": 3500,
    "J6G": 4500,
    "J7R": 6000,
    "J7T": 6000,
    "J7V 0H8": 4800,
    "J7V 0M2": 5500,
    "J7V 6C4": 3800,
    "J7W": 4500,
    "J7X": 4500,
}

DELIVERY_FEES: Mapping[str, int] = MappingProxyType(_DELIVERY_FEES_CENTS)

PREFIX_LENGTH = 3
MIN_SEARCH_PREFIX_LENGTH = 2

_whitespace = re.compile(r"\s+")


class NotServiceable(LookupError):
    """Raised when a postal code is outside the delivery area."""

    def __init__(self, postal_code: str):
        self.postal_code = postal_code
        super().__init__(f"Postal code {postal_code or '(empty)'} is not in the delivery area")


@dataclass(frozen=True)
class FeeQuote:
    fee_cents: int
    postal_code: str
    match_type: str  # "exact" | "partial"
    matched_key: str


def normalize_postal_code(value: Optional[str]) -> str:
    if not isinstance(value, str):
        return ""
    return _whitespace.sub("", value).upper()


def format_postal_code(value: Optional[str]) -> str:
    """Format a code as "AAA BBB" when it has six characters once normalized."""
    normalized = normalize_postal_code(value)
    if len(normalized) == 6:
        return f"{normalized[:PREFIX_LENGTH]} {normalized[PREFIX_LENGTH:]}"
    return normalized


def resolve_fee(raw_postal_code: Optional[str], table: Mapping[str, int] = DELIVERY_FEES) -> FeeQuote:
    """Return the delivery fee for a postal code.

    A full-code entry wins over the entry for its three-character prefix.
    Codes shorter than three characters never fall back to the prefix.
    """
    normalized = normalize_postal_code(raw_postal_code)
    formatted = format_postal_code(raw_postal_code)

    if formatted and formatted in table:
        return FeeQuote(
            fee_cents=table[formatted],
            postal_code=formatted,
            match_type="exact",
            matched_key=formatted,
        )

    if len(normalized) >= PREFIX_LENGTH:
        prefix = normalized[:PREFIX_LENGTH]
        if prefix in table:
            return FeeQuote(
                fee_cents=table[prefix],
                postal_code=formatted,
                match_type="partial",
                matched_key=prefix,
            )

    raise NotServiceable(formatted)


def find_fee(raw_postal_code: Optional[str]) -> Optional[FeeQuote]:
    """Like ``resolve_fee`` but returns ``None`` for codes outside the area."""
    try:
        return resolve_fee(raw_postal_code)
    except NotServiceable:
        return None


def is_in_delivery_area(raw_postal_code: Optional[str]) -> bool:
    return find_fee(raw_postal_code) is not None


def list_delivery_fees() -> Dict[str, int]:
    return dict(DELIVERY_FEES)


def delivery_fee_stats() -> Dict[str, object]:
    fees = list(DELIVERY_FEES.values())
    average = (Decimal(sum(fees)) / Decimal(len(fees))).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return {
        "totalAreas": len(fees),
        "uniqueFees": sorted(set(fees)),
        "minFee": min(fees),
        "maxFee": max(fees),
        "averageFee": int(average),
    }


def search_postal_codes(prefix: Optional[str]) -> List[Dict[str, object]]:
    """List table entries whose key starts with ``prefix``.

    The entry equal to the prefix comes first, the rest follow in key order.
    """
    normalized_prefix = str(prefix or "").strip().upper()
    if len(normalized_prefix) < MIN_SEARCH_PREFIX_LENGTH:
        raise ValueError(
            f"Prefix must be at least {MIN_SEARCH_PREFIX_LENGTH} characters long"
        )

    exact_keys = [key for key in DELIVERY_FEES if key == normalized_prefix]
    partial_keys = sorted(
        key
        for key in DELIVERY_FEES
        if key.startswith(normalized_prefix) and key != normalized_prefix
    )
    return [
        {"postalCode": key, "fee": DELIVERY_FEES[key]}
        for key in exact_keys + partial_keys
    ]
