import re
from typing import Dict, NamedTuple, Optional

DEFAULT_CURRENCY = "USD"

# Countries and high-traffic cities, upper-cased, mapped to ISO-4217 codes.
PLACE_TO_CURRENCY: Dict[str, str] = {
    # GCC + MENA
    "UNITED ARAB EMIRATES": "AED",
    "UAE": "AED",
    "DUBAI": "AED",
    "ABU DHABI": "AED",
    "SHARJAH": "AED",
    "EGYPT": "EGP",
    "CAIRO": "EGP",
    "ALEXANDRIA": "EGP",
    "LUXOR": "EGP",
    "SAUDI ARABIA": "SAR",
    "SAUDI": "SAR",
    "RIYADH": "SAR",
    "JEDDAH": "SAR",
    "QATAR": "QAR",
    "DOHA": "QAR",
    "KUWAIT": "KWD",
    "KUWAIT CITY": "KWD",
    # Europe
    "BELGIUM": "EUR",
    "BRUSSELS": "EUR",
    "FRANCE": "EUR",
    "PARIS": "EUR",
    "GERMANY": "EUR",
    "BERLIN": "EUR",
    "ITALY": "EUR",
    "ROME": "EUR",
    "SPAIN": "EUR",
    "MADRID": "EUR",
    "NETHERLANDS": "EUR",
    "AMSTERDAM": "EUR",
    "UNITED KINGDOM": "GBP",
    "UK": "GBP",
    "LONDON": "GBP",
    "TURKEY": "TRY",
    "ISTANBUL": "TRY",
    # Americas
    "UNITED STATES": "USD",
    "USA": "USD",
    "NEW YORK": "USD",
    "CANADA": "CAD",
    "TORONTO": "CAD",
    # Asia-Pacific
    "JAPAN": "JPY",
    "TOKYO": "JPY",
    "AUSTRALIA": "AUD",
    "SYDNEY": "AUD",
    "THAILAND": "THB",
    "BANGKOK": "THB",
    "SINGAPORE": "SGD",
    "MALAYSIA": "MYR",
    "INDIA": "INR",
}


def _lookup(text: str) -> Optional[str]:
    return PLACE_TO_CURRENCY.get(" ".join(text.split()).upper())


def currency_code(place: Optional[str], default: str = DEFAULT_CURRENCY) -> str:
    """Resolve a country, a city or ``"City, Country"`` to an ISO-4217 code."""
    if not place or not place.strip():
        return default
    text = place.strip()

    direct = _lookup(text)
    if direct:
        return direct
    if len(text) == 3 and text.isalpha():
        return text.upper()

    for part in re.split(r"[,–-]", text):
        hit = _lookup(part)
        if hit:
            return hit

    words = text.replace(",", " ").split()
    if words:
        hit = _lookup(words[-1])
        if hit:
            return hit
    return default


class ParsedCost(NamedTuple):
    dest: float
    home: float


_NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"


def _to_float(raw: str) -> float:
    return float(raw.replace(",", ""))


def parse_cost(text: Optional[str], dest_iso: str, home_iso: str) -> ParsedCost:
    """Read a price string such as ``"25 EUR (27 USD)"`` into destination and home amounts.

    When only one currency is present the same amount is reported for both sides.
    ``Free``, ``Included`` and empty strings cost nothing.
    """
    if not text or text.strip().lower() in ("free", "included"):
        return ParsedCost(0.0, 0.0)
    dest = re.escape(dest_iso)
    home = re.escape(home_iso)

    match = re.search(rf"{_NUMBER}\s*{dest}\s*\(\s*\$?{_NUMBER}\s*{home}\s*\)", text, re.IGNORECASE)
    if match:
        return ParsedCost(_to_float(match.group(1)), _to_float(match.group(2)))

    match = re.search(rf"\$?{_NUMBER}\s*{home}\s*\(\s*{_NUMBER}\s*{dest}\s*\)", text, re.IGNORECASE)
    if match:
        return ParsedCost(_to_float(match.group(2)), _to_float(match.group(1)))

    match = re.search(rf"{_NUMBER}\s*{dest}", text, re.IGNORECASE)
    if match:
        amount = _to_float(match.group(1))
        return ParsedCost(amount, amount)

    match = re.search(rf"\$?{_NUMBER}\s*{home}", text, re.IGNORECASE)
    if match:
        amount = _to_float(match.group(1))
        return ParsedCost(amount, amount)

    match = re.search(_NUMBER, text)
    if match:
        amount = _to_float(match.group(1))
        return ParsedCost(amount, amount)
    return ParsedCost(0.0, 0.0)
