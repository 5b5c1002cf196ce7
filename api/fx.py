"""Foreign-exchange lookups with a cascading provider chain.

The chain tries exchangerate.host first, then exchangerate-api.com, then Fixer
(only when ``FIXER_API_KEY`` is configured). A result must pass the sanity
validator before it is accepted. When nothing answers, known pairs get a
last-resort constant and every other pair degrades to a 1:1 identity rate, so
callers never have to handle an exception from :meth:`FxClient.get_rate`.
"""
from __future__ import annotations

import logging
import math
import os
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from dotenv import load_dotenv

try:
    from .retry import NO_RETRY, RetryPolicy, call_with_retry
except ImportError:
    from retry import NO_RETRY, RetryPolicy, call_with_retry  # type: ignore

load_dotenv()

logger = logging.getLogger(__name__)

FX_API_KEY = os.getenv("FX_API_KEY", "").strip()
FIXER_API_KEY = os.getenv("FIXER_API_KEY", "").strip()
FX_CACHE_TTL_MINUTES = float(os.getenv("FX_CACHE_TTL_MINUTES", "60"))
HTTP_TIMEOUT = 8.0

EXCHANGERATE_HOST_URL = "https://api.exchangerate.host/convert"
EXCHANGERATE_API_URL = "https://api.exchangerate-api.com/v4/latest"
FIXER_URL = "https://data.fixer.io/api/latest"

TIER_NAMES = ("primary", "secondary", "tertiary")
FALLBACK_PROVIDER = "fallback"

# Approximate mid-market rates, one unit of base in quote.
EXPECTED_RATES: Dict[Tuple[str, str], float] = {
    ("EGP", "AED"): 0.075,
}
LAST_RESORT_RATES: Dict[Tuple[str, str], float] = dict(EXPECTED_RATES)


class FxProviderError(Exception):
    """A single provider could not produce a usable rate."""


def _today() -> str:
    return date.today().isoformat()


def normalize_code(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    code = raw.strip().upper()
    if len(code) == 3 and code.isascii() and code.isalpha():
        return code
    return None


@dataclass(frozen=True)
class CurrencyPair:
    base: str
    quote: str

    def inverse(self) -> "CurrencyPair":
        return CurrencyPair(self.quote, self.base)

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}"


@dataclass(frozen=True)
class FxResult:
    rate: float
    date: str
    provider: str
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CacheEntry:
    pair: CurrencyPair
    result: FxResult
    fetched_at: float


def _identity(source: str = "identity") -> FxResult:
    return FxResult(rate=1.0, date=_today(), provider=FALLBACK_PROVIDER, source=source)


class RateCache:
    """Per-pair TTL cache. Stale entries are dropped when they are read."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CurrencyPair, CacheEntry] = {}

    def get(self, pair: CurrencyPair) -> Optional[FxResult]:
        entry = self._entries.get(pair)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl_seconds:
            self._entries.pop(pair, None)
            return None
        return entry.result

    def put(self, pair: CurrencyPair, result: FxResult) -> None:
        self._entries[pair] = CacheEntry(pair, result, self._clock())

    def __len__(self) -> int:
        return len(self._entries)


class SanityValidator:
    """Accepts positive finite rates; known pairs must also be within an order-of-magnitude band."""

    def __init__(self, expected: Optional[Dict[Tuple[str, str], float]] = None, tolerance: float = 10.0):
        self.expected = dict(EXPECTED_RATES if expected is None else expected)
        self.tolerance = tolerance

    def _expected_for(self, pair: CurrencyPair) -> Optional[float]:
        direct = self.expected.get((pair.base, pair.quote))
        if direct:
            return direct
        inverse = self.expected.get((pair.quote, pair.base))
        if inverse:
            return 1.0 / inverse
        return None

    def accept(self, pair: CurrencyPair, rate: Any) -> bool:
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            return False
        if not math.isfinite(rate) or rate <= 0:
            return False
        expected = self._expected_for(pair)
        if expected is None:
            return True
        return expected / self.tolerance <= rate <= expected * self.tolerance


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class RateFetcher(ABC):
    """One upstream provider. ``fetch`` raises :class:`FxProviderError` on any failure."""

    source = "unknown"

    def __init__(
        self,
        http: httpx.Client,
        retry: RetryPolicy = NO_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.http = http
        self.retry = retry
        self.sleep = sleep

    def fetch(self, pair: CurrencyPair) -> Tuple[float, str]:
        return call_with_retry(
            lambda: self._fetch_once(pair),
            self.retry,
            sleep=self.sleep,
            label=f"fx:{self.source}",
        )

    @abstractmethod
    def _fetch_once(self, pair: CurrencyPair) -> Tuple[float, str]:
        """Return ``(rate, iso_date)`` from one request, or raise :class:`FxProviderError`."""

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.http.get(url, params=params)
        except httpx.HTTPError as exc:
            raise FxProviderError(f"{self.source} request failed: {exc!r}") from exc
        if response.status_code != 200:
            raise FxProviderError(f"{self.source} status {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise FxProviderError(f"{self.source} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise FxProviderError(f"{self.source} returned a non-object body")
        return payload


class ExchangerateHostFetcher(RateFetcher):
    source = "exchangerate.host"

    def __init__(self, http: httpx.Client, access_key: str = "", **kwargs: Any):
        super().__init__(http, **kwargs)
        self.access_key = access_key

    def _fetch_once(self, pair: CurrencyPair) -> Tuple[float, str]:
        params: Dict[str, Any] = {"from": pair.base, "to": pair.quote, "amount": 1}
        if self.access_key:
            params["access_key"] = self.access_key
        payload = self._get_json(EXCHANGERATE_HOST_URL, params)
        if payload.get("success") is False:
            error = payload.get("error") or {}
            raise FxProviderError(f"{self.source} error: {error.get('info') or error or 'unknown'}")
        info = payload.get("info") or {}
        rate = _number(payload.get("result"))
        if rate is None and isinstance(info, dict):
            rate = _number(info.get("rate")) or _number(info.get("quote"))
        if rate is None:
            raise FxProviderError(f"{self.source} response has no rate for {pair}")
        return rate, payload.get("date") or _today()


class ExchangerateApiFetcher(RateFetcher):
    source = "exchangerate-api.com"

    def _fetch_once(self, pair: CurrencyPair) -> Tuple[float, str]:
        payload = self._get_json(f"{EXCHANGERATE_API_URL}/{pair.base}")
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise FxProviderError(f"{self.source} response has no rates table")
        rate = _number(rates.get(pair.quote))
        if rate is None:
            raise FxProviderError(f"{self.source} has no {pair.quote} rate for base {pair.base}")
        return rate, payload.get("date") or _today()


class FixerFetcher(RateFetcher):
    """Fixer's free plan only quotes against EUR, so other bases go through a cross rate."""

    source = "fixer"

    def __init__(self, http: httpx.Client, access_key: str, **kwargs: Any):
        super().__init__(http, **kwargs)
        self.access_key = access_key

    def _fetch_once(self, pair: CurrencyPair) -> Tuple[float, str]:
        symbols = [code for code in (pair.base, pair.quote) if code != "EUR"]
        payload = self._get_json(
            FIXER_URL,
            {"access_key": self.access_key, "symbols": ",".join(symbols)},
        )
        if not payload.get("success"):
            error = payload.get("error") or {}
            raise FxProviderError(f"fixer error: {error.get('info') or error.get('type') or 'unknown'}")
        rates = payload.get("rates") or {}
        eur_to_base = 1.0 if pair.base == "EUR" else _number(rates.get(pair.base))
        eur_to_quote = 1.0 if pair.quote == "EUR" else _number(rates.get(pair.quote))
        if not eur_to_base or not eur_to_quote:
            raise FxProviderError("fixer error: missing rate data")
        return eur_to_quote / eur_to_base, payload.get("date") or _today()


def default_fetchers(http: httpx.Client) -> List[RateFetcher]:
    fetchers: List[RateFetcher] = [
        ExchangerateHostFetcher(http, access_key=FX_API_KEY),
        ExchangerateApiFetcher(http),
    ]
    if FIXER_API_KEY:
        fetchers.append(FixerFetcher(http, access_key=FIXER_API_KEY))
    return fetchers


class FxClient:
    """Rate lookups through the provider chain, backed by a TTL cache.

    One instance is meant to live for the whole application; it owns the
    cache and the HTTP connection pool.
    """

    def __init__(
        self,
        fetchers: Optional[Sequence[RateFetcher]] = None,
        cache: Optional[RateCache] = None,
        validator: Optional[SanityValidator] = None,
        last_resort: Optional[Dict[Tuple[str, str], float]] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.http = http or httpx.Client(timeout=HTTP_TIMEOUT)
        self.fetchers = list(fetchers) if fetchers is not None else default_fetchers(self.http)
        self.cache = cache if cache is not None else RateCache(ttl_seconds=FX_CACHE_TTL_MINUTES * 60)
        self.validator = validator or SanityValidator()
        self.last_resort = dict(LAST_RESORT_RATES if last_resort is None else last_resort)

    def get_rate(self, base: Any, quote: Any) -> FxResult:
        base_code = normalize_code(base)
        quote_code = normalize_code(quote)
        if not base_code or not quote_code:
            logger.warning("[FX] invalid currency pair %r/%r, using 1:1", base, quote)
            return _identity()
        if base_code == quote_code:
            return _identity()

        pair = CurrencyPair(base_code, quote_code)
        cached = self.cache.get(pair)
        if cached is not None:
            return cached

        for index, fetcher in enumerate(self.fetchers):
            tier = TIER_NAMES[index] if index < len(TIER_NAMES) else f"tier-{index + 1}"
            try:
                rate, as_of = fetcher.fetch(pair)
            except Exception as exc:
                logger.warning("[FX] %s (%s) failed for %s: %s", tier, fetcher.source, pair, exc)
                continue
            if not self.validator.accept(pair, rate):
                logger.warning("[FX] %s (%s) returned implausible rate %s for %s", tier, fetcher.source, rate, pair)
                continue
            result = FxResult(rate=float(rate), date=str(as_of), provider=tier, source=fetcher.source)
            self.cache.put(pair, result)
            return result

        return self._last_resort(pair)

    def _last_resort(self, pair: CurrencyPair) -> FxResult:
        known = self.last_resort.get((pair.base, pair.quote))
        if known is None:
            inverse = self.last_resort.get((pair.quote, pair.base))
            known = 1.0 / inverse if inverse else None
        if known is not None:
            logger.error("[FX] all sources failed for %s, using last-resort rate %s", pair, known)
            return FxResult(rate=known, date=_today(), provider=FALLBACK_PROVIDER, source="last-resort")
        logger.error("[FX] all sources failed for %s, returning 1:1", pair)
        return _identity()

    def quote(self, base: Any, quote: Any) -> Dict[str, Any]:
        """Both directions of a pair plus a short provenance note."""
        result = self.get_rate(base, quote)
        base_code = normalize_code(base) or "USD"
        quote_code = normalize_code(quote) or base_code
        if base_code == quote_code:
            note = "Same currency"
        elif result.source == "identity":
            note = "Live rate unavailable, shown at 1:1"
        elif result.source == "last-resort":
            note = "Live rate unavailable, approximate rate"
        else:
            note = f"{result.source} · {result.date}"
        return {
            "base": base_code,
            "quote": quote_code,
            "rate": round(result.rate, 6),
            "inverse": round(1.0 / result.rate, 6),
            "date": result.date,
            "provider": result.provider,
            "source": result.source,
            "note": note,
        }

    def close(self) -> None:
        self.http.close()
