"""
External market-data providers.

- IndicesProvider: NSE all-indices JSON feed
- AmfiNavProvider: AMFI NAVAll.txt semicolon-delimited dump

Every request has a per-phase timeout plus an overall deadline covering
both attempts, so a trickling response cannot outlive the job's lock.
A transport error (connect, read timeout) is retried once in place; any
remaining failure is raised as ``ProviderError`` for the job queue to
redrive. Each provider has its own circuit breaker so a dead upstream is
not hit on every retry.
"""
from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Any, Iterable, List, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from navpulse.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from navpulse.core.clock import Clock, system_clock, to_naive_utc
from navpulse.core.logging_config import get_main_logger
from navpulse.services.models import IndexQuote, NavQuote

logger = get_main_logger()

# Symbols tracked by the pipeline and their display names
INDEX_DEFINITIONS = [
    {"symbol": "NIFTY50", "display_name": "NIFTY 50"},
    {"symbol": "SENSEX", "display_name": "SENSEX"},
    {"symbol": "NIFTYBANK", "display_name": "NIFTY BANK"},
    {"symbol": "NIFTYIT", "display_name": "NIFTY IT"},
    {"symbol": "NIFTYNEXT50", "display_name": "NIFTY NEXT 50"},
    {"symbol": "NIFTYMIDCAP", "display_name": "NIFTY MIDCAP 100"},
    {"symbol": "NIFTYSMALLCAP", "display_name": "NIFTY SMALLCAP 100"},
    {"symbol": "NIFTYPHARMA", "display_name": "NIFTY PHARMA"},
    {"symbol": "NIFTYAUTO", "display_name": "NIFTY AUTO"},
    {"symbol": "NIFTYFMCG", "display_name": "NIFTY FMCG"},
    {"symbol": "NIFTYMETAL", "display_name": "NIFTY METAL"},
]

DISPLAY_NAMES = {d["symbol"]: d["display_name"] for d in INDEX_DEFINITIONS}

# Provider index names that do not collapse to the symbol by removing spaces
SYMBOL_ALIASES = {
    "NIFTY 50": "NIFTY50",
    "NIFTY BANK": "NIFTYBANK",
    "NIFTY IT": "NIFTYIT",
    "NIFTY NEXT 50": "NIFTYNEXT50",
    "NIFTY MIDCAP 100": "NIFTYMIDCAP",
    "NIFTY SMALLCAP 100": "NIFTYSMALLCAP",
    "NIFTY PHARMA": "NIFTYPHARMA",
    "S&P BSE SENSEX": "SENSEX",
}

AMFI_DATE_FORMAT = "%d-%b-%Y"

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept": "application/json, text/plain, */*",
}


class ProviderError(Exception):
    """An external provider could not deliver usable data."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


def normalize_symbol(name: str) -> str:
    """Map a provider index name to the compact symbol used as the store key."""
    cleaned = " ".join(name.split()).upper()
    if cleaned in SYMBOL_ALIASES:
        return SYMBOL_ALIASES[cleaned]
    return cleaned.replace(" ", "")


def _to_float(value: Any) -> Any:
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        if value in ("", "-"):
            return None
    return value


class ProviderIndexRow(BaseModel):
    """One index row as the feed sends it; field names vary between endpoints."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(validation_alias=AliasChoices("indexName", "index", "symbol", "name"))
    value: float = Field(validation_alias=AliasChoices("last", "lastPrice", "value"))
    change: float = Field(0.0, validation_alias=AliasChoices("variation", "change"))
    percent_change: float = Field(0.0, validation_alias=AliasChoices("percentChange", "pChange"))
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previous_close: Optional[float] = Field(None, validation_alias=AliasChoices("previousClose", "prevClose"))

    @field_validator("value", "change", "percent_change", "open", "high", "low", "previous_close", mode="before")
    @classmethod
    def strip_number_formatting(cls, v):
        return _to_float(v)


def parse_amfi_nav_dump(text: str) -> List[NavQuote]:
    """
    Parse the AMFI NAV dump.

    Data lines look like ``code;isin1;isin2;name;nav;dd-Mon-YYYY``. Section
    headers, blank lines and rows whose NAV or date does not parse are
    skipped.
    """
    quotes: List[NavQuote] = []
    for line in text.splitlines():
        parts = line.split(";")
        if len(parts) < 4:
            continue
        code = parts[0].strip()
        if not code:
            continue
        try:
            nav = float(parts[-2].strip())
            nav_date = datetime.strptime(parts[-1].strip(), AMFI_DATE_FORMAT).date()
        except ValueError:
            continue
        quotes.append(NavQuote(amfi_code=code, nav=nav, date=nav_date))
    return quotes


class _HttpProvider:
    name = "http"

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        timeout_seconds: float,
        retry_wait_seconds: float = 1.0,
        breaker: Optional[CircuitBreaker] = None,
        deadline_seconds: Optional[float] = None,
    ):
        self._client = client
        self.url = url
        self._timeout = httpx.Timeout(timeout_seconds)
        self._retry_wait = retry_wait_seconds
        self.deadline = deadline_seconds or 2 * timeout_seconds + retry_wait_seconds
        self.breaker = breaker or CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=3, recovery_timeout=120.0),
            name=self.name,
        )

    async def _get(self) -> httpx.Response:
        self.breaker.guard()

        try:
            response = await asyncio.wait_for(self._get_with_retry(), self.deadline)
            response.raise_for_status()
        except asyncio.TimeoutError as e:
            self.breaker.record_failure()
            raise ProviderError(self.name, f"GET {self.url} exceeded {self.deadline:.0f}s deadline") from e
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            raise ProviderError(self.name, f"GET {self.url} failed: {e}") from e

        self.breaker.record_success()
        return response

    async def _get_with_retry(self) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._retry_wait),
            reraise=True,
        ):
            with attempt:
                return await self._client.get(self.url, timeout=self._timeout, headers=DEFAULT_HEADERS)


class IndicesProvider(_HttpProvider):
    name = "nse-indices"

    def __init__(self, *args, clock: Clock = system_clock, symbols: Optional[Iterable[str]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._clock = clock
        self._symbols = set(symbols) if symbols is not None else None

    async def fetch(self) -> List[IndexQuote]:
        """Current values for the tracked indices."""
        response = await self._get()
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"Invalid JSON: {e}") from e

        rows = body.get("data", []) if isinstance(body, dict) else body
        if not isinstance(rows, list):
            raise ProviderError(self.name, "Unexpected payload shape")

        fetched_at = to_naive_utc(self._clock())
        quotes: List[IndexQuote] = []
        rejected = 0
        for raw in rows:
            try:
                row = ProviderIndexRow.model_validate(raw)
            except ValidationError:
                rejected += 1
                continue
            symbol = normalize_symbol(row.name)
            if self._symbols is not None and symbol not in self._symbols:
                continue
            quotes.append(
                IndexQuote(
                    symbol=symbol,
                    display_name=DISPLAY_NAMES.get(symbol, row.name),
                    value=row.value,
                    change=row.change,
                    percent_change=row.percent_change,
                    open=row.open,
                    high=row.high,
                    low=row.low,
                    previous_close=row.previous_close,
                    fetched_at=fetched_at,
                )
            )

        if rejected:
            logger.debug(f"{self.name}: skipped {rejected} malformed rows")
        if not quotes:
            raise ProviderError(self.name, "No usable index rows in response")
        return quotes


class AmfiNavProvider(_HttpProvider):
    name = "amfi-nav"

    async def fetch(self) -> List[NavQuote]:
        """Every NAV in the latest AMFI dump."""
        response = await self._get()
        quotes = parse_amfi_nav_dump(response.text)
        if not quotes:
            raise ProviderError(self.name, "NAV dump contained no parsable rows")
        latest: date = max(q.date for q in quotes)
        logger.info(f"{self.name}: parsed {len(quotes)} NAVs (latest {latest.isoformat()})")
        return quotes
