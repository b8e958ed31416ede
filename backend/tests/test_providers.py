import asyncio
from datetime import date, datetime

import httpx
import pytest

from navpulse.core.circuit_breaker import CircuitOpenError
from navpulse.services.providers import (
    AmfiNavProvider,
    IndicesProvider,
    ProviderError,
    normalize_symbol,
    parse_amfi_nav_dump,
)

NSE_URL = "https://www.nseindia.com/api/allIndices"
AMFI_URL = "https://www.amfiindia.com/spages/NAVAll.txt"

AMFI_DUMP = """Scheme Code;ISIN Div Payout/ ISIN Growth;ISIN Div Reinvestment;Scheme Name;Net Asset Value;Date

Open Ended Schemes(Debt Scheme - Banking and PSU Fund)

Aditya Birla Sun Life Mutual Fund

100001;INF209K01LT6;-;Sample Banking & PSU Debt Fund - Growth;342.1234;14-Oct-2026
100002;INF209K01LU4;-;Sample Liquid Fund - Growth;1,02;14-Oct-2026
100003;INF209K01LV2;-;Sample Equity Fund - Growth;58.9;13-Oct-2026
100004;INF209K01LW0;-;Sample Closed Fund;N.A.;14-Oct-2026
"""


def indices_provider(handler, clock=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    extra = {"clock": clock} if clock else {}
    return IndicesProvider(client, NSE_URL, 5.0, retry_wait_seconds=0, **extra, **kwargs)


def test_normalize_symbol():
    assert normalize_symbol("NIFTY 50") == "NIFTY50"
    assert normalize_symbol("  nifty   bank ") == "NIFTYBANK"
    assert normalize_symbol("S&P BSE SENSEX") == "SENSEX"
    assert normalize_symbol("NIFTY AUTO") == "NIFTYAUTO"


def test_parse_amfi_dump_skips_headers_and_bad_rows():
    quotes = parse_amfi_nav_dump(AMFI_DUMP)
    assert [(q.amfi_code, q.nav, q.date) for q in quotes] == [
        ("100001", 342.1234, date(2026, 10, 14)),
        ("100003", 58.9, date(2026, 10, 13)),
    ]


@pytest.mark.asyncio
async def test_indices_fetch_parses_feed(clock):
    body = {
        "data": [
            {"index": "NIFTY 50", "last": "22,100.50", "variation": "120.5", "percentChange": "0.55",
             "open": "21,990", "high": "22,150", "low": "21,950", "previousClose": "21,980"},
            {"indexName": "NIFTY BANK", "lastPrice": 48000, "change": -50, "pChange": -0.1},
            {"index": "NIFTY REALTY", "last": "900"},
            {"index": "BROKEN ROW"},
        ]
    }
    provider = indices_provider(lambda request: httpx.Response(200, json=body), clock=clock,
                                symbols=["NIFTY50", "NIFTYBANK"])

    quotes = await provider.fetch()

    assert [q.symbol for q in quotes] == ["NIFTY50", "NIFTYBANK"]
    nifty = quotes[0]
    assert nifty.display_name == "NIFTY 50"
    assert nifty.value == 22100.5
    assert nifty.open == 21990.0
    assert nifty.previous_close == 21980.0
    assert nifty.fetched_at == datetime(2026, 10, 14, 5, 30)
    assert quotes[1].change == -50.0


@pytest.mark.asyncio
async def test_indices_fetch_accepts_bare_list():
    provider = indices_provider(lambda request: httpx.Response(200, json=[{"symbol": "SENSEX", "value": 73000}]))
    quotes = await provider.fetch()
    assert quotes[0].symbol == "SENSEX"


@pytest.mark.asyncio
async def test_indices_fetch_without_usable_rows():
    provider = indices_provider(lambda request: httpx.Response(200, json={"data": [{"index": "X"}]}))
    with pytest.raises(ProviderError):
        await provider.fetch()


@pytest.mark.asyncio
async def test_http_error_becomes_provider_error_and_opens_circuit():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    provider = indices_provider(handler)
    for _ in range(3):
        with pytest.raises(ProviderError):
            await provider.fetch()

    with pytest.raises(CircuitOpenError):
        await provider.fetch()
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transport_error_is_retried_once():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=[{"index": "NIFTY 50", "last": 22000}])

    quotes = await indices_provider(handler).fetch()

    assert len(calls) == 2
    assert quotes[0].value == 22000.0


@pytest.mark.asyncio
async def test_persistent_timeout_raises_provider_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as exc_info:
        await indices_provider(handler).fetch()
    assert exc_info.value.provider == "nse-indices"


@pytest.mark.asyncio
async def test_slow_response_is_cut_off_at_the_deadline():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"data": []})

    provider = indices_provider(handler, deadline_seconds=0.05)
    with pytest.raises(ProviderError) as exc_info:
        await provider.fetch()
    assert "deadline" in str(exc_info.value)
    assert provider.breaker.get_stats()["failures"] == 1


def test_default_deadline_covers_both_attempts():
    provider = indices_provider(lambda request: httpx.Response(200))
    assert provider.deadline == 2 * 5.0 + 0


@pytest.mark.asyncio
async def test_amfi_fetch():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text=AMFI_DUMP)))
    quotes = await AmfiNavProvider(client, AMFI_URL, 5.0).fetch()
    assert {q.amfi_code for q in quotes} == {"100001", "100003"}


@pytest.mark.asyncio
async def test_amfi_fetch_empty_dump():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="header only")))
    with pytest.raises(ProviderError):
        await AmfiNavProvider(client, AMFI_URL, 5.0).fetch()
