import asyncio
import datetime as dt
import json

from tokenscope.birdeye import BirdeyeClient, ListingPage, parse_listing
from tokenscope.cache import ListingCache
from tokenscope.models import RawListingRecord
from tokenscope.rate_limit import RequestBudget
from tokenscope.retry import Failure, FailureKind


def _token(address: str, **extra):
    payload = {"address": address, "symbol": address.upper(), "name": address, "v24hUSD": 100.0}
    payload.update(extra)
    return payload


def _client(http, fake_sleep, **kwargs):
    kwargs.setdefault("page_size", 2)
    kwargs.setdefault("page_delay", 1.2)
    return BirdeyeClient(http, api_key="secret", sleep=fake_sleep, **kwargs)


def test_list_page_sends_expected_request(http, session, response, listing, fake_sleep):
    session.queue(response(listing(_token("a"), _token("b"))))
    client = _client(http, fake_sleep, base_url="https://birdeye.test/")
    page = asyncio.run(client.list_page(offset=50, limit=2))
    assert isinstance(page, ListingPage)
    assert [r.address for r in page.records] == ["a", "b"]
    call = session.calls[0]
    assert call["url"] == "https://birdeye.test/defi/tokenlist"
    assert call["params"] == {"sort_by": "v24hUSD", "sort_type": "desc", "offset": 50, "limit": 2}
    assert call["headers"]["X-API-KEY"] == "secret"
    assert client.budget.used() == 1


def test_list_page_retries_429_with_retry_after(http, session, response, listing, fake_sleep, sleeps):
    session.queue(
        response({}, status=429, headers={"Retry-After": "5"}),
        response({}, status=429),
        response(listing(_token("a"))),
    )
    client = _client(http, fake_sleep)
    page = asyncio.run(client.list_page(0, 2))
    assert isinstance(page, ListingPage)
    assert sleeps == [5.0, 4.0]
    assert client.budget.used() == 3


def test_list_page_gives_up_after_four_attempts(http, session, fake_sleep, sleeps):
    session.queue(*[asyncio.TimeoutError() for _ in range(4)])
    client = _client(http, fake_sleep)
    result = asyncio.run(client.list_page(0, 2))
    assert isinstance(result, Failure)
    assert result.kind is FailureKind.TRANSIENT
    assert len(session.calls) == 4
    assert sleeps == [0.3, 0.6, 1.2]


def test_list_page_does_not_retry_terminal_errors(http, session, response, listing, fake_sleep):
    session.queue(response(listing(success=False) | {"error": "bad key"}))
    client = _client(http, fake_sleep)
    result = asyncio.run(client.list_page(0, 2))
    assert isinstance(result, Failure)
    assert result.kind is FailureKind.TERMINAL
    assert result.message == "bad key"
    assert len(session.calls) == 1


def test_parse_listing_skips_records_without_address():
    page = parse_listing(
        {"success": True, "data": {"tokens": [{"address": "a"}, {"symbol": "x"}, None]}},
        offset=0,
        limit=5,
    )
    assert isinstance(page, ListingPage)
    assert [r.address for r in page.records] == ["a"]
    assert page.raw_count == 3
    assert page.exhausted


def test_fetch_all_pages_until_total(http, session, response, listing, fake_sleep, sleeps):
    session.queue(
        response(listing(_token("a"), _token("b"))),
        response(listing(_token("c"), _token("a"))),
    )
    client = _client(http, fake_sleep)
    records = asyncio.run(client.fetch_all(4, use_cache=False))
    assert [r.address for r in records] == ["a", "b", "c", "a"]
    assert [c["params"]["offset"] for c in session.calls] == [0, 2]
    assert sleeps == [1.2]


def test_fetch_all_truncates_to_total(http, session, response, listing, fake_sleep):
    session.queue(
        response(listing(_token("a"), _token("b"))),
        response(listing(_token("c"), _token("d"))),
    )
    client = _client(http, fake_sleep)
    records = asyncio.run(client.fetch_all(3, use_cache=False))
    assert [r.address for r in records] == ["a", "b", "c"]


def test_fetch_all_stops_on_short_page(http, session, response, listing, fake_sleep):
    session.queue(response(listing(_token("a"), _token("b"))), response(listing(_token("c"))))
    client = _client(http, fake_sleep)
    records = asyncio.run(client.fetch_all(10, use_cache=False))
    assert [r.address for r in records] == ["a", "b", "c"]
    assert len(session.calls) == 2


def test_fetch_all_keeps_partial_results_on_failure(tmp_path, http, session, response, listing, fake_sleep):
    session.queue(response(listing(_token("a"), _token("b"))), response({}, status=400))
    cache = ListingCache(tmp_path / "cache.json")
    client = _client(http, fake_sleep, cache=cache)
    records = asyncio.run(client.fetch_all(10, use_cache=False))
    assert [r.address for r in records] == ["a", "b"]
    saved = json.loads((tmp_path / "cache.json").read_text())
    assert [t["address"] for t in saved["tokens"]] == ["a", "b"]


def test_fetch_all_failure_on_first_page_returns_empty_and_skips_cache(
    tmp_path, http, session, response, fake_sleep
):
    session.queue(response({}, status=401))
    cache = ListingCache(tmp_path / "cache.json")
    client = _client(http, fake_sleep, cache=cache)
    assert asyncio.run(client.fetch_all(10, use_cache=False)) == []
    assert not (tmp_path / "cache.json").exists()


def test_fetch_all_serves_fresh_cache_without_network(tmp_path, http, session, fake_sleep):
    path = tmp_path / "cache.json"
    stamp = (dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=29)).isoformat()
    path.write_text(json.dumps({"tokens": [_token("cached")], "cache_timestamp": stamp}))
    client = _client(http, fake_sleep, cache=ListingCache(path))
    records = asyncio.run(client.fetch_all(10, use_cache=True))
    assert [r.address for r in records] == ["cached"]
    assert session.calls == []


def test_fetch_all_ignores_stale_cache(tmp_path, http, session, response, listing, fake_sleep):
    path = tmp_path / "cache.json"
    stamp = (dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=31)).isoformat()
    path.write_text(json.dumps({"tokens": [_token("cached")], "cache_timestamp": stamp}))
    session.queue(response(listing(_token("fresh"))))
    client = _client(http, fake_sleep, cache=ListingCache(path))
    records = asyncio.run(client.fetch_all(10, use_cache=True))
    assert records == [RawListingRecord.from_payload(_token("fresh"))]
    saved = json.loads(path.read_text())
    assert [t["address"] for t in saved["tokens"]] == ["fresh"]


def test_fetch_all_bypasses_cache_when_disabled(tmp_path, http, session, response, listing, fake_sleep):
    path = tmp_path / "cache.json"
    stamp = dt.datetime.now(dt.timezone.utc).isoformat()
    path.write_text(json.dumps({"tokens": [_token("cached")], "cache_timestamp": stamp}))
    session.queue(response(listing(_token("fresh"))))
    client = _client(http, fake_sleep, cache=ListingCache(path))
    records = asyncio.run(client.fetch_all(10, use_cache=False))
    assert [r.address for r in records] == ["fresh"]


def test_fetch_all_waits_when_budget_is_spent(http, session, response, listing, fake_sleep, sleeps):
    now = [0.0]
    budget = RequestBudget(limit=1, window=60.0, clock=lambda: now[0])
    session.queue(
        response(listing(_token("a"), _token("b"))),
        response(listing(_token("c"))),
    )
    client = _client(http, fake_sleep, budget=budget, page_delay=0.0)
    records = asyncio.run(client.fetch_all(10, use_cache=False))
    assert [r.address for r in records] == ["a", "b", "c"]
    # page delay, then the budget wait before the second page
    assert sleeps == [0.0, 60.0]
