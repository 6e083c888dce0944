import pytest

from tokenscope.models import RawListingRecord
from tokenscope.orchestrator import RefreshResult
from tokenscope.processor import process
from tokenscope.server import ClientRateLimiter, create_app
from tokenscope.store import Snapshot, SnapshotStore


def _snapshot(*addresses):
    return Snapshot.build(process(RawListingRecord(address=a, symbol=a.upper()) for a in addresses))


class RefreshStub:
    def __init__(self, store=None, snapshot=None, result=None, error=None):
        self.store = store
        self.snapshot = snapshot
        self.result = result or RefreshResult(success=True, token_count=1)
        self.error = error
        self.calls = []

    def __call__(self, force):
        self.calls.append(force)
        if self.error is not None:
            raise self.error
        if self.store is not None and self.snapshot is not None:
            self.store.replace(self.snapshot)
        return self.result


@pytest.fixture
def store():
    return SnapshotStore()


def _client(store, refresh=None, **kwargs):
    app = create_app(store, refresh=refresh or RefreshStub(), **kwargs)
    app.config["TESTING"] = True
    return app.test_client()


def test_tokens_returns_snapshot(store):
    store.replace(_snapshot("a", "b"))
    refresh = RefreshStub()
    resp = _client(store, refresh).get("/api/tokens")
    assert resp.status_code == 200
    assert [t["address"] for t in resp.get_json()["tokens"]] == ["a", "b"]
    assert refresh.calls == []
    assert resp.headers["Cache-Control"] == "no-store"


def test_tokens_refreshes_when_store_is_empty(store):
    refresh = RefreshStub(store=store, snapshot=_snapshot("x"))
    resp = _client(store, refresh).get("/api/tokens")
    assert refresh.calls == [False]
    assert [t["address"] for t in resp.get_json()["tokens"]] == ["x"]


def test_tokens_serves_empty_list_when_refresh_fails(store):
    refresh = RefreshStub(error=RuntimeError("upstream down"))
    resp = _client(store, refresh).get("/api/tokens")
    assert resp.status_code == 200
    assert resp.get_json() == {"tokens": []}


def test_refresh_cache_success(store):
    refresh = RefreshStub()
    resp = _client(store, refresh).post("/api/refresh-cache")
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "message": "Cache refreshed successfully"}
    assert refresh.calls == [True]


def test_refresh_cache_reports_failed_cycle(store):
    refresh = RefreshStub(result=RefreshResult(success=False, error="No tokens from API"))
    resp = _client(store, refresh).post("/api/refresh-cache")
    assert resp.status_code == 500
    assert resp.get_json() == {"success": False, "error": "No tokens from API"}


def test_refresh_cache_reports_exception(store):
    refresh = RefreshStub(error=TimeoutError("cycle timed out"))
    resp = _client(store, refresh).post("/api/refresh-cache")
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "cycle timed out"


def test_compare_returns_matching_tokens(store):
    store.replace(_snapshot("a", "b", "c"))
    resp = _client(store).post("/api/compare", json={"addresses": ["c", "a", "nope"]})
    assert resp.status_code == 200
    assert [t["address"] for t in resp.get_json()] == ["a", "c"]


@pytest.mark.parametrize(
    "body",
    [
        {"addresses": ["only-one"]},
        {"addresses": [f"t{i}" for i in range(21)]},
        {"addresses": "a,b"},
        {"addresses": ["a", 2]},
        {},
        None,
    ],
)
def test_compare_rejects_bad_bodies(store, body):
    client = _client(store)
    if body is None:
        resp = client.post("/api/compare", data="not json", content_type="text/plain")
    else:
        resp = client.post("/api/compare", json=body)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Body must contain 'addresses' (array, 2-20 items)"}


def test_compare_accepts_bounds(store):
    store.replace(_snapshot("a", "b"))
    client = _client(store)
    assert client.post("/api/compare", json={"addresses": ["a", "b"]}).status_code == 200
    twenty = {"addresses": [f"t{i}" for i in range(20)]}
    assert client.post("/api/compare", json=twenty).get_json() == []


def test_health_merges_status(store):
    store.replace(_snapshot("a"))
    client = _client(store, status=lambda: {"state": "ready", "refreshing": False})
    payload = client.get("/health").get_json()
    assert payload["token_count"] == 1
    assert payload["refreshed_at"]
    assert payload["state"] == "ready"


def test_rate_limit_returns_429(store):
    client = _client(store, rate_limit_max=2, rate_limit_window=60.0)
    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 200
    resp = client.get("/health")
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    # a different client has its own budget
    other = client.get("/health", environ_overrides={"REMOTE_ADDR": "10.0.0.2"})
    assert other.status_code == 200


def test_cors_reflects_any_origin_by_default(store):
    resp = _client(store).get("/health", headers={"Origin": "http://localhost:5173"})
    assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_cors_restricted_to_configured_origins(store):
    client = _client(store, cors_origins=["https://app.example"])
    allowed = client.get("/health", headers={"Origin": "https://app.example"})
    denied = client.get("/health", headers={"Origin": "https://evil.example"})
    assert allowed.headers["Access-Control-Allow-Origin"] == "https://app.example"
    assert "Access-Control-Allow-Origin" not in denied.headers


def test_client_rate_limiter_budgets_per_key():
    limiter = ClientRateLimiter(limit=1, window=60.0)
    assert limiter.check("a") == 0.0
    assert limiter.check("a") > 0
    assert limiter.check("b") == 0.0


def test_client_rate_limiter_caps_tracked_clients():
    limiter = ClientRateLimiter(limit=5, window=60.0, max_clients=3)
    for i in range(50):
        assert limiter.check(f"10.0.0.{i}") == 0.0
        assert len(limiter) <= 3
    assert len(limiter) == 3


def test_client_rate_limiter_evicts_least_recent_client():
    limiter = ClientRateLimiter(limit=1, window=60.0, max_clients=2)
    limiter.check("a")
    limiter.check("b")
    # "a" is seen again, so "b" becomes the least recent one
    assert limiter.check("a") > 0
    limiter.check("c")
    assert limiter.check("a") > 0
    assert limiter.check("b") == 0.0


def test_forwarded_for_is_ignored_by_default(store):
    client = _client(store, rate_limit_max=1)
    assert client.get("/health", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
    resp = client.get("/health", headers={"X-Forwarded-For": "203.0.113.2"})
    assert resp.status_code == 429


def test_forwarded_for_keys_clients_behind_trusted_proxy(store):
    client = _client(store, rate_limit_max=1, trust_forwarded=True)
    assert client.get("/health", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
    assert client.get("/health", headers={"X-Forwarded-For": "203.0.113.2, 10.0.0.1"}).status_code == 200
    assert client.get("/health", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429
