"""Flask surface over the snapshot store: token list, forced refresh and comparison."""
from __future__ import annotations

import contextlib
import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from flask import Flask, Response, jsonify, request
from werkzeug.serving import BaseWSGIServer, make_server

from .orchestrator import RefreshResult
from .rate_limit import RequestBudget
from .store import SnapshotStore

log = logging.getLogger(__name__)

COMPARE_MIN = 2
COMPARE_MAX = 20
REFRESH_TIMEOUT = 600.0

RefreshFn = Callable[[bool], RefreshResult]
StatusFn = Callable[[], Mapping[str, Any]]


class ClientRateLimiter:
    """Per-client request budgets keyed by the caller's address.

    At most ``max_clients`` budgets are held; when full, idle clients go first,
    then the least recently seen.
    """

    def __init__(self, *, limit: int, window: float, max_clients: int = 10_000) -> None:
        self._limit = int(limit)
        self._window = float(window)
        if max_clients <= 0:
            raise ValueError("max_clients must be positive")
        self._max_clients = int(max_clients)
        self._budgets: Dict[str, RequestBudget] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._budgets)

    def _evict(self) -> None:
        for key in [key for key, budget in self._budgets.items() if budget.used() == 0]:
            del self._budgets[key]
        # still full: drop the least recently seen clients (dict order is insertion order)
        while len(self._budgets) >= self._max_clients:
            del self._budgets[next(iter(self._budgets))]

    def check(self, key: str) -> float:
        """Record a request for ``key``; returns 0 when allowed, else seconds to wait."""

        with self._lock:
            budget = self._budgets.pop(key, None)
            if budget is None:
                if len(self._budgets) >= self._max_clients:
                    self._evict()
                budget = RequestBudget(limit=self._limit, window=self._window)
            # re-insert so iteration order tracks recency
            self._budgets[key] = budget
            wait = budget.wait_time()
            if wait > 0:
                return wait
            budget.record()
            return 0.0


def _client_key(trust_forwarded: bool = False) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "") if trust_forwarded else ""
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.remote_addr or "unknown"


def create_app(
    store: SnapshotStore,
    *,
    refresh: RefreshFn,
    status: StatusFn | None = None,
    cors_origins: Sequence[str] = (),
    rate_limit_max: int = 30,
    rate_limit_window: float = 60.0,
    trust_forwarded: bool = False,
) -> Flask:
    """Return a Flask app serving ``store``.

    ``refresh(force)`` runs one refresh cycle and blocks until it completes.
    Clients are told apart by remote address; ``X-Forwarded-For`` is only
    honoured with ``trust_forwarded`` (set it behind a reverse proxy).
    """

    app = Flask(__name__)
    limiter = ClientRateLimiter(limit=rate_limit_max, window=rate_limit_window)
    allowed_origins = [origin for origin in cors_origins if origin]

    @app.before_request
    def _rate_limit() -> Any:
        if request.method == "OPTIONS":
            return None
        wait = limiter.check(_client_key(trust_forwarded))
        if wait > 0:
            response = jsonify({"error": "Too many requests, please retry later"})
            response.status_code = 429
            response.headers["Retry-After"] = str(max(1, int(wait + 0.999)))
            return response
        return None

    @app.after_request
    def _cors(response: Response) -> Response:
        origin = request.headers.get("Origin")
        if not allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin or "*"
        elif origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers.add("Vary", "Origin")
        response.headers.setdefault("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        if "application/json" in (response.content_type or "").lower():
            response.headers["Cache-Control"] = "no-store"
        return response

    @app.get("/api/tokens")
    def tokens() -> Any:
        if store.is_empty:
            try:
                refresh(False)
            except Exception:
                log.exception("On-demand refresh failed")
        return jsonify({"tokens": store.current().to_payload()})

    @app.post("/api/refresh-cache")
    def refresh_cache() -> Any:
        try:
            result = refresh(True)
        except Exception as exc:
            log.exception("Forced refresh failed")
            return jsonify({"success": False, "error": str(exc)}), 500
        if not result.success:
            return jsonify({"success": False, "error": result.error or "Refresh failed"}), 500
        return jsonify({"success": True, "message": "Cache refreshed successfully"})

    @app.post("/api/compare")
    def compare() -> Any:
        body = request.get_json(silent=True)
        addresses = body.get("addresses") if isinstance(body, dict) else None
        if (
            not isinstance(addresses, list)
            or not COMPARE_MIN <= len(addresses) <= COMPARE_MAX
            or not all(isinstance(addr, str) for addr in addresses)
        ):
            return (
                jsonify(
                    {
                        "error": (
                            f"Body must contain 'addresses' (array, "
                            f"{COMPARE_MIN}-{COMPARE_MAX} items)"
                        )
                    }
                ),
                400,
            )
        return jsonify([token.to_dict() for token in store.select(addresses)])

    @app.get("/health")
    def health() -> Any:
        snapshot = store.current()
        payload: Dict[str, Any] = {
            "token_count": len(snapshot),
            "refreshed_at": snapshot.refreshed_at.isoformat() if snapshot.refreshed_at else None,
        }
        if status is not None:
            payload.update(status())
        return jsonify(payload)

    return app


class TokenServer:
    """Runs the Flask app on a werkzeug server in a background thread."""

    def __init__(self, app: Flask, *, host: str = "127.0.0.1", port: int = 3001) -> None:
        self.app = app
        self.host = host
        self.port = int(port)
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[BaseWSGIServer] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        server = make_server(self.host, self.port, self.app, threaded=True)
        server.daemon_threads = True
        self._server = server
        # port 0 binds an ephemeral port
        self.port = int(getattr(server, "server_port", self.port))

        def _serve() -> None:
            try:
                server.serve_forever()
            except Exception:  # pragma: no cover - best effort logging
                log.exception("Token server crashed")

        self._thread = threading.Thread(target=_serve, name="tokenscope-http", daemon=True)
        self._thread.start()
        log.info("Serving on http://%s:%d", self.host, self.port)

    def stop(self) -> None:
        server = self._server
        if server is not None:
            with contextlib.suppress(Exception):
                server.shutdown()
            with contextlib.suppress(Exception):
                server.server_close()
        if self._thread:
            self._thread.join(timeout=2)
        self._thread = None
        self._server = None


__all__ = ["ClientRateLimiter", "TokenServer", "create_app"]
