from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, Sequence

from .birdeye import DEFAULT_RETRY_POLICY, BirdeyeClient
from .cache import ListingCache
from .config import ConfigError, Settings, load_env_file, settings_from_env
from .dexscreener import DexScreenerClient
from .http import HttpClient
from .logging_utils import configure_logging
from .orchestrator import SnapshotOrchestrator
from .processor import load_weights
from .rate_limit import RequestBudget
from .retry import RetryPolicy
from .scheduler import RefreshScheduler
from .server import REFRESH_TIMEOUT, TokenServer, create_app
from .store import SnapshotStore

log = logging.getLogger(__name__)


@dataclass
class Service:
    settings: Settings
    http: HttpClient
    birdeye: BirdeyeClient
    dexscreener: DexScreenerClient
    store: SnapshotStore
    orchestrator: SnapshotOrchestrator
    scheduler: RefreshScheduler

    def status(self) -> Dict[str, Any]:
        last = self.orchestrator.last_result
        return {
            "state": self.orchestrator.state.value,
            "refreshing": self.orchestrator.refreshing,
            "last_error": last.error if last is not None and not last.success else None,
            "birdeye_budget_remaining": self.birdeye.budget.remaining(),
            "upstream": self.http.metrics(),
        }


def build_service(settings: Settings, *, refresh_on_start: bool = True) -> Service:
    """Wire clients, store, orchestrator and scheduler from ``settings``."""

    http = HttpClient()
    cache = ListingCache(settings.cache_path, ttl=settings.cache_ttl)
    birdeye = BirdeyeClient(
        http,
        api_key=settings.api_key,
        base_url=settings.birdeye_url,
        cache=cache,
        budget=RequestBudget(limit=settings.rate_limit, window=60.0),
        page_size=settings.page_size,
        page_delay=settings.page_delay,
        retry_policy=RetryPolicy(
            max_attempts=settings.max_attempts,
            backoff=DEFAULT_RETRY_POLICY.backoff,
        ),
    )
    dexscreener = DexScreenerClient(
        http,
        base_url=settings.dexscreener_url,
        batch_size=settings.enrich_batch_size,
        batch_delay=settings.enrich_batch_delay,
    )
    store = SnapshotStore()
    orchestrator = SnapshotOrchestrator(
        listing=birdeye,
        enrichment=dexscreener,
        store=store,
        total_tokens=settings.total_tokens,
        weights=load_weights(settings.weights_path),
    )
    scheduler = RefreshScheduler(
        orchestrator,
        interval=settings.refresh_interval,
        on_shutdown=[http.close],
        refresh_on_start=refresh_on_start,
    )
    return Service(
        settings=settings,
        http=http,
        birdeye=birdeye,
        dexscreener=dexscreener,
        store=store,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll Birdeye, enrich with DexScreener and serve the token dashboard API."
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file loaded before reading settings (default: %(default)s)",
    )
    parser.add_argument("--host", default=None, help="Interface to bind (overrides HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (overrides PORT)")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single forced refresh cycle, print a summary and exit.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    load_env_file(args.env_file)
    try:
        settings = settings_from_env(host=args.host, port=args.port)
        service = build_service(settings, refresh_on_start=not args.once)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, json_logs=settings.log_json, log_file=settings.log_file)

    scheduler = service.scheduler
    if args.once:
        scheduler.start()
        try:
            result = scheduler.run_refresh(force=True, timeout=REFRESH_TIMEOUT)
        finally:
            scheduler.stop()
        print(
            f"success={result.success} tokens={result.token_count} "
            f"price_enriched={result.price_enriched} liquidity_enriched={result.liquidity_enriched}",
            flush=True,
        )
        return 0 if result.success else 1

    app = create_app(
        service.store,
        refresh=lambda force: scheduler.run_refresh(force=force, timeout=REFRESH_TIMEOUT),
        status=service.status,
        cors_origins=settings.cors_origins,
        rate_limit_max=settings.rate_limit_max,
        rate_limit_window=settings.rate_limit_window,
        trust_forwarded=settings.trust_proxy,
    )
    server = TokenServer(app, host=settings.host, port=settings.port)

    scheduler.start()
    scheduler.wait_first_cycle()
    server.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("Stopping tokenscope...")
    finally:
        server.stop()
        scheduler.stop()
    return 0


__all__ = ["Service", "build_service", "main"]
