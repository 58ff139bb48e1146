#!/usr/bin/env python3
"""
SwapSage Resolver Server
Runs the resolver engines for every configured chain and serves the
operator API.

Endpoints:
  GET  /api/status                  - Service and per-chain engine status
  GET  /api/pool/liquidity          - Pool ledger
  POST /api/pool/liquidity          - Operator top-up
  GET  /api/swaps/{id}              - Swap status
  GET  /api/swaps/{id}/operations   - Resolver audit trail
  POST /api/swaps/{id}/cancel       - Cancel unfunded swap
  POST /api/swaps/{id}/preimage     - Supply revealed preimage

Usage:
    python server.py --config ~/.swapsage/config.json [--no-api] [--log-level DEBUG]
"""

import argparse
import logging
import signal
import threading
import time
from typing import Optional

from fastapi import FastAPI, HTTPException

from swapsage import __version__
from swapsage.config import load_config
from swapsage.errors import ConfigError
from swapsage.service import ResolverService
from routes import pool as pool_routes
from routes import swaps as swap_routes

log = logging.getLogger("swapsage.server")

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="SwapSage Resolver",
    description="Cross-chain HTLC resolver operator API",
    version=__version__,
)

app.include_router(swap_routes.router)
app.include_router(pool_routes.router)

_service: Optional[ResolverService] = None


def configure(service: ResolverService):
    """Bind the service to the app and its routers."""
    global _service
    _service = service
    swap_routes.configure(service)
    pool_routes.configure(service)


@app.get("/api/status")
async def get_status():
    """Health check."""
    if _service is None:
        raise HTTPException(503, "Resolver service not configured")
    return {
        "status": "ok" if _service.running else "stopped",
        "version": __version__,
        "timestamp": int(time.time()),
        **_service.status(),
    }


# =============================================================================
# EVENT LOGGING
# =============================================================================

def _log_events(service: ResolverService):
    service.on("started", lambda: log.info("Resolver started"))
    service.on("stopped", lambda: log.info("Resolver stopped"))
    service.on("swapProcessed", lambda swap_id, status: log.info(f"Swap {swap_id} -> {status}"))
    service.on("swapExpired", lambda swap_id: log.warning(f"Swap {swap_id} expired"))
    service.on("poolLiquidityLow", lambda chain, token: log.warning(f"Pool liquidity LOW on {chain}:{token}"))
    service.on("error", lambda err, swap_id=None: log.error(f"Resolver error (swap={swap_id}): {err}"))


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="SwapSage cross-chain HTLC resolver")
    parser.add_argument("--config", help="JSON config file (default: $SWAPSAGE_CONFIG or ~/.swapsage/config.json)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--no-api", action="store_true", help="Run the resolver without the operator API")
    parser.add_argument("--host", default=None, help="API bind host")
    parser.add_argument("--port", type=int, default=None, help="API port")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        return 2

    logging.getLogger().setLevel((args.log_level or cfg.log_level).upper())
    if args.no_api:
        cfg.api_enabled = False
    if args.host:
        cfg.api_host = args.host
    if args.port:
        cfg.api_port = args.port

    service = ResolverService(cfg)
    _log_events(service)
    configure(service)
    service.start()

    try:
        if cfg.api_enabled:
            import uvicorn
            log.info(f"Operator API on http://{cfg.api_host}:{cfg.api_port}/docs")
            # uvicorn handles SIGINT/SIGTERM and returns on shutdown
            uvicorn.run(app, host=cfg.api_host, port=cfg.api_port, log_level=cfg.log_level.lower())
        else:
            shutdown = threading.Event()

            def _handle_signal(signum, frame):
                log.info(f"Received signal {signum}, shutting down")
                shutdown.set()

            signal.signal(signal.SIGINT, _handle_signal)
            signal.signal(signal.SIGTERM, _handle_signal)
            while not shutdown.is_set():
                shutdown.wait(1)
    finally:
        service.stop(timeout=cfg.resolver.tx_timeout + 30)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
