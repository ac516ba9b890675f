import logging
import time
from concurrent.futures import Executor
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from pydantic import BaseModel

from .collector import NetatmoCollector
from .config import Config, ConfigError, load_config
from .logging import parse_level, setup_logging
from .netatmo import NetatmoClient, NetatmoError, NotAuthenticatedError, Token
from .tokens import TokenCollector, restore_token, save_token

__version__ = "2.0.0"

log = logging.getLogger(__name__)

class SetTokenRequest(BaseModel):
    refresh_token: str

def _token_info(client: NetatmoClient, now: float) -> dict[str, object]:
    try:
        token = client.current_token()
    except NotAuthenticatedError:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "valid": token.valid(now),
        "expiry": token.expiry,
        "has_refresh_token": bool(token.refresh_token),
    }

def create_app(
    cfg: Config,
    client: NetatmoClient,
    clock: Callable[[], float] = time.time,
    executor: Executor | None = None,
) -> FastAPI:
    collector = NetatmoCollector(
        logging.getLogger("netatmo_exporter.collector"),
        client.read,
        cfg.refresh_interval,
        cfg.stale_duration,
        clock=clock,
        executor=executor,
    )
    registry = CollectorRegistry()
    registry.register(collector)
    registry.register(TokenCollector(client.current_token, clock=clock))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if cfg.token_file:
            restore_token(client, cfg.token_file)
        else:
            log.warning("No token-file set! Authentication will be lost on restart.")
        log.info(
            "starting exporter",
            extra={
                "event": "startup",
                "extra_fields": {
                    "version": __version__,
                    "refresh_interval_s": cfg.refresh_interval,
                    "stale_s": cfg.stale_duration,
                },
            },
        )
        yield
        log.info("stopping exporter", extra={"event": "shutdown"})
        if cfg.token_file:
            try:
                save_token(client, cfg.token_file)
            except OSError as e:
                log.error("Error persisting token: %s", e)
        collector.close()
        client.close()

    app = FastAPI(title="Netatmo exporter", version=__version__, lifespan=lifespan)

    # Access log + latency
    @app.middleware("http")
    async def access_logger(request: Request, call_next):
        t0 = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            log.info(
                "access",
                extra={
                    "event": "http.access",
                    "extra_fields": {
                        "path": request.url.path,
                        "method": request.method,
                        "latency_ms": int((time.time() - t0) * 1000),
                        "status": status,
                    },
                },
            )

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    @app.get("/version")
    async def version():
        return {"version": __version__, "exporter": "netatmo-exporter"}

    @app.get("/")
    async def home():
        return {"version": __version__, "token": _token_info(client, clock())}

    @app.post("/auth/settoken")
    async def set_token(req: SetTokenRequest):
        refresh_token = req.refresh_token.strip()
        if not refresh_token:
            raise HTTPException(status_code=400, detail="refresh_token can not be empty.")
        # no access token yet: the next read renews it
        client.init_with_token(Token(refresh_token=refresh_token, expiry=clock()))
        log.info("token set manually", extra={"event": "token.set"})
        return {"ok": True}

    if cfg.debug_handlers:
        @app.get("/debug/data")
        def debug_data():
            try:
                return {"bodies": client.read_raw()}
            except NetatmoError as e:
                raise HTTPException(status_code=502, detail=f"Error retrieving data: {e}") from e

        @app.get("/debug/token")
        async def debug_token():
            return _token_info(client, clock())

    return app

def main():
    try:
        cfg = load_config()
    except ConfigError as e:
        raise SystemExit(f"Error in configuration: {e}")
    setup_logging("netatmo-exporter", cfg.log_level)

    client = NetatmoClient(cfg.client_id, cfg.client_secret)
    app = create_app(cfg, client)
    log.info("Listen on %s:%d...", cfg.host, cfg.port)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=logging.getLevelName(parse_level(cfg.log_level)).lower(), access_log=False)

if __name__ == "__main__":
    # Dev run: python -m netatmo_exporter.app
    main()
