#!/usr/bin/env python3
import logging
import os
import sys

import anyio
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import TypeAdapter, ValidationError
from yt_dlp.version import __version__ as ytdlp_version

from config.settings import Settings, load_settings
from engine.batch_resolver import BatchResolver
from engine.cache import CacheGateway, MemoryCacheBackend, RedisCacheBackend
from engine.extraction import ExtractionInvoker

APP_NAME = "Stream Resolver API"
INVALID_BODY_DETAIL = "invalid JSON body; expected array of strings"
SERVICE_VERSION = "0.1.0"

_URL_LIST = TypeAdapter(list[str])

app = FastAPI(title=APP_NAME)


def _setup_logging(level_name):
    root = logging.getLogger("")
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)
    has_stream = any(isinstance(handler, logging.StreamHandler) for handler in root.handlers)
    if not has_stream:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        root.addHandler(handler)


def _build_cache_backend(settings: Settings):
    if settings.cache_backend == "none":
        return None
    if settings.cache_backend == "memory":
        return MemoryCacheBackend()
    logging.info("Connecting to redis at %s", settings.redis_addr)
    return RedisCacheBackend(
        settings.redis_addr,
        password=settings.redis_password,
        db=settings.redis_db,
    )


def build_resolver(settings: Settings) -> BatchResolver:
    backend = _build_cache_backend(settings)
    cache = CacheGateway.connect(backend, settings.cache_ttl_seconds)
    invoker = ExtractionInvoker(settings.ytdlp_cmd, settings.ytdlp_timeout_seconds)
    return BatchResolver(
        cache,
        invoker,
        max_concurrency=settings.max_concurrency,
        timeout_seconds=settings.ytdlp_timeout_seconds,
    )


@app.on_event("startup")
async def startup():
    settings = load_settings()
    _setup_logging(settings.log_level)
    app.state.settings = settings
    app.state.resolver = build_resolver(settings)
    logging.info(
        "Resolver ready: backend=%s degraded=%s max_concurrency=%d timeout=%.1fs",
        settings.cache_backend,
        app.state.resolver.cache.degraded,
        settings.max_concurrency,
        settings.ytdlp_timeout_seconds,
    )


@app.on_event("shutdown")
async def shutdown():
    resolver = getattr(app.state, "resolver", None)
    if resolver is None:
        return
    try:
        resolver.cache.close()
    except Exception:
        logging.exception("Failed to close cache backend")


def _parse_url_list(body: bytes) -> list[str]:
    try:
        return _URL_LIST.validate_json(body or b"")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=INVALID_BODY_DETAIL) from exc


@app.post("/resolve")
async def api_resolve(request: Request):
    urls = _parse_url_list(await request.body())
    if not urls:
        return {}
    resolver = app.state.resolver
    return await anyio.to_thread.run_sync(resolver.resolve_batch, urls)


@app.get("/heartbeat")
async def api_heartbeat():
    return Response(status_code=200)


@app.get("/version")
async def api_version():
    resolver = getattr(app.state, "resolver", None)
    return {
        "service_version": os.environ.get("STREAM_RESOLVER_VERSION", SERVICE_VERSION),
        "python_version": sys.version.split()[0],
        "ytdlp_version": ytdlp_version,
        "ytdlp_command": getattr(getattr(resolver, "invoker", None), "command", None),
        "cache_degraded": bool(resolver.cache.degraded) if resolver is not None else None,
    }


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run("api.main:app", host=settings.server_host, port=settings.server_port, reload=False)
