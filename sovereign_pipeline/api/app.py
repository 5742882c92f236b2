"""
Sovereign Decision Pipeline — HTTP API.

FastAPI application providing:
- POST /omega/chat      one decision cycle against the jurisdiction's ledger
- POST /omega/dataset   trade-dependency dataset (synthetic on failure)
- POST /omega/mission   store a mission packet, optionally activating it
- GET  /omega/mission   the active mission for a jurisdiction
- GET  /omega/health    node identity and configured model

Every route sits behind the origin allowlist and the optional shared
access code.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from sovereign_pipeline.api.access import (
    ACCESS_CODE_HEADER,
    access_code_valid,
    cors_headers,
    pick_origin,
)
from sovereign_pipeline.config import settings
from sovereign_pipeline.domain.schema import ChatRequest
from sovereign_pipeline.pipeline import DecisionPipeline, InvalidMissionPacket

logger = logging.getLogger(__name__)


class ApiState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.pipeline: DecisionPipeline | None = None
        self.allowed_origins: list[str] = settings.allowed_origin_list
        self.access_code: str = settings.omega_access_code


state = ApiState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline from settings unless one was injected."""
    if state.pipeline is None:
        state.pipeline = DecisionPipeline.from_settings(settings)
        logger.info("Pipeline initialized: model=%s", settings.omega_model)
    yield
    logger.info("Sovereign pipeline API shut down")


app = FastAPI(
    title="Sovereign Decision Pipeline",
    description="Schema-constrained decisions over a persisted national resource ledger",
    version="3.2.1",
    lifespan=lifespan,
)


def _pipeline() -> DecisionPipeline:
    if state.pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return state.pipeline


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


# ── Access control ─────────────────────────────────────────────


@app.middleware("http")
async def access_control(request: Request, call_next):
    requested = request.headers.get("origin")

    if request.method == "OPTIONS":
        return Response(status_code=200, headers=cors_headers(requested or "*"))

    origin = pick_origin(requested, state.allowed_origins)
    if origin is None:
        logger.warning("Rejected request from origin %s", requested)
        return PlainTextResponse("Forbidden origin", status_code=403)

    if not access_code_valid(request.headers.get(ACCESS_CODE_HEADER), state.access_code):
        return PlainTextResponse("Unauthorized", status_code=401, headers=cors_headers(origin))

    response = await call_next(request)
    response.headers.update(cors_headers(origin))
    return response


@app.exception_handler(RequestValidationError)
async def bad_request(request: Request, exc: RequestValidationError):
    logger.info("Malformed request to %s: errors=%d", request.url.path, len(exc.errors()))
    return PlainTextResponse("Bad Request", status_code=400)


# ── Routes ─────────────────────────────────────────────────────


@app.get("/omega/health")
async def health():
    return JSONResponse(_pipeline().health())


@app.post("/omega/chat")
async def chat(req: ChatRequest):
    """Run one decision cycle. Always 200 once the request body is well-formed."""
    response = await _pipeline().chat(req)
    payload = response.model_dump(mode="json", by_alias=True)
    if payload.get("error") is None:
        payload.pop("error", None)
    return JSONResponse(payload)


@app.post("/omega/dataset")
async def dataset(request: Request):
    body = await _json_body(request)
    body = body if isinstance(body, dict) else {}
    result = await _pipeline().fetch_dataset(
        country=body.get("country") and str(body["country"]),
        focus=body.get("focus") and str(body["focus"]),
    )
    return JSONResponse(result)


@app.post("/omega/mission")
async def set_mission(request: Request):
    body = await _json_body(request)
    try:
        result = _pipeline().set_mission(body)
    except InvalidMissionPacket as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return JSONResponse(result)


@app.get("/omega/mission")
async def get_mission(country: str | None = None):
    return JSONResponse(_pipeline().get_mission(country))
