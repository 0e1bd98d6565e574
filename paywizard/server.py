from __future__ import annotations

import asyncio
import os
from typing import Dict, Optional

import httpx
import redis.asyncio as redis
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from .errors import ExecutionError, RateLimitError, ValidationError
from .gateway import ExecutionGateway, MockGateway, N8nGateway
from .infra import timings
from .infra.ratelimit import RateLimiter
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .model.draft import parse_scenario
from .model.metrics import summarize_runs
from .model.runstore import (
    RunStore, new_store, BACKEND as RUNSTORE_BACKEND, DEFAULT_KEY
)
from .wizard import Wizard, WizardState

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./paywizard.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
RUNSTORE_KEY = os.environ.get("RUNSTORE_KEY", DEFAULT_KEY)
GATEWAY_BACKEND = os.getenv("GATEWAY_BACKEND", "n8n").lower()  # n8n | mock
MOCK_STEP_DELAY = float(os.getenv("MOCK_STEP_DELAY", "0.5"))

SUBMIT_MIN_INTERVAL_MS = float(os.getenv("SUBMIT_MIN_INTERVAL_MS", "5000"))
_max_concurrent = os.getenv("SUBMIT_MAX_CONCURRENT", "")
SUBMIT_MAX_CONCURRENT = int(_max_concurrent) if _max_concurrent else None

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))


engine = SessionAsync = gated = None
if RUNSTORE_BACKEND == "sql":
    engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


app = FastAPI(
    title="PayWizard",
    default_response_class=ORJSONResponse,
)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('PayWizard is starting up...')
    print(f'   - Run history Backend: {RUNSTORE_BACKEND}')
    print(f'   - Execution  Backend: {GATEWAY_BACKEND}')
    print(f'   - Submit interval: {SUBMIT_MIN_INTERVAL_MS:.0f} ms')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    if RUNSTORE_BACKEND == "sql":
        from .model.runstore._sql import create_schema
        async with engine.begin() as conn:
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=httpx.Timeout(10.0, read=40.0),
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=32
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if RUNSTORE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "32")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _core_start():
    app.state.runstore = new_store(
        sessions=SessionAsync, gated=gated, r=app.state.redis,
        key=RUNSTORE_KEY,
    )
    if GATEWAY_BACKEND == "mock":
        app.state.gateway = MockGateway(step_delay=MOCK_STEP_DELAY)
    else:
        app.state.gateway = N8nGateway(app.state.http)
    # one limiter for every wizard of this process
    app.state.limiter = RateLimiter(
        min_interval=SUBMIT_MIN_INTERVAL_MS,
        max_concurrent=SUBMIT_MAX_CONCURRENT,
    )
    app.state.wizards = {}
    app.state.followers = {}


@app.on_event("shutdown")
async def _followers_stop():
    followers: Dict[str, asyncio.Task] = getattr(app.state, "followers", {})
    for task in followers.values():
        task.cancel()
    if followers:
        await asyncio.gather(*followers.values(), return_exceptions=True)
    followers.clear()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    if engine is not None:
        await engine.dispose()


# ----------------------------
# Dependencies
# ----------------------------
def runstore(request: Request) -> RunStore:
    return request.app.state.runstore


def gateway(request: Request) -> ExecutionGateway:
    return request.app.state.gateway


def limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def get_wizard(wizard_id: str, request: Request) -> Wizard:
    wizard = request.app.state.wizards.get(wizard_id)
    if wizard is None:
        raise HTTPException(404, detail="wizard not found")
    return wizard


# ----------------------------
# Helpers
# ----------------------------
def invalid(e: ValidationError) -> HTTPException:
    return HTTPException(400, detail={"errors": e.fields})


def rate_limited(e: RateLimitError) -> HTTPException:
    return HTTPException(
        429,
        detail={"message": str(e), "wait_ms": e.wait_ms},
        headers={"Retry-After": str(e.retry_after_s)},
    )


def _stop_following(wizard_id: str) -> None:
    task = app.state.followers.pop(wizard_id, None)
    if task is not None and not task.done():
        # only stops observing; the external run is not cancelled
        task.cancel()


async def _follow(wizard: Wizard, run_key: str) -> None:
    try:
        await wizard.follow(wizard.gateway.updates(run_key))
    finally:
        followers = app.state.followers
        if followers.get(wizard.id) is asyncio.current_task():
            followers.pop(wizard.id, None)


def active_flows() -> int:
    return sum(
        1 for w in app.state.wizards.values()
        if w.state is WizardState.RUNNING
    )


# ----------------------------
# Wizard sessions
# ----------------------------
@app.post("/api/wizards")
async def create_wizard(
    request: Request,
    rs: RunStore = Depends(runstore),
    gw: ExecutionGateway = Depends(gateway),
    rl: RateLimiter = Depends(limiter),
):
    wizard = Wizard(limiter=rl, gateway=gw, store=rs)
    wizard.open()
    request.app.state.wizards[wizard.id] = wizard
    return wizard.view()


@app.get("/api/wizards/{wizard_id}")
async def wizard_view(wizard: Wizard = Depends(get_wizard)):
    return wizard.view()


@app.post("/api/wizards/{wizard_id}/scenarios")
async def wizard_toggle_scenario(
    payload: dict, wizard: Wizard = Depends(get_wizard)
):
    try:
        scenario = parse_scenario(payload.get("scenario"))
    except ValueError as e:
        raise HTTPException(400, detail={"errors": {"scenario": str(e)}})
    try:
        wizard.toggle(scenario)
    except ValidationError as e:
        raise invalid(e)
    return wizard.view()


@app.patch("/api/wizards/{wizard_id}/data")
async def wizard_update(payload: dict, wizard: Wizard = Depends(get_wizard)):
    try:
        wizard.update(payload)
    except ValidationError as e:
        raise invalid(e)
    return wizard.view()


@app.post("/api/wizards/{wizard_id}/next")
async def wizard_next(wizard: Wizard = Depends(get_wizard)):
    try:
        wizard.next()
    except ValidationError as e:
        raise invalid(e)
    return wizard.view()


@app.post("/api/wizards/{wizard_id}/back")
async def wizard_back(wizard: Wizard = Depends(get_wizard)):
    try:
        wizard.back()
    except ValidationError as e:
        raise invalid(e)
    return wizard.view()


@app.post("/api/wizards/{wizard_id}/reset")
async def wizard_reset(wizard: Wizard = Depends(get_wizard)):
    try:
        wizard.reset()
    except ValidationError as e:
        raise invalid(e)
    _stop_following(wizard.id)
    return wizard.view()


@app.post("/api/wizards/{wizard_id}/submit")
async def wizard_submit(wizard: Wizard = Depends(get_wizard)):
    try:
        run_key = await wizard.submit()
    except ValidationError as e:
        raise invalid(e)
    except RateLimitError as e:
        raise rate_limited(e)
    except ExecutionError:
        # run already resolved to Failed and was saved
        return wizard.view()

    app.state.followers[wizard.id] = asyncio.create_task(
        _follow(wizard, run_key)
    )
    return wizard.view()


@app.get("/api/wizards/{wizard_id}/run")
async def wizard_run(wizard: Wizard = Depends(get_wizard)):
    if wizard.run is None:
        raise HTTPException(404, detail="no run yet")
    return {
        "runKey": wizard.run_key,
        "state": wizard.state.value,
        "elapsedMs": wizard.elapsed_ms(),
        "error": wizard.failure.message if wizard.failure else None,
        **wizard.run.to_dict(),
    }


@app.delete("/api/wizards/{wizard_id}")
async def wizard_abandon(
    request: Request, wizard: Wizard = Depends(get_wizard)
):
    _stop_following(wizard.id)
    request.app.state.wizards.pop(wizard.id, None)
    return {"ok": True, "id": wizard.id}


# ----------------------------
# History & lookups
# ----------------------------
@app.get("/api/runs")
async def api_runs(rs: RunStore = Depends(runstore)):
    runs = await rs.load_all()
    return {"items": [r.to_dict() for r in runs]}


@app.get("/api/runs/metrics")
async def api_runs_metrics(rs: RunStore = Depends(runstore)):
    runs = await rs.load_all()
    return summarize_runs(runs, active_flows=active_flows())


@app.get("/api/candidates")
async def api_candidates(
    action: str,
    channelId: str,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    gw: ExecutionGateway = Depends(gateway),
):
    if action not in ("cancel", "refund"):
        raise HTTPException(400, detail="action must be cancel or refund")
    try:
        async with timeit("gateway.candidates"):
            items = await gw.list_candidates(
                action, channelId, date_from, date_to,
                max(1, min(limit, 500)),
            )
    except httpx.HTTPError as e:
        raise HTTPException(502, detail=f"candidate lookup failed: {e}")
    return {"items": items}


@app.get("/api/test-cards")
async def api_test_cards(gw: ExecutionGateway = Depends(gateway)):
    try:
        async with timeit("gateway.test_cards"):
            items = await gw.list_test_cards()
    except httpx.HTTPError as e:
        raise HTTPException(502, detail=f"test card lookup failed: {e}")
    return {"items": items}


@app.get("/api/limiter")
async def api_limiter(rl: RateLimiter = Depends(limiter)):
    return rl.snapshot()


@app.get("/api/timings")
async def api_timings():
    return {"items": timings.aggregates()}


def run():
    config = uvicorn.Config(app, host=HOST, port=PORT, log_level="info")
    uvicorn.Server(config).run()


if __name__ == "__main__":
    run()
