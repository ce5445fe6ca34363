# main.py
# =========================================================
# FAIRPLAY Backend (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, field_validator

import db as dbmod
from balances import SqliteBalances
from broadcast import EventHub
from config import settings
from engine import FairplayEngine
from errors import FairplayError
from seeds import is_round_context

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("fairplay.api")

VERSION = "0.1.0"

ADMIN_TOKEN = getattr(settings, "ADMIN_TOKEN", "")
_auth_scheme = HTTPBearer(auto_error=False)
def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    if not ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if getattr(settings, "DEBUG", False):
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True

# =========================================================
# Lifecycle
# =========================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Connect DB + ensure schema
    app.state.db = await dbmod.connect(settings.DB_PATH)
    await dbmod.ensure_schema(app.state.db)

    repo = dbmod.Repository(app.state.db)
    app.state.events = EventHub()
    engine = FairplayEngine.from_settings(
        settings,
        repo=repo,
        balances=SqliteBalances(repo, starting_balance=settings.STARTING_BALANCE),
        broadcaster=app.state.events,
    )
    engine.startup()
    await engine.recover()
    app.state.engine = engine

    if settings.ROUNDS_ENABLED and engine.fail_closed is None:
        for game in settings.ROUND_GAMES:
            engine.add_round_game(
                game,
                betting_seconds=settings.ROUND_BETTING_SECONDS,
                cooldown_seconds=settings.ROUND_COOLDOWN_SECONDS,
                min_bets=settings.ROUND_MIN_BETS,
            )
        engine.start_rounds()

    try:
        yield
    finally:
        await engine.stop_rounds()
        await app.state.db.close()

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="FAIRPLAY Backend", version=VERSION, lifespan=lifespan)

# ----------------------------- CORS ---------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (getattr(settings, "API_PREFIX", "/api") or "/api").rstrip("/")

@app.exception_handler(FairplayError)
async def fairplay_error_handler(request: Request, exc: FairplayError):
    if exc.status_code >= 500:
        logger.error("[api] %s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )

def _engine(request: Request) -> FairplayEngine:
    return request.app.state.engine

# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health(request: Request):
    engine = _engine(request)
    return {
        "ok": engine.fail_closed is None,
        "ts": time.time(),
        "service": "FAIRPLAY",
        "version": VERSION,
        "fail_closed": engine.fail_closed,
    }

# =========================================================
# Models
# =========================================================
class SeedResp(BaseModel):
    server_seed_hash: Optional[str] = None
    client_seed: Optional[str] = None
    nonce: int
    pending: int = 0

class ClientSeedReq(BaseModel):
    client_seed: Union[str, int]

class RevealResp(BaseModel):
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int
    next_server_seed_hash: Optional[str] = None

class NewBet(BaseModel):
    context: str = Field(min_length=1, max_length=128)
    game: Literal["coin", "dice", "slots", "crash"]
    params: dict[str, Any] = Field(default_factory=dict)
    stake: int = Field(ge=1, description="Amount in smallest units")
    # optional: the commitment the player is betting against
    server_seed_hash: Optional[str] = None
    client_seed: Optional[Union[str, int]] = None
    nonce: Optional[int] = Field(default=None, ge=0)

    @field_validator("context")
    @classmethod
    def _player_context(cls, v: str) -> str:
        if is_round_context(v):
            raise ValueError("round seed contexts are not player contexts")
        return v

    def expected(self) -> Optional[dict]:
        pinned = {k: getattr(self, k) for k in ("server_seed_hash", "client_seed", "nonce")}
        return {k: v for k, v in pinned.items() if v is not None} or None

class BetResp(BaseModel):
    bet_id: str
    nonce: int
    server_seed_hash: str
    client_seed: str
    game: str
    round_id: Optional[str] = None
    rotated: Optional[RevealResp] = None

class OutcomeResp(BaseModel):
    bet_id: str
    status: str
    game: str
    outcome: Optional[dict] = None
    multiplier: Optional[str] = None
    payout: int
    profit: Optional[int] = None

class VerifyReq(BaseModel):
    server_seed: str
    server_seed_hash: str
    client_seed: Union[str, int]
    nonce: int = Field(ge=0)
    game: Literal["coin", "dice", "slots", "crash"]
    round_id: Optional[str] = None

class VerifyResp(BaseModel):
    commitment_valid: bool
    outcome: dict

class CreditReq(BaseModel):
    context: str = Field(min_length=1, max_length=128)
    amount: int = Field(ge=1)

class BalanceResp(BaseModel):
    context: str
    balance: int

# =========================================================
# Endpoints — Seeds
# =========================================================
@app.post(f"{API}/seeds/{{context}}/commit", response_model=SeedResp)
async def request_commitment(context: str, request: Request):
    """Commit a server seed for the context; only its sha256 is returned."""
    return await _engine(request).request_commitment(context)

@app.get(f"{API}/seeds/{{context}}", response_model=SeedResp)
async def seed_status(context: str, request: Request):
    return await _engine(request).seed_status(context)

@app.put(f"{API}/seeds/{{context}}/client-seed", response_model=SeedResp)
async def set_client_seed(context: str, body: ClientSeedReq, request: Request):
    return await _engine(request).set_client_seed(context, body.client_seed)

@app.post(f"{API}/seeds/{{context}}/reveal", response_model=RevealResp)
async def reveal_seed(context: str, request: Request):
    """Reveal the current server seed (all bets settled) and rotate to a new commitment."""
    return await _engine(request).reveal_seed(context)

# =========================================================
# Endpoints — Bets
# =========================================================
@app.post(f"{API}/bets", response_model=BetResp)
async def place_bet(body: NewBet, request: Request):
    return await _engine(request).place_bet(
        body.context, body.game, body.params, body.stake, expect=body.expected(),
    )

@app.get(f"{API}/bets/{{bet_id}}", response_model=OutcomeResp)
async def get_outcome(bet_id: str, request: Request):
    return await _engine(request).get_outcome(bet_id)

@app.get(f"{API}/players/{{context}}/history")
async def bet_history(context: str, request: Request, limit: int = Query(20, ge=1, le=500)):
    return {"context": context, "rows": await _engine(request).history(context, limit)}

@app.get(f"{API}/players/{{context}}/totals")
async def bet_totals(context: str, request: Request):
    return {"context": context, **(await _engine(request).totals(context))}

@app.get(f"{API}/players/{{context}}/balance", response_model=BalanceResp)
async def get_balance(context: str, request: Request):
    return {"context": context, "balance": await _engine(request).balance(context)}

# =========================================================
# Read Endpoints — Fairness & Transparency
# =========================================================
@app.post(f"{API}/verify", response_model=VerifyResp)
async def verify(body: VerifyReq, request: Request):
    """Recompute an outcome from revealed inputs (no state touched)."""
    return _engine(request).verify(
        body.server_seed, body.server_seed_hash, body.client_seed, body.nonce, body.game, body.round_id,
    )

@app.get(f"{API}/games")
async def list_games(request: Request):
    engine = _engine(request)
    return {
        "games": sorted(engine.games),
        "rounds": sorted(engine.rounds),
    }

# =========================================================
# Endpoints — Rounds (continuous games)
# =========================================================
@app.get(f"{API}/rounds/{{game}}/current")
async def rounds_current(game: str, request: Request):
    sched = _engine(request).rounds.get(game)
    if sched is None or sched.current is None:
        raise HTTPException(404, "No rounds running for this game")
    return sched.current.public()

@app.get(f"{API}/rounds/{{game}}/recent")
async def rounds_recent(game: str, request: Request, limit: int = Query(10, ge=1, le=50)):
    sched = _engine(request).rounds.get(game)
    if sched is None:
        raise HTTPException(404, "No rounds running for this game")
    return [r.public() for r in list(sched.recent)[:limit]]

# =========================================================
# Realtime
# =========================================================
@app.websocket(f"{API}/events")
async def events(ws: WebSocket):
    hub: EventHub = ws.app.state.events
    async with hub.subscribe() as queue:
        await ws.accept()
        # watch the socket too, so a quiet disconnect frees the queue at once
        receiver = asyncio.create_task(ws.receive())
        getter = asyncio.create_task(queue.get())
        try:
            while True:
                done, _ = await asyncio.wait({receiver, getter}, return_when=asyncio.FIRST_COMPLETED)
                if receiver in done:
                    if receiver.result()["type"] == "websocket.disconnect":
                        break
                    receiver = asyncio.create_task(ws.receive())  # client chatter is ignored
                if getter in done:
                    await ws.send_json(getter.result())
                    getter = asyncio.create_task(queue.get())
        except WebSocketDisconnect:
            pass
        finally:
            receiver.cancel()
            getter.cancel()
        logger.debug("[events] subscriber left")

# =========================================================
# Admin Helpers
# =========================================================
@app.post(f"{API}/admin/credit", response_model=BalanceResp)
async def admin_credit(body: CreditReq, request: Request, auth: bool = Depends(admin_guard)):
    """Fund a context (demo / ops)."""
    balance = await _engine(request).balances.credit(body.context, body.amount)
    return {"context": body.context, "balance": balance}
