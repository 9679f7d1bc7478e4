import math
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
import psycopg2.extras
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from backend import app_context  # noqa: E402
from backend.app.ledger.repository import ensure_schema  # noqa: E402
from backend.app.routes.ledger import router as ledger_router  # noqa: E402
from backend.grant_sweeps import (  # noqa: E402
    get_sweep_metrics,
    shutdown_grant_scheduler,
    start_grant_scheduler,
)


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "mailroom_db"),
    user=os.getenv("DB_USER", "mailroom_user"),
    password=os.getenv("DB_PASSWORD", "mailroom_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]
LEDGER_SCHEDULER_ENABLED = os.getenv("LEDGER_SCHEDULER_ENABLED", "1").lower() in {"1", "true", "yes"}
LEDGER_ENSURE_SCHEMA = os.getenv("LEDGER_ENSURE_SCHEMA", "1").lower() in {"1", "true", "yes"}


def get_conn():
    return psycopg2.connect(**DB_CFG)


class UserOut(BaseModel):
    id: int
    username: str
    role: str
    created_utc: datetime


def get_user_by_id(uid: int) -> Optional[UserOut]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
        cur.execute("SELECT id, username, role, created_utc FROM users WHERE id = %s", (uid,))
        row = cur.fetchone()
    if not row:
        return None
    return UserOut(**dict(row))


def resolve_user_from_session_token(session_token: str) -> Optional[UserOut]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        user_id = int(subject)
    except (JWTError, ValueError):
        return None

    return get_user_by_id(user_id)


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> UserOut:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

app = FastAPI(title="Mailroom Credits API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ledger_router)


@app.on_event("startup")
def _start_ledger() -> None:
    if LEDGER_ENSURE_SCHEMA:
        ensure_schema()
    if LEDGER_SCHEDULER_ENABLED:
        start_grant_scheduler()


@app.on_event("shutdown")
def _shutdown_grant_scheduler() -> None:
    shutdown_grant_scheduler()


@app.get("/api/metrics/credit-sweeps")
def read_credit_sweep_metrics(current_user: UserOut = Depends(get_current_user)) -> Dict[str, Any]:
    if not app_context.is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return get_sweep_metrics()


@app.get("/api/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}

# run: uvicorn backend.main:app --host 127.0.0.1 --port 8000 --reload
