import logging
import math
import os
from typing import Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import Cookie, FastAPI, HTTPException, status
from jose import JWTError, jwt
from pydantic import BaseModel

from roleshop import app_context
from roleshop.maintenance import (
    get_maintenance_metrics,
    shutdown_maintenance_scheduler,
    start_maintenance_scheduler,
)

load_dotenv()

logger = logging.getLogger("roleshop")


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
    dbname=os.getenv("DB_NAME", "roleshop_db"),
    user=os.getenv("DB_USER", "roleshop_user"),
    password=os.getenv("DB_PASSWORD", "roleshop_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
ADMIN_ROLES = {"admin", "moderator"}
ENSURE_SCHEMA = os.getenv("ROLESHOP_ENSURE_SCHEMA", "1").lower() in {"1", "true", "yes"}


class AccountPrincipal(BaseModel):
    id: int
    is_admin: bool = False


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_principal_from_session_token(session_token: str) -> Optional[AccountPrincipal]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        account_id = int(subject)
    except (JWTError, ValueError):
        return None
    role = str(payload.get("role") or "").lower()
    return AccountPrincipal(id=account_id, is_admin=role in ADMIN_ROLES)


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> AccountPrincipal:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    principal = resolve_principal_from_session_token(session_token)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return principal


app_context.configure(
    get_conn=get_conn,
    get_current_user=get_current_user,
)

from roleshop.app.routes.roleshop import router as roleshop_router
from roleshop.app.services.roleshop import get_role_shop_service

app = FastAPI(title="Role Shop API")

app.include_router(roleshop_router)


@app.on_event("startup")
def _start_role_shop() -> None:
    if ENSURE_SCHEMA:
        try:
            get_role_shop_service().store.ensure_schema()
        except psycopg2.Error:
            logger.exception("Unable to prepare role shop schema")
    start_maintenance_scheduler()


@app.on_event("shutdown")
def _shutdown_role_shop() -> None:
    shutdown_maintenance_scheduler()


@app.get("/api/metrics/role-maintenance")
def read_role_maintenance_metrics():
    return get_maintenance_metrics()
