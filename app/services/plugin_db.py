# app/services/plugin_db.py
from __future__ import annotations
import logging
import socket
import time
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from app.core.errors import ExternalUnavailable

logger = logging.getLogger("portal.plugin_db")
logger.setLevel(logging.INFO)

MAX_ATTEMPTS = 5
BACKOFF_STEP_SECONDS = 0.15

# MySQL client / server error numbers
_DNS_CODES = {2005}
_CONNECT_CODES = {2002, 2003, 2006, 2013, 2055}
_AUTH_CODES = {1044, 1045}


def _error_code(error: BaseException) -> Optional[int]:
    orig = getattr(error, "orig", None)
    args = getattr(orig, "args", None) or getattr(error, "args", None) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def resolve_stage(error: BaseException) -> str:
    """Classify a failure as DNS, CONNECT, AUTH or QUERY."""
    orig = getattr(error, "orig", None)
    if isinstance(error, socket.gaierror) or isinstance(orig, socket.gaierror):
        return "DNS"
    code = _error_code(error)
    if code in _DNS_CODES:
        return "DNS"
    if code in _CONNECT_CODES:
        return "CONNECT"
    if code in _AUTH_CODES:
        return "AUTH"
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return "CONNECT"
    if isinstance(error, (ConnectionError, TimeoutError)) or isinstance(orig, (ConnectionError, TimeoutError)):
        return "CONNECT"
    return "QUERY"


class PluginDatabase:
    """
    Read-only access to a database owned by a game-server plugin.

    Connection-stage failures are retried with a linear backoff; anything else,
    or running out of retries, surfaces as ExternalUnavailable.
    """

    def __init__(self, dep: str, url: str, enabled: bool = True, connect_timeout: float = 5.0,
                 engine: Engine | None = None):
        self.dep = dep
        self.enabled = bool(enabled and (url or engine is not None))
        self.engine: Engine | None = engine
        if self.engine is None and self.enabled:
            connect_args = {}
            if url.startswith("mysql"):
                connect_args = {"connect_timeout": int(connect_timeout), "charset": "utf8mb4"}
            self.engine = create_engine(url, pool_pre_ping=True, pool_recycle=1800, connect_args=connect_args)

    def _require_engine(self) -> Engine:
        if not self.enabled or self.engine is None:
            raise ExternalUnavailable(self.dep, "CONNECT", f"{self.dep} integration disabled")
        return self.engine

    def fetch_all(self, sql: str, params: dict[str, Any], label: str) -> list[dict]:
        engine = self._require_engine()
        started = time.perf_counter()
        last_error: SQLAlchemyError | None = None
        try:
            for attempt in range(MAX_ATTEMPTS):
                if attempt:
                    time.sleep(BACKOFF_STEP_SECONDS * attempt)
                try:
                    with engine.connect() as conn:
                        rows = conn.execute(text(sql), params).mappings().all()
                        return [dict(r) for r in rows]
                except SQLAlchemyError as e:
                    stage = resolve_stage(e)
                    if stage != "CONNECT":
                        logger.error(f"{self.dep} query failed ({label}) at stage {stage}: {e}")
                        raise ExternalUnavailable(self.dep, stage, str(e), cause=str(_error_code(e) or "")) from e
                    last_error = e
                    logger.warning(
                        f"{self.dep} query failed ({label}), reconnecting and retry ({attempt + 1}/{MAX_ATTEMPTS})"
                    )
            logger.error(f"{self.dep} query failed ({label}), retry limit reached: {last_error}")
            raise ExternalUnavailable(self.dep, "CONNECT", str(last_error), "RETRY_EXHAUSTED") from last_error
        finally:
            logger.debug(f"{self.dep} {label} took {(time.perf_counter() - started) * 1000:.1f}ms")

    def fetch_one(self, sql: str, params: dict[str, Any], label: str) -> dict | None:
        rows = self.fetch_all(sql, params, label)
        return rows[0] if rows else None

    def health(self) -> dict:
        if not self.enabled or self.engine is None:
            return {"ok": False, "stage": "CONNECT", "message": f"{self.dep} integration disabled"}
        started = time.perf_counter()
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            return {"ok": False, "stage": resolve_stage(e), "message": str(e)}
        return {"ok": True, "latencyMs": int(round((time.perf_counter() - started) * 1000))}

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
