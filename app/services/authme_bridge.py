# app/services/authme_bridge.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from app.core import config
from app.core.errors import NotFoundError, ValidationError
from app.core.security import split_authme_hash, verify_authme_sha_password
from app.services.plugin_db import PluginDatabase

logger = logging.getLogger("portal.authme")
logger.setLevel(logging.INFO)

DEFAULT_LIMIT = 50
MAX_LIMIT = 500

# sort field -> SQL expression (whitelist, never interpolate user input)
SORT_FIELDS = {
    "id": "id",
    "username": "LOWER(username)",
    "realname": "LOWER(realname)",
    "lastlogin": "COALESCE(lastlogin, 0)",
    "regdate": "COALESCE(regdate, 0)",
    "ip": "COALESCE(ip, '')",
    "regip": "COALESCE(regip, '')",
}


@dataclass
class AuthmeAccount:
    """One row of the AuthMe `authme` table"""
    id: int
    username: str
    realname: Optional[str]
    password: str
    ip: Optional[str] = None
    lastlogin: Optional[int] = None
    regdate: Optional[int] = None
    regip: Optional[str] = None
    email: Optional[str] = None
    world: Optional[str] = None
    x: float = 0
    y: float = 0
    z: float = 0
    is_logged: int = 0
    has_session: int = 0


def _account_from_row(row: dict) -> AuthmeAccount:
    def pick(*keys):
        for k in keys:
            if k in row:
                return row[k]
        return None

    return AuthmeAccount(
        id=int(row["id"]),
        username=row["username"],
        realname=row.get("realname"),
        password=row.get("password") or "",
        ip=row.get("ip"),
        lastlogin=int(row["lastlogin"]) if row.get("lastlogin") is not None else None,
        regdate=int(row["regdate"]) if row.get("regdate") is not None else None,
        regip=row.get("regip"),
        email=row.get("email"),
        world=row.get("world"),
        x=float(row.get("x") or 0),
        y=float(row.get("y") or 0),
        z=float(row.get("z") or 0),
        is_logged=int(pick("isLogged", "islogged") or 0),
        has_session=int(pick("hasSession", "hassession") or 0),
    )


class AuthmeBridge:
    """
    Read-through adapter over the AuthMe plugin database.
    Every method raises ExternalUnavailable when the database is disabled or unreachable.
    """
    _instance: Optional["AuthmeBridge"] = None

    def __init__(self, db: PluginDatabase):
        self.db = db

    @classmethod
    def get_instance(cls) -> "AuthmeBridge":
        if cls._instance is None:
            cls._instance = cls(PluginDatabase(
                "AUTHME_DB",
                config.AUTHME_DATABASE_URL,
                enabled=config.AUTHME_ENABLED,
                connect_timeout=config.EXTERNAL_CONNECT_TIMEOUT_SECONDS,
            ))
        return cls._instance

    def is_enabled(self) -> bool:
        return self.db.enabled

    def health(self) -> dict:
        return self.db.health()

    def get_by_username(self, username: str) -> Optional[AuthmeAccount]:
        row = self.db.fetch_one(
            "SELECT * FROM authme WHERE LOWER(username) = LOWER(:value) LIMIT 1",
            {"value": username},
            "getByUsername",
        )
        return _account_from_row(row) if row else None

    def get_by_realname(self, realname: str) -> Optional[AuthmeAccount]:
        row = self.db.fetch_one(
            "SELECT * FROM authme WHERE LOWER(realname) = LOWER(:value) LIMIT 1",
            {"value": realname},
            "getByRealname",
        )
        return _account_from_row(row) if row else None

    def get_account(self, identifier: str) -> Optional[AuthmeAccount]:
        """Username match first, realname second."""
        account = self.get_by_username(identifier)
        if account:
            return account
        return self.get_by_realname(identifier)

    def list_players(
        self,
        keyword: Optional[str] = None,
        offset: int = 0,
        limit: int = DEFAULT_LIMIT,
        sort_field: Optional[str] = None,
        sort_order: str = "desc",
    ) -> tuple[list[AuthmeAccount], int]:
        limit = min(max(limit or DEFAULT_LIMIT, 1), MAX_LIMIT)
        offset = max(offset or 0, 0)
        expression = SORT_FIELDS.get((sort_field or "lastlogin").lower(), SORT_FIELDS["lastlogin"])
        direction = "ASC" if (sort_order or "").lower() == "asc" else "DESC"

        where = ""
        params: dict = {}
        if keyword and keyword.strip():
            where = (
                "WHERE (LOWER(username) LIKE :kw OR LOWER(realname) LIKE :kw "
                "OR LOWER(COALESCE(email, '')) LIKE :kw)"
            )
            params["kw"] = f"%{keyword.strip().lower()}%"

        rows = self.db.fetch_all(
            f"SELECT * FROM authme {where} ORDER BY {expression} {direction}, id {direction} "
            f"LIMIT :limit OFFSET :offset",
            {**params, "limit": limit, "offset": offset},
            "listPaged",
        )
        count_row = self.db.fetch_one(f"SELECT COUNT(1) AS total FROM authme {where}", params, "countPaged")
        total = int(count_row["total"]) if count_row else len(rows)
        return [_account_from_row(r) for r in rows], total

    def verify_credentials(self, identifier: str, password: str) -> AuthmeAccount:
        account = self.get_account(identifier)
        if not account:
            raise NotFoundError("AuthMe account not found", code="AUTHME_ACCOUNT_NOT_FOUND")
        segments = split_authme_hash(account.password)
        if segments and segments[0] != "SHA":
            logger.warning(f"Unsupported AuthMe password algorithm: {segments[0]}")
        if not verify_authme_sha_password(account.password, password):
            raise ValidationError("AuthMe password is incorrect", code="AUTHME_PASSWORD_MISMATCH")
        return account
