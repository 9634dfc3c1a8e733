from __future__ import annotations

import hashlib

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from app.core.security import create_jwt_token, hash_password
from app.models import Role, User, UserProfile

DEFAULT_PASSWORD = "Passw0rdX"

AUTHME_DDL = """
CREATE TABLE authme (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username VARCHAR(255) NOT NULL,
    realname VARCHAR(255),
    password VARCHAR(255) NOT NULL,
    ip VARCHAR(40),
    lastlogin BIGINT,
    x DOUBLE DEFAULT 0,
    y DOUBLE DEFAULT 0,
    z DOUBLE DEFAULT 0,
    world VARCHAR(255) DEFAULT 'world',
    regdate BIGINT DEFAULT 0,
    regip VARCHAR(40),
    email VARCHAR(255),
    isLogged SMALLINT DEFAULT 0,
    hasSession SMALLINT DEFAULT 0
)
"""

LUCKPERMS_DDL = (
    """
    CREATE TABLE luckperms_players (
        uuid VARCHAR(36) PRIMARY KEY,
        username VARCHAR(16) NOT NULL,
        primary_group VARCHAR(36) NOT NULL
    )
    """,
    """
    CREATE TABLE luckperms_user_permissions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uuid VARCHAR(36) NOT NULL,
        permission VARCHAR(200) NOT NULL,
        value BOOLEAN NOT NULL,
        server VARCHAR(36) NOT NULL DEFAULT 'global',
        world VARCHAR(64) NOT NULL DEFAULT 'global',
        expiry BIGINT NOT NULL DEFAULT 0,
        contexts VARCHAR(200) NOT NULL DEFAULT '{}'
    )
    """,
)


def authme_hash(password: str, salt: str = "a1b2c3d4e5f60718") -> str:
    stage1 = hashlib.sha256(password.encode("utf-8")).hexdigest()
    return f"$SHA${salt}${hashlib.sha256((stage1 + salt).encode('utf-8')).hexdigest()}"


def create_authme_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        conn.execute(text(AUTHME_DDL))


def create_luckperms_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        for ddl in LUCKPERMS_DDL:
            conn.execute(text(ddl))


def add_authme_account(engine: Engine, username: str, password: str = "mcpass", realname: str | None = None,
                       **fields) -> None:
    row = {
        "username": username,
        "realname": realname or username,
        "password": authme_hash(password),
        "ip": fields.get("ip", "10.0.0.5"),
        "lastlogin": fields.get("lastlogin", 1700000000000),
        "regdate": fields.get("regdate", 1600000000000),
        "regip": fields.get("regip", "10.0.0.1"),
        "email": fields.get("email"),
    }
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO authme (username, realname, password, ip, lastlogin, regdate, regip, email) "
                "VALUES (:username, :realname, :password, :ip, :lastlogin, :regdate, :regip, :email)"
            ),
            row,
        )


def add_luckperms_player(engine: Engine, uuid: str, username: str, primary_group: str = "default",
                         groups: tuple[str, ...] = ("default",)) -> None:
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO luckperms_players (uuid, username, primary_group) VALUES (:uuid, :username, :pg)"),
            {"uuid": uuid, "username": username.lower(), "pg": primary_group},
        )
        for group in groups:
            conn.execute(
                text("INSERT INTO luckperms_user_permissions (uuid, permission, value) VALUES (:uuid, :perm, 1)"),
                {"uuid": uuid, "perm": f"group.{group}"},
            )
        # non-group node, must be ignored
        conn.execute(
            text("INSERT INTO luckperms_user_permissions (uuid, permission, value) VALUES (:uuid, 'essentials.fly', 1)"),
            {"uuid": uuid},
        )


def create_user(db: Session, email: str, password: str = DEFAULT_PASSWORD, role_keys: tuple[str, ...] = ()) -> User:
    user = User(email=email.lower(), display_name=email.split("@")[0], hashed_password=hash_password(password))
    if role_keys:
        user.roles = db.query(Role).filter(Role.key.in_(role_keys)).all()
    db.add(user)
    db.flush()
    db.add(UserProfile(user_id=user.id))
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_jwt_token({'sub': str(user.id)})}"}
