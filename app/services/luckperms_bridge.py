# app/services/luckperms_bridge.py
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from app.core import config
from app.services.plugin_db import PluginDatabase

logger = logging.getLogger("portal.luckperms")
logger.setLevel(logging.INFO)

GROUP_PREFIX = "group."


@dataclass
class LuckpermsGroupMembership:
    group: str
    server: Optional[str] = None
    world: Optional[str] = None
    expiry: Optional[int] = None
    contexts: Optional[dict] = None


@dataclass
class LuckpermsPlayer:
    uuid: str
    username: str
    primary_group: Optional[str]
    groups: list[LuckpermsGroupMembership] = field(default_factory=list)


def _normalize_scope(value) -> Optional[str]:
    # LuckPerms stores "global" for an unscoped node
    if value is None:
        return None
    text = str(value).strip()
    return None if text == "" or text.lower() == "global" else text


def _parse_contexts(raw) -> Optional[dict]:
    if not raw:
        return None
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(value, dict) or not value:
        return None
    return {str(k): str(v) for k, v in value.items()}


class LuckpermsBridge:
    """Secondary permissions service: player UUIDs and group memberships from LuckPerms."""
    _instance: Optional["LuckpermsBridge"] = None

    def __init__(self, db: PluginDatabase, display_names: Optional[dict] = None):
        self.db = db
        self.display_names = {str(k).lower(): str(v) for k, v in (display_names or {}).items()}

    @classmethod
    def get_instance(cls) -> "LuckpermsBridge":
        if cls._instance is None:
            cls._instance = cls(
                PluginDatabase(
                    "LUCKPERMS_DB",
                    config.LUCKPERMS_DATABASE_URL,
                    enabled=config.LUCKPERMS_ENABLED,
                    connect_timeout=config.EXTERNAL_CONNECT_TIMEOUT_SECONDS,
                ),
                display_names=config.LUCKPERMS_GROUP_DISPLAY_NAMES,
            )
        return cls._instance

    def is_enabled(self) -> bool:
        return self.db.enabled

    def get_group_display_name(self, group: Optional[str]) -> Optional[str]:
        if not group:
            return None
        return self.display_names.get(group.lower())

    def get_player_by_username(self, username: str) -> Optional[LuckpermsPlayer]:
        row = self.db.fetch_one(
            "SELECT * FROM luckperms_players WHERE LOWER(username) = LOWER(:value) LIMIT 1",
            {"value": username},
            "getPlayerByUsername",
        )
        return self._hydrate(row) if row else None

    def get_player_by_uuid(self, uuid: str) -> Optional[LuckpermsPlayer]:
        row = self.db.fetch_one(
            "SELECT * FROM luckperms_players WHERE uuid = :value LIMIT 1",
            {"value": uuid},
            "getPlayerByUuid",
        )
        return self._hydrate(row) if row else None

    def _hydrate(self, row: dict) -> LuckpermsPlayer:
        uuid = str(row["uuid"])
        permissions = self.db.fetch_all(
            "SELECT permission, value, server, world, expiry, contexts "
            "FROM luckperms_user_permissions WHERE uuid = :uuid",
            {"uuid": uuid},
            "getGroupMemberships",
        )
        groups = []
        for perm in permissions:
            node = str(perm.get("permission") or "")
            if not node.startswith(GROUP_PREFIX):
                continue
            if perm.get("value") in (0, False, "0", "false"):
                continue
            expiry = perm.get("expiry")
            groups.append(LuckpermsGroupMembership(
                group=node[len(GROUP_PREFIX):],
                server=_normalize_scope(perm.get("server")),
                world=_normalize_scope(perm.get("world")),
                expiry=int(expiry) if expiry else None,
                contexts=_parse_contexts(perm.get("contexts")),
            ))
        return LuckpermsPlayer(
            uuid=uuid,
            username=row.get("username") or "",
            primary_group=row.get("primary_group"),
            groups=groups,
        )
