# app/services/binding_ledger.py
from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core import config
from app.core.database import unit_of_work
from app.core.errors import ConflictError, ExternalUnavailable, NotFoundError, ValidationError
from app.models.authme_binding import AuthmeBindingAction, AuthmeBindingHistory, UserAuthmeBinding
from app.services.account_directory import AccountDirectory, normalize_optional, page_params, pagination
from app.services.authme_bridge import AuthmeAccount, AuthmeBridge
from app.services.luckperms_bridge import LuckpermsBridge, LuckpermsPlayer

logger = logging.getLogger("portal.binding_ledger")
logger.setLevel(logging.INFO)

BINDING_STATUSES = ("ACTIVE", "SUSPENDED", "PENDING")

# history reasons
REASON_SET_PRIMARY = "set-primary"
REASON_REPLACED_PRIMARY = "replaced-primary"
REASON_PRIMARY_CLEARED = "primary-cleared"
REASON_AUTO_REASSIGN = "auto-reassign-primary-unbind"
REASON_MANUAL_UNBIND = "manual-unbind"
REASON_TRANSFER = "binding-transfer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def binding_view(binding: UserAuthmeBinding, primary_binding_id: Optional[int]) -> dict:
    """Stored binding fields in the public camelCase shape."""
    return {
        "id": binding.id,
        "userId": binding.user_id,
        "authmeUsername": binding.authme_username,
        "authmeRealname": binding.authme_realname,
        "authmeUuid": binding.authme_uuid,
        "status": binding.status,
        "notes": binding.notes,
        "metadata": binding.binding_metadata,
        "boundAt": binding.bound_at,
        "isPrimary": primary_binding_id is not None and binding.id == primary_binding_id,
    }


class BindingLedger:
    """
    Owns AuthMe bindings, the per-user primary pointer and the binding history.

    Every mutation runs in one unit_of_work: the binding row, the primary pointer,
    nickname references, history entries and lifecycle events commit together or
    not at all. History rows are appended only, never edited.
    """

    def __init__(
        self,
        directory: AccountDirectory,
        authme: AuthmeBridge,
        luckperms: LuckpermsBridge,
        max_workers: Optional[int] = None,
    ):
        self.directory = directory
        self.db = directory.db
        self.authme = authme
        self.luckperms = luckperms
        self.max_workers = max_workers or config.SNAPSHOT_MAX_WORKERS

    # ---------- reads ----------

    def list_bindings(self, user_id: int) -> list[UserAuthmeBinding]:
        return self.directory.list_bindings(user_id)

    def find_binding_by_username(self, username: str) -> Optional[UserAuthmeBinding]:
        key = (username or "").strip().lower()
        if not key:
            return None
        rows = self.directory.find_bindings_by_username(key)
        return rows[0] if rows else None

    def binding_out(self, binding: UserAuthmeBinding) -> dict:
        return binding_view(binding, self.directory.primary_binding_id(binding.user_id))

    # ---------- history ----------

    def record_history_entry(
        self,
        binding: Optional[UserAuthmeBinding],
        action: AuthmeBindingAction,
        operator_id: Optional[int] = None,
        reason: Optional[str] = None,
        payload: Optional[dict] = None,
        *,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        realname: Optional[str] = None,
        uuid: Optional[str] = None,
    ) -> AuthmeBindingHistory:
        """
        Append a history row. Snapshot fields come from the binding when given,
        otherwise from the explicit keyword values. Caller owns the transaction.
        """
        if binding is not None:
            username = binding.authme_username
            realname = binding.authme_realname
            uuid = binding.authme_uuid
            user_id = binding.user_id if user_id is None else user_id
        if not username:
            raise ValidationError("AuthMe username is required for a history entry", code="AUTHME_USERNAME_REQUIRED")
        entry = AuthmeBindingHistory(
            binding_id=binding.id if binding is not None else None,
            user_id=user_id,
            operator_id=operator_id,
            authme_username=username,
            authme_username_lower=username.lower(),
            authme_realname=realname,
            authme_uuid=uuid,
            action=action,
            reason=reason,
            payload=payload,
            created_at=_utcnow(),
        )
        self.db.add(entry)
        return entry

    def _history_page(self, q, page: Optional[int], page_size: Optional[int]) -> dict:
        page, page_size = page_params(page, page_size)
        total = q.count()
        rows = (
            q.order_by(AuthmeBindingHistory.created_at.desc(), AuthmeBindingHistory.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {"items": [self._history_out(r) for r in rows], "pagination": pagination(total, page, page_size)}

    def _history_out(self, entry: AuthmeBindingHistory) -> dict:
        operator = entry.operator
        binding = entry.binding
        return {
            "id": entry.id,
            "bindingId": entry.binding_id,
            "operatorId": entry.operator_id,
            "action": entry.action.value if isinstance(entry.action, AuthmeBindingAction) else entry.action,
            "reason": entry.reason,
            "payload": entry.payload,
            "createdAt": entry.created_at,
            "userId": entry.user_id,
            "authmeUsername": entry.authme_username,
            "authmeRealname": entry.authme_realname,
            "authmeUuid": entry.authme_uuid,
            "operator": (
                {"id": operator.id, "email": operator.email, "displayName": operator.display_name}
                if operator else None
            ),
            "binding": (
                {
                    "id": binding.id,
                    "authmeUsername": binding.authme_username,
                    "authmeRealname": binding.authme_realname,
                    "authmeUuid": binding.authme_uuid,
                    "status": binding.status,
                }
                if binding else None
            ),
        }

    def list_history_by_user(self, user_id: int, page: Optional[int] = None, page_size: Optional[int] = None) -> dict:
        self.directory.ensure_user(user_id)
        q = self.db.query(AuthmeBindingHistory).filter(AuthmeBindingHistory.user_id == user_id)
        return self._history_page(q, page, page_size)

    def list_history_by_username(self, username: str, page: Optional[int] = None, page_size: Optional[int] = None) -> dict:
        key = (username or "").strip().lower()
        if not key:
            raise ValidationError("AuthMe username is required", code="AUTHME_USERNAME_REQUIRED")
        q = self.db.query(AuthmeBindingHistory).filter(AuthmeBindingHistory.authme_username_lower == key)
        return self._history_page(q, page, page_size)

    def create_history_entry(
        self,
        username: str,
        operator_id: Optional[int],
        action: Optional[str] = None,
        reason: Optional[str] = None,
        payload: Optional[dict] = None,
        binding_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> dict:
        """Hand-written history row for an AuthMe username; marked manual in its payload."""
        username = (username or "").strip()
        if not username:
            raise ValidationError("AuthMe username is required", code="AUTHME_USERNAME_REQUIRED")
        try:
            resolved_action = AuthmeBindingAction(action or AuthmeBindingAction.MANUAL_ENTRY.value)
        except ValueError:
            raise ValidationError(f"Unknown history action: {action}", code="INVALID_HISTORY_ACTION")

        with unit_of_work(self.db):
            binding = None
            if binding_id is not None:
                binding = self.directory.find_binding(binding_id)
                if not binding:
                    raise NotFoundError("AuthMe binding not found", code="BINDING_NOT_FOUND")
                if binding.authme_username_lower != username.lower():
                    raise ValidationError("Binding does not match the AuthMe username", code="BINDING_USERNAME_MISMATCH")
            elif user_id is not None:
                binding = self.directory.find_binding_for_user(user_id, username.lower())
            else:
                binding = self.find_binding_by_username(username)
            if user_id is not None:
                self.directory.ensure_user(user_id)
            entry = self.record_history_entry(
                binding,
                resolved_action,
                operator_id=operator_id,
                reason=normalize_optional(reason),
                payload={**(payload or {}), "manual": True},
                user_id=user_id,
                username=username,
            )
            self.db.flush()
            entry_id = entry.id
        return self._history_out(self.db.get(AuthmeBindingHistory, entry_id))

    # ---------- primary ----------

    def _promote(
        self,
        user_id: int,
        binding: UserAuthmeBinding,
        operator_id: Optional[int],
        reason: str = REASON_SET_PRIMARY,
        payload: Optional[dict] = None,
    ) -> None:
        """Point the user's primary at the binding; must run inside a unit_of_work."""
        profile = self.directory.get_or_create_profile(user_id, lock=True)
        previous_id = profile.primary_authme_binding_id
        profile.primary_authme_binding_id = binding.id
        self.db.flush()
        if previous_id is not None and previous_id != binding.id:
            previous = self.directory.find_binding(previous_id)
            if previous is not None:
                self.record_history_entry(
                    previous,
                    AuthmeBindingAction.PRIMARY_UNSET,
                    operator_id=operator_id,
                    reason=REASON_REPLACED_PRIMARY,
                    payload={"replacedBy": binding.id},
                )
        self.record_history_entry(
            binding,
            AuthmeBindingAction.PRIMARY_SET,
            operator_id=operator_id,
            reason=reason,
            payload=payload,
        )

    def _owned(self, user_id: int, binding_id: int) -> UserAuthmeBinding:
        binding = self.directory.find_binding(binding_id)
        if not binding or binding.user_id != user_id:
            raise NotFoundError("AuthMe binding not found for user", code="BINDING_NOT_FOUND")
        return binding

    def set_primary(self, user_id: int, binding_id: int, operator_id: Optional[int] = None) -> UserAuthmeBinding:
        with unit_of_work(self.db):
            self.directory.ensure_user(user_id)
            # lock first so concurrent writers for this user queue up
            self.directory.get_or_create_profile(user_id, lock=True)
            binding = self._owned(user_id, binding_id)
            self._promote(user_id, binding, operator_id)
        logger.info(f"Primary AuthMe binding for user {user_id} set to {binding_id}")
        return binding

    # ---------- bind ----------

    def _resolve_uuid(self, account: AuthmeAccount) -> Optional[str]:
        # best effort; a missing LuckPerms record never blocks a bind
        if not self.luckperms.is_enabled():
            return None
        try:
            player = self.luckperms.get_player_by_username(account.realname or account.username)
            if not player and account.realname and account.realname.lower() != account.username.lower():
                player = self.luckperms.get_player_by_username(account.username)
        except ExternalUnavailable as e:
            logger.warning(f"LuckPerms uuid lookup failed for {account.username}: {e.stage} {e.detail}")
            return None
        return player.uuid if player else None

    def bind_user(
        self,
        user_id: int,
        identifier: str,
        operator_id: Optional[int] = None,
        source_ip: Optional[str] = None,
        set_primary: bool = False,
    ) -> UserAuthmeBinding:
        """
        Attach the AuthMe account named by identifier (username or realname) to the user.
        Re-binding an account the user already holds refreshes it in place.
        """
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("AuthMe identifier is required", code="AUTHME_IDENTIFIER_REQUIRED")
        self.directory.ensure_user(user_id)
        try:
            account = self.authme.get_account(identifier)
        except ExternalUnavailable as e:
            logger.warning(f"AuthMe lookup failed for {identifier}: {e.stage} {e.detail}")
            account = None
        if not account:
            raise NotFoundError("AuthMe account not found", code="AUTHME_ACCOUNT_NOT_FOUND")
        return self.bind_account(user_id, account, operator_id, source_ip, set_primary)

    def bind_account(
        self,
        user_id: int,
        account: AuthmeAccount,
        operator_id: Optional[int] = None,
        source_ip: Optional[str] = None,
        set_primary: bool = False,
        source: str = "admin-bind",
    ) -> UserAuthmeBinding:
        """Bind an account that has already been resolved (and, for self-service, verified)."""
        uuid = self._resolve_uuid(account)
        username_lower = account.username.lower()

        with unit_of_work(self.db):
            self.directory.ensure_user(user_id)
            self.directory.get_or_create_profile(user_id, lock=True)
            self.directory.lock_username(username_lower)
            for other in self.directory.find_bindings_by_username(username_lower):
                if other.user_id != user_id:
                    raise ConflictError("AuthMe account is already bound to another user", code="BINDING_CONFLICT")

            binding = self.directory.find_binding_for_user(user_id, username_lower)
            refreshed = binding is not None
            if binding is None:
                binding = UserAuthmeBinding(
                    user_id=user_id,
                    authme_username=account.username,
                    authme_username_lower=username_lower,
                    bound_at=_utcnow(),
                )
                self.db.add(binding)
            binding.authme_realname = account.realname
            binding.authme_uuid = uuid or binding.authme_uuid
            binding.status = "ACTIVE"
            binding.bound_by_user_id = operator_id
            binding.bound_by_ip = source_ip
            self.db.flush()

            self.record_history_entry(
                binding,
                AuthmeBindingAction.BIND,
                operator_id=operator_id,
                payload={"refreshed": refreshed, "sourceIp": source_ip, "source": source},
            )
            self.directory.add_lifecycle_event(
                user_id,
                "ACCOUNT_BIND",
                source=source,
                metadata={"bindingId": binding.id, "authmeUsername": binding.authme_username},
                created_by_id=operator_id,
            )
            if set_primary:
                self._promote(user_id, binding, operator_id)
        logger.info(f"AuthMe account {account.username} bound to user {user_id} (refreshed={refreshed})")
        return binding

    def bind_player_to_user(
        self,
        username: str,
        user_id: int,
        operator_id: Optional[int] = None,
        source_ip: Optional[str] = None,
    ) -> UserAuthmeBinding:
        """Player-directory entry point: bind an AuthMe username to a chosen user."""
        return self.bind_user(user_id, username, operator_id=operator_id, source_ip=source_ip)

    # ---------- unbind ----------

    def _unbind_in_tx(
        self,
        user_id: int,
        binding: UserAuthmeBinding,
        operator_id: Optional[int],
        source: str,
        reassign: bool = True,
    ) -> None:
        was_primary = self.directory.clear_binding_references(user_id, binding.id)
        self.record_history_entry(
            binding,
            AuthmeBindingAction.UNBIND,
            operator_id=operator_id,
            reason=REASON_MANUAL_UNBIND,
            payload={"wasPrimary": was_primary, "source": source},
        )
        self.directory.add_lifecycle_event(
            user_id,
            "ACCOUNT_UNBIND",
            source=source,
            metadata={"bindingId": binding.id, "authmeUsername": binding.authme_username},
            created_by_id=operator_id,
        )
        self.db.delete(binding)
        self.db.flush()

        if was_primary and reassign:
            remaining = self.directory.list_bindings(user_id)
            if remaining:
                self._promote(
                    user_id,
                    remaining[0],
                    operator_id,
                    reason=REASON_AUTO_REASSIGN,
                    payload={"auto": True},
                )

    def unbind(
        self,
        user_id: int,
        binding_id: int,
        operator_id: Optional[int] = None,
        source: str = "admin-unbind",
    ) -> dict:
        with unit_of_work(self.db):
            self.directory.ensure_user(user_id)
            self.directory.get_or_create_profile(user_id, lock=True)
            binding = self._owned(user_id, binding_id)
            username = binding.authme_username
            self._unbind_in_tx(user_id, binding, operator_id, source)
        logger.info(f"AuthMe binding {binding_id} ({username}) removed from user {user_id}")
        return {"success": True}

    def unbind_by_username(
        self,
        user_id: int,
        username: Optional[str] = None,
        operator_id: Optional[int] = None,
        source: str = "self-unbind",
    ) -> dict:
        """Remove one binding by AuthMe username, or every binding when no username is given."""
        with unit_of_work(self.db):
            self.directory.ensure_user(user_id)
            self.directory.get_or_create_profile(user_id, lock=True)
            key = normalize_optional(username)
            if key:
                binding = self.directory.find_binding_for_user(user_id, key.lower())
                targets = [binding] if binding else []
            else:
                targets = self.directory.list_bindings(user_id)
            if not targets:
                raise NotFoundError("AuthMe account is not bound", code="AUTHME_NOT_BOUND")
            # removing everything leaves nothing to promote
            for binding in targets:
                self._unbind_in_tx(user_id, binding, operator_id, source, reassign=bool(key))
        logger.info(f"Removed {len(targets)} AuthMe binding(s) from user {user_id}")
        return {"success": True}

    # ---------- update / transfer ----------

    def update_binding(
        self,
        user_id: int,
        binding_id: int,
        changes: dict[str, Any],
        operator_id: Optional[int] = None,
    ) -> UserAuthmeBinding:
        """
        Apply an admin patch. Recognised keys: authmeRealname, status, notes,
        metadata, targetUserId, primary. Only keys present are applied.
        """
        with unit_of_work(self.db):
            self.directory.ensure_user(user_id)
            self.directory.get_or_create_profile(user_id, lock=True)
            binding = self._owned(user_id, binding_id)
            recorded = False
            applied: dict[str, Any] = {}

            if "authmeRealname" in changes:
                value = normalize_optional(changes["authmeRealname"])
                if value != binding.authme_realname:
                    applied["authmeRealname"] = {"from": binding.authme_realname, "to": value}
                    binding.authme_realname = value
            if "status" in changes and changes["status"] is not None:
                value = str(changes["status"]).strip().upper()
                if value not in BINDING_STATUSES:
                    raise ValidationError(f"Unknown binding status: {changes['status']}", code="INVALID_BINDING_STATUS")
                if value != binding.status:
                    applied["status"] = {"from": binding.status, "to": value}
                    binding.status = value
            if "notes" in changes:
                value = normalize_optional(changes["notes"])
                if value != binding.notes:
                    applied["notes"] = {"from": binding.notes, "to": value}
                    binding.notes = value
            if "metadata" in changes:
                value = changes["metadata"]
                if value != binding.binding_metadata:
                    applied["metadata"] = {"from": binding.binding_metadata, "to": value}
                    binding.binding_metadata = value

            owner_id = user_id
            target_id = changes.get("targetUserId")
            if target_id is not None and target_id != user_id:
                self.directory.ensure_user(target_id)
                self.directory.get_or_create_profile(target_id, lock=True)
                if self.directory.find_binding_for_user(target_id, binding.authme_username_lower):
                    raise ConflictError("Target user already holds this AuthMe account", code="BINDING_CONFLICT")
                was_primary = self.directory.clear_binding_references(user_id, binding.id)
                if was_primary:
                    self.record_history_entry(
                        binding,
                        AuthmeBindingAction.PRIMARY_UNSET,
                        operator_id=operator_id,
                        reason="transfer",
                        payload={"toUserId": target_id},
                    )
                binding.user_id = target_id
                self.db.flush()
                self.record_history_entry(
                    binding,
                    AuthmeBindingAction.TRANSFER,
                    operator_id=operator_id,
                    reason=REASON_TRANSFER,
                    payload={"fromUserId": user_id, "toUserId": target_id},
                )
                recorded = True
                owner_id = target_id

            if applied:
                self.db.flush()
                self.record_history_entry(
                    binding, AuthmeBindingAction.UPDATE, operator_id=operator_id, payload={"changes": applied}
                )
                recorded = True

            primary = changes.get("primary")
            if primary is True:
                self._promote(owner_id, binding, operator_id)
                recorded = True
            elif primary is False:
                profile = self.directory.get_or_create_profile(owner_id, lock=True)
                if profile.primary_authme_binding_id == binding.id:
                    profile.primary_authme_binding_id = None
                    self.db.flush()
                    self.record_history_entry(
                        binding,
                        AuthmeBindingAction.PRIMARY_UNSET,
                        operator_id=operator_id,
                        reason=REASON_PRIMARY_CLEARED,
                    )
                    recorded = True

            if not recorded:
                self.record_history_entry(
                    binding, AuthmeBindingAction.UPDATE, operator_id=operator_id, payload={"changes": {}}
                )
        logger.info(f"AuthMe binding {binding_id} updated by {operator_id}: {sorted(changes)}")
        return binding

    # ---------- snapshots ----------

    def _lookup(self, view: dict) -> tuple[Optional[AuthmeAccount], Optional[LuckpermsPlayer], bool]:
        degraded = False
        account = None
        player = None
        if self.authme.is_enabled():
            try:
                account = self.authme.get_account(view["authmeUsername"])
            except Exception as e:
                logger.warning(f"AuthMe snapshot lookup failed for {view['authmeUsername']}: {e}")
                degraded = True
        if self.luckperms.is_enabled():
            try:
                if view["authmeUuid"]:
                    player = self.luckperms.get_player_by_uuid(view["authmeUuid"])
                else:
                    player = self.luckperms.get_player_by_username(view["authmeRealname"] or view["authmeUsername"])
            except Exception as e:
                logger.warning(f"LuckPerms snapshot lookup failed for {view['authmeUsername']}: {e}")
                degraded = True
        return account, player, degraded

    def _permissions_snapshot(self, view: dict, player: Optional[LuckpermsPlayer]) -> dict:
        if not player:
            return {
                "authmeUsername": view["authmeUsername"],
                "username": None,
                "uuid": view["authmeUuid"],
                "primaryGroup": None,
                "primaryGroupDisplayName": None,
                "groups": [],
                "synced": False,
            }
        return {
            "authmeUsername": view["authmeUsername"],
            "username": player.username,
            "uuid": player.uuid,
            "primaryGroup": player.primary_group,
            "primaryGroupDisplayName": self.luckperms.get_group_display_name(player.primary_group),
            "groups": [
                {
                    "group": g.group,
                    "displayName": self.luckperms.get_group_display_name(g.group),
                    "server": g.server,
                    "world": g.world,
                    "expiry": g.expiry,
                    "contexts": g.contexts,
                }
                for g in player.groups
            ],
            "synced": True,
        }

    def _write_back_uuids(self, found: dict[int, str]) -> None:
        if not found:
            return
        try:
            for binding_id, uuid in found.items():
                (
                    self.db.query(UserAuthmeBinding)
                    .filter(UserAuthmeBinding.id == binding_id, UserAuthmeBinding.authme_uuid.is_(None))
                    .update({UserAuthmeBinding.authme_uuid: uuid}, synchronize_session=False)
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store resolved AuthMe uuids {sorted(found)}: {e}", exc_info=True)

    def compose_snapshots(self, bindings: list[UserAuthmeBinding], primary_binding_id: Optional[int] = None) -> dict:
        """
        Merge stored bindings with live AuthMe and LuckPerms data.
        Lookups run concurrently per binding; a failed lookup leaves its fields null
        and marks the result degraded instead of failing the read.
        """
        views = [binding_view(b, primary_binding_id) for b in bindings]
        if not views:
            return {"bindings": [], "permissionsSnapshots": [], "sourceStatus": "ok"}

        workers = max(1, min(self.max_workers, len(views)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="snapshot") as pool:
            results = list(pool.map(self._lookup, views))

        snapshots = []
        permissions = []
        learned: dict[int, str] = {}
        degraded = False
        for view, (account, player, failed) in zip(views, results):
            degraded = degraded or failed
            uuid = view["authmeUuid"] or (player.uuid if player else None)
            if not view["authmeUuid"] and uuid:
                learned[view["id"]] = uuid
            snapshots.append({
                "id": view["id"],
                "authmeUsername": view["authmeUsername"],
                "authmeRealname": (account.realname if account else None) or view["authmeRealname"],
                "authmeUuid": uuid,
                "boundAt": view["boundAt"],
                "ip": account.ip if account else None,
                "regip": account.regip if account else None,
                "lastlogin": account.lastlogin if account else None,
                "regdate": account.regdate if account else None,
                "status": view["status"],
                "notes": view["notes"],
                "isPrimary": view["isPrimary"],
            })
            permissions.append(self._permissions_snapshot({**view, "authmeUuid": uuid}, player))

        self._write_back_uuids(learned)
        return {
            "bindings": snapshots,
            "permissionsSnapshots": permissions,
            "sourceStatus": "degraded" if degraded else "ok",
        }

    def user_snapshots(self, user_id: int) -> dict:
        return self.compose_snapshots(
            self.directory.list_bindings(user_id),
            self.directory.primary_binding_id(user_id),
        )
