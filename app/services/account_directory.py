# app/services/account_directory.py
from __future__ import annotations
import math
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_, func, text
from sqlalchemy.orm import Session

from app.core.database import unit_of_work
from app.core.errors import NotFoundError, ValidationError
from app.models.user import User
from app.models.user_profile import UserProfile
from app.models.authme_binding import UserAuthmeBinding
from app.models.minecraft_profile import UserMinecraftProfile
from app.models.lifecycle_event import UserLifecycleEvent


def normalize_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def page_params(page: Optional[int], page_size: Optional[int], default_size: int = 20) -> tuple[int, int]:
    page = max(page or 1, 1)
    page_size = min(max(page_size or default_size, 1), 100)
    return page, page_size


def pagination(total: int, page: int, page_size: int) -> dict:
    return {
        "total": total,
        "page": page,
        "pageSize": page_size,
        "pageCount": max(1, math.ceil(total / page_size)),
    }


class AccountDirectory:
    """
    Users, profiles, nickname records and binding lookups.
    Owns no transaction itself except for the Minecraft profile operations;
    callers run mutations inside unit_of_work(directory.db).
    """

    def __init__(self, db: Session):
        self.db = db

    # ---- users ----

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def ensure_user(self, user_id: int) -> User:
        user = self.find_user_by_id(user_id)
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def list_users(self, keyword: Optional[str], page: Optional[int], page_size: Optional[int]) -> tuple[list[User], dict]:
        page, page_size = page_params(page, page_size)
        q = self.db.query(User)
        if keyword and keyword.strip():
            like = f"%{keyword.strip().lower()}%"
            q = q.filter(or_(func.lower(User.email).like(like), func.lower(User.display_name).like(like)))
        total = q.count()
        rows = (
            q.order_by(User.created_at.desc(), User.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return rows, pagination(total, page, page_size)

    # ---- profile ----

    def get_profile(self, user_id: int, lock: bool = False) -> Optional[UserProfile]:
        q = self.db.query(UserProfile).filter(UserProfile.user_id == user_id)
        if lock:
            # serializes primary-pointer writers for the same user
            q = q.with_for_update()
        return q.first()

    def get_or_create_profile(self, user_id: int, lock: bool = False) -> UserProfile:
        profile = self.get_profile(user_id, lock=lock)
        if not profile:
            profile = UserProfile(user_id=user_id)
            self.db.add(profile)
            self.db.flush()
        return profile

    def primary_binding_id(self, user_id: int) -> Optional[int]:
        profile = self.get_profile(user_id)
        return profile.primary_authme_binding_id if profile else None

    # ---- bindings ----

    def find_binding(self, binding_id: int) -> Optional[UserAuthmeBinding]:
        return self.db.query(UserAuthmeBinding).filter(UserAuthmeBinding.id == binding_id).first()

    def find_binding_for_user(self, user_id: int, username_lower: str) -> Optional[UserAuthmeBinding]:
        return (
            self.db.query(UserAuthmeBinding)
            .filter(UserAuthmeBinding.user_id == user_id, UserAuthmeBinding.authme_username_lower == username_lower)
            .first()
        )

    def find_bindings_by_username(self, username_lower: str) -> list[UserAuthmeBinding]:
        return (
            self.db.query(UserAuthmeBinding)
            .filter(UserAuthmeBinding.authme_username_lower == username_lower)
            .order_by(UserAuthmeBinding.bound_at.asc(), UserAuthmeBinding.id.asc())
            .all()
        )

    def lock_username(self, username_lower: str) -> None:
        """
        Serialize binders of the same AuthMe username across users until the transaction ends.
        Only PostgreSQL needs it; SQLite already allows a single writer.
        """
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": username_lower})

    def list_bindings(self, user_id: int) -> list[UserAuthmeBinding]:
        return (
            self.db.query(UserAuthmeBinding)
            .filter(UserAuthmeBinding.user_id == user_id)
            .order_by(UserAuthmeBinding.bound_at.asc(), UserAuthmeBinding.id.asc())
            .all()
        )

    def clear_binding_references(self, user_id: int, binding_id: int) -> bool:
        """
        Null every pointer the user holds to the binding.
        Returns True when the binding was the user's primary.
        """
        cleared = (
            self.db.query(UserProfile)
            .filter(UserProfile.user_id == user_id, UserProfile.primary_authme_binding_id == binding_id)
            .update({UserProfile.primary_authme_binding_id: None}, synchronize_session="fetch")
        )
        (
            self.db.query(UserMinecraftProfile)
            .filter(UserMinecraftProfile.user_id == user_id, UserMinecraftProfile.authme_binding_id == binding_id)
            .update({UserMinecraftProfile.authme_binding_id: None}, synchronize_session="fetch")
        )
        return cleared > 0

    def add_lifecycle_event(
        self,
        user_id: int,
        event_type: str,
        source: str,
        metadata: Optional[dict[str, Any]] = None,
        created_by_id: Optional[int] = None,
    ) -> UserLifecycleEvent:
        event = UserLifecycleEvent(
            user_id=user_id,
            event_type=event_type,
            occurred_at=datetime.now(timezone.utc),
            source=source,
            event_metadata=metadata or {},
            created_by_id=created_by_id,
        )
        self.db.add(event)
        return event

    # ---- minecraft profiles ----

    def _owned_binding(self, user_id: int, binding_id: Optional[int]) -> Optional[UserAuthmeBinding]:
        if binding_id is None:
            return None
        binding = self.find_binding(binding_id)
        if not binding:
            raise NotFoundError("AuthMe binding not found", code="BINDING_NOT_FOUND")
        if binding.user_id != user_id:
            raise ValidationError("AuthMe binding does not belong to this user", code="BINDING_OWNER_MISMATCH")
        return binding

    def _owned_minecraft_profile(self, user_id: int, profile_id: int) -> UserMinecraftProfile:
        target = self.db.query(UserMinecraftProfile).filter(UserMinecraftProfile.id == profile_id).first()
        if not target or target.user_id != user_id:
            raise NotFoundError("Minecraft profile not found for user", code="MINECRAFT_PROFILE_NOT_FOUND")
        return target

    def _mark_primary_minecraft_profile(self, user_id: int, profile_id: Optional[int]) -> None:
        (
            self.db.query(UserMinecraftProfile)
            .filter(UserMinecraftProfile.user_id == user_id)
            .update(
                {UserMinecraftProfile.is_primary: UserMinecraftProfile.id == profile_id}
                if profile_id is not None
                else {UserMinecraftProfile.is_primary: False},
                synchronize_session="fetch",
            )
        )
        profile = self.get_or_create_profile(user_id)
        profile.primary_minecraft_profile_id = profile_id

    def add_minecraft_profile(self, user_id: int, data: dict[str, Any]) -> UserMinecraftProfile:
        with unit_of_work(self.db):
            self.ensure_user(user_id)
            binding = self._owned_binding(user_id, data.get("authmeBindingId"))
            nickname = normalize_optional(data.get("nickname"))
            if not binding and not nickname:
                raise ValidationError("A nickname or an AuthMe binding is required", code="NICKNAME_REQUIRED")
            row = UserMinecraftProfile(
                user_id=user_id,
                authme_binding_id=binding.id if binding else None,
                authme_uuid=data.get("authmeUuid") or (binding.authme_uuid if binding else None),
                nickname=nickname or (binding.authme_realname if binding else None),
                is_primary=bool(data.get("isPrimary")),
                source=data.get("source") or "MANUAL",
                verified_at=data.get("verifiedAt"),
                verification_note=data.get("verificationNote"),
                profile_metadata=data.get("metadata"),
            )
            self.db.add(row)
            self.db.flush()
            if row.is_primary:
                self._mark_primary_minecraft_profile(user_id, row.id)
        self.db.refresh(row)
        return row

    def update_minecraft_profile(self, user_id: int, profile_id: int, data: dict[str, Any]) -> UserMinecraftProfile:
        with unit_of_work(self.db):
            self.ensure_user(user_id)
            target = self._owned_minecraft_profile(user_id, profile_id)
            binding = self._owned_binding(user_id, data.get("authmeBindingId"))
            nickname = normalize_optional(data.get("nickname")) if "nickname" in data else target.nickname
            if not binding and not target.authme_binding_id and not nickname:
                raise ValidationError("A nickname or an AuthMe binding is required", code="NICKNAME_REQUIRED")

            if binding:
                target.authme_binding_id = binding.id
            target.authme_uuid = data.get("authmeUuid") or (binding.authme_uuid if binding else None) or target.authme_uuid
            target.nickname = nickname
            if data.get("source"):
                target.source = data["source"]
            if "verifiedAt" in data:
                target.verified_at = data["verifiedAt"]
            if "verificationNote" in data:
                target.verification_note = data["verificationNote"]
            if "metadata" in data:
                target.profile_metadata = data["metadata"]
            self.db.flush()
            if data.get("isPrimary"):
                self._mark_primary_minecraft_profile(user_id, target.id)
        self.db.refresh(target)
        return target

    def remove_minecraft_profile(self, user_id: int, profile_id: int) -> None:
        with unit_of_work(self.db):
            self.ensure_user(user_id)
            target = self._owned_minecraft_profile(user_id, profile_id)
            was_primary = target.is_primary
            profile = self.get_profile(user_id)
            if profile and profile.primary_minecraft_profile_id == target.id:
                profile.primary_minecraft_profile_id = None
                was_primary = True
            self.db.delete(target)
            self.db.flush()
            if was_primary:
                nxt = (
                    self.db.query(UserMinecraftProfile)
                    .filter(UserMinecraftProfile.user_id == user_id)
                    .order_by(UserMinecraftProfile.created_at.asc(), UserMinecraftProfile.id.asc())
                    .first()
                )
                self._mark_primary_minecraft_profile(user_id, nxt.id if nxt else None)
