from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models import (
    AuthmeBindingAction,
    AuthmeBindingHistory,
    UserAuthmeBinding,
    UserLifecycleEvent,
    UserMinecraftProfile,
    UserProfile,
)
from app.services.account_directory import AccountDirectory
from app.services.authme_bridge import AuthmeBridge
from app.services.binding_ledger import BindingLedger
from app.services.luckperms_bridge import LuckpermsBridge
from app.services.plugin_db import PluginDatabase
from tests.utils import add_authme_account, add_luckperms_player, create_user


def _history(db, **filters):
    q = db.query(AuthmeBindingHistory)
    for key, value in filters.items():
        q = q.filter(getattr(AuthmeBindingHistory, key) == value)
    return q.order_by(AuthmeBindingHistory.id.asc()).all()


def _primary_id(db, user_id):
    db.expire_all()
    profile = db.get(UserProfile, user_id)
    return profile.primary_authme_binding_id if profile else None


def _primary_count(db, user_id):
    primary = _primary_id(db, user_id)
    bindings = db.query(UserAuthmeBinding).filter(UserAuthmeBinding.user_id == user_id).all()
    return sum(1 for b in bindings if b.id == primary)


@pytest.fixture()
def user(db):
    return create_user(db, "owner@example.com")


@pytest.fixture()
def other(db):
    return create_user(db, "other@example.com")


@pytest.fixture()
def accounts(authme_engine):
    add_authme_account(authme_engine, "Steve", realname="SteveR")
    add_authme_account(authme_engine, "alex", realname="Alex")
    add_authme_account(authme_engine, "notch", realname="Notch")


# ---------- bind ----------

def test_bind_scenario_creates_binding_without_primary(db, ledger, user, accounts, luckperms_engine):
    add_luckperms_player(luckperms_engine, "abc", "SteveR")

    before = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=1)
    binding = ledger.bind_user(user.id, "Steve", operator_id=None, source_ip=None)

    assert binding.authme_username == "Steve"
    assert binding.authme_username_lower == "steve"
    assert binding.authme_realname == "SteveR"
    assert binding.authme_uuid == "abc"
    assert binding.bound_at.replace(tzinfo=None) >= before
    assert _primary_id(db, user.id) is None

    entries = _history(db, user_id=user.id)
    assert [e.action for e in entries] == [AuthmeBindingAction.BIND]
    events = db.query(UserLifecycleEvent).filter(UserLifecycleEvent.user_id == user.id).all()
    assert [e.event_type for e in events] == ["ACCOUNT_BIND"]


def test_bind_resolves_by_realname(ledger, user, accounts):
    binding = ledger.bind_user(user.id, "  SteveR  ")
    assert binding.authme_username == "Steve"


def test_bind_same_account_twice_refreshes_in_place(db, ledger, user, accounts, authme_engine):
    first = ledger.bind_user(user.id, "Steve")
    second = ledger.bind_user(user.id, "STEVE")

    assert first.id == second.id
    assert db.query(UserAuthmeBinding).filter(UserAuthmeBinding.user_id == user.id).count() == 1
    entries = _history(db, binding_id=first.id)
    assert [e.action for e in entries] == [AuthmeBindingAction.BIND, AuthmeBindingAction.BIND]
    assert entries[1].payload["refreshed"] is True


def test_bind_rejects_blank_identifier(ledger, user):
    with pytest.raises(ValidationError):
        ledger.bind_user(user.id, "   ")


def test_bind_unknown_account_is_not_found(ledger, user, accounts):
    with pytest.raises(NotFoundError):
        ledger.bind_user(user.id, "herobrine")


def test_bind_with_unreachable_bridge_is_not_found(db, user, luckperms, broken_engine):
    broken = AuthmeBridge(PluginDatabase("AUTHME_DB", "", engine=broken_engine))
    ledger = BindingLedger(AccountDirectory(db), broken, luckperms)
    with pytest.raises(NotFoundError):
        ledger.bind_user(user.id, "Steve")
    assert db.query(UserAuthmeBinding).count() == 0


def test_bind_unknown_user_is_not_found(ledger, accounts):
    with pytest.raises(NotFoundError):
        ledger.bind_user(9999, "Steve")


def test_bind_account_held_by_another_user_conflicts(db, ledger, user, other, accounts):
    ledger.bind_user(user.id, "Steve")
    with pytest.raises(ConflictError):
        ledger.bind_user(other.id, "steve")
    assert db.query(UserAuthmeBinding).filter(UserAuthmeBinding.user_id == other.id).count() == 0


def test_bind_takes_username_lock(ledger, user, accounts, monkeypatch):
    locked = []
    monkeypatch.setattr(ledger.directory, "lock_username", locked.append)
    ledger.bind_user(user.id, "STEVE")
    assert locked == ["steve"]


def test_username_lock_uses_postgres_advisory_lock(db):
    executed = []

    class _Postgres:
        dialect = type("Dialect", (), {"name": "postgresql"})()

    class _Session:
        def get_bind(self):
            return _Postgres()

        def execute(self, statement, params):
            executed.append((str(statement), params))

    AccountDirectory(_Session()).lock_username("steve")
    assert executed == [("SELECT pg_advisory_xact_lock(hashtext(:key))", {"key": "steve"})]

    # no-op on SQLite
    AccountDirectory(db).lock_username("steve")


def test_bind_with_set_primary(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve", set_primary=True)
    assert _primary_id(db, user.id) == binding.id
    actions = [e.action for e in _history(db, user_id=user.id)]
    assert actions == [AuthmeBindingAction.BIND, AuthmeBindingAction.PRIMARY_SET]


# ---------- primary ----------

def test_set_primary_records_unset_for_previous(db, ledger, user, accounts):
    a = ledger.bind_user(user.id, "Steve", set_primary=True)
    b = ledger.bind_user(user.id, "alex")

    ledger.set_primary(user.id, b.id, operator_id=user.id)

    assert _primary_id(db, user.id) == b.id
    tail = _history(db, user_id=user.id)[-2:]
    assert [(e.action, e.binding_id) for e in tail] == [
        (AuthmeBindingAction.PRIMARY_UNSET, a.id),
        (AuthmeBindingAction.PRIMARY_SET, b.id),
    ]
    assert all(e.operator_id == user.id for e in tail)


def test_set_primary_foreign_binding_is_not_found(ledger, user, other, accounts):
    theirs = ledger.bind_user(other.id, "alex")
    with pytest.raises(NotFoundError):
        ledger.set_primary(user.id, theirs.id)


def test_at_most_one_primary_over_a_sequence(db, ledger, user, accounts):
    a = ledger.bind_user(user.id, "Steve")
    b = ledger.bind_user(user.id, "alex", set_primary=True)
    c = ledger.bind_user(user.id, "notch")
    assert _primary_count(db, user.id) == 1
    ledger.set_primary(user.id, c.id)
    assert _primary_count(db, user.id) == 1
    ledger.unbind(user.id, c.id)
    assert _primary_count(db, user.id) == 1
    ledger.set_primary(user.id, a.id)
    ledger.unbind(user.id, b.id)
    assert _primary_count(db, user.id) == 1
    ledger.unbind(user.id, a.id)
    assert _primary_count(db, user.id) == 0


# ---------- unbind ----------

def test_unbind_primary_promotes_earliest_remaining(db, ledger, user, accounts):
    b1 = ledger.bind_user(user.id, "Steve", set_primary=True)
    b2 = ledger.bind_user(user.id, "alex")
    b3 = ledger.bind_user(user.id, "notch")
    # b3 bound before b2: the earliest boundAt wins, not the lowest id
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    db.get(UserAuthmeBinding, b1.id).bound_at = base
    db.get(UserAuthmeBinding, b2.id).bound_at = base + timedelta(days=2)
    db.get(UserAuthmeBinding, b3.id).bound_at = base + timedelta(days=1)
    db.commit()

    assert ledger.unbind(user.id, b1.id, operator_id=user.id) == {"success": True}

    assert _primary_id(db, user.id) == b3.id
    auto = [e for e in _history(db, user_id=user.id)
            if e.action == AuthmeBindingAction.PRIMARY_SET and (e.payload or {}).get("auto") is True]
    assert len(auto) == 1
    assert auto[0].binding_id == b3.id
    assert auto[0].reason == "auto-reassign-primary-unbind"


def test_unbind_only_binding_leaves_no_primary(db, ledger, user, accounts):
    only = ledger.bind_user(user.id, "Steve", set_primary=True)

    ledger.unbind(user.id, only.id)

    assert _primary_id(db, user.id) is None
    assert db.query(UserAuthmeBinding).count() == 0
    actions = [e.action for e in _history(db, user_id=user.id)]
    assert actions[-1] == AuthmeBindingAction.UNBIND
    assert sum(1 for a in actions if a == AuthmeBindingAction.PRIMARY_SET) == 1


def test_unbind_non_primary_does_not_reassign(db, ledger, user, accounts):
    a = ledger.bind_user(user.id, "Steve", set_primary=True)
    b = ledger.bind_user(user.id, "alex")
    before = len(_history(db, user_id=user.id))

    ledger.unbind(user.id, b.id)

    assert _primary_id(db, user.id) == a.id
    assert len(_history(db, user_id=user.id)) == before + 1


def test_unbind_clears_minecraft_profile_reference(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    profile = ledger.directory.add_minecraft_profile(user.id, {"authmeBindingId": binding.id})

    ledger.unbind(user.id, binding.id)

    db.expire_all()
    kept = db.get(UserMinecraftProfile, profile.id)
    assert kept is not None
    assert kept.authme_binding_id is None


def test_unbind_history_survives_binding_deletion(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    binding_id = binding.id
    ledger.unbind(user.id, binding_id)
    entries = _history(db, binding_id=binding_id)
    assert [e.action for e in entries] == [AuthmeBindingAction.BIND, AuthmeBindingAction.UNBIND]
    assert entries[-1].authme_username == "Steve"


def test_unbind_missing_binding_is_not_found(ledger, user):
    with pytest.raises(NotFoundError):
        ledger.unbind(user.id, 4242)


def test_unbind_by_username_and_all(db, ledger, user, accounts):
    ledger.bind_user(user.id, "Steve", set_primary=True)
    ledger.bind_user(user.id, "alex")
    ledger.bind_user(user.id, "notch")

    ledger.unbind_by_username(user.id, "ALEX")
    assert {b.authme_username for b in ledger.list_bindings(user.id)} == {"Steve", "notch"}

    ledger.unbind_by_username(user.id)
    assert ledger.list_bindings(user.id) == []
    assert _primary_id(db, user.id) is None

    with pytest.raises(NotFoundError):
        ledger.unbind_by_username(user.id)


def test_unbind_all_does_not_promote_removed_bindings(db, ledger, user, accounts):
    ledger.bind_user(user.id, "Steve", set_primary=True)
    ledger.bind_user(user.id, "alex")
    ledger.bind_user(user.id, "notch")

    ledger.unbind_by_username(user.id)

    entries = _history(db, user_id=user.id)
    assert [e.action for e in entries].count(AuthmeBindingAction.UNBIND) == 3
    auto = [e for e in entries if e.action == AuthmeBindingAction.PRIMARY_SET and (e.payload or {}).get("auto")]
    assert auto == []
    assert _primary_id(db, user.id) is None


def test_history_does_not_join_a_later_binding(db, ledger, user, accounts):
    first = ledger.bind_user(user.id, "notch")
    first_id = first.id
    ledger.unbind(user.id, first_id)
    second = ledger.bind_user(user.id, "alex")
    assert second.id != first_id

    unbind = ledger.list_history_by_username("notch")["items"][0]
    assert unbind["action"] == "UNBIND"
    assert unbind["bindingId"] == first_id
    assert unbind["binding"] is None


def test_history_ignores_binding_with_same_id_but_other_username(db, ledger, user, accounts):
    first = ledger.bind_user(user.id, "notch")
    first_id = first.id
    ledger.unbind(user.id, first_id)
    db.add(UserAuthmeBinding(id=first_id, user_id=user.id, authme_username="alex", authme_username_lower="alex"))
    db.commit()

    items = ledger.list_history_by_user(user.id)["items"]
    assert [i["action"] for i in items] == ["UNBIND", "BIND"]
    assert all(i["bindingId"] == first_id and i["binding"] is None for i in items)


# ---------- history is append-only ----------

def test_history_is_append_only_across_mutations(db, ledger, user, other, accounts):
    def snapshot():
        db.expire_all()
        return {(e.id, e.action, e.binding_id, e.reason) for e in db.query(AuthmeBindingHistory).all()}

    seen = snapshot()
    a = ledger.bind_user(user.id, "Steve")
    steps = [
        lambda: ledger.bind_user(user.id, "alex", set_primary=True),
        lambda: ledger.set_primary(user.id, a.id),
        lambda: ledger.update_binding(user.id, a.id, {"notes": "main account"}),
        lambda: ledger.update_binding(user.id, a.id, {"targetUserId": other.id}),
        lambda: ledger.unbind_by_username(user.id, "alex"),
    ]
    for step in steps:
        step()
        now = snapshot()
        assert seen < now
        seen = now


# ---------- update / transfer ----------

def test_update_applies_only_present_fields(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    ledger.update_binding(user.id, binding.id, {"notes": "  trusted  ", "status": "suspended"})
    ledger.update_binding(user.id, binding.id, {"metadata": {"source": "import"}})

    db.expire_all()
    row = db.get(UserAuthmeBinding, binding.id)
    assert row.notes == "trusted"
    assert row.status == "SUSPENDED"
    assert row.binding_metadata == {"source": "import"}
    assert row.authme_realname == "SteveR"
    updates = [e for e in _history(db, binding_id=binding.id) if e.action == AuthmeBindingAction.UPDATE]
    assert set(updates[0].payload["changes"]) == {"notes", "status"}


def test_update_rejects_unknown_status(ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    with pytest.raises(ValidationError):
        ledger.update_binding(user.id, binding.id, {"status": "BANANA"})


def test_noop_update_still_records_history(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    before = len(_history(db, binding_id=binding.id))
    ledger.update_binding(user.id, binding.id, {})
    assert len(_history(db, binding_id=binding.id)) == before + 1


def test_transfer_clears_old_owner_pointers(db, ledger, user, other, accounts):
    binding = ledger.bind_user(user.id, "Steve", set_primary=True)
    profile = ledger.directory.add_minecraft_profile(user.id, {"authmeBindingId": binding.id})
    ledger.bind_user(other.id, "notch", set_primary=True)

    ledger.update_binding(user.id, binding.id, {"targetUserId": other.id}, operator_id=user.id)

    db.expire_all()
    assert db.get(UserAuthmeBinding, binding.id).user_id == other.id
    assert _primary_id(db, user.id) is None
    assert db.get(UserMinecraftProfile, profile.id).authme_binding_id is None
    # no auto-promotion on either side
    other_primary = _primary_id(db, other.id)
    assert other_primary != binding.id

    transfer = [e for e in _history(db, binding_id=binding.id) if e.action == AuthmeBindingAction.TRANSFER]
    assert len(transfer) == 1
    assert transfer[0].payload == {"fromUserId": user.id, "toUserId": other.id}


def test_transfer_then_primary_records_transfer_first(db, ledger, user, other, accounts):
    binding = ledger.bind_user(user.id, "Steve")

    ledger.update_binding(user.id, binding.id, {"targetUserId": other.id, "primary": True})

    assert _primary_id(db, other.id) == binding.id
    actions = [e.action for e in _history(db, binding_id=binding.id)]
    assert actions[-2:] == [AuthmeBindingAction.TRANSFER, AuthmeBindingAction.PRIMARY_SET]


def test_transfer_to_missing_user_is_not_found(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    with pytest.raises(NotFoundError):
        ledger.update_binding(user.id, binding.id, {"targetUserId": 777, "notes": "lost"})
    db.expire_all()
    # nothing from the aborted patch survives
    assert db.get(UserAuthmeBinding, binding.id).notes is None
    assert db.get(UserAuthmeBinding, binding.id).user_id == user.id


def test_primary_false_clears_pointer(db, ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve", set_primary=True)
    ledger.update_binding(user.id, binding.id, {"primary": False})
    assert _primary_id(db, user.id) is None
    last = _history(db, binding_id=binding.id)[-1]
    assert last.action == AuthmeBindingAction.PRIMARY_UNSET
    assert last.reason == "primary-cleared"


# ---------- snapshots ----------

def test_snapshots_merge_live_data_and_fill_uuid(db, ledger, user, accounts, luckperms_engine):
    binding = ledger.bind_user(user.id, "Steve", set_primary=True)
    assert binding.authme_uuid is None
    add_luckperms_player(luckperms_engine, "uuid-steve", "SteveR", primary_group="vip", groups=("vip", "default"))

    result = ledger.user_snapshots(user.id)

    assert result["sourceStatus"] == "ok"
    snap = result["bindings"][0]
    assert snap["isPrimary"] is True
    assert snap["ip"] == "10.0.0.5"
    assert snap["regdate"] == 1600000000000
    assert snap["authmeUuid"] == "uuid-steve"
    perms = result["permissionsSnapshots"][0]
    assert perms["primaryGroup"] == "vip"
    assert perms["primaryGroupDisplayName"] == "VIP Member"
    assert sorted(g["group"] for g in perms["groups"]) == ["default", "vip"]

    db.expire_all()
    assert db.get(UserAuthmeBinding, binding.id).authme_uuid == "uuid-steve"


def test_snapshots_degrade_when_authme_fails(db, user, luckperms, authme, accounts, broken_engine):
    ledger = BindingLedger(AccountDirectory(db), authme, luckperms)
    ledger.bind_user(user.id, "Steve")
    ledger.authme = AuthmeBridge(PluginDatabase("AUTHME_DB", "", engine=broken_engine))

    result = ledger.user_snapshots(user.id)

    assert result["sourceStatus"] == "degraded"
    snap = result["bindings"][0]
    assert snap["authmeUsername"] == "Steve"
    assert (snap["ip"], snap["regip"], snap["lastlogin"], snap["regdate"]) == (None, None, None, None)


def test_snapshots_degrade_when_luckperms_fails(db, ledger, user, accounts, broken_engine):
    ledger.bind_user(user.id, "Steve")
    ledger.luckperms = LuckpermsBridge(PluginDatabase("LUCKPERMS_DB", "", engine=broken_engine))

    result = ledger.user_snapshots(user.id)

    assert result["sourceStatus"] == "degraded"
    assert result["bindings"][0]["ip"] == "10.0.0.5"
    assert result["bindings"][0]["authmeUuid"] is None
    perms = result["permissionsSnapshots"][0]
    assert perms["synced"] is False
    assert perms["groups"] == []


def test_snapshots_survive_failed_uuid_write_back(db, ledger, user, accounts, luckperms_engine, monkeypatch):
    binding = ledger.bind_user(user.id, "Steve")
    add_luckperms_player(luckperms_engine, "uuid-steve", "SteveR", primary_group="vip", groups=("vip",))

    def _fail():
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(db, "commit", _fail)
    result = ledger.user_snapshots(user.id)
    monkeypatch.undo()

    assert result["sourceStatus"] == "ok"
    assert result["bindings"][0]["authmeUuid"] == "uuid-steve"
    db.expire_all()
    assert db.get(UserAuthmeBinding, binding.id).authme_uuid is None


def test_snapshots_look_up_stored_uuid(db, ledger, user, accounts, luckperms_engine):
    add_luckperms_player(luckperms_engine, "uuid-steve", "SteveR", primary_group="vip", groups=("vip",))
    binding = ledger.bind_user(user.id, "Steve")
    assert binding.authme_uuid == "uuid-steve"
    # the player renamed in game; only the uuid still matches
    with luckperms_engine.begin() as conn:
        conn.execute(text("UPDATE luckperms_players SET username = 'stevenew' WHERE uuid = 'uuid-steve'"))

    perms = ledger.user_snapshots(user.id)["permissionsSnapshots"][0]
    assert perms["synced"] is True
    assert perms["username"] == "stevenew"
    assert perms["uuid"] == "uuid-steve"
    assert [g["group"] for g in perms["groups"]] == ["vip"]


def test_snapshots_of_no_bindings(ledger, user):
    assert ledger.user_snapshots(user.id) == {"bindings": [], "permissionsSnapshots": [], "sourceStatus": "ok"}


# ---------- history listing / manual entries ----------

def test_history_paging_newest_first(ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    for note in ("a", "b", "c", "d"):
        ledger.update_binding(user.id, binding.id, {"notes": note})

    page = ledger.list_history_by_user(user.id, page=1, page_size=2)
    assert page["pagination"] == {"total": 5, "page": 1, "pageSize": 2, "pageCount": 3}
    assert page["items"][0]["payload"]["changes"]["notes"]["to"] == "d"

    last = ledger.list_history_by_user(user.id, page=3, page_size=2)
    assert [i["action"] for i in last["items"]] == ["BIND"]


def test_manual_history_entry_for_unbound_username(ledger, user):
    entry = ledger.create_history_entry("Herobrine", operator_id=user.id, reason="  banned on forum ")
    assert entry["action"] == "MANUAL_ENTRY"
    assert entry["payload"] == {"manual": True}
    assert entry["reason"] == "banned on forum"
    assert entry["bindingId"] is None

    listed = ledger.list_history_by_username("herobrine")
    assert listed["pagination"]["total"] == 1


def test_manual_history_entry_rejects_unknown_action(ledger):
    with pytest.raises(ValidationError):
        ledger.create_history_entry("Steve", operator_id=None, action="EXPLODE")


def test_manual_history_entry_links_current_binding(ledger, user, accounts):
    binding = ledger.bind_user(user.id, "Steve")
    entry = ledger.create_history_entry("STEVE", operator_id=None, reason="support ticket")
    assert entry["bindingId"] == binding.id
    assert entry["userId"] == user.id
    assert entry["binding"]["authmeUsername"] == "Steve"
