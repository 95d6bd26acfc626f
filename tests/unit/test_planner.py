from pathlib import Path

import pytest
from unpack_core.digest import compute_digest, normalize_private_key
from unpack_core.errors import IntegrityViolation, PlanningConflict
from unpack_core.models import ConfigEntry, Credential, Manifest, ManifestEntry, RemoteSpec, SyncPublicKey

from tests.framework import private_key, write_file
from unpack_sync.actions import Action, ActionKind, Plan, PlanError
from unpack_sync.planner import ChangePlanner, Scope, plan_purge, remote_specs
from unpack_sync.rcloneconf import RcloneDocument
from unpack_sync.sshconfig import SshConfigFile
from unpack_sync.state import ManagedState


def _cred(title, vault="V", aliases=(), **kw) -> Credential:
    return Credential(
        vault=vault,
        title=title,
        display_name=title,
        host=kw.pop("host", f"{title}.example.com"),
        private_key=private_key(f"{vault}/{title}").encode(),
        aliases=tuple(aliases),
        **kw,
    )


def _state(tmp_path: Path, manifest: Manifest | None = None, remotes: str = "") -> ManagedState:
    return ManagedState(
        output_dir=tmp_path / "out",
        manifest=manifest or Manifest(),
        ssh_config_path=tmp_path / "out" / "config",
        ssh_config=SshConfigFile(),
        remotes=RcloneDocument.parse(remotes),
    )


def _plan(state, creds, scope=None, **kw) -> Plan:
    scope = scope or Scope(present={c.identity for c in creds})
    kw.setdefault("sync_public_key", SyncPublicKey.NEVER)
    return ChangePlanner(state, scope, **kw).plan(creds)


def _targets(plan, kind):
    return [a.target for a in plan.actions if a.kind is kind]


def test_new_credential_plans_key_hosts_and_remotes_in_order(tmp_path):
    plan = _plan(_state(tmp_path), [_cred("db", aliases=["a", "b"])], sync_public_key=SyncPublicKey.IF_EMPTY)
    assert [a.kind for a in plan.actions] == [
        ActionKind.CREATE_KEY,
        ActionKind.SYNC_PUBLIC_KEY_BACK,
        ActionKind.UPSERT_CONFIG_ENTRY,
        ActionKind.UPSERT_CONFIG_ENTRY,
        ActionKind.UPSERT_REMOTE,
        ActionKind.UPSERT_REMOTE,
    ]
    remotes = [a.remote for a in plan.actions if a.kind is ActionKind.UPSERT_REMOTE]
    assert (remotes[0].name, remotes[0].kind) == ("a", "primary")
    assert (remotes[1].name, remotes[1].kind, remotes[1].target) == ("b", "alias", "a")
    assert plan.issues == []


def test_host_alias_collision_excludes_both_entries(tmp_path):
    creds = [_cred("one", aliases=["prod"]), _cred("two", vault="W", aliases=["prod", "two-x"])]
    plan = _plan(_state(tmp_path), creds)

    assert "prod" not in _targets(plan, ActionKind.UPSERT_CONFIG_ENTRY)
    assert "prod" not in _targets(plan, ActionKind.UPSERT_REMOTE)
    assert _targets(plan, ActionKind.UPSERT_CONFIG_ENTRY) == ["two-x"]
    conflicts = [i for i in plan.issues if isinstance(i, PlanningConflict)]
    assert {i.target for i in conflicts} == {"prod"}
    # Both primaries were "prod", so neither credential gets remotes.
    assert _targets(plan, ActionKind.UPSERT_REMOTE) == []


def test_filtered_run_never_removes_out_of_scope_items(tmp_path):
    manifest = Manifest(
        entries={
            "V/other": ManifestEntry(
                vault="V",
                title="other",
                key_path=str(tmp_path / "out" / "V" / "other"),
                host_aliases=["other"],
                remote_primary="other",
            )
        }
    )
    db = _cred("db")
    scope = Scope(item_patterns=["db"], present={db.identity})
    plan = _plan(_state(tmp_path, manifest), [db], scope=scope, full=True)
    assert not [a for a in plan.actions if a.kind.is_removal]


def test_vanished_item_removes_hosts_always_but_keys_only_when_full(tmp_path):
    key_file = tmp_path / "out" / "V" / "old"
    manifest = Manifest(
        entries={
            "V/old": ManifestEntry(
                vault="V", title="old", key_path=str(key_file), content_hash="x", host_aliases=["old"]
            )
        }
    )
    plan = _plan(_state(tmp_path, manifest), [], scope=Scope())
    assert _targets(plan, ActionKind.REMOVE_CONFIG_ENTRY) == ["old"]
    assert _targets(plan, ActionKind.REMOVE_KEY) == []

    plan = _plan(_state(tmp_path, manifest), [], scope=Scope(), full=True)
    removal = next(a for a in plan.actions if a.kind is ActionKind.REMOVE_KEY)
    assert removal.target == str(key_file)
    assert removal.expected_hash == "x"


def test_failed_vault_protects_its_items(tmp_path):
    manifest = Manifest(entries={"Broken/a": ManifestEntry(vault="Broken", title="a", host_aliases=["a"])})
    plan = _plan(_state(tmp_path, manifest), [], scope=Scope(failed_vaults={"Broken"}), full=True)
    assert plan.actions == []


def test_alias_moving_to_new_item_is_a_single_upsert(tmp_path):
    manifest = Manifest(
        entries={"V/old": ManifestEntry(vault="V", title="old", host_aliases=["prod"], remote_primary="prod")}
    )
    new = _cred("new", aliases=["prod"])
    plan = _plan(_state(tmp_path, manifest, remotes=""), [new], scope=Scope(present={new.identity}))
    assert _targets(plan, ActionKind.UPSERT_CONFIG_ENTRY) == ["prod"]
    assert _targets(plan, ActionKind.REMOVE_CONFIG_ENTRY) == []
    assert _targets(plan, ActionKind.REMOVE_REMOTE) == []
    assert plan.issues == []


def test_alias_held_by_out_of_scope_item_is_a_conflict(tmp_path):
    manifest = Manifest(entries={"W/keep": ManifestEntry(vault="W", title="keep", host_aliases=["prod"])})
    new = _cred("new", aliases=["prod"])
    scope = Scope(vault_patterns=["V"], present={new.identity})
    plan = _plan(_state(tmp_path, manifest), [new], scope=scope)
    assert "prod" not in _targets(plan, ActionKind.UPSERT_CONFIG_ENTRY)
    assert any(isinstance(i, PlanningConflict) and i.target == "prod" for i in plan.issues)


def test_unmanaged_remote_section_is_never_touched(tmp_path):
    conf = "[db]\ntype = sftp\nhost = mine\n"
    plan = _plan(_state(tmp_path, remotes=conf), [_cred("db")])
    assert _targets(plan, ActionKind.UPSERT_REMOTE) == []
    assert any(isinstance(i, PlanningConflict) and i.target == "db" for i in plan.issues)


def test_jump_host_builds_ssh_command():
    cred = _cred("db", username="root", jump_host="bastion")
    primary = remote_specs(cred, Path("/k/db"))[0]
    assert primary.ssh == "ssh -i /k/db -J bastion root@db.example.com"
    assert primary.key_file == "/k/db"


def test_teleport_remote_has_no_key_file():
    cred = Credential(
        vault="TP",
        title="node1",
        display_name="node1",
        host="node1",
        kind="teleport",
        custom_ssh_command="tsh ssh --proxy=p alice@node1",
        server_command="/usr/lib/openssh/sftp-server",
    )
    (primary,) = remote_specs(cred, None)
    assert primary.key_file is None
    assert primary.fields()["server_command"] == "/usr/lib/openssh/sftp-server"
    assert primary.fields()["ask_password"] == "true"


def test_unmanaged_key_file_is_left_alone(tmp_path):
    cred = _cred("db")
    write_file(tmp_path / "out" / "V" / "db", "somebody else's key\n")
    plan = _plan(_state(tmp_path), [cred])
    skip = next(a for a in plan.actions if a.kind is ActionKind.SKIP_KEY)
    assert skip.reason == "unmanaged file"
    assert any(isinstance(i, IntegrityViolation) for i in plan.issues)
    assert _targets(plan, ActionKind.UPSERT_CONFIG_ENTRY) == []
    assert _targets(plan, ActionKind.UPSERT_REMOTE) == []


def test_identical_unmanaged_key_is_adopted(tmp_path):
    cred = _cred("db")
    path = tmp_path / "out" / "V" / "db"
    write_file(path, cred.private_key.decode())
    write_file(path.with_name("db.pub"), "ssh-ed25519 AAAA\n")
    plan = _plan(_state(tmp_path), [cred])
    assert [a.reason for a in plan.actions if a.kind is ActionKind.SKIP_KEY] == ["adopted"]


def test_sync_public_key_modes(tmp_path):
    stored = _cred("db", public_key="ssh-ed25519 OLD")
    empty = _cred("web")
    for mode, expected in (
        (SyncPublicKey.NEVER, []),
        (SyncPublicKey.IF_EMPTY, ["V/web"]),
        (SyncPublicKey.ALWAYS, ["V/db", "V/web"]),
    ):
        plan = _plan(_state(tmp_path), [stored, empty], sync_public_key=mode)
        synced = [a.identity for a in plan.actions if a.kind is ActionKind.SYNC_PUBLIC_KEY_BACK]
        assert sorted(synced) == expected, mode


def test_plan_rejects_remove_and_write_of_same_target():
    plan = Plan(
        actions=[
            Action(ActionKind.REMOVE_REMOTE, "x"),
            Action(ActionKind.UPSERT_REMOTE, "x", remote=RemoteSpec("x", "primary")),
        ]
    )
    with pytest.raises(PlanError):
        plan.check_consistency()


def test_purge_plans_every_managed_artifact(tmp_path):
    key = tmp_path / "out" / "V" / "db"
    manifest = Manifest(
        entries={
            "V/db": ManifestEntry(
                vault="V",
                title="db",
                key_path=str(key),
                content_hash=compute_digest(normalize_private_key(b"k")),
                host_aliases=["db"],
                remote_primary="db",
            )
        }
    )
    conf = (
        "[mine]\ntype = s3\n\n"
        "[stray]\ntype = alias\nremote = db:\ndescription = managed by pass-ssh-unpack\n"
    )
    plan = plan_purge(_state(tmp_path, manifest, remotes=conf))
    assert _targets(plan, ActionKind.REMOVE_KEY) == [str(key)]
    assert _targets(plan, ActionKind.REMOVE_CONFIG_ENTRY) == ["db"]
    assert _targets(plan, ActionKind.REMOVE_REMOTE) == ["db", "stray"]


def test_rclone_only_plan_still_writes_keys(tmp_path):
    cred = _cred("db")
    plan = _plan(_state(tmp_path), [cred], do_ssh=False)
    assert _targets(plan, ActionKind.CREATE_KEY) == [str(tmp_path / "out" / "V" / "db")]
    assert _targets(plan, ActionKind.UPSERT_CONFIG_ENTRY) == []
    remote = next(a.remote for a in plan.actions if a.kind is ActionKind.UPSERT_REMOTE)
    assert remote.key_file == str(tmp_path / "out" / "V" / "db")


def test_orphans_are_removed_only_by_unfiltered_full_runs(tmp_path):
    conf = "[stray2]\ntype = sftp\nhost = old\ndescription = managed by pass-ssh-unpack\n"
    db = _cred("db")

    def plan_for(scope, full):
        state = _state(tmp_path, remotes=conf)
        state.ssh_config = SshConfigFile(entries={"stray": ConfigEntry("stray", "h", "/k")}, has_block=True)
        return _plan(state, [db], scope=scope, full=full)

    plan = plan_for(Scope(present={db.identity}), full=True)
    assert _targets(plan, ActionKind.REMOVE_CONFIG_ENTRY) == ["stray"]
    assert _targets(plan, ActionKind.REMOVE_REMOTE) == ["stray2"]
    assert {a.reason for a in plan.actions if a.kind.is_removal} == {"orphan"}

    for scope, full in (
        (Scope(item_patterns=["db"], present={db.identity}), True),
        (Scope(present={db.identity}), False),
    ):
        plan = plan_for(scope, full)
        assert not [a for a in plan.actions if a.kind.is_removal], (scope, full)
