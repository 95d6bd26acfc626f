from __future__ import annotations

import shutil

from unpack_core.errors import IntegrityViolation, PlanningConflict
from unpack_core.models import MANAGED_MARKER, FieldName, SyncPublicKey

from tests.framework import Sandbox, read_file, write_file
from unpack_sync.actions import ActionKind
from unpack_sync.rcloneconf import RcloneDocument
from unpack_sync.sshconfig import END_MARKER


def _remotes(sb: Sandbox) -> RcloneDocument:
    return RcloneDocument.parse(sb.rclone_text())


def test_second_run_is_a_no_op(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "github", host="github.com", username="git")
        sb.store.add_key("Work", "db", host="10.0.0.5", aliases="db,db-prod")
        first = sb.run()
        assert not first.failed and not first.errors

        assert sb.key("Personal", "github").exists()
        assert sb.key("Work", "db").with_name("db.pub").exists()
        config = read_file(sb.ssh_config)
        assert "Host github\n    HostName github.com\n    User git\n" in config
        assert "Host db-prod\n" in config
        assert _remotes(sb).managed_names() == ["github", "db", "db-prod"]
        assert sorted(sb.manifest().entries) == ["Personal/github", "Work/db"]

        snapshot = (read_file(sb.ssh_config), sb.rclone_text(), sb.keytool.calls)
        second = sb.run()
        assert second.plan.changes == []
        assert (read_file(sb.ssh_config), sb.rclone_text(), sb.keytool.calls) == snapshot


def test_machine_specific_titles(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "github/testhost", host="github.com")
        sb.store.add_key("Personal", "github/otherhost", host="github.com")
        sb.run()
        assert sb.key("Personal", "github").exists()
        assert list(sb.manifest().entries) == ["Personal/github/testhost"]


def test_filtered_runs_never_delete(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        sb.store.add_key("Personal", "b")
        sb.run()
        sb.store.remove("Personal", "b")

        sb.run(items=["a"], full=True)
        assert sb.key("Personal", "b").exists()
        assert "Host b\n" in read_file(sb.ssh_config)

        # Unfiltered: hosts and remotes go, the key waits for --full.
        sb.run()
        assert "Host b\n" not in read_file(sb.ssh_config)
        assert "b" not in _remotes(sb).names()
        assert sb.key("Personal", "b").exists()

        sb.run(full=True)
        assert not sb.key("Personal", "b").exists()
        assert "Personal/b" not in sb.manifest().entries


def test_alias_changes_round_trip(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Work", "web", host="web.example.com", aliases="x,y")
        sb.run()
        doc = _remotes(sb)
        assert doc.get("x").fields["type"] == "sftp"
        assert doc.get("y").fields["remote"] == "x:"

        sb.store.item("Work", "web").fields[FieldName.ALIASES] = "y,z"
        summary = sb.run()
        assert not summary.errors
        config = read_file(sb.ssh_config)
        assert "Host x\n" not in config and "Host y\n" in config and "Host z\n" in config
        doc = _remotes(sb)
        assert doc.names() == ["y", "z"]
        assert doc.get("y").fields["type"] == "sftp"
        assert doc.get("z").fields["remote"] == "y:"
        entry = sb.manifest().entries["Work/web"]
        assert (entry.remote_primary, entry.remote_aliases) == ("y", ["z"])
        assert sorted(entry.host_aliases) == ["y", "z"]

        assert sb.run().plan.changes == []


def test_content_outside_the_managed_block_survives(tmp_path):
    with Sandbox(tmp_path) as sb:
        mine = "# my hosts\nHost personal\n\tHostName p.example.com\n"
        write_file(sb.ssh_config, mine)
        user_remote = "[mine]\ntype = s3\nprovider = AWS\n"
        write_file(sb.rclone_conf, user_remote)
        sb.store.add_key("Personal", "github")

        sb.run()
        assert read_file(sb.ssh_config).startswith(mine)
        assert sb.rclone_text().startswith(user_remote)

        sb.run(purge=True)
        assert read_file(sb.ssh_config) == mine
        assert sb.rclone_text().rstrip("\n") == user_remote.rstrip("\n")


def test_colliding_aliases_are_reported_not_written(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "one", aliases="prod,one")
        sb.store.add_key("Work", "two", aliases="two,prod")
        summary = sb.run()
        config = read_file(sb.ssh_config)
        assert "Host prod\n" not in config
        assert "Host one\n" in config and "Host two\n" in config
        conflicts = summary.issues_by_kind()["PlanningConflict"]
        assert any(i.target == "prod" for i in conflicts)
        assert all(isinstance(i, PlanningConflict) for i in conflicts)


def test_purge_removes_everything_we_created(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a", aliases="a,a2")
        sb.store.add_key("Work", "b")
        sb.run()
        summary = sb.run(purge=True)
        assert not summary.failed

        assert not sb.key("Personal", "a").exists()
        assert not (sb.output_dir / "Work").exists()
        assert not sb.ssh_config.exists() or "Host" not in read_file(sb.ssh_config)
        assert _remotes(sb).names() == []
        assert sb.manifest().entries == {}


def test_purge_works_offline(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        sb.run()
        sb.store.authenticated = False
        summary = sb.run(purge=True)
        assert {a.kind for a in summary.plan.actions} == {
            ActionKind.REMOVE_KEY,
            ActionKind.REMOVE_CONFIG_ENTRY,
            ActionKind.REMOVE_REMOTE,
        }


def test_purge_after_key_directory_was_deleted_by_hand(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        sb.run()
        shutil.rmtree(sb.output_dir / "Personal")
        summary = sb.run(purge=True)
        assert not summary.failed
        assert sb.manifest().entries == {}
        assert not sb.run(purge=True).failed


def test_orphans_are_removed_only_by_unfiltered_full_runs(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        sb.run()
        config = read_file(sb.ssh_config).replace(
            END_MARKER, "Host stray\n    HostName s.example.com\n    IdentityFile /k/stray\n" + END_MARKER
        )
        write_file(sb.ssh_config, config)
        write_file(
            sb.rclone_conf,
            sb.rclone_text() + f"\n[stray]\ntype = sftp\nhost = s.example.com\ndescription = {MANAGED_MARKER}\n",
        )

        for opts in ({}, {"full": True, "items": ["a"]}):
            sb.run(**opts)
            assert "Host stray\n" in read_file(sb.ssh_config), opts
            assert _remotes(sb).get("stray") is not None, opts

        summary = sb.run(full=True)
        assert not summary.failed
        assert "Host stray\n" not in read_file(sb.ssh_config)
        assert "Host a\n" in read_file(sb.ssh_config)
        assert _remotes(sb).names() == ["a"]


def test_public_key_written_back_only_when_empty(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "empty")
        sb.store.add_key("Personal", "filled", public_key="ssh-ed25519 MINE")
        sb.run()
        assert [(v, t, f) for v, t, f, _ in sb.store.field_writes] == [
            ("Personal", "empty", FieldName.PUBLIC_KEY)
        ]
        pub = read_file(sb.key("Personal", "empty").with_name("empty.pub")).strip()
        assert sb.store.item("Personal", "empty").fields[FieldName.PUBLIC_KEY] == pub

        sb.run()
        assert len(sb.store.field_writes) == 1


def test_public_key_sync_always_and_never(tmp_path):
    with Sandbox(tmp_path, sync_public_key=SyncPublicKey.ALWAYS) as sb:
        sb.store.add_key("Personal", "filled", public_key="ssh-ed25519 STALE")
        sb.run()
        assert len(sb.store.field_writes) == 1
        sb.run()
        assert len(sb.store.field_writes) == 1

    with Sandbox(tmp_path / "never", sync_public_key=SyncPublicKey.NEVER) as sb:
        sb.store.add_key("Personal", "empty")
        sb.run()
        assert sb.store.field_writes == []


def test_failed_vault_keeps_its_artifacts(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        sb.store.add_key("Shared", "s")
        sb.run()

        sb.store.failing_vaults.add("Shared")
        summary = sb.run(full=True)
        assert [i.target for i in summary.errors] == ["vault:Shared"]
        assert sb.key("Shared", "s").exists()
        assert "Host s\n" in read_file(sb.ssh_config)
        assert "s" in _remotes(sb).names()


def test_hand_edited_key_is_never_overwritten_or_deleted(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        sb.run()
        key = sb.key("Personal", "a")
        write_file(key, "edited by hand\n")

        summary = sb.run(full=True)
        assert read_file(key) == "edited by hand\n"
        assert any(isinstance(i, IntegrityViolation) for i in summary.issues)

        sb.store.remove("Personal", "a")
        summary = sb.run(full=True)
        assert key.exists()
        assert any(isinstance(i, IntegrityViolation) for i in summary.issues)


def test_unowned_file_at_key_path_blocks_the_item(tmp_path):
    with Sandbox(tmp_path) as sb:
        write_file(sb.key("Personal", "a"), "someone else's key\n")
        sb.store.add_key("Personal", "a")
        summary = sb.run()
        assert read_file(sb.key("Personal", "a")) == "someone else's key\n"
        assert "Personal/a" not in sb.manifest().entries or not sb.manifest().entries["Personal/a"].key_path
        assert summary.issues_by_kind()["IntegrityViolation"]
        assert not sb.ssh_config.exists() or "Host a\n" not in read_file(sb.ssh_config)
        assert _remotes(sb).get("a") is None


def test_invalid_items_are_reported_and_others_proceed(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "nohost", host=None)
        sb.store.add_key("Personal", "ok")
        summary = sb.run()
        assert [i.target for i in summary.issues_by_kind()["ValidationError"]] == ["Personal/nohost"]
        assert sb.key("Personal", "ok").exists()


def test_public_key_failure_is_partial(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.keytool.fail = True
        sb.store.add_key("Personal", "a")
        summary = sb.run()
        assert [o.status for o in summary.failed] == ["partial"]
        assert sb.key("Personal", "a").exists()
        assert not sb.manifest().entries["Personal/a"].has_public_key

        # The missing .pub is retried on the next run.
        sb.keytool.fail = False
        summary = sb.run()
        assert sb.key("Personal", "a").with_name("a.pub").exists()


def test_rclone_only_run_writes_keys_but_no_host_entries(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        summary = sb.run(do_ssh=False)
        assert not summary.failed
        assert sb.key("Personal", "a").exists()
        assert not sb.ssh_config.exists()
        assert _remotes(sb).get("a").fields["key_file"] == str(sb.key("Personal", "a"))


def test_dry_run_writes_nothing(tmp_path):
    with Sandbox(tmp_path) as sb:
        sb.store.add_key("Personal", "a")
        summary = sb.run(dry_run=True)
        assert ActionKind.CREATE_KEY in {a.kind for a in summary.plan.actions}
        assert summary.outcomes == []
        assert not sb.output_dir.exists()
        assert not sb.rclone_conf.exists()
