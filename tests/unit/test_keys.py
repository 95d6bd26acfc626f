import stat

from unpack_core.digest import compute_digest, normalize_private_key
from unpack_core.errors import ExecutionFailure, IntegrityViolation
from unpack_core.models import Credential, FieldName

from tests.framework import FakeKeyTool, FakeSecretStore, private_key, read_file, write_file
from unpack_sync.actions import Action, ActionKind
from unpack_sync.keys import KeyMaterializer, key_path, public_key_path, read_key_file


def _cred(title="db", vault="Personal", key=None):
    return Credential(
        vault=vault,
        title=title,
        display_name=title.split("/")[0],
        host="h",
        private_key=(key or private_key(title)).encode(),
    )


def _mode(p):
    return stat.S_IMODE(p.stat().st_mode)


def test_key_path_slugs_names(tmp_path):
    cred = Credential(vault="Team/Ops", title="x", display_name="a/b", host="h")
    assert key_path(tmp_path, cred) == tmp_path / "Team-Ops" / "a-b"


def test_write_sets_modes_and_normalizes_newlines(tmp_path):
    cred = _cred(key="-----BEGIN-----\r\nabc\r\n-----END-----")
    path = key_path(tmp_path, cred)
    outcome = KeyMaterializer(tmp_path, FakeKeyTool()).apply(
        Action(ActionKind.CREATE_KEY, str(path), identity=cred.identity, credential=cred)
    )
    assert outcome.status == "ok"
    assert path.read_bytes() == b"-----BEGIN-----\nabc\n-----END-----\n"
    assert outcome.content_hash == compute_digest(path.read_bytes())
    assert _mode(path) == 0o600
    assert _mode(public_key_path(path)) == 0o644
    assert _mode(path.parent) == 0o700
    assert read_key_file(path).has_public_key


def test_derivation_failure_keeps_private_key_and_drops_stale_pub(tmp_path):
    cred = _cred()
    path = key_path(tmp_path, cred)
    write_file(public_key_path(path), "ssh-ed25519 STALE\n")

    outcome = KeyMaterializer(tmp_path, FakeKeyTool(fail=True)).apply(
        Action(ActionKind.UPDATE_KEY, str(path), identity=cred.identity, credential=cred)
    )
    assert outcome.status == "partial"
    assert isinstance(outcome.issue, ExecutionFailure)
    assert outcome.content_hash == compute_digest(normalize_private_key(cred.private_key))
    assert path.exists()
    assert not public_key_path(path).exists()


def test_remove_refuses_modified_file(tmp_path):
    path = tmp_path / "Personal" / "db"
    write_file(path, "edited by hand\n")
    action = Action(ActionKind.REMOVE_KEY, str(path), expected_hash="0" * 64)
    outcome = KeyMaterializer(tmp_path, FakeKeyTool()).apply(action)
    assert outcome.status == "skipped"
    assert isinstance(outcome.issue, IntegrityViolation)
    assert path.exists()


def test_remove_deletes_pair_and_prunes_empty_dirs(tmp_path):
    path = tmp_path / "Personal" / "db"
    write_file(path, "key\n")
    write_file(public_key_path(path), "pub\n")
    digest = compute_digest(normalize_private_key(b"key\n"))
    outcome = KeyMaterializer(tmp_path, FakeKeyTool()).apply(
        Action(ActionKind.REMOVE_KEY, str(path), expected_hash=digest)
    )
    assert outcome.status == "ok"
    assert not path.exists() and not public_key_path(path).exists()
    assert not (tmp_path / "Personal").exists()
    assert tmp_path.exists()

    again = KeyMaterializer(tmp_path, FakeKeyTool()).apply(Action(ActionKind.REMOVE_KEY, str(path)))
    assert (again.status, again.detail) == ("ok", "already absent")


def test_sync_back_writes_public_key_field(tmp_path):
    store = FakeSecretStore()
    store.add_key("Personal", "db")
    cred = _cred()
    path = key_path(tmp_path, cred)
    write_file(public_key_path(path), "ssh-ed25519 AAA comment\n")

    outcome = KeyMaterializer(tmp_path, FakeKeyTool(), store).apply(
        Action(ActionKind.SYNC_PUBLIC_KEY_BACK, str(path), identity=cred.identity, credential=cred)
    )
    assert outcome.status == "ok"
    assert store.field_writes == [("Personal", "db", FieldName.PUBLIC_KEY, "ssh-ed25519 AAA comment")]
    assert read_file(public_key_path(path)) == "ssh-ed25519 AAA comment\n"


def test_sync_back_without_local_pub_is_skipped(tmp_path):
    cred = _cred()
    path = key_path(tmp_path, cred)
    outcome = KeyMaterializer(tmp_path, FakeKeyTool(), FakeSecretStore()).apply(
        Action(ActionKind.SYNC_PUBLIC_KEY_BACK, str(path), credential=cred)
    )
    assert outcome.status == "skipped"
