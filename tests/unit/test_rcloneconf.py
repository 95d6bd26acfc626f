from unpack_core.models import MANAGED_MARKER, RemoteSpec

from unpack_sync.rcloneconf import RcloneDocument, is_encrypted

USER_CONF = """\
; my remotes
[s3]
type = s3
provider = AWS
env_auth = true

[nas]
type = sftp
host = nas.local
"""


def test_unmanaged_sections_round_trip_exactly():
    doc = RcloneDocument.parse(USER_CONF)
    assert doc.names() == ["s3", "nas"]
    assert doc.managed_names() == []
    assert doc.render() == USER_CONF
    assert doc.get("s3").fields["provider"] == "AWS"


def test_upsert_appends_primary_with_marker():
    doc = RcloneDocument.parse(USER_CONF)
    doc.upsert(RemoteSpec("web", "primary", host="web.example.com", user="deploy", key_file="/k/web"))
    text = doc.render()
    assert text.startswith(USER_CONF)
    assert "\n\n[web]\ntype = sftp\nhost = web.example.com\nuser = deploy\nkey_file = /k/web\n" in text
    assert f"description = {MANAGED_MARKER}\n" in text
    assert RcloneDocument.parse(text).managed_names() == ["web"]


def test_alias_section_points_at_primary():
    doc = RcloneDocument()
    doc.upsert(RemoteSpec("w2", "alias", target="web"))
    section = RcloneDocument.parse(doc.render()).get("w2")
    assert section.fields == {"type": "alias", "remote": "web:", "description": MANAGED_MARKER}


def test_upsert_replaces_in_place_and_remove_drops_lines():
    doc = RcloneDocument.parse(USER_CONF)
    doc.upsert(RemoteSpec("web", "primary", host="a"))
    doc.upsert(RemoteSpec("tail", "primary", host="t"))
    doc.upsert(RemoteSpec("web", "primary", host="b"))
    assert doc.names() == ["s3", "nas", "web", "tail"]
    assert doc.get("web").fields["host"] == "b"

    assert doc.remove("web")
    assert not doc.remove("web")
    doc.remove("tail")
    assert doc.render().rstrip("\n") == USER_CONF.rstrip("\n")


def test_encrypted_detection():
    assert is_encrypted("# Encrypted rclone configuration File\n\nRCLONE_ENCRYPT_V0:\nabc\n")
    assert not is_encrypted(USER_CONF)
