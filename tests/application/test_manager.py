"""Configuration manager scenarios over a sandboxed fragment directory."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from tests.support import create_confdir_sandbox, occupied_port
from xrf_confdir.adapters.network.ports import socket_probe
from xrf_confdir.application.manager import (
    BACKED_UP,
    BASE_FRAGMENTS,
    COMMITTED,
    IDLE,
    MUTATED,
    ROLLED_BACK,
    VALIDATED,
)
from xrf_confdir.domain.errors import (
    BackupError,
    ConfigConflict,
    InvalidOption,
    NotFound,
    PortUnavailable,
    ProtocolNotSupported,
    ValidationFailed,
)
from xrf_confdir.domain.protocols import default_catalog
from xrf_confdir.testing import FAILURE_MESSAGE

UUID = "0b6c4c52-3d1f-4c4e-9a55-2f4a1c5d6e7f"


@pytest.fixture
def sandbox(tmp_path: Path):
    return create_confdir_sandbox(tmp_path)


def _listing(manager) -> set[tuple[str, str, int]]:
    return {(info.tag, info.type, info.port) for info in manager.list_protocols()}


# ------------------------------------------------------------------ initialize


def test_initialize_writes_base_fragments_once(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, initialize=False)
    created = sandbox.manager.initialize()
    assert [p.name for p in created] == [
        "00-base-system.json",
        "01-dns-default.json",
        "20-outbound-direct.json",
        "21-outbound-block.json",
        "90-routing-basic.json",
        "99-routing-tail.json",
    ]
    assert len(created) == len(BASE_FRAGMENTS)
    before = sandbox.snapshot()
    assert sandbox.manager.initialize() == []
    assert sandbox.snapshot() == before


def test_initialize_keeps_operator_edits(sandbox) -> None:
    sandbox.write_fragment("01-dns-default.json", {"dns": {"servers": ["1.1.1.1"]}})
    sandbox.manager.initialize()
    assert sandbox.read_fragment("01-dns-default.json") == {"dns": {"servers": ["1.1.1.1"]}}


# ------------------------------------------------------------------------- add


def test_add_shadowsocks(sandbox) -> None:
    info = sandbox.manager.add_protocol("ss", "ss1", {"port": 8388})
    assert (info.tag, info.type, info.port, info.status) == ("ss1", "shadowsocks", 8388, "configured")
    assert info.config_file == "10-inbound-ss1.json"
    assert len(info.summary["password"]) > 0
    assert info.summary["method"] == "chacha20-poly1305"
    assert sandbox.validator.calls == 1
    assert sandbox.manager.last_transaction.history == [IDLE, BACKED_UP, MUTATED, VALIDATED, COMMITTED]


def test_add_reality_with_defaults(sandbox) -> None:
    info = sandbox.manager.add_protocol("vr", "vr1")
    assert info.protocol == "VLESS-REALITY"
    assert info.port == 443
    assert info.summary["dest"] == "www.microsoft.com"
    assert info.summary["server_name"] == "www.microsoft.com"
    assert info.summary["private_key"]
    assert len(info.summary["short_id"]) == 8
    assert sandbox.read_fragment("10-inbound-vr1.json")["inbounds"][0]["streamSettings"]["realitySettings"]["dest"] == (
        "www.microsoft.com:443"
    )


def test_add_default_tag_comes_from_the_template(sandbox) -> None:
    info = sandbox.manager.add_protocol("vless-hu")
    assert info.tag == "vless_httpupgrade"
    assert info.summary["path"] == "/upgrade"
    assert info.port == 8080


def test_add_ss2022_uses_a_sized_key(sandbox) -> None:
    info = sandbox.manager.add_protocol("ss2022", "ss2")
    assert info.protocol == "Shadowsocks-2022"
    assert info.summary["method"] == "2022-blake3-aes-256-gcm"


def test_add_trojan_takes_explicit_values(sandbox) -> None:
    info = sandbox.manager.add_protocol(
        "trojan", "tw", {"password": "trojan-secret", "path": "/tj", "domain": "t.example.com", "certFile": "/c.pem"}
    )
    inbound = info.settings
    assert inbound["settings"]["clients"][0]["password"] == "trojan-secret"
    assert inbound["streamSettings"]["wsSettings"]["host"] == "t.example.com"
    assert inbound["streamSettings"]["tlsSettings"]["certificates"][0]["certificateFile"] == "/c.pem"


def test_explicit_busy_port_is_never_substituted(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, busy_ports=[443])
    before = sandbox.snapshot()
    with pytest.raises(PortUnavailable):
        sandbox.manager.add_protocol("vr", "vr2", {"port": 443})
    assert sandbox.snapshot() == before
    assert sandbox.validator.calls == 0


@pytest.mark.parametrize("descriptor", default_catalog().all(), ids=lambda d: d.name)
def test_add_uses_the_protocol_default_port(tmp_path: Path, descriptor) -> None:
    sandbox = create_confdir_sandbox(tmp_path)
    assert sandbox.manager.add_protocol(descriptor.name, "unit1").port == descriptor.default_port


def test_default_port_skips_busy_preferred(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, busy_ports=[443])
    assert sandbox.manager.add_protocol("vr", "vr2").port == 8443


@pytest.mark.posix_only
def test_port_held_by_a_real_socket(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, probe=socket_probe)
    with occupied_port() as port:
        with pytest.raises(PortUnavailable):
            sandbox.manager.add_protocol("ss", "ss1", {"port": port})
    assert not (sandbox.confdir / "10-inbound-ss1.json").exists()


def test_duplicate_tag_leaves_directory_untouched(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1", {"port": 8388})
    before = sandbox.snapshot()
    with pytest.raises(ConfigConflict):
        sandbox.manager.add_protocol("vmess", "ss1")
    assert sandbox.snapshot() == before


def test_tag_clash_with_an_outbound(sandbox) -> None:
    with pytest.raises(ConfigConflict):
        sandbox.manager.add_protocol("ss", "direct")


@given(st.lists(st.sampled_from(["a1", "b2", "c3"]), min_size=1, max_size=6))
@settings(max_examples=15, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
def test_tags_stay_unique(tmp_path_factory, tags) -> None:
    sandbox = create_confdir_sandbox(tmp_path_factory.mktemp("unique"))
    for tag in tags:
        try:
            sandbox.manager.add_protocol("ss", tag)
        except ConfigConflict:
            pass
    listed = [info.tag for info in sandbox.manager.list_protocols()]
    assert sorted(listed) == sorted(set(tags))


@pytest.mark.parametrize(
    ("protocol", "tag", "options", "error"),
    [
        ("wireguard", "wg", {}, ProtocolNotSupported),
        ("ss", "bad tag", {}, InvalidOption),
        ("ss", "cdn-tail", {}, InvalidOption),
        ("vw", "vw1", {"path": "nope"}, InvalidOption),
        ("vr", "vr1", {"uuid": "xyz"}, InvalidOption),
        ("ss", "ss1", {"port": 70000}, InvalidOption),
    ],
)
def test_input_errors_happen_before_any_write(sandbox, protocol, tag, options, error) -> None:
    before = sandbox.snapshot()
    with pytest.raises(error):
        sandbox.manager.add_protocol(protocol, tag, options)
    assert sandbox.snapshot() == before
    assert sandbox.manager.last_transaction is None


def test_failed_validation_rolls_back_add(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, fail_validation=True)
    before = sandbox.snapshot()
    with pytest.raises(ValidationFailed, match=FAILURE_MESSAGE):
        sandbox.manager.add_protocol("ss", "ss1")
    assert sandbox.snapshot() == before
    txn = sandbox.manager.last_transaction
    assert txn.history == [IDLE, BACKED_UP, MUTATED, ROLLED_BACK]
    assert isinstance(txn.error, ValidationFailed)
    assert not txn.snapshot.parent.exists()


def test_failed_rollback_keeps_the_snapshot(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sandbox = create_confdir_sandbox(tmp_path, fail_validation=True)
    before = sandbox.snapshot()
    backups = sandbox.manager.backups
    real_rollback = backups.rollback

    def broken(snapshot: Path) -> None:
        raise BackupError("disk full")

    monkeypatch.setattr(backups, "rollback", broken)
    with pytest.raises(ValidationFailed) as info:
        sandbox.manager.add_protocol("ss", "ss1", {"port": 8388})
    txn = sandbox.manager.last_transaction
    assert ROLLED_BACK not in txn.history
    assert txn.snapshot.is_file()
    assert info.value.context["snapshot"] == str(txn.snapshot)
    assert info.value.context["rollback_error"] == "disk full"
    assert sandbox.snapshot() != before

    real_rollback(txn.snapshot)
    assert sandbox.snapshot() == before
    backups.discard(txn.snapshot)


def test_skipping_validation_per_call(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, fail_validation=True)
    sandbox.manager.add_protocol("ss", "ss1", validate=False)
    assert sandbox.validator.calls == 0
    assert sandbox.manager.last_transaction.state == COMMITTED


def test_snapshot_failure_still_commits(sandbox, monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="xrf_confdir")

    def broken() -> Path:
        raise BackupError("no space left for snapshot")

    monkeypatch.setattr(sandbox.manager.backups, "snapshot", broken)
    info = sandbox.manager.add_protocol("ss", "ss1")
    assert info.tag == "ss1"
    assert sandbox.manager.last_transaction.snapshot is None
    assert any(record.getMessage() == "snapshot_failed" for record in caplog.records)


# ---------------------------------------------------------------------- remove


def test_remove(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    assert sandbox.manager.remove_protocol("ss1") == ["10-inbound-ss1.json"]
    assert _listing(sandbox.manager) == set()


def test_remove_unknown_tag(sandbox) -> None:
    before = sandbox.snapshot()
    with pytest.raises(NotFound):
        sandbox.manager.remove_protocol("ghost")
    assert sandbox.snapshot() == before


def test_failed_validation_restores_removed_fragment(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    before = sandbox.snapshot()
    sandbox.validator.fail = True
    with pytest.raises(ValidationFailed):
        sandbox.manager.remove_protocol("ss1")
    assert sandbox.snapshot() == before


# ---------------------------------------------------------------------- update


def test_update_port_and_uuid(sandbox) -> None:
    sandbox.manager.add_protocol("vmess", "mw", {"port": 8081})
    info = sandbox.manager.update_protocol("mw", {"port": 9000, "uuid": UUID})
    assert info.port == 9000
    assert info.summary["uuid"] == UUID
    assert sandbox.read_fragment("10-inbound-mw.json")["inbounds"][0]["port"] == 9000


def test_empty_update_is_byte_identical(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    before = sandbox.snapshot()
    calls = sandbox.validator.calls
    info = sandbox.manager.update_protocol("ss1", {})
    assert info.tag == "ss1"
    assert sandbox.snapshot() == before
    assert sandbox.validator.calls == calls


def test_update_accepts_the_same_aliases_as_add(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    sandbox.manager.update_protocol("ss1", {"shortId": "abcd1234"})
    settings = sandbox.read_fragment("10-inbound-ss1.json")["inbounds"][0]["settings"]
    assert settings["short_id"] == "abcd1234"
    assert "shortId" not in settings


def test_update_rejects_malformed_path(sandbox) -> None:
    sandbox.manager.add_protocol("vw", "vw1")
    before = sandbox.snapshot()
    with pytest.raises(InvalidOption):
        sandbox.manager.update_protocol("vw1", {"path": "nope"})
    assert sandbox.snapshot() == before


def test_update_unknown_tag(sandbox) -> None:
    with pytest.raises(NotFound):
        sandbox.manager.update_protocol("ghost", {"port": 9000})


def test_update_port_availability(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1", {"port": 8388})
    sandbox.probe.busy.update({8388, 9001})
    assert sandbox.manager.update_protocol("ss1", {"port": 8388}).port == 8388
    before = sandbox.snapshot()
    with pytest.raises(PortUnavailable):
        sandbox.manager.update_protocol("ss1", {"port": 9001})
    assert sandbox.snapshot() == before


def test_failed_validation_rolls_back_update(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    before = sandbox.snapshot()
    sandbox.validator.fail = True
    with pytest.raises(ValidationFailed):
        sandbox.manager.update_protocol("ss1", {"password": "another-password"})
    assert sandbox.snapshot() == before


# ---------------------------------------------------------------- list / info


def test_list_is_ordered_by_filename_and_skips_broken_fragments(sandbox) -> None:
    for tag in ("zz", "aa", "mm"):
        sandbox.manager.add_protocol("ss", tag)
    (sandbox.confdir / "10-inbound-broken.json").write_text("{oops", encoding="utf-8")
    sandbox.write_fragment("15-inbound-empty.json", {"inbounds": []})
    assert [info.tag for info in sandbox.manager.list_protocols()] == ["aa", "mm", "zz"]


def test_incomplete_inbound_is_reported(sandbox) -> None:
    sandbox.write_fragment("10-inbound-odd.json", {"inbounds": [{"tag": "odd", "port": "n/a"}]})
    info = sandbox.manager.get_protocol_info("odd")
    assert (info.status, info.port, info.protocol) == ("incomplete", 0, "")


def test_info_unknown_tag(sandbox) -> None:
    with pytest.raises(NotFound):
        sandbox.manager.get_protocol_info("ghost")


def test_info_as_dict_is_json_ready(sandbox) -> None:
    info = sandbox.manager.add_protocol("ss", "ss1", {"port": 8388})
    payload = json.loads(json.dumps(info.as_dict()))
    assert payload["tag"] == "ss1"
    assert payload["config_file"] == "10-inbound-ss1.json"


# ------------------------------------------------------------------- share url


def test_reality_share_url_carries_the_public_key(sandbox) -> None:
    info = sandbox.manager.add_protocol("vr", "vr1")
    url = urlsplit(sandbox.manager.generate_share_url("vr1", "203.0.113.9"))
    query = parse_qs(url.query)
    expected = sandbox.manager.secrets.public_key_from_private(info.summary["private_key"])
    assert url.scheme == "vless"
    assert query["pbk"] == [expected]
    assert query["sid"] == [info.summary["short_id"]]
    assert url.hostname == "203.0.113.9"


def test_share_url_defaults_to_configured_host(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1", {"port": 8388})
    assert sandbox.manager.generate_share_url("ss1").endswith("@localhost:8388#ss1")


def test_share_url_for_unknown_inbound_kind(sandbox) -> None:
    sandbox.write_fragment("10-inbound-socks.json", {"inbounds": [{"tag": "socks", "port": 1080, "protocol": "socks"}]})
    with pytest.raises(ProtocolNotSupported):
        sandbox.manager.generate_share_url("socks")


# -------------------------------------------------------------- backup/restore


def test_backup_restore_round_trip(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    sandbox.manager.add_protocol("vr", "vr1")
    expected = _listing(sandbox.manager)
    before = sandbox.snapshot()
    archive = sandbox.manager.backup_config()
    assert archive.parent == sandbox.backup_dir

    sandbox.manager.remove_protocol("ss1")
    sandbox.manager.add_protocol("vmess", "mw")
    manifest = sandbox.manager.restore_config(archive)

    assert manifest["protocols"] == ["ss1", "vr1"]
    assert _listing(sandbox.manager) == expected
    assert sandbox.snapshot() == before


def test_merged_preview(sandbox) -> None:
    sandbox.manager.add_protocol("ss", "ss1")
    merged, provenance = sandbox.manager.merged_config()
    assert [inbound["tag"] for inbound in merged["inbounds"]] == ["ss1"]
    assert [outbound["tag"] for outbound in merged["outbounds"]] == ["block", "direct"]
    assert provenance["inbounds.ss1"]["file"] == "10-inbound-ss1.json"


def test_validate_config_always_runs(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path)
    sandbox.manager.validate_by_default = False
    sandbox.manager.validate_config()
    assert sandbox.validator.calls == 1


# ---------------------------------------------------------------------- reload


def test_reload_after_commit_only(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, reload_on_commit=True)
    sandbox.manager.add_protocol("ss", "ss1")
    assert sandbox.notifier.calls == 1
    sandbox.validator.fail = True
    with pytest.raises(ValidationFailed):
        sandbox.manager.add_protocol("ss", "ss2")
    assert sandbox.notifier.calls == 1


def test_reload_failure_does_not_undo_the_commit(tmp_path: Path) -> None:
    sandbox = create_confdir_sandbox(tmp_path, reload_on_commit=True)
    sandbox.notifier.fail = True
    sandbox.manager.add_protocol("ss", "ss1")
    assert sandbox.notifier.calls == 1
    assert (sandbox.confdir / "10-inbound-ss1.json").exists()
