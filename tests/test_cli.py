import json

import pytest

from conftest import AUDIT_KEY, PHI_KEY, TEST_ITERATIONS

from phiguard import AttemptTracker, SqliteAttemptStore, config
from phiguard.cli import main

TOKEN = "cli-admin-secret"


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "PHI_KEY", PHI_KEY)
    monkeypatch.setattr(config, "AUDIT_KEY", AUDIT_KEY)
    monkeypatch.setattr(config, "KEY_RESOLVER", "env")
    monkeypatch.setattr(config, "PBKDF2_ITERATIONS", TEST_ITERATIONS)
    monkeypatch.setattr(config, "STRICT_DECRYPT", False)
    monkeypatch.setattr(config, "DEFAULT_ALGORITHM", "gcm")
    monkeypatch.setattr(config, "ADMIN_TOKEN", TOKEN)
    monkeypatch.setattr(config, "ATTEMPT_STORE", "sqlite")
    monkeypatch.setattr(config, "ATTEMPT_DB_PATH", str(tmp_path / "attempts.db"))
    monkeypatch.setattr(config, "AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr(config, "LOG_LEVEL", "WARNING")
    return tmp_path


def run(capsys, *argv):
    code = main(list(argv))
    return code, capsys.readouterr().out


def lock(identity="jane@example.com"):
    with SqliteAttemptStore(config.ATTEMPT_DB_PATH) as store:
        tracker = AttemptTracker(store)
        for _ in range(3):
            tracker.record_failed_attempt(identity)


def test_encrypt_then_decrypt(capsys):
    code, out = run(capsys, "encrypt", "123-45-6789")
    assert code == 0
    ciphertext = out.strip()
    assert ciphertext.startswith("gcm:")

    code, out = run(capsys, "decrypt", ciphertext)
    assert code == 0
    assert out.strip() == "123-45-6789"


def test_encrypt_cbc(capsys):
    code, out = run(capsys, "encrypt", "hello", "--algorithm", "cbc")
    assert code == 0
    assert out.startswith("cbc:")


def test_encrypt_without_key_fails(capsys, monkeypatch):
    monkeypatch.setattr(config, "PHI_KEY", "")
    code, out = run(capsys, "encrypt", "hello")
    assert code == 1
    assert out == ""


def test_strict_decrypt_of_tampered_value(capsys):
    _, out = run(capsys, "encrypt", "hello")
    tampered = out.strip()[:-2] + "AA"
    if tampered == out.strip():
        tampered = out.strip()[:-2] + "BB"
    assert run(capsys, "decrypt", tampered, "--strict")[0] == 1
    assert run(capsys, "decrypt", tampered)[0] == 0


def test_audit_create_prints_entry(capsys):
    code, out = run(capsys, "audit-create", "--action", "PATIENT_VIEWED", "--resource", "patients")
    assert code == 0
    assert out.strip().startswith("gcm:")


def test_audit_trail_round_trip(capsys, cli_env):
    for action in ("A", "B"):
        code, _ = run(
            capsys, "audit-create", "--action", action, "--resource", "r",
            "--details", '{"k": 1}', "--append"
        )
        assert code == 0

    code, out = run(capsys, "audit-verify")
    assert code == 0
    report = json.loads(out)
    assert report["total"] == 2
    assert report["valid"] == 2


def test_audit_verify_detects_forgery(capsys, cli_env):
    path = cli_env / "audit.jsonl"
    run(capsys, "audit-create", "--action", "A", "--resource", "r", "--append")
    forged = {"action": "B", "resource": "r", "timestamp": "t", "details": {}, "checksum": "0" * 64}
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(forged) + "\n")

    code, out = run(capsys, "audit-verify", "--file", str(path))
    assert code == 1
    assert json.loads(out)["mismatched_indexes"] == [1]


def test_audit_create_rejects_bad_details(capsys):
    assert run(capsys, "audit-create", "--action", "A", "--resource", "r", "--details", "{nope")[0] == 2
    assert run(capsys, "audit-create", "--action", "A", "--resource", "r", "--details", "[1]")[0] == 2


def test_lockout_status_and_list(capsys):
    lock()
    code, out = run(capsys, "lockout-status", "Jane@Example.com")
    assert code == 0
    status = json.loads(out)
    assert status["identity"] == "jane@example.com"
    assert status["is_blocked"] is True

    code, out = run(capsys, "lockout-list")
    assert code == 0
    assert [r["identity"] for r in json.loads(out)] == ["jane@example.com"]


def test_unblock_requires_valid_token(capsys):
    lock()
    code, _ = run(
        capsys, "lockout-unblock", "jane@example.com",
        "--admin-token", "wrong", "--operator", "ops", "--reason", "ticket"
    )
    assert code == 2
    _, out = run(capsys, "lockout-status", "jane@example.com")
    assert json.loads(out)["is_blocked"] is True


def test_unblock_is_audited(capsys, cli_env):
    lock()
    code, out = run(
        capsys, "lockout-unblock", "jane@example.com",
        "--admin-token", TOKEN, "--operator", "ops", "--reason", "ticket 42"
    )
    assert code == 0
    assert json.loads(out)["record_existed"] is True

    _, out = run(capsys, "lockout-status", "jane@example.com")
    assert json.loads(out)["is_blocked"] is False

    code, out = run(capsys, "audit-verify")
    assert code == 0
    assert json.loads(out)["total"] == 1


def test_clear_all_disabled_without_configured_token(capsys, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_TOKEN", "")
    code, _ = run(
        capsys, "lockout-clear-all",
        "--admin-token", TOKEN, "--operator", "ops", "--reason", "ticket"
    )
    assert code == 2


def test_clear_all(capsys):
    lock("a@example.com")
    lock("b@example.com")
    code, out = run(
        capsys, "lockout-clear-all",
        "--admin-token", TOKEN, "--operator", "ops", "--reason", "incident"
    )
    assert code == 0
    assert json.loads(out) == {"records_removed": 2}


def test_no_command_prints_help(capsys):
    code, out = run(capsys)
    assert code == 2
    assert "usage" in out


def test_missing_required_argument_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["lockout-unblock", "jane@example.com"])
    assert exc.value.code == 2


def test_config_check_complete(capsys):
    code, out = run(capsys, "config-check")
    assert code == 0
    checks = json.loads(out)
    assert all(checks.values())
    assert checks["attempt_db_dir"] is True


def test_config_check_reports_missing_key(capsys, monkeypatch):
    monkeypatch.setattr(config, "AUDIT_KEY", "")
    code, out = run(capsys, "config-check")
    assert code == 1
    assert json.loads(out)["audit_key"] is False


def test_unblock_reads_token_from_environment(capsys, monkeypatch):
    lock()
    monkeypatch.setenv("PHIGUARD_ADMIN_TOKEN_INPUT", TOKEN)
    monkeypatch.setattr("getpass.getpass", lambda prompt="": pytest.fail("prompted for token"))
    code, out = run(capsys, "lockout-unblock", "jane@example.com", "--operator", "ops", "--reason", "ticket")
    assert code == 0
    assert json.loads(out)["record_existed"] is True


def test_unblock_prompts_for_token(capsys, monkeypatch):
    lock()
    monkeypatch.delenv("PHIGUARD_ADMIN_TOKEN_INPUT", raising=False)
    prompts = []

    def fake_getpass(prompt=""):
        prompts.append(prompt)
        return TOKEN

    monkeypatch.setattr("getpass.getpass", fake_getpass)
    code, _ = run(capsys, "lockout-clear-all", "--operator", "ops", "--reason", "incident")
    assert code == 0
    assert prompts == ["Admin token: "]


def test_clear_all_refused_when_audit_log_unwritable(capsys, cli_env):
    lock()
    unwritable = cli_env / "audit-dir"
    unwritable.mkdir()
    code, out = run(
        capsys, "--audit-log", str(unwritable), "lockout-clear-all",
        "--admin-token", TOKEN, "--operator", "ops", "--reason", "incident"
    )
    assert code == 1
    assert out == ""

    _, out = run(capsys, "lockout-status", "jane@example.com")
    assert json.loads(out)["is_blocked"] is True
