import base64
import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "totp_enroll.py"
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


@pytest.fixture(scope="module")
def cli():
    spec = importlib.util.spec_from_file_location("totp_enroll", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_new_prints_secret_and_uri(cli, capsys):
    assert cli.main(["--issuer", "Acme", "new", "--account", "alice@example.com"]) == 0
    out = capsys.readouterr().out
    assert "Secret:" in out
    assert "otpauth://totp/Acme%3Aalice%40example.com?" in out
    assert "Backup codes" not in out


def test_new_with_backup_codes(cli, capsys):
    cli.main(["new", "--account", "bob", "--backup-codes"])
    lines = capsys.readouterr().out.splitlines()
    assert lines[2] == "Backup codes:"
    assert len(lines[3:]) == 10


def test_code_at_fixed_time(cli, capsys):
    assert cli.main(["code", "--secret", RFC_SECRET, "--at", "59"]) == 0
    assert capsys.readouterr().out.strip() == "287082"


def test_verify_exit_status(cli, capsys):
    assert cli.main(["verify", "--secret", RFC_SECRET, "--code", "287082", "--at", "59"]) == 0
    assert capsys.readouterr().out.strip() == "accepted"
    assert cli.main(["verify", "--secret", RFC_SECRET, "--code", "000000", "--at", "59"]) == 1
    assert capsys.readouterr().out.strip() == "rejected"


def test_secret_from_environment(cli, capsys, monkeypatch):
    monkeypatch.setenv("TOTP_SECRET", RFC_SECRET)
    assert cli.main(["code", "--at", "1111111109"]) == 0
    assert capsys.readouterr().out.strip() == "081804"


def test_missing_secret(cli, capsys, monkeypatch):
    monkeypatch.delenv("TOTP_SECRET", raising=False)
    assert cli.main(["code"]) == 1
    assert "TOTP_SECRET" in capsys.readouterr().out


def test_invalid_secret(cli, capsys):
    assert cli.main(["code", "--secret", "!!!"]) == 1
    assert "invalid TOTP secret" in capsys.readouterr().out
