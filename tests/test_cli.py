"""Tests for main.py -- the admin CLI.

Each test points the CLI at a throwaway SQLite file by patching get_settings.
"""

import pytest

import main
from auth.store import AccountStore, Database
from core.config import Settings


@pytest.fixture
def cli_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(debug=True, bcrypt_rounds=4, database_url=f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    return settings


def test_create_account(cli_settings, capsys):
    rc = main.main(["create-account", "Ada Lovelace", "ada@example.com", "ada", "--password", "pw", "--verified"])
    assert rc == 0
    assert "Created account" in capsys.readouterr().out

    db = Database(cli_settings.database_url)
    try:
        account = AccountStore(db).get_by_username("ada")
    finally:
        db.close()
    assert account.email == "ada@example.com"
    assert account.is_email_verified is True


def test_create_account_conflict_exits_1(cli_settings, capsys):
    argv = ["create-account", "Ada", "ada@example.com", "ada", "--password", "pw"]
    assert main.main(argv) == 0
    assert main.main(argv) == 1
    assert "conflict" in capsys.readouterr().err


def test_expire_codes_reports_counts(cli_settings, capsys):
    assert main.main(["expire-codes"]) == 0
    out = capsys.readouterr().out
    assert "email: 0 code(s) expired" in out
    assert "forgot: 0 code(s) expired" in out


def test_delete_code_missing_is_noop(cli_settings):
    assert main.main(["delete-code", "forgot", "482913"]) == 0
