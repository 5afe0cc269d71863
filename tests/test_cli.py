"""
tests/test_cli.py -- Tests for the operator commands in main.py.

The command functions take an AuthenticationService, so they run against the
in-memory service fixture; getpass is monkeypatched for create-user.
"""

from __future__ import annotations

import argparse

import main


def _args(**kwargs) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def test_create_user_prompts_for_password(service, monkeypatch, capsys):
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": "pw-12345")
    args = _args(email="ops@b.com", first_name="Ops", last_name="", inactive=False)

    assert main.cmd_create_user(service, args) == 0
    assert "Created user" in capsys.readouterr().out
    assert service.login("ops@b.com", "pw-12345").user.first_name == "Ops"


def test_create_user_duplicate_email(service, make_user, monkeypatch, capsys):
    make_user("ops@b.com")
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": "pw-12345")
    args = _args(email="ops@b.com", first_name="", last_name="", inactive=False)

    assert main.cmd_create_user(service, args) == 1
    assert "duplicate value" in capsys.readouterr().out


def test_list_users(service, make_user, capsys):
    make_user("a@b.com", first_name="Ada", last_name="Byron")
    service.login("a@b.com", "secret")

    assert main.cmd_list_users(service, _args()) == 0
    out = capsys.readouterr().out
    assert "a@b.com" in out
    assert "Ada Byron" in out


def test_list_users_empty(service, capsys):
    assert main.cmd_list_users(service, _args()) == 0
    assert "No users." in capsys.readouterr().out


def test_revoke_sessions(service, make_user, capsys):
    user = make_user("a@b.com")
    service.login("a@b.com", "secret")
    service.login("a@b.com", "secret")

    assert main.cmd_revoke_sessions(service, _args(user_id=user.id)) == 0
    assert "Revoked 2 session(s)" in capsys.readouterr().out


def test_revoke_sessions_unknown_user(service, capsys):
    assert main.cmd_revoke_sessions(service, _args(user_id=999)) == 1
    assert "No user with id 999" in capsys.readouterr().out


def test_create_user_keeps_password_whitespace(service, monkeypatch):
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": " spaced pw ")
    args = _args(email="ops@b.com", first_name="", last_name="", inactive=False)

    assert main.cmd_create_user(service, args) == 0
    assert service.login("ops@b.com", " spaced pw ").user.email == "ops@b.com"


def test_create_user_rejects_password_over_72_bytes(service, monkeypatch, capsys):
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": "é" * 37)
    args = _args(email="ops@b.com", first_name="", last_name="", inactive=False)

    assert main.cmd_create_user(service, args) == 1
    assert "72 bytes" in capsys.readouterr().out
