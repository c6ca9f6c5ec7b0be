"""Tests for the vtry-jobs command line."""

import pytest

from vtry_jobs.auth.identity import IdentityVerifier
from vtry_jobs.cli import build_parser, main


def test_issue_token_prints_verifiable_token(monkeypatch, capsys):
    monkeypatch.setenv("VTRY_TOKEN_SECRET", "cli-secret")

    assert main(["issue-token", "alice", "--tier", "PRO"]) == 0

    token = capsys.readouterr().out.strip()
    identity = IdentityVerifier("cli-secret").verify(token)
    assert identity.owner_id == "alice"
    assert identity.tier == "PRO"


def test_parser_defaults():
    args = build_parser().parse_args(["serve"])
    assert (args.host, args.port, args.no_workers) == ("0.0.0.0", 8000, False)

    args = build_parser().parse_args(["worker", "--workers", "2"])
    assert args.workers == 2


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
