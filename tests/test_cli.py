from __future__ import annotations

import json
import signal
from pathlib import Path

import pytest

import orgscan.__main__ as cli
from orgscan.config import Settings
from orgscan.detectors import build_detectors
from tests._fixtures.fake_github import FakeGitHub, make_repo


@pytest.fixture
def provider() -> FakeGitHub:
    return FakeGitHub(
        repos={"acme": [make_repo("acme/svc"), make_repo("acme/docs")]},
        files={("acme/svc", "go.mod"): "go 1.19\n"},
    )


@pytest.fixture
def run_cli(monkeypatch, tmp_path: Path, provider: FakeGitHub):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GITHUB_TOKEN", "secret")
    monkeypatch.setenv("GITHUB_ORGS", "acme")
    monkeypatch.setenv("TRACKING_REPO", "")
    monkeypatch.setattr(signal, "signal", lambda *args: None)
    monkeypatch.setattr(cli, "configure_logging", lambda verbose=False, debug=False: None)
    monkeypatch.setattr(cli, "GitHubAPI", lambda **kwargs: provider)
    monkeypatch.setattr(
        cli, "build_detectors",
        lambda names, **kwargs: build_detectors(names, go_versions=["1.23", "1.22"], golangci_latest="v1.61.0"),
    )

    def run(*argv: str) -> int:
        return cli.main(["--cache-dir", str(tmp_path / "caches"), "--report-dir", str(tmp_path / "reports"),
                         *argv])

    return run


def test_parse_args_defaults() -> None:
    settings = Settings(MAX_WORKERS=8, REPORT_DIR="out")
    args = cli.parse_args(["go-version"], settings)

    assert args.detector == "go-version"
    assert args.max_workers == 8
    assert args.report_dir == "out"
    assert not args.create_issues
    assert not args.clear_cache
    assert not args.force
    assert not args.no_tracking


def test_parse_args_flags() -> None:
    args = cli.parse_args(["all", "--create-issues", "--clear-cache", "--force", "--no-tracking",
                           "--org", "acme", "--org", "globex"], Settings())
    assert args.detector == "all"
    assert args.create_issues and args.clear_cache and args.force and args.no_tracking
    assert args.orgs == ["acme", "globex"]


def test_unknown_detector_is_rejected(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.parse_args(["nonsense"], Settings())
    assert excinfo.value.code == 2
    assert "invalid choice" in capsys.readouterr().err


def test_settings_split_organizations(monkeypatch) -> None:
    monkeypatch.setenv("GITHUB_ORGS", " acme, globex ,,")
    assert Settings().organizations == ["acme", "globex"]


def test_completed_scan_exits_zero(run_cli, tmp_path: Path, capsys) -> None:
    assert run_cli("go-version", "--no-tracking") == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "Scanned 2 repositories; 1 non-compliant" in out
    data = json.loads((tmp_path / "reports" / "compliance-report.json").read_text())
    assert data["organizations"] == ["acme"]
    assert (tmp_path / "caches" / "no-gomod.json").exists()


def test_rejected_token_exits_one(run_cli, provider, tmp_path: Path) -> None:
    provider.token_valid = False
    assert run_cli("go-version") == cli.EXIT_FAILURE
    assert not (tmp_path / "reports").exists()


def test_unusable_cache_directory_exits_one(run_cli, tmp_path: Path) -> None:
    (tmp_path / "blocker").write_text("x", encoding="utf-8")
    assert run_cli("go-version", "--cache-dir", str(tmp_path / "blocker" / "caches")) == cli.EXIT_FAILURE


def test_interrupt_exits_130_with_partial_report(run_cli, provider, tmp_path: Path) -> None:
    listing = provider.list_repositories

    def interrupted_listing(org, limit=None):
        cli.signal_handler(signal.SIGINT, None)
        yield from listing(org, limit)

    provider.list_repositories = interrupted_listing

    assert run_cli("go-version") == cli.EXIT_INTERRUPTED
    data = json.loads((tmp_path / "reports" / "compliance-report.json").read_text())
    assert data["incomplete"] is True
    assert not (tmp_path / "caches" / "no-gomod.json").exists()
