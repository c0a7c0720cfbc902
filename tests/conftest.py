"""Shared pytest configuration: markers, execution ordering and a scratch git repository."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A throwaway repository on ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q", "-b", "main")
    _git(repo, "config", "user.name", "Drydock Tests")
    _git(repo, "config", "user.email", "tests@example.com")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# demo\n", encoding="utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial commit")
    return repo
