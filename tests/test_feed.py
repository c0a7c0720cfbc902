"""Tests for the GitHub issue feed (HTTP layer mocked)."""

from __future__ import annotations

import io
import json
from typing import Any
from urllib.error import HTTPError, URLError

import pytest

import drydock.feed as feed_module
from drydock.config import FeedConfig
from drydock.errors import FeedError
from drydock.feed import GitHubIssueFeed, github_token

pytestmark = pytest.mark.unit


class FakeResponse:
    def __init__(self, payload: Any) -> None:
        self._body = json.dumps(payload).encode("utf-8") if payload is not None else b""

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *_exc: object) -> None:
        return None


class FakeGitHub:
    """Routes ``(METHOD, path)`` to canned payloads or HTTP status errors."""

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.requests: list[tuple[str, str, dict | None]] = []

    def __call__(self, request, timeout=None):
        path = request.full_url.split("https://api.github.com", 1)[1].split("?", 1)[0]
        body = json.loads(request.data.decode("utf-8")) if request.data else None
        self.requests.append((request.get_method(), path, body))
        outcome = self.routes.get((request.get_method(), path), {})
        if isinstance(outcome, int):
            raise HTTPError(request.full_url, outcome, "error", hdrs=None, fp=io.BytesIO(b'{"message": "nope"}'))
        return FakeResponse(outcome)


def _feed(monkeypatch: pytest.MonkeyPatch, routes: dict) -> tuple[GitHubIssueFeed, FakeGitHub]:
    fake = FakeGitHub(routes)
    monkeypatch.setattr(feed_module, "urlopen", fake)
    return GitHubIssueFeed(FeedConfig(repo="acme/widgets"), token="t0ken"), fake


def test_repo_must_be_owner_slash_name() -> None:
    with pytest.raises(FeedError):
        GitHubIssueFeed(FeedConfig(repo="widgets"))


def test_token_lookup_order(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("DRYDOCK_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GH_TOKEN", "third")
    monkeypatch.setenv("GITHUB_TOKEN", "second")

    assert github_token() == "second"


def test_list_candidates_skips_pull_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    issues = [
        {"number": 3, "title": "Fix login", "labels": [{"name": "bug"}], "body": None, "state": "open"},
        {"number": 4, "title": "A PR", "pull_request": {}},
    ]
    feed, _ = _feed(monkeypatch, {("GET", "/repos/acme/widgets/issues"): issues})

    items = feed.list_candidates()

    assert [item.id for item in items] == [3]
    assert items[0].labels == ["bug"]
    assert items[0].body == ""


def test_list_candidates_skips_items_that_already_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    issues = [
        {"number": 5, "title": "Gave up", "labels": [{"name": "ready-to-build"}, {"name": "drydock:failed"}]},
        {"number": 6, "title": "Fresh", "labels": [{"name": "ready-to-build"}]},
    ]
    feed, _ = _feed(monkeypatch, {("GET", "/repos/acme/widgets/issues"): issues})

    assert [item.id for item in feed.list_candidates()] == [6]


def test_unexpected_list_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    feed, _ = _feed(monkeypatch, {("GET", "/repos/acme/widgets/issues"): {"message": "odd"}})

    with pytest.raises(FeedError):
        feed.list_candidates()


def test_http_error_carries_status(monkeypatch: pytest.MonkeyPatch) -> None:
    feed, _ = _feed(monkeypatch, {("GET", "/repos/acme/widgets/issues/9"): 500})

    with pytest.raises(FeedError) as excinfo:
        feed.get_item(9)

    assert excinfo.value.status == 500
    assert "nope" in str(excinfo.value)


def test_network_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def offline(_request, timeout=None):
        raise URLError("name resolution failed")

    monkeypatch.setattr(feed_module, "urlopen", offline)

    with pytest.raises(FeedError, match="Could not reach GitHub API"):
        GitHubIssueFeed(FeedConfig(repo="acme/widgets"), token="").list_candidates()


def test_is_open(monkeypatch: pytest.MonkeyPatch) -> None:
    feed, _ = _feed(
        monkeypatch,
        {
            ("GET", "/repos/acme/widgets/issues/1"): {"number": 1, "state": "closed"},
            ("GET", "/repos/acme/widgets/issues/2"): 404,
        },
    )

    assert feed.is_open(1) is False
    assert feed.is_open(2) is False


def test_write_back_calls(monkeypatch: pytest.MonkeyPatch) -> None:
    feed, fake = _feed(
        monkeypatch,
        {
            ("DELETE", "/repos/acme/widgets/issues/5/labels/ready-to-build"): 404,
            ("POST", "/repos/acme/widgets/issues"): {"number": 77},
        },
    )

    feed.add_label(5, "drydock:done")
    feed.remove_label(5, "ready-to-build")
    feed.comment(5, "Done")
    feed.close(5)
    number = feed.create_item("[HOTFIX] P0", "body", ["hotfix"])

    assert number == 77
    assert [(method, path) for method, path, _ in fake.requests] == [
        ("POST", "/repos/acme/widgets/issues/5/labels"),
        ("DELETE", "/repos/acme/widgets/issues/5/labels/ready-to-build"),
        ("POST", "/repos/acme/widgets/issues/5/comments"),
        ("PATCH", "/repos/acme/widgets/issues/5"),
        ("POST", "/repos/acme/widgets/issues"),
    ]
    assert fake.requests[0][2] == {"labels": ["drydock:done"]}


def test_existing_pull_request_is_reused(monkeypatch: pytest.MonkeyPatch) -> None:
    feed, _ = _feed(
        monkeypatch,
        {
            ("POST", "/repos/acme/widgets/pulls"): 422,
            ("GET", "/repos/acme/widgets/pulls"): [{"html_url": "https://github.com/acme/widgets/pull/8"}],
        },
    )

    assert feed.open_pull_request("drydock/issue-5", "main", "Fix", "body") == (
        "https://github.com/acme/widgets/pull/8"
    )
