"""Work feed: where candidate work items come from and where outcomes are written back.

The scheduler only depends on :class:`WorkFeed`; :class:`GitHubIssueFeed`
implements it against the GitHub REST API with the standard library HTTP
client.
"""

from __future__ import annotations

import abc
import json
import logging
import os
from contextlib import suppress
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from drydock.config import FeedConfig
from drydock.errors import FeedError
from drydock.schemas import WorkItem

logger = logging.getLogger(__name__)

_TOKEN_ENV_KEYS = ("DRYDOCK_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")


def github_token() -> str:
    """Return the first GitHub token found in the environment (empty when none)."""
    for key in _TOKEN_ENV_KEYS:
        token = str(os.getenv(key) or "").strip()
        if token:
            return token
    return ""


class WorkFeed(abc.ABC):
    """Pull interface for candidate items plus write-back of outcomes."""

    @abc.abstractmethod
    def list_candidates(self) -> list[WorkItem]:
        """Return open items carrying the watch label."""

    @abc.abstractmethod
    def get_item(self, item_id: int) -> WorkItem:
        """Fetch one item by id."""

    @abc.abstractmethod
    def is_open(self, item_id: int) -> bool:
        """Return True while *item_id* is unresolved."""

    @abc.abstractmethod
    def add_label(self, item_id: int, label: str) -> None: ...

    @abc.abstractmethod
    def remove_label(self, item_id: int, label: str) -> None: ...

    @abc.abstractmethod
    def comment(self, item_id: int, body: str) -> None: ...

    @abc.abstractmethod
    def close(self, item_id: int) -> None: ...

    @abc.abstractmethod
    def create_item(self, title: str, body: str, labels: list[str]) -> int:
        """Open a new item and return its id."""

    def open_pull_request(self, head: str, base: str, title: str, body: str) -> str:
        """Open a change request for *head* and return its URL (empty when unsupported)."""
        return ""


class GitHubIssueFeed(WorkFeed):
    """GitHub issues labelled with the watch label, via the REST API.

    Parameters
    ----------
    config:
        Repository (``owner/name``), labels, API URL and limits.
    token:
        Personal access token. Defaults to ``DRYDOCK_GITHUB_TOKEN``,
        ``GITHUB_TOKEN`` or ``GH_TOKEN``.
    """

    def __init__(self, config: FeedConfig, token: str | None = None) -> None:
        if not config.repo or "/" not in config.repo:
            raise FeedError(f"Feed repository must look like 'owner/name', got {config.repo!r}")
        self.config = config
        self.token = token if token is not None else github_token()

    # -- HTTP --------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.config.api_url.rstrip('/')}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "drydock-scheduler",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data: bytes | None = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload).encode("utf-8")

        logger.debug("GitHub %s %s", method.upper(), path)
        request_obj = Request(url, headers=headers, data=data, method=method.upper())
        try:
            with urlopen(request_obj, timeout=self.config.request_timeout) as response:
                body_text = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            detail = ""
            with suppress(Exception):
                parsed = json.loads(exc.read().decode("utf-8", errors="replace") or "{}")
                if isinstance(parsed, dict):
                    detail = str(parsed.get("message") or "").strip()
            message = f"GitHub API returned HTTP {exc.code} for {method.upper()} {path}."
            if detail:
                message += f" {detail[:220]}"
            raise FeedError(message, status=exc.code) from exc
        except URLError as exc:
            reason = str(getattr(exc, "reason", exc) or "").strip()
            raise FeedError(f"Could not reach GitHub API: {reason or exc}") from exc
        except (OSError, ValueError) as exc:
            raise FeedError(f"GitHub API request failed: {exc}") from exc

        if not body_text.strip():
            return {}
        try:
            return json.loads(body_text)
        except json.JSONDecodeError as exc:
            raise FeedError(f"GitHub API returned invalid JSON: {exc}") from exc

    def _issue_path(self, item_id: int, suffix: str = "") -> str:
        return f"/repos/{self.config.repo}/issues/{int(item_id)}{suffix}"

    # -- WorkFeed ----------------------------------------------------------

    @staticmethod
    def _to_work_item(raw: dict[str, Any]) -> WorkItem:
        labels = [
            str(label.get("name") if isinstance(label, dict) else label)
            for label in raw.get("labels") or []
        ]
        return WorkItem(
            id=int(raw["number"]),
            title=str(raw.get("title") or ""),
            labels=[label for label in labels if label],
            body=str(raw.get("body") or ""),
            created_at=raw.get("created_at"),
            url=str(raw.get("html_url") or ""),
            open=str(raw.get("state") or "open") == "open",
        )

    def list_candidates(self) -> list[WorkItem]:
        data = self._request(
            "GET",
            f"/repos/{self.config.repo}/issues",
            query={
                "state": "open",
                "labels": self.config.watch_label,
                "per_page": max(1, min(100, self.config.max_items)),
                "sort": "created",
                "direction": "asc",
            },
        )
        if not isinstance(data, list):
            raise FeedError("GitHub API returned an unexpected payload for the issue list.")
        items = [
            self._to_work_item(raw)
            for raw in data
            if isinstance(raw, dict) and "pull_request" not in raw and "number" in raw
        ]
        failed = self.config.failed_label.strip().lower()
        items = [item for item in items if failed not in item.label_set()]
        return items[: self.config.max_items]

    def get_item(self, item_id: int) -> WorkItem:
        data = self._request("GET", self._issue_path(item_id))
        if not isinstance(data, dict) or "number" not in data:
            raise FeedError(f"GitHub API returned an unexpected payload for issue #{item_id}.")
        return self._to_work_item(data)

    def is_open(self, item_id: int) -> bool:
        try:
            return self.get_item(item_id).open
        except FeedError as exc:
            if exc.status == 404:
                return False
            raise

    def add_label(self, item_id: int, label: str) -> None:
        self._request("POST", self._issue_path(item_id, "/labels"), payload={"labels": [label]})

    def remove_label(self, item_id: int, label: str) -> None:
        try:
            self._request("DELETE", self._issue_path(item_id, f"/labels/{quote(label, safe='')}"))
        except FeedError as exc:
            if exc.status != 404:
                raise

    def comment(self, item_id: int, body: str) -> None:
        self._request("POST", self._issue_path(item_id, "/comments"), payload={"body": body})

    def close(self, item_id: int) -> None:
        self._request("PATCH", self._issue_path(item_id), payload={"state": "closed"})

    def create_item(self, title: str, body: str, labels: list[str]) -> int:
        data = self._request(
            "POST",
            f"/repos/{self.config.repo}/issues",
            payload={"title": title, "body": body, "labels": list(labels)},
        )
        if not isinstance(data, dict) or "number" not in data:
            raise FeedError("GitHub API did not return the created issue number.")
        number = int(data["number"])
        logger.info("Created issue #%s: %s", number, title)
        return number

    def open_pull_request(self, head: str, base: str, title: str, body: str) -> str:
        """Open a pull request, or return the URL of the one already open for *head*."""
        try:
            data = self._request(
                "POST",
                f"/repos/{self.config.repo}/pulls",
                payload={"title": title, "body": body, "head": head, "base": base},
            )
        except FeedError as exc:
            if exc.status != 422:
                raise
            owner = self.config.repo.split("/", 1)[0]
            existing = self._request(
                "GET",
                f"/repos/{self.config.repo}/pulls",
                query={"head": f"{owner}:{head}", "state": "open"},
            )
            if isinstance(existing, list) and existing and isinstance(existing[0], dict):
                return str(existing[0].get("html_url") or "")
            raise
        url = str(data.get("html_url") or "") if isinstance(data, dict) else ""
        logger.info("Opened pull request %s", url or head)
        return url
