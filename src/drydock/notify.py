"""Best-effort webhook notifications for job and system events.

Delivery problems are logged and returned as strings; they never raise into
the scheduler or the pipeline.
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import suppress
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from drydock.config import NotifyConfig

logger = logging.getLogger(__name__)

_DISCORD_LIMIT = 1900


def webhook_kind(url: str) -> str:
    """Return ``slack``, ``discord`` or ``generic`` for a webhook URL."""
    parsed = urlparse(url)
    host = str(parsed.hostname or "").strip().lower()
    path = str(parsed.path or "").strip().lower()
    if host.endswith("slack.com") and "/services/" in path:
        return "slack"
    if (host.endswith("discord.com") or host.endswith("discordapp.com")) and "/api/webhooks/" in path:
        return "discord"
    return "generic"


def webhook_url_valid(url: str) -> bool:
    parsed = urlparse(url)
    return bool(str(parsed.netloc or "").strip()) and str(parsed.scheme or "").lower() in {"http", "https"}


def post_json(url: str, payload: dict[str, Any], timeout_seconds: int) -> str:
    """POST *payload* as JSON; return an empty string on success or an error description."""
    request_obj = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json", "User-Agent": "drydock/1.0"},
    )
    try:
        with urlopen(request_obj, timeout=timeout_seconds) as response:
            response.read()
    except HTTPError as exc:
        detail = ""
        with suppress(Exception):
            detail = exc.read().decode("utf-8", errors="replace").strip()
        if detail:
            detail = re.sub(r"\s+", " ", detail)[:280]
            return f"HTTP {exc.code}: {detail}"
        return f"HTTP {exc.code}"
    except URLError as exc:
        reason = str(getattr(exc, "reason", exc) or "").strip()
        return f"network error: {reason or exc}"
    except (OSError, ValueError) as exc:
        return f"request failed: {exc}"
    return ""


class Notifier:
    """Fan a message out to every configured webhook.

    Slack webhooks receive ``{"text": ...}``, Discord webhooks
    ``{"content": ...}`` and anything else the full structured payload.
    """

    def __init__(self, config: NotifyConfig | None = None) -> None:
        self.config = config or NotifyConfig()

    @property
    def enabled(self) -> bool:
        return any(str(url or "").strip() for url in self.config.webhooks)

    def send(self, event: str, message: str, **fields: Any) -> int:
        """Deliver *message* for *event*; return the number of successful deliveries."""
        urls = [str(url or "").strip() for url in self.config.webhooks if str(url or "").strip()]
        if not urls:
            return 0
        timeout = max(2, min(60, int(self.config.timeout_seconds or 10)))
        payload = {"event": event, "message": message, **fields}
        delivered = 0
        for url in urls:
            if not webhook_url_valid(url):
                logger.warning("Skipping invalid webhook URL: %s", url)
                continue
            kind = webhook_kind(url)
            if kind == "slack":
                body: dict[str, Any] = {"text": f"*drydock* {message}"}
            elif kind == "discord":
                content = f"**drydock** {message}"
                if len(content) > _DISCORD_LIMIT:
                    content = content[: _DISCORD_LIMIT - 3].rstrip() + "..."
                body = {"content": content}
            else:
                body = payload
            error = post_json(url, body, timeout)
            if error:
                logger.warning("Webhook delivery failed (%s, %s): %s", kind, event, error)
                continue
            delivered += 1
        logger.debug("Notification %s delivered to %d/%d webhook(s)", event, delivered, len(urls))
        return delivered

    # -- convenience wrappers --

    def job_started(self, issue: int, title: str, template: str) -> int:
        return self.send(
            "job.started",
            f"Started #{issue}: {title} (template: {template})",
            issue=issue,
            title=title,
            template=template,
        )

    def job_succeeded(self, issue: int, title: str, duration_seconds: float) -> int:
        return self.send(
            "job.succeeded",
            f"Completed #{issue}: {title} in {duration_seconds / 60:.1f} min",
            issue=issue,
            title=title,
            duration_seconds=round(duration_seconds, 1),
        )

    def job_failed(self, issue: int, title: str, reason: str) -> int:
        return self.send(
            "job.failed",
            f"Failed #{issue}: {title} ({reason})",
            issue=issue,
            title=title,
            reason=reason,
        )

    def degradation(self, alerts: list[str]) -> int:
        return self.send("daemon.alert", "Degradation detected: " + "; ".join(alerts), alerts=alerts)

    def incident(self, incident_id: str, severity: str, root_cause: str) -> int:
        return self.send(
            "incident.created",
            f"Incident {incident_id} [{severity}] root cause: {root_cause}",
            incident_id=incident_id,
            severity=severity,
            root_cause=root_cause,
        )
