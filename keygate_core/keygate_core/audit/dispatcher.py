"""Webhook notification dispatcher for authentication events.

Looks up the application's active webhooks subscribed to an event, shapes
the body for each destination, and POSTs it with an optional
HMAC-SHA256 signature header.

INVARIANT: Webhook dispatch is fire-and-forget.  Delivery runs in a
background task, is attempted once per webhook with its own timeout, and
failures are logged but never retried and never propagate to the caller.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import ipaddress
import logging
import urllib.parse
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from keygate_core.audit.formatters import build_payload, render_body
from keygate_core.config import CoreSettings
from keygate_core.models.entities import Application, AppUser, Webhook
from keygate_core.models.outcomes import ClientContext
from keygate_core.state.protocols import Repository

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"

# Private / reserved IP ranges refused as webhook targets.
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


def validate_webhook_url(url: str, *, allow_private: bool = False) -> None:
    """Validate a webhook target URL.

    Only ``http`` and ``https`` are accepted.  Unless *allow_private* is
    set, ``localhost`` and literal private / loopback addresses are
    refused.  Hostnames are not resolved.

    Raises
    ------
    ValueError
        If the URL is unusable as a webhook target.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Unsupported webhook URL scheme: {parsed.scheme or '(none)'}")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError(f"Webhook URL has no hostname: {url}")
    if allow_private:
        return

    if hostname == "localhost" or hostname.endswith(".localhost"):
        raise ValueError(f"Webhook URL targets localhost: {url}")
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return
    for network in _BLOCKED_NETWORKS:
        if ip in network:
            raise ValueError(f"Webhook URL targets private/reserved IP {ip} (network {network}): {url}")


def _user_data(user: AppUser | None, username: str | None, context: ClientContext) -> dict[str, Any] | None:
    if user is None and not username:
        return None
    data = {
        "id": user.id if user is not None else None,
        "username": user.username if user is not None else username,
        "email": user.email if user is not None else None,
        "hwid": context.hwid or (user.hwid if user is not None else None),
        "ip_address": context.ip_address,
        "user_agent": context.user_agent,
        "location": context.location,
    }
    return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class PendingNotification:
    """A built payload and its subscribers, ready to be sent."""

    webhooks: list[Webhook]
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher:
    """Deliver activity events to tenant-configured webhooks.

    Parameters
    ----------
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client
        is created if not provided.
    settings:
        Core settings; supplies timeout, user agent and the private
        target switch.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        settings: CoreSettings | None = None,
    ) -> None:
        self._settings = settings or CoreSettings()
        self._client = http_client or httpx.AsyncClient(timeout=self._settings.webhook_timeout_seconds)
        self._owns_client = http_client is None
        self._tasks: set[asyncio.Task[None]] = set()

    async def notify(
        self,
        repository: Repository,
        application: Application,
        event: str,
        *,
        user: AppUser | None = None,
        username: str | None = None,
        context: ClientContext | None = None,
        success: bool = True,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Schedule delivery of *event* to every subscribed webhook.

        The webhook lookup happens inline (it shares the caller's
        repository); delivery happens in a background task.  Returns the
        number of webhooks scheduled.
        """
        prepared = await self.prepare(
            repository,
            application,
            event,
            user=user,
            username=username,
            context=context,
            success=success,
            error_message=error_message,
            metadata=metadata,
        )
        if prepared is None:
            return 0
        self.schedule(prepared)
        return len(prepared.webhooks)

    async def prepare(
        self,
        repository: Repository,
        application: Application,
        event: str,
        *,
        user: AppUser | None = None,
        username: str | None = None,
        context: ClientContext | None = None,
        success: bool = True,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PendingNotification | None:
        """Look up subscribers and build the payload without sending anything.

        Returns ``None`` when webhooks are disabled for the application,
        nobody subscribes to *event*, or the lookup fails.
        """
        if not application.settings.enable_webhooks:
            return None
        try:
            webhooks = await repository.webhooks.list_active_for_application_by_event(application.id, event)
        except Exception:
            logger.warning(
                "Webhook lookup failed app=%s event=%s",
                application.id,
                event,
                exc_info=True,
            )
            return None
        if not webhooks:
            return None

        payload = build_payload(
            event=event,
            timestamp=datetime.now(UTC),
            application_id=application.id,
            success=success,
            user_data=_user_data(user, username, context or ClientContext()),
            metadata=metadata,
            error_message=error_message,
        )
        return PendingNotification(webhooks=webhooks, event=event, payload=payload)

    def schedule(self, pending: PendingNotification) -> None:
        """Start background delivery of a prepared notification."""
        task = asyncio.create_task(self._fan_out(pending.webhooks, pending.event, pending.payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fan_out(self, webhooks: list[Webhook], event: str, payload: dict[str, Any]) -> None:
        results = await asyncio.gather(
            *(self._deliver(webhook, event, payload) for webhook in webhooks),
            return_exceptions=True,
        )
        delivered = sum(1 for result in results if result is True)
        logger.info(
            "Webhook fan-out finished event=%s delivered=%d/%d",
            event,
            delivered,
            len(webhooks),
        )

    async def _deliver(self, webhook: Webhook, event: str, payload: dict[str, Any]) -> bool:
        """Attempt a single delivery; never raises."""
        try:
            validate_webhook_url(webhook.url, allow_private=self._settings.webhook_allow_private_targets)
        except ValueError as exc:
            logger.warning("Skipping webhook delivery webhook=%s: %s", webhook.id, exc)
            return False

        body = render_body(webhook.url, payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.webhook_user_agent,
            EVENT_HEADER: event,
        }
        if webhook.secret:
            headers[SIGNATURE_HEADER] = f"sha256={self._sign(body, webhook.secret)}"

        try:
            response = await self._client.post(
                webhook.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._settings.webhook_timeout_seconds,
            )
        except httpx.TimeoutException:
            logger.warning("Webhook timeout: webhook=%s url=%s event=%s", webhook.id, webhook.url, event)
            return False
        except httpx.HTTPError as exc:
            logger.warning("Webhook error: webhook=%s url=%s error=%s", webhook.id, webhook.url, exc)
            return False

        if 200 <= response.status_code < 300:
            logger.info(
                "Webhook delivered: webhook=%s status=%d event=%s",
                webhook.id,
                response.status_code,
                event,
            )
            return True
        logger.warning(
            "Webhook delivery failed: webhook=%s url=%s status=%d event=%s",
            webhook.id,
            webhook.url,
            response.status_code,
            event,
        )
        return False

    async def drain(self) -> None:
        """Wait for every in-flight delivery task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Drain pending deliveries and close the HTTP client if we own it."""
        await self.drain()
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _sign(body: str, secret: str) -> str:
        """Compute HMAC-SHA256 signature of the request body."""
        return hmac.new(
            secret.encode("utf-8"),
            body.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def verify_signature(body: str, secret: str, signature: str) -> bool:
        """Verify a webhook signature header value (for use by receivers)."""
        if signature.startswith("sha256="):
            signature = signature[len("sha256=") :]
        expected = NotificationDispatcher._sign(body, secret)
        return hmac.compare_digest(expected, signature)


class NotificationBatch:
    """Collect notifications during a unit of work and send them afterwards.

    ``notify`` has the same signature as
    :meth:`NotificationDispatcher.notify`: the webhook lookup still runs
    inline against the caller's repository, but delivery waits until
    :meth:`flush`.  Callers flush after their transaction commits and
    :meth:`discard` when it rolls back, so receivers never hear about a
    write that did not persist.
    """

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher
        self._pending: list[PendingNotification] = []

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    def __len__(self) -> int:
        return len(self._pending)

    async def notify(self, repository: Repository, application: Application, event: str, **kwargs: Any) -> int:
        pending = await self._dispatcher.prepare(repository, application, event, **kwargs)
        if pending is None:
            return 0
        self._pending.append(pending)
        return len(pending.webhooks)

    def flush(self) -> int:
        """Schedule every collected notification; returns how many."""
        pending, self._pending = self._pending, []
        for item in pending:
            self._dispatcher.schedule(item)
        return len(pending)

    def discard(self) -> None:
        if self._pending:
            logger.info("Discarding %d notification(s) after rollback", len(self._pending))
        self._pending.clear()
