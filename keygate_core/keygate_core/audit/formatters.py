"""Webhook payload construction and per-destination shaping.

The generic payload is a plain dict.  Chat-style receivers expect their
own body layout, so a small registry maps a destination host substring to
a pure transform.  Unrecognised hosts receive the generic body unchanged.
"""

from __future__ import annotations

import json
import urllib.parse
from collections.abc import Callable
from datetime import datetime
from typing import Any

Payload = dict[str, Any]
Formatter = Callable[[Payload], Payload]

_DISCORD_SUCCESS_COLOR = 0x00FF00
_DISCORD_FAILURE_COLOR = 0xFF0000

_DISCORD_EMOJI = {
    "user_login": "\U0001f510",
    "login_failed": "❌",
    "user_register": "\U0001f464",
    "register_failed": "❌",
    "user_logout": "\U0001f44b",
    "session_expired": "⏰",
    "hwid_mismatch": "\U0001f512",
    "version_mismatch": "\U0001f504",
    "account_disabled": "\U0001f6ab",
    "account_expired": "\U0001f4c5",
}

_SLACK_EMOJI = {
    "user_login": ":lock:",
    "login_failed": ":x:",
    "user_register": ":bust_in_silhouette:",
    "register_failed": ":x:",
    "user_logout": ":wave:",
    "session_expired": ":alarm_clock:",
    "hwid_mismatch": ":locked:",
    "version_mismatch": ":arrows_counterclockwise:",
    "account_disabled": ":no_entry_sign:",
    "account_expired": ":calendar:",
}


def build_payload(
    *,
    event: str,
    timestamp: datetime,
    application_id: str,
    success: bool,
    user_data: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    error_message: str | None = None,
) -> Payload:
    """Build the generic webhook body; optional keys are omitted when empty."""
    payload: Payload = {
        "event": event,
        "timestamp": timestamp.isoformat(),
        "application_id": application_id,
        "success": success,
    }
    if user_data:
        payload["user_data"] = user_data
    if metadata:
        payload["metadata"] = metadata
    if error_message:
        payload["error_message"] = error_message
    return payload


def _title(event: str, emoji: str) -> str:
    return f"{emoji} {event.replace('_', ' ').upper()}"


def format_generic(payload: Payload) -> Payload:
    return payload


def format_discord(payload: Payload) -> Payload:
    """Shape the payload as a Discord embed."""
    user = payload.get("user_data") or {}
    fields: list[dict[str, Any]] = []
    if user:
        fields.append(
            {
                "name": "User Info",
                "value": (
                    f"**Username:** {user.get('username') or 'N/A'}\n"
                    f"**Email:** {user.get('email') or 'N/A'}\n"
                    f"**IP:** {user.get('ip_address') or 'N/A'}"
                ),
                "inline": True,
            }
        )
    if user.get("hwid"):
        fields.append({"name": "Hardware ID", "value": f"`{user['hwid']}`", "inline": True})
    if payload.get("error_message"):
        fields.append({"name": "Error", "value": payload["error_message"], "inline": False})
    if payload.get("metadata"):
        fields.append(
            {
                "name": "Additional Info",
                "value": json.dumps(payload["metadata"], indent=2, default=str),
                "inline": False,
            }
        )

    success = bool(payload.get("success"))
    return {
        "embeds": [
            {
                "title": _title(payload["event"], _DISCORD_EMOJI.get(payload["event"], "\U0001f4cb")),
                "description": f"Application ID: {payload['application_id']}",
                "color": _DISCORD_SUCCESS_COLOR if success else _DISCORD_FAILURE_COLOR,
                "fields": fields,
                "timestamp": payload["timestamp"],
                "footer": {"text": f"Keygate • {'Success' if success else 'Failed'}"},
            }
        ]
    }


def format_slack(payload: Payload) -> Payload:
    """Shape the payload as a Slack attachment."""
    user = payload.get("user_data") or {}
    fields: list[dict[str, Any]] = [
        {"title": "Application ID", "value": str(payload["application_id"]), "short": True},
    ]
    if user.get("username"):
        fields.append({"title": "Username", "value": user["username"], "short": True})
    if user.get("email"):
        fields.append({"title": "Email", "value": user["email"], "short": True})
    if user.get("ip_address"):
        fields.append({"title": "IP Address", "value": user["ip_address"], "short": True})
    if payload.get("error_message"):
        fields.append({"title": "Error", "value": payload["error_message"], "short": False})

    return {
        "attachments": [
            {
                "color": "good" if payload.get("success") else "danger",
                "title": _title(payload["event"], _SLACK_EMOJI.get(payload["event"], ":clipboard:")),
                "fields": fields,
                "ts": int(datetime.fromisoformat(payload["timestamp"]).timestamp()),
                "footer": "Keygate",
            }
        ]
    }


# Host substring -> formatter.  Checked in order; first match wins.
FORMATTERS: tuple[tuple[str, Formatter], ...] = (
    ("discord.com", format_discord),
    ("discordapp.com", format_discord),
    ("slack.com", format_slack),
)


def formatter_for(url: str) -> Formatter:
    """Pick the formatter for a destination URL by its host."""
    host = (urllib.parse.urlparse(url).hostname or "").lower()
    for marker, formatter in FORMATTERS:
        if marker in host:
            return formatter
    return format_generic


def render_body(url: str, payload: Payload) -> str:
    """Serialise the payload for *url*; this exact string is what gets signed."""
    return json.dumps(formatter_for(url)(payload), separators=(",", ":"), default=str)
