from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

try:
  from plugin_index.errors import InvalidSignatureError, NotificationError
  from plugin_index.schemas import DECISION_APPROVE, DECISION_REJECT, ApprovalDecision, StoredPluginRecord
except ModuleNotFoundError:
  from errors import InvalidSignatureError, NotificationError  # type: ignore
  from schemas import DECISION_APPROVE, DECISION_REJECT, ApprovalDecision, StoredPluginRecord  # type: ignore

LOGGER = logging.getLogger("plugin_index.approval")

INTERACTION_TYPE_PING = 1
INTERACTION_TYPE_MESSAGE_COMPONENT = 3

RESPONSE_TYPE_PONG = 1
RESPONSE_TYPE_CHANNEL_MESSAGE = 4
RESPONSE_TYPE_UPDATE_MESSAGE = 7

MESSAGE_FLAG_EPHEMERAL = 1 << 6

COMPONENT_ACTION_ROW = 1
COMPONENT_BUTTON = 2
BUTTON_STYLE_SUCCESS = 3
BUTTON_STYLE_DANGER = 4

EMBED_COLOR = 0x8560E9

INTERACTION_MAX_AGE_SECONDS = 300

APPROVAL_INSTRUCTIONS = (
  "**Verify that the plugin meets the following criteria:**\n\n"
  "- The plugin is relevant to the ecosystem.\n"
  "- The plugin is well-maintained and has at least one release on GitHub.\n"
  "- The plugin has a proper README file and documentation.\n"
  "- The plugin does not contain any malicious code or vulnerabilities.\n"
  "- The plugin follows best practices for coding and design.\n\n"
  "Please review the plugin and **approve** or **reject** it by clicking one of the buttons below."
)


def build_approval_message(record: StoredPluginRecord, *, logo_url: str = "") -> dict[str, Any]:
  approve = ApprovalDecision(action=DECISION_APPROVE, plugin_id=record.id)
  reject = ApprovalDecision(action=DECISION_REJECT, plugin_id=record.id)
  embed: dict[str, Any] = {
    "title": "New Plugin Approval Request",
    "description": (
      "A new plugin has been submitted for approval:\n\n"
      f"**Name:** {record.name}\n"
      f"**Owner:** {record.owner.username}\n"
      f"**URL:** {record.url}\n\n"
      f"{APPROVAL_INSTRUCTIONS}"
    ),
    "color": EMBED_COLOR,
  }
  if logo_url:
    embed["thumbnail"] = {"url": logo_url}
  return {
    "embeds": [embed],
    "components": [
      {
        "type": COMPONENT_ACTION_ROW,
        "components": [
          {
            "type": COMPONENT_BUTTON,
            "custom_id": approve.custom_id,
            "label": "Approve",
            "style": BUTTON_STYLE_SUCCESS,
          },
          {
            "type": COMPONENT_BUTTON,
            "custom_id": reject.custom_id,
            "label": "Reject",
            "style": BUTTON_STYLE_DANGER,
          },
        ],
      }
    ],
  }


class DiscordApprovalChannel:
  """Posts approval prompts to a Discord channel through the bot REST API."""

  def __init__(
    self,
    *,
    token: str,
    channel_id: str,
    api_url: str = "https://discord.com/api/v10",
    timeout_seconds: float = 20.0,
    http_client: httpx.AsyncClient | None = None,
  ) -> None:
    self._token = str(token or "").strip()
    self._channel_id = str(channel_id or "").strip()
    self._api_url = str(api_url or "").rstrip("/")
    self._owns_client = http_client is None
    self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

  async def send_approval_request(self, record: StoredPluginRecord, *, logo_url: str = "") -> None:
    if not self._token or not self._channel_id:
      raise NotificationError("Discord approval channel is not configured")
    url = f"{self._api_url}/channels/{self._channel_id}/messages"
    try:
      response = await self._client.post(
        url,
        json=build_approval_message(record, logo_url=logo_url),
        headers={"Authorization": f"Bot {self._token}"},
      )
    except httpx.HTTPError as exc:
      raise NotificationError(f"Network error while posting to channel {self._channel_id}: {exc}") from exc
    if response.status_code >= 400:
      raise NotificationError(
        f"Discord rejected approval request for plugin {record.id}: HTTP {response.status_code}"
      )

  async def close(self) -> None:
    if self._owns_client:
      await self._client.aclose()


class LoggingApprovalChannel:
  """Fallback channel when no bot is configured: pending plugins are only logged."""

  async def send_approval_request(self, record: StoredPluginRecord, *, logo_url: str = "") -> None:
    LOGGER.info(
      "Plugin %s (%s by %s) is pending approval; decide via /admin/plugins/%s/approve or /reject",
      record.id,
      record.name,
      record.owner.username,
      record.id,
    )

  async def close(self) -> None:
    return None


def verify_interaction_signature(
  public_key_hex: str,
  *,
  signature_hex: str,
  timestamp: str,
  body: bytes,
  max_age_seconds: float = INTERACTION_MAX_AGE_SECONDS,
  now: float | None = None,
) -> None:
  if not public_key_hex:
    raise InvalidSignatureError("Interaction public key is not configured")
  try:
    public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
    signature = bytes.fromhex(str(signature_hex or ""))
  except ValueError as exc:
    raise InvalidSignatureError("Malformed interaction key or signature") from exc
  try:
    public_key.verify(signature, str(timestamp or "").encode("utf-8") + body)
  except InvalidSignature as exc:
    raise InvalidSignatureError("Invalid interaction signature") from exc
  # A valid signature over an old timestamp is a replay.
  try:
    signed_at = int(str(timestamp or "").strip())
  except ValueError as exc:
    raise InvalidSignatureError("Malformed interaction timestamp") from exc
  current = time.time() if now is None else now
  if abs(current - signed_at) > max_age_seconds:
    raise InvalidSignatureError("Interaction timestamp is outside the accepted window")


def decision_acknowledgement(decision: ApprovalDecision, *, known: bool) -> dict[str, Any]:
  if not known:
    return {
      "type": RESPONSE_TYPE_CHANNEL_MESSAGE,
      "data": {
        "content": f"Plugin {decision.plugin_id} is not registered.",
        "flags": MESSAGE_FLAG_EPHEMERAL,
      },
    }
  return {
    "type": RESPONSE_TYPE_UPDATE_MESSAGE,
    "data": {
      "content": f"Plugin {'approved' if decision.approved else 'rejected'}.",
      "components": [],
    },
  }


def error_acknowledgement(message: str) -> dict[str, Any]:
  return {
    "type": RESPONSE_TYPE_CHANNEL_MESSAGE,
    "data": {"content": message, "flags": MESSAGE_FLAG_EPHEMERAL},
  }
