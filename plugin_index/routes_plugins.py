from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

try:
  from plugin_index.approval_channel import (
    INTERACTION_TYPE_MESSAGE_COMPONENT,
    INTERACTION_TYPE_PING,
    RESPONSE_TYPE_PONG,
    decision_acknowledgement,
    error_acknowledgement,
    verify_interaction_signature,
  )
  from plugin_index.common import utc_now_iso
  from plugin_index.errors import InvalidDecisionError, InvalidSignatureError
  from plugin_index.schemas import ApprovalDecision
except ModuleNotFoundError:
  from approval_channel import (  # type: ignore
    INTERACTION_TYPE_MESSAGE_COMPONENT,
    INTERACTION_TYPE_PING,
    RESPONSE_TYPE_PONG,
    decision_acknowledgement,
    error_acknowledgement,
    verify_interaction_signature,
  )
  from common import utc_now_iso  # type: ignore
  from errors import InvalidDecisionError, InvalidSignatureError  # type: ignore
  from schemas import ApprovalDecision  # type: ignore

LOGGER = logging.getLogger("plugin_index.routes")


def _extract_bearer_token(request: Request) -> str:
  header = str(request.headers.get("authorization") or "").strip()
  if not header:
    return ""
  prefix = "bearer "
  if header.lower().startswith(prefix):
    return header[len(prefix):].strip()
  return ""


def _parse_plugin_id(raw_value: Any) -> int | None:
  try:
    value = int(str(raw_value or "").strip())
  except ValueError:
    return None
  return value if value > 0 else None


def register_plugin_routes(
  app: FastAPI,
  *,
  pipeline: Any,
  storage: Any,
  admin_token: str = "",
  discord_public_key: str = "",
) -> None:
  def _require_admin(request: Request) -> None:
    if not admin_token:
      raise HTTPException(status_code=503, detail="Admin API is not configured.")
    token = _extract_bearer_token(request)
    if not token or not hmac.compare_digest(token, admin_token):
      raise HTTPException(status_code=401, detail="Authentication required.")

  @app.get("/health")
  def health() -> dict[str, Any]:
    return {
      "status": "ok",
      "service": "plugin-index",
      "time": utc_now_iso(),
      "registry": storage.count_records(),
      "pipeline": pipeline.snapshot(),
    }

  @app.get("/plugins")
  def list_plugins() -> list[dict[str, Any]]:
    return [plugin.model_dump(mode="json") for plugin in pipeline.get_all_from_cache()]

  @app.get("/plugin/{plugin_id}")
  def get_plugin(plugin_id: str) -> Any:
    safe_id = _parse_plugin_id(plugin_id)
    plugin = pipeline.get_from_cache(safe_id) if safe_id is not None else None
    if plugin is None:
      # Read clients expect a top-level "message" key.
      return JSONResponse(
        status_code=404,
        content={"message": f"Plugin with ID {plugin_id} not found"},
      )
    return plugin.model_dump(mode="json")

  @app.post("/discord/interactions")
  async def discord_interactions(request: Request) -> dict[str, Any]:
    body = await request.body()
    try:
      verify_interaction_signature(
        discord_public_key,
        signature_hex=str(request.headers.get("x-signature-ed25519") or ""),
        timestamp=str(request.headers.get("x-signature-timestamp") or ""),
        body=body,
      )
    except InvalidSignatureError as exc:
      raise HTTPException(status_code=401, detail=str(exc)) from exc

    try:
      payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
      raise HTTPException(status_code=400, detail="Interaction payload is not valid JSON.") from exc
    if not isinstance(payload, dict):
      raise HTTPException(status_code=400, detail="Interaction payload must be an object.")

    interaction_type = payload.get("type")
    if interaction_type == INTERACTION_TYPE_PING:
      return {"type": RESPONSE_TYPE_PONG}
    if interaction_type != INTERACTION_TYPE_MESSAGE_COMPONENT:
      raise HTTPException(status_code=400, detail="Unsupported interaction type.")

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    try:
      decision = ApprovalDecision.from_custom_id(data.get("custom_id"))
    except InvalidDecisionError as exc:
      LOGGER.warning("Ignoring interaction with bad custom id: %s", exc)
      return error_acknowledgement("Unknown action.")

    known = pipeline.apply_decision(decision)
    if known and decision.approved:
      pipeline.spawn(pipeline.complete_decision(decision), name=f"plugin-approval-{decision.plugin_id}")
    return decision_acknowledgement(decision, known=known)

  async def _admin_decision(request: Request, plugin_id: str, *, approve: bool, wait: bool) -> dict[str, Any]:
    _require_admin(request)
    safe_id = _parse_plugin_id(plugin_id)
    if safe_id is None:
      raise HTTPException(status_code=404, detail=f"Plugin with ID {plugin_id} not found")
    decision = ApprovalDecision(action="approve" if approve else "reject", plugin_id=safe_id)
    if not pipeline.apply_decision(decision):
      raise HTTPException(status_code=404, detail=f"Plugin with ID {plugin_id} not found")

    cached = False
    if approve and wait:
      await pipeline.complete_decision(decision)
      cached = pipeline.get_from_cache(safe_id) is not None
    elif approve:
      pipeline.spawn(pipeline.complete_decision(decision), name=f"plugin-approval-{safe_id}")
    return {
      "plugin_id": safe_id,
      "approved": approve,
      "cached": cached,
    }

  @app.post("/admin/plugins/{plugin_id}/approve")
  async def approve_plugin(request: Request, plugin_id: str, wait: bool = False) -> dict[str, Any]:
    return await _admin_decision(request, plugin_id, approve=True, wait=wait)

  @app.post("/admin/plugins/{plugin_id}/reject")
  async def reject_plugin(request: Request, plugin_id: str) -> dict[str, Any]:
    return await _admin_decision(request, plugin_id, approve=False, wait=False)

  @app.get("/admin/plugins")
  def list_registered_plugins(request: Request, approved: bool | None = None) -> dict[str, Any]:
    _require_admin(request)
    records = storage.list_records(approved=approved)
    return {
      "plugins": [record.model_dump(mode="json") for record in records],
      "summary": storage.count_records(),
    }

  @app.post("/admin/discovery/run")
  async def run_discovery(request: Request) -> dict[str, Any]:
    _require_admin(request)
    report = await pipeline.run_cycle()
    return report.as_dict()

  @app.post("/admin/cache/clear")
  def clear_cache(request: Request) -> dict[str, Any]:
    _require_admin(request)
    return {"dropped": pipeline.clear_cache()}
