#!/usr/bin/env python3
from __future__ import annotations

import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
  sys.path.insert(0, str(ROOT_DIR))

from fastapi.testclient import TestClient

from plugin_index.main import make_app
from plugin_index.settings_service import ServiceConfig


OPTIONS_PATHS = [
  "/health",
  "/plugins",
  "/plugin/1",
  "/discord/interactions",
  "/admin/plugins",
  "/admin/plugins/1/approve",
  "/admin/plugins/1/reject",
  "/admin/discovery/run",
  "/admin/cache/clear",
]


def main() -> int:
  failed = False
  with tempfile.TemporaryDirectory(prefix="plugin-index-smoke-") as data_dir:
    # No timers, so the smoke run never reaches GitHub.
    config = ServiceConfig(
      data_dir=Path(data_dir),
      scheduler_enabled=False,
      admin_token="smoke-admin-token",
    )
    with TestClient(make_app(config)) as client:
      health = client.get("/health")
      if health.status_code != 200:
        print(f"[FAIL] GET /health -> {health.status_code}")
        failed = True
      else:
        print(f"[OK] GET /health -> 200 registry={health.json().get('registry')}")

      for path in OPTIONS_PATHS:
        response = client.options(path, headers={"Origin": "https://example.test", "Access-Control-Request-Method": "GET"})
        if response.status_code == 405:
          print(f"[FAIL] OPTIONS {path} -> 405")
          failed = True
          continue
        print(f"[OK] OPTIONS {path} -> {response.status_code}")

      plugins_payload = client.get("/plugins")
      if plugins_payload.status_code != 200 or plugins_payload.json() != []:
        print(f"[FAIL] GET /plugins -> {plugins_payload.status_code} {plugins_payload.text[:120]}")
        failed = True
      else:
        print("[OK] GET /plugins -> []")

      missing = client.get("/plugin/1")
      if missing.status_code != 404:
        print(f"[FAIL] GET /plugin/1 -> {missing.status_code}")
        failed = True
      else:
        print(f"[OK] GET /plugin/1 -> 404 {missing.json().get('message')!r}")

      anonymous_admin = client.post("/admin/discovery/run")
      if anonymous_admin.status_code != 401:
        print(f"[FAIL] POST /admin/discovery/run (no token) -> {anonymous_admin.status_code}")
        failed = True
      else:
        print("[OK] POST /admin/discovery/run (no token) -> 401")

      listing = client.get("/admin/plugins", headers={"Authorization": "Bearer smoke-admin-token"})
      if listing.status_code != 200:
        print(f"[FAIL] GET /admin/plugins -> {listing.status_code}")
        failed = True
      else:
        print(f"[OK] GET /admin/plugins -> {listing.json().get('summary')}")

      unsigned = client.post("/discord/interactions", json={"type": 1})
      if unsigned.status_code != 401:
        print(f"[FAIL] POST /discord/interactions (unsigned) -> {unsigned.status_code}")
        failed = True
      else:
        print("[OK] POST /discord/interactions (unsigned) -> 401")

  if failed:
    print("SMOKE RESULT: FAILED")
    return 1
  print("SMOKE RESULT: OK")
  return 0


if __name__ == "__main__":
  raise SystemExit(main())
