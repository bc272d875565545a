from __future__ import annotations

import datetime as dt
from typing import Any


def utc_now_iso() -> str:
  return dt.datetime.now(dt.timezone.utc).isoformat()


def is_true(value: Any) -> bool:
  return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def clamp_number(raw: Any, *, fallback: float, minimum: float, maximum: float) -> float:
  try:
    value = float(str(raw).strip())
  except (TypeError, ValueError):
    value = fallback
  return max(minimum, min(maximum, value))


def parse_csv(raw_value: Any) -> list[str]:
  result: list[str] = []
  for item in str(raw_value or "").split(","):
    safe = str(item or "").strip()
    if safe:
      result.append(safe)
  return result
