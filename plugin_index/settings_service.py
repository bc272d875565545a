from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
  from plugin_index.common import clamp_number, is_true, parse_csv
except ModuleNotFoundError:
  from common import clamp_number, is_true, parse_csv  # type: ignore

DEFAULT_LOGO_URL = "https://avatars.githubusercontent.com/u/92610726?s=88&v=4"

DEFAULT_SERVICE_CONFIG: dict[str, Any] = {
  "topic": "serenityjs-plugin",
  "githubApiUrl": "https://api.github.com",
  "githubRawUrl": "https://raw.githubusercontent.com",
  "discordApiUrl": "https://discord.com/api/v10",
  "discoveryIntervalSeconds": 5 * 60,
  "cacheClearIntervalSeconds": 60 * 60,
  "httpTimeoutSeconds": 20,
  "searchMaxPages": 5,
  "galleryMaxImages": 10,
  "defaultLogoUrl": DEFAULT_LOGO_URL,
  "manifestPath": "package.json",
  "host": "127.0.0.1",
  "port": 4000,
}

ENV_PREFIX = "PLUGIN_INDEX_"


@dataclass
class ServiceConfig:
  data_dir: Path
  topic: str = DEFAULT_SERVICE_CONFIG["topic"]
  github_token: str = ""
  github_api_url: str = DEFAULT_SERVICE_CONFIG["githubApiUrl"]
  github_raw_url: str = DEFAULT_SERVICE_CONFIG["githubRawUrl"]
  discovery_interval_seconds: float = DEFAULT_SERVICE_CONFIG["discoveryIntervalSeconds"]
  cache_clear_interval_seconds: float = DEFAULT_SERVICE_CONFIG["cacheClearIntervalSeconds"]
  http_timeout_seconds: float = DEFAULT_SERVICE_CONFIG["httpTimeoutSeconds"]
  search_max_pages: int = DEFAULT_SERVICE_CONFIG["searchMaxPages"]
  gallery_max_images: int = DEFAULT_SERVICE_CONFIG["galleryMaxImages"]
  default_logo_url: str = DEFAULT_LOGO_URL
  manifest_path: str = DEFAULT_SERVICE_CONFIG["manifestPath"]
  discord_api_url: str = DEFAULT_SERVICE_CONFIG["discordApiUrl"]
  discord_token: str = ""
  discord_channel_id: str = ""
  discord_public_key: str = ""
  admin_token: str = ""
  scheduler_enabled: bool = True
  cors_origins: list[str] = field(default_factory=lambda: ["*"])
  host: str = DEFAULT_SERVICE_CONFIG["host"]
  port: int = DEFAULT_SERVICE_CONFIG["port"]

  @property
  def db_path(self) -> Path:
    return self.data_dir / "plugins.db"

  @property
  def discord_enabled(self) -> bool:
    return bool(self.discord_token and self.discord_channel_id)


def resolve_data_dir(env: Mapping[str, str]) -> Path:
  env_path = str(env.get(f"{ENV_PREFIX}DATA_DIR", "") or "").strip()
  if env_path:
    return Path(env_path).expanduser().resolve()
  return (Path(__file__).resolve().parent / ".runtime").resolve()


def load_service_config(env: Mapping[str, str] | None = None) -> ServiceConfig:
  source = os.environ if env is None else env

  def _read(key: str, fallback: Any = "") -> str:
    return str(source.get(key, fallback) or "").strip()

  topic = _read(f"{ENV_PREFIX}TOPIC") or DEFAULT_SERVICE_CONFIG["topic"]
  manifest_path = _read(f"{ENV_PREFIX}MANIFEST_PATH") or DEFAULT_SERVICE_CONFIG["manifestPath"]
  default_logo_url = _read(f"{ENV_PREFIX}DEFAULT_LOGO_URL") or DEFAULT_LOGO_URL
  scheduler_raw = _read(f"{ENV_PREFIX}ENABLE_SCHEDULER", "1")
  cors_origins = parse_csv(_read(f"{ENV_PREFIX}CORS_ALLOW_ORIGINS")) or ["*"]

  return ServiceConfig(
    data_dir=resolve_data_dir(source),
    topic=topic,
    github_token=_read("GITHUB_TOKEN"),
    github_api_url=(_read(f"{ENV_PREFIX}GITHUB_API_URL") or DEFAULT_SERVICE_CONFIG["githubApiUrl"]).rstrip("/"),
    github_raw_url=(_read(f"{ENV_PREFIX}GITHUB_RAW_URL") or DEFAULT_SERVICE_CONFIG["githubRawUrl"]).rstrip("/"),
    discovery_interval_seconds=clamp_number(
      _read(f"{ENV_PREFIX}DISCOVERY_INTERVAL_SECONDS"),
      fallback=DEFAULT_SERVICE_CONFIG["discoveryIntervalSeconds"],
      minimum=10,
      maximum=86_400,
    ),
    cache_clear_interval_seconds=clamp_number(
      _read(f"{ENV_PREFIX}CACHE_CLEAR_INTERVAL_SECONDS"),
      fallback=DEFAULT_SERVICE_CONFIG["cacheClearIntervalSeconds"],
      minimum=60,
      maximum=604_800,
    ),
    http_timeout_seconds=clamp_number(
      _read(f"{ENV_PREFIX}HTTP_TIMEOUT_SECONDS"),
      fallback=DEFAULT_SERVICE_CONFIG["httpTimeoutSeconds"],
      minimum=1,
      maximum=300,
    ),
    search_max_pages=int(clamp_number(
      _read(f"{ENV_PREFIX}SEARCH_MAX_PAGES"),
      fallback=DEFAULT_SERVICE_CONFIG["searchMaxPages"],
      minimum=1,
      maximum=10,
    )),
    default_logo_url=default_logo_url,
    manifest_path=manifest_path.lstrip("/"),
    discord_api_url=(_read(f"{ENV_PREFIX}DISCORD_API_URL") or DEFAULT_SERVICE_CONFIG["discordApiUrl"]).rstrip("/"),
    discord_token=_read("DISCORD_TOKEN"),
    discord_channel_id=_read("DISCORD_APPROVAL_CHANNEL_ID"),
    discord_public_key=_read("DISCORD_PUBLIC_KEY"),
    admin_token=_read(f"{ENV_PREFIX}ADMIN_TOKEN"),
    scheduler_enabled=is_true(scheduler_raw),
    cors_origins=cors_origins,
    host=_read(f"{ENV_PREFIX}HOST") or DEFAULT_SERVICE_CONFIG["host"],
    port=int(clamp_number(
      _read(f"{ENV_PREFIX}PORT"),
      fallback=DEFAULT_SERVICE_CONFIG["port"],
      minimum=1,
      maximum=65_535,
    )),
  )
