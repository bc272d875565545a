from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

try:
  from plugin_index.approval_channel import DiscordApprovalChannel, LoggingApprovalChannel
  from plugin_index.github_client import GitHubClient
  from plugin_index.plugin_cache import PluginCache
  from plugin_index.plugin_enricher import PluginEnricher
  from plugin_index.plugin_pipeline import PluginPipeline
  from plugin_index.routes_plugins import register_plugin_routes
  from plugin_index.settings_service import ServiceConfig, load_service_config
  from plugin_index.storage import PluginStorage
except ModuleNotFoundError:
  from approval_channel import DiscordApprovalChannel, LoggingApprovalChannel  # type: ignore
  from github_client import GitHubClient  # type: ignore
  from plugin_cache import PluginCache  # type: ignore
  from plugin_enricher import PluginEnricher  # type: ignore
  from plugin_pipeline import PluginPipeline  # type: ignore
  from routes_plugins import register_plugin_routes  # type: ignore
  from settings_service import ServiceConfig, load_service_config  # type: ignore
  from storage import PluginStorage  # type: ignore


LOGGER = logging.getLogger("plugin_index.main")

_SENSITIVE_LOG_PATTERN = re.compile(
  r"(?i)(authorization\s*[:=]\s*['\"]?(?:bearer|bot)\s+)[a-z0-9._~+/=-]+",
)


class _SensitiveLogFilter(logging.Filter):
  def filter(self, record: logging.LogRecord) -> bool:
    try:
      message = str(record.getMessage() or "")
      redacted = _SENSITIVE_LOG_PATTERN.sub(r"\1[REDACTED]", message)
      if redacted != message:
        record.msg = redacted
        record.args = ()
    except Exception:
      return True
    return True


def _install_sensitive_log_filter() -> None:
  filter_instance = _SensitiveLogFilter()
  for logger_name in (
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "httpx",
    "plugin_index.main",
    "plugin_index.github",
    "plugin_index.approval",
    "plugin_index.routes",
  ):
    target_logger = logging.getLogger(logger_name)
    if any(isinstance(item, _SensitiveLogFilter) for item in target_logger.filters):
      continue
    target_logger.addFilter(filter_instance)


def make_app(
  config: ServiceConfig | None = None,
  *,
  github_http_client: httpx.AsyncClient | None = None,
  discord_http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
  _install_sensitive_log_filter()
  config = config or load_service_config()
  config.data_dir.mkdir(parents=True, exist_ok=True)

  storage = PluginStorage(config.db_path)
  cache = PluginCache()
  github = GitHubClient(
    token=config.github_token,
    api_url=config.github_api_url,
    raw_url=config.github_raw_url,
    timeout_seconds=config.http_timeout_seconds,
    http_client=github_http_client,
  )
  enricher = PluginEnricher(
    github=github,
    default_logo_url=config.default_logo_url,
    manifest_path=config.manifest_path,
    gallery_max_images=config.gallery_max_images,
  )
  if config.discord_enabled:
    approval_channel: Any = DiscordApprovalChannel(
      token=config.discord_token,
      channel_id=config.discord_channel_id,
      api_url=config.discord_api_url,
      timeout_seconds=config.http_timeout_seconds,
      http_client=discord_http_client,
    )
  else:
    LOGGER.warning("Discord approval channel not configured; pending plugins will only be logged")
    approval_channel = LoggingApprovalChannel()

  pipeline = PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=enricher,
    approval_channel=approval_channel,
    topic=config.topic,
    search_max_pages=config.search_max_pages,
    discovery_interval_seconds=config.discovery_interval_seconds,
    cache_clear_interval_seconds=config.cache_clear_interval_seconds,
  )

  @asynccontextmanager
  async def lifespan(_app: FastAPI):
    if config.scheduler_enabled:
      pipeline.start()
    try:
      yield
    finally:
      # In-flight fetches go first, the store handle last.
      await pipeline.stop()
      await approval_channel.close()
      await github.close()
      storage.close()

  app = FastAPI(title="Plugin Index", version="0.1.0", lifespan=lifespan)
  app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
  )
  app.state.config = config
  app.state.storage = storage
  app.state.cache = cache
  app.state.pipeline = pipeline

  register_plugin_routes(
    app,
    pipeline=pipeline,
    storage=storage,
    admin_token=config.admin_token,
    discord_public_key=config.discord_public_key,
  )
  LOGGER.info("Plugin index ready: topic '%s', database %s", config.topic, config.db_path)
  return app


if __name__ == "__main__":
  import uvicorn

  logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
  service_config = load_service_config()
  uvicorn.run(
    "plugin_index.main:make_app",
    factory=True,
    host=service_config.host,
    port=service_config.port,
    reload=False,
  )
