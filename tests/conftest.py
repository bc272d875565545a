from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from github_fakes import API_URL, DEFAULT_LOGO, RAW_URL, FakeGitHubPlatform, RecordingApprovalChannel
from plugin_index.github_client import GitHubClient
from plugin_index.plugin_cache import PluginCache
from plugin_index.plugin_enricher import PluginEnricher
from plugin_index.plugin_pipeline import PluginPipeline
from plugin_index.storage import PluginStorage


@pytest.fixture
def platform() -> FakeGitHubPlatform:
  return FakeGitHubPlatform()


@pytest.fixture
def storage(tmp_path: Path):
  registry = PluginStorage(tmp_path / "plugins.db")
  yield registry
  registry.close()


@pytest.fixture
def cache() -> PluginCache:
  return PluginCache()


@pytest.fixture
def approval_channel() -> RecordingApprovalChannel:
  return RecordingApprovalChannel()


@pytest_asyncio.fixture
async def github(platform: FakeGitHubPlatform):
  http_client = httpx.AsyncClient(transport=httpx.MockTransport(platform.handler))
  client = GitHubClient(api_url=API_URL, raw_url=RAW_URL, http_client=http_client)
  yield client
  await http_client.aclose()


@pytest.fixture
def enricher(github: GitHubClient) -> PluginEnricher:
  return PluginEnricher(github=github, default_logo_url=DEFAULT_LOGO)


@pytest.fixture
def pipeline(storage, cache, github, enricher, approval_channel) -> PluginPipeline:
  return PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=enricher,
    approval_channel=approval_channel,
    topic="test-plugin",
  )
