from __future__ import annotations

import asyncio
import logging
from typing import Any

try:
  from plugin_index.errors import PlatformUnavailableError
  from plugin_index.schemas import (
    Contributor,
    EnrichedPlugin,
    Release,
    RepositorySummary,
    StoredPluginRecord,
  )
except ModuleNotFoundError:
  from errors import PlatformUnavailableError  # type: ignore
  from schemas import (  # type: ignore
    Contributor,
    EnrichedPlugin,
    Release,
    RepositorySummary,
    StoredPluginRecord,
  )

LOGGER = logging.getLogger("plugin_index.enricher")

LOGO_PATH = "public/logo.png"
BANNER_PATH = "public/banner.png"
GALLERY_PATH_TEMPLATE = "public/gallery/image{index}.png"
README_PATH = "README.md"


class PluginEnricher:
  """Builds an EnrichedPlugin snapshot from a stored record and its repository.

  Each sub-fetch degrades to a neutral value on its own, so one missing asset
  never blocks the rest. Nothing is cached here.
  """

  def __init__(
    self,
    *,
    github: Any,
    default_logo_url: str,
    manifest_path: str = "package.json",
    gallery_max_images: int = 10,
  ) -> None:
    self._github = github
    self._default_logo_url = str(default_logo_url or "")
    self._manifest_path = str(manifest_path or "package.json")
    self._gallery_max_images = max(0, int(gallery_max_images))

  def _raw_url(self, stored: StoredPluginRecord, path: str) -> str:
    return self._github.raw_file_url(stored.owner.username, stored.name, stored.branch, path)

  async def list_releases(self, stored: StoredPluginRecord) -> list[Release]:
    try:
      return await self._github.list_releases(stored.owner.username, stored.name)
    except PlatformUnavailableError as exc:
      LOGGER.debug("Releases unavailable for %s: %s", stored.id, exc)
      return []

  async def list_contributors(self, stored: StoredPluginRecord) -> list[Contributor]:
    try:
      return await self._github.list_contributors(stored.owner.username, stored.name)
    except PlatformUnavailableError as exc:
      LOGGER.debug("Contributors unavailable for %s: %s", stored.id, exc)
      return []

  async def _probe(self, url: str) -> bool:
    try:
      return bool(await self._github.exists(url))
    except PlatformUnavailableError:
      return False

  async def resolve_logo_url(self, stored: StoredPluginRecord) -> str:
    url = self._raw_url(stored, LOGO_PATH)
    return url if await self._probe(url) else self._default_logo_url

  async def resolve_banner_url(self, stored: StoredPluginRecord) -> str | None:
    url = self._raw_url(stored, BANNER_PATH)
    return url if await self._probe(url) else None

  async def resolve_gallery(self, stored: StoredPluginRecord) -> list[str]:
    # Storage is not browsable: probe image1..N in order, stop at first miss.
    images: list[str] = []
    for index in range(1, self._gallery_max_images + 1):
      url = self._raw_url(stored, GALLERY_PATH_TEMPLATE.format(index=index))
      if not await self._probe(url):
        break
      images.append(url)
    return images

  async def fetch_readme(self, stored: StoredPluginRecord) -> str | None:
    try:
      return await self._github.fetch_text(self._raw_url(stored, README_PATH))
    except PlatformUnavailableError:
      return None

  async def fetch_manifest(self, stored: StoredPluginRecord) -> dict[str, Any] | None:
    try:
      payload = await self._github.fetch_json(self._raw_url(stored, self._manifest_path))
    except PlatformUnavailableError as exc:
      LOGGER.warning("Failed to fetch %s for plugin %s: %s", self._manifest_path, stored.id, exc)
      return None
    if not isinstance(payload, dict):
      LOGGER.warning("Manifest %s of plugin %s is not an object", self._manifest_path, stored.id)
      return None
    return payload

  @staticmethod
  def _manifest_version(manifest: dict[str, Any] | None) -> str | None:
    if not manifest:
      return None
    version = str(manifest.get("version") or "").strip()
    return version or None

  @staticmethod
  def _manifest_keywords(manifest: dict[str, Any] | None) -> list[str] | None:
    if not manifest:
      return None
    raw_keywords = manifest.get("keywords")
    if not isinstance(raw_keywords, list):
      return None
    return [str(keyword).strip() for keyword in raw_keywords if str(keyword or "").strip()]

  async def enrich(self, stored: StoredPluginRecord, repository: RepositorySummary) -> EnrichedPlugin:
    # Raw file lookups follow the live default branch, not the stored snapshot.
    target = stored.model_copy(update={"branch": repository.default_branch or stored.branch})

    logo, banner, releases, contributors, readme, manifest = await asyncio.gather(
      self.resolve_logo_url(target),
      self.resolve_banner_url(target),
      self.list_releases(target),
      self.list_contributors(target),
      self.fetch_readme(target),
      self.fetch_manifest(target),
    )
    gallery = await self.resolve_gallery(target)

    return EnrichedPlugin(
      id=target.id,
      name=target.name,
      owner=target.owner,
      url=target.url,
      branch=target.branch,
      approved=target.approved,
      description=repository.description,
      stars=repository.stargazers_count,
      published=repository.created_at,
      updated=repository.updated_at,
      logo=logo,
      banner=banner,
      releases=releases,
      downloads=sum(release.download_count for release in releases),
      contributors=contributors,
      gallery=gallery,
      readme=readme,
      version=self._manifest_version(manifest),
      keywords=self._manifest_keywords(manifest),
    )
