from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

try:
  from plugin_index.errors import PlatformUnavailableError
  from plugin_index.schemas import Contributor, Release, ReleaseAsset, RepositorySummary
except ModuleNotFoundError:
  from errors import PlatformUnavailableError  # type: ignore
  from schemas import Contributor, Release, ReleaseAsset, RepositorySummary  # type: ignore

LOGGER = logging.getLogger("plugin_index.github")

USER_AGENT = "PluginIndex/0.1 (+plugin-discovery)"
SEARCH_PAGE_SIZE = 100


class GitHubClient:
  """Async access to the GitHub REST API and raw file host.

  Every failure (transport error, non-2xx status, undecodable body) surfaces
  as PlatformUnavailableError; callers decide how to degrade.
  """

  def __init__(
    self,
    *,
    token: str = "",
    api_url: str = "https://api.github.com",
    raw_url: str = "https://raw.githubusercontent.com",
    timeout_seconds: float = 20.0,
    http_client: httpx.AsyncClient | None = None,
  ) -> None:
    self._token = str(token or "").strip()
    self._api_url = str(api_url or "").rstrip("/")
    self._raw_url = str(raw_url or "").rstrip("/")
    self._owns_client = http_client is None
    self._client = http_client or httpx.AsyncClient(
      timeout=httpx.Timeout(timeout_seconds),
      follow_redirects=True,
    )

  def _headers(self, *, accept: str = "application/vnd.github+json") -> dict[str, str]:
    headers = {
      "User-Agent": USER_AGENT,
      "Accept": accept,
    }
    if self._token:
      headers["Authorization"] = f"Bearer {self._token}"
    return headers

  async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
    try:
      response = await self._client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
      raise PlatformUnavailableError(f"Network error while requesting {url}: {exc}") from exc
    if response.status_code >= 400:
      raise PlatformUnavailableError(f"HTTP {response.status_code} while requesting {url}")
    return response

  async def _get_json(self, url: str, **kwargs: Any) -> Any:
    response = await self._request("GET", url, headers=self._headers(), **kwargs)
    try:
      return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
      raise PlatformUnavailableError(f"Payload from {url} is not valid JSON") from exc

  def raw_file_url(self, owner: str, name: str, branch: str, path: str) -> str:
    safe_path = "/".join(quote(part) for part in str(path or "").strip("/").split("/"))
    return f"{self._raw_url}/{quote(owner)}/{quote(name)}/{quote(branch or 'main')}/{safe_path}"

  async def search_repositories(self, query: str, *, max_pages: int = 1) -> list[RepositorySummary]:
    items: list[RepositorySummary] = []
    seen_ids: set[int] = set()
    for page in range(1, max(1, int(max_pages)) + 1):
      payload = await self._get_json(
        f"{self._api_url}/search/repositories",
        params={"q": query, "per_page": SEARCH_PAGE_SIZE, "page": page},
      )
      raw_items = payload.get("items") if isinstance(payload, dict) else None
      if not isinstance(raw_items, list):
        raise PlatformUnavailableError("Search payload has no items list")
      for raw_item in raw_items:
        try:
          repository = RepositorySummary.model_validate(raw_item)
        except ValidationError as exc:
          LOGGER.debug("Skipping malformed search item: %s", exc)
          continue
        if repository.id in seen_ids:
          continue
        seen_ids.add(repository.id)
        items.append(repository)
      total_count = int(payload.get("total_count") or 0)
      if len(raw_items) < SEARCH_PAGE_SIZE or page * SEARCH_PAGE_SIZE >= total_count:
        break
    return items

  async def get_repository(self, repository_id: int) -> RepositorySummary:
    payload = await self._get_json(f"{self._api_url}/repositories/{int(repository_id)}")
    try:
      return RepositorySummary.model_validate(payload)
    except ValidationError as exc:
      raise PlatformUnavailableError(f"Repository {repository_id} payload is malformed") from exc

  async def list_releases(self, owner: str, name: str) -> list[Release]:
    payload = await self._get_json(
      f"{self._api_url}/repos/{quote(owner)}/{quote(name)}/releases",
      params={"per_page": 100},
    )
    if not isinstance(payload, list):
      raise PlatformUnavailableError(f"Releases payload for {owner}/{name} is not a list")
    releases: list[Release] = []
    for item in payload:
      if not isinstance(item, dict):
        continue
      tag = str(item.get("tag_name") or "")
      assets = [
        ReleaseAsset(
          name=str(asset.get("name") or ""),
          size=int(asset.get("size") or 0),
          download_url=str(asset.get("browser_download_url") or ""),
          download_count=int(asset.get("download_count") or 0),
        )
        for asset in (item.get("assets") or [])
        if isinstance(asset, dict)
      ]
      releases.append(
        Release(
          name=str(item.get("name") or tag),
          tag=tag,
          url=str(item.get("html_url") or ""),
          description=str(item.get("body") or ""),
          prerelease=bool(item.get("prerelease", False)),
          assets=assets,
        )
      )
    return releases

  async def list_contributors(self, owner: str, name: str) -> list[Contributor]:
    payload = await self._get_json(
      f"{self._api_url}/repos/{quote(owner)}/{quote(name)}/contributors",
      params={"per_page": 100},
    )
    if not isinstance(payload, list):
      raise PlatformUnavailableError(f"Contributors payload for {owner}/{name} is not a list")
    return [
      Contributor(
        username=str(item.get("login") or ""),
        profile_url=str(item.get("html_url") or ""),
        avatar_url=str(item.get("avatar_url") or ""),
        contributions=int(item.get("contributions") or 0),
      )
      for item in payload
      if isinstance(item, dict) and item.get("login")
    ]

  async def exists(self, url: str) -> bool:
    try:
      response = await self._client.head(url, headers=self._headers(accept="*/*"))
    except httpx.HTTPError as exc:
      raise PlatformUnavailableError(f"Network error while probing {url}: {exc}") from exc
    return response.status_code == 200

  async def fetch_text(self, url: str) -> str:
    response = await self._request("GET", url, headers=self._headers(accept="text/plain, */*;q=0.5"))
    return response.text

  async def fetch_json(self, url: str) -> Any:
    response = await self._request("GET", url, headers=self._headers(accept="application/json, */*;q=0.5"))
    try:
      return json.loads(response.text)
    except json.JSONDecodeError as exc:
      raise PlatformUnavailableError(f"Payload from {url} is not valid JSON") from exc

  async def close(self) -> None:
    if self._owns_client:
      await self._client.aclose()
