from __future__ import annotations

import httpx
import pytest

from github_fakes import API_URL, RAW_URL, make_release, make_repo
from plugin_index.errors import PlatformUnavailableError
from plugin_index.github_client import GitHubClient


async def test_search_decodes_repository_summaries(github, platform):
  platform.add_repo(make_repo(42, "foo"))
  platform.add_repo(make_repo(43, "bar", owner="someone", branch="trunk"))

  repositories = await github.search_repositories("topic:test-plugin")

  assert [repo.id for repo in repositories] == [42, 43]
  assert repositories[1].default_branch == "trunk"
  assert repositories[1].owner_identity().username == "someone"


async def test_search_failure_raises_platform_unavailable(github, platform):
  platform.search_fails = True
  with pytest.raises(PlatformUnavailableError):
    await github.search_repositories("topic:test-plugin")


async def test_search_follows_pages_until_total_count():
  pages_seen: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    page = request.url.params.get("page")
    pages_seen.append(page)
    if page == "1":
      items = [make_repo(index, f"repo-{index}") for index in range(1, 101)]
    else:
      items = [make_repo(101, "repo-101")]
    return httpx.Response(200, json={"total_count": 101, "items": items})

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
    client = GitHubClient(api_url=API_URL, raw_url=RAW_URL, http_client=http_client)
    repositories = await client.search_repositories("topic:x", max_pages=5)

  assert pages_seen == ["1", "2"]
  assert len(repositories) == 101


async def test_releases_fall_back_to_tag_name(github, platform):
  repo = platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1.0.0", 3, 4), make_release("v2.0.0", name="Second")])

  releases = await github.list_releases(repo["owner"]["login"], repo["name"])

  assert [release.name for release in releases] == ["v1.0.0", "Second"]
  assert releases[0].assets[1].download_count == 4
  assert releases[0].download_count == 7
  assert releases[0].description == "Notes for v1.0.0"


async def test_exists_reports_only_http_200(github, platform):
  repo = platform.add_repo(make_repo(43, "bar"))
  platform.add_file(repo, "public/logo.png")

  logo_url = github.raw_file_url("octo", "bar", "main", "public/logo.png")
  assert logo_url == f"{RAW_URL}/octo/bar/main/public/logo.png"
  assert await github.exists(logo_url) is True
  assert await github.exists(github.raw_file_url("octo", "bar", "main", "public/banner.png")) is False


async def test_authorization_header_sent_when_token_configured():
  seen_headers: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen_headers.append(request.headers.get("authorization", ""))
    return httpx.Response(200, json=make_repo(1, "foo"))

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
    client = GitHubClient(token="secret-token", api_url=API_URL, raw_url=RAW_URL, http_client=http_client)
    repository = await client.get_repository(1)

  assert repository.name == "foo"
  assert seen_headers == ["Bearer secret-token"]


async def test_fetch_json_rejects_invalid_payload(github, platform):
  repo = platform.add_repo(make_repo(43, "bar"))
  platform.add_file(repo, "package.json", "{not json")

  with pytest.raises(PlatformUnavailableError):
    await github.fetch_json(github.raw_file_url("octo", "bar", "main", "package.json"))
