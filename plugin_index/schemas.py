from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

try:
  from plugin_index.errors import InvalidDecisionError
except ModuleNotFoundError:
  from errors import InvalidDecisionError  # type: ignore


class Identity(BaseModel):
  username: str
  profile_url: str = ""
  avatar_url: str = ""


class Contributor(Identity):
  contributions: int = 0


class ReleaseAsset(BaseModel):
  name: str
  size: int = 0
  download_url: str = ""
  download_count: int = 0


class Release(BaseModel):
  name: str
  tag: str
  url: str = ""
  description: str = ""
  prerelease: bool = False
  assets: list[ReleaseAsset] = Field(default_factory=list)

  @property
  def download_count(self) -> int:
    return sum(asset.download_count for asset in self.assets)


class RepositoryOwner(BaseModel):
  login: str
  html_url: str = ""
  avatar_url: str = ""


class RepositorySummary(BaseModel):
  """A repository as reported by the GitHub search and repository endpoints."""

  id: int
  name: str
  owner: RepositoryOwner
  html_url: str = ""
  default_branch: str = "main"
  description: str | None = None
  stargazers_count: int | None = None
  created_at: str | None = None
  updated_at: str | None = None

  def owner_identity(self) -> Identity:
    return Identity(
      username=self.owner.login,
      profile_url=self.owner.html_url,
      avatar_url=self.owner.avatar_url,
    )


class StoredPluginRecord(BaseModel):
  id: int
  name: str
  owner: Identity
  url: str
  branch: str = "main"
  approved: bool = False

  @classmethod
  def from_repository(cls, repository: RepositorySummary) -> "StoredPluginRecord":
    return cls(
      id=repository.id,
      name=repository.name,
      owner=repository.owner_identity(),
      url=repository.html_url,
      branch=repository.default_branch or "main",
      approved=False,
    )


class StoredPluginUpdate(BaseModel):
  name: str | None = None
  owner: Identity | None = None
  url: str | None = None
  branch: str | None = None
  approved: bool | None = None

  def supplied_fields(self) -> dict[str, Any]:
    return {key: getattr(self, key) for key in self.model_fields_set if getattr(self, key) is not None}


class EnrichedPlugin(StoredPluginRecord):
  description: str | None = None
  version: str | None = None
  stars: int | None = None
  downloads: int = 0
  keywords: list[str] | None = None
  logo: str | None = None
  banner: str | None = None
  published: str | None = None
  updated: str | None = None
  readme: str | None = None
  gallery: list[str] = Field(default_factory=list)
  contributors: list[Contributor] = Field(default_factory=list)
  releases: list[Release] = Field(default_factory=list)


DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"


class ApprovalDecision(BaseModel):
  action: Literal["approve", "reject"]
  plugin_id: int

  @property
  def approved(self) -> bool:
    return self.action == DECISION_APPROVE

  @property
  def custom_id(self) -> str:
    return f"{self.action}:{self.plugin_id}"

  @classmethod
  def from_custom_id(cls, custom_id: Any) -> "ApprovalDecision":
    raw = str(custom_id or "").strip()
    action, _, plugin_id_raw = raw.partition(":")
    action = action.strip().lower()
    if action not in {DECISION_APPROVE, DECISION_REJECT}:
      raise InvalidDecisionError(f"Unknown decision action in '{raw}'")
    try:
      plugin_id = int(plugin_id_raw.strip())
    except ValueError as exc:
      raise InvalidDecisionError(f"Invalid plugin id in '{raw}'") from exc
    if plugin_id <= 0:
      raise InvalidDecisionError(f"Invalid plugin id in '{raw}'")
    return cls(action=action, plugin_id=plugin_id)


@dataclass
class DiscoveryReport:
  discovered: int = 0
  registered: list[int] = field(default_factory=list)
  discarded: list[int] = field(default_factory=list)
  enriched: list[int] = field(default_factory=list)
  skipped: int = 0
  aborted: bool = False
  error: str = ""

  def as_dict(self) -> dict[str, Any]:
    return {
      "discovered": self.discovered,
      "registered": list(self.registered),
      "discarded": list(self.discarded),
      "enriched": list(self.enriched),
      "skipped": self.skipped,
      "aborted": self.aborted,
      "error": self.error,
    }
