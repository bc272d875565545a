from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

try:
  from plugin_index.common import utc_now_iso
  from plugin_index.errors import PlatformUnavailableError, PluginAlreadyExistsError, RegistryDecodeError
  from plugin_index.plugin_cache import EnrichmentGuard, PluginCache
  from plugin_index.schemas import (
    ApprovalDecision,
    DiscoveryReport,
    EnrichedPlugin,
    RepositorySummary,
    StoredPluginRecord,
    StoredPluginUpdate,
  )
except ModuleNotFoundError:
  from common import utc_now_iso  # type: ignore
  from errors import PlatformUnavailableError, PluginAlreadyExistsError, RegistryDecodeError  # type: ignore
  from plugin_cache import EnrichmentGuard, PluginCache  # type: ignore
  from schemas import (  # type: ignore
    ApprovalDecision,
    DiscoveryReport,
    EnrichedPlugin,
    RepositorySummary,
    StoredPluginRecord,
    StoredPluginUpdate,
  )

LOGGER = logging.getLogger("plugin_index.pipeline")

DecisionAck = Callable[[ApprovalDecision, bool], Awaitable[None]]


class PluginPipeline:
  """Discovery -> registry -> approval -> enrichment -> cache coordinator.

  The registry owns identity and the approval flag, the cache owns enrichment
  results. Enrichment for a given id is serialized through EnrichmentGuard and
  the approval flag is re-read before every cache write, so the cache only
  ever holds approved plugins.
  """

  def __init__(
    self,
    *,
    storage: Any,
    cache: PluginCache,
    github: Any,
    enricher: Any,
    approval_channel: Any,
    topic: str,
    search_max_pages: int = 1,
    discovery_interval_seconds: float = 300.0,
    cache_clear_interval_seconds: float = 3600.0,
    enrichment_guard: EnrichmentGuard | None = None,
  ) -> None:
    self._storage = storage
    self._cache = cache
    self._github = github
    self._enricher = enricher
    self._approval_channel = approval_channel
    self._topic = str(topic or "").strip()
    self._search_max_pages = max(1, int(search_max_pages))
    self._discovery_interval_seconds = float(discovery_interval_seconds)
    self._cache_clear_interval_seconds = float(cache_clear_interval_seconds)
    self._guard = enrichment_guard or EnrichmentGuard()
    self._cycle_lock = asyncio.Lock()
    self._timers: list[asyncio.Task] = []
    self._background: set[asyncio.Task] = set()
    self._last_cycle_at = ""
    self._last_cycle_report: DiscoveryReport | None = None
    self._last_cache_clear_at = ""

  @property
  def search_query(self) -> str:
    return f"topic:{self._topic}"

  @property
  def is_running(self) -> bool:
    return any(not task.done() for task in self._timers)

  def get_from_cache(self, plugin_id: int) -> EnrichedPlugin | None:
    return self._cache.get(plugin_id)

  def get_all_from_cache(self) -> list[EnrichedPlugin]:
    return self._cache.get_all()

  def clear_cache(self) -> int:
    dropped = self._cache.clear()
    self._last_cache_clear_at = utc_now_iso()
    LOGGER.info("Cleared plugin cache (%d entries dropped)", dropped)
    return dropped

  async def _enrich_and_cache(self, stored: StoredPluginRecord, repository: RepositorySummary) -> bool:
    if not self._guard.try_acquire(stored.id):
      LOGGER.debug("Enrichment of plugin %s already in flight; skipping", stored.id)
      return False
    try:
      plugin = await self._enricher.enrich(stored, repository)
      if not self._storage.is_approved(stored.id):
        LOGGER.info("Plugin %s lost approval during enrichment; not caching", stored.id)
        return False
      self._cache.put(plugin)
      LOGGER.info("Cached plugin %s (%s by %s)", plugin.id, plugin.name, plugin.owner.username)
      return True
    finally:
      self._guard.release(stored.id)

  async def notify_pending(self, record: StoredPluginRecord) -> None:
    try:
      logo_url = await self._enricher.resolve_logo_url(record)
      await self._approval_channel.send_approval_request(record, logo_url=logo_url)
    except Exception as exc:
      LOGGER.warning("Approval request for plugin %s was not delivered: %s", record.id, exc)

  def _sync_repository_fields(self, stored: StoredPluginRecord, repository: RepositorySummary) -> StoredPluginRecord:
    changes: dict[str, Any] = {}
    if repository.name and repository.name != stored.name:
      changes["name"] = repository.name
    if repository.html_url and repository.html_url != stored.url:
      changes["url"] = repository.html_url
    if repository.default_branch and repository.default_branch != stored.branch:
      changes["branch"] = repository.default_branch
    owner = repository.owner_identity()
    if owner != stored.owner:
      changes["owner"] = owner
    if not changes:
      return stored
    self._storage.update(stored.id, StoredPluginUpdate(**changes))
    LOGGER.info("Plugin %s repository details changed: %s", stored.id, ", ".join(sorted(changes)))
    return stored.model_copy(update=changes)

  async def _reconcile(self, repository: RepositorySummary, report: DiscoveryReport) -> None:
    if not self._storage.has(repository.id):
      candidate = StoredPluginRecord.from_repository(repository)
      releases = await self._enricher.list_releases(candidate)
      if not releases:
        LOGGER.info(
          "Plugin %s by %s has no releases, skipping",
          repository.name,
          repository.owner.login,
        )
        report.discarded.append(repository.id)
        return
      try:
        self._storage.insert(candidate)
      except PluginAlreadyExistsError:
        report.skipped += 1
        return
      report.registered.append(repository.id)
      LOGGER.info("Registered plugin %s (%s by %s) pending approval", repository.id, repository.name, repository.owner.login)
      await self.notify_pending(candidate)
      return

    if not self._storage.is_approved(repository.id) or self._cache.has(repository.id):
      report.skipped += 1
      return

    stored = self._storage.get(repository.id)
    if stored is None:
      report.skipped += 1
      return
    stored = self._sync_repository_fields(stored, repository)
    if await self._enrich_and_cache(stored, repository):
      report.enriched.append(repository.id)
    else:
      report.skipped += 1

  async def run_cycle(self, *, wait: bool = False) -> DiscoveryReport:
    """Run one discovery pass.

    A call that finds another pass in progress returns an aborted report,
    unless ``wait`` is set, in which case it queues behind the running pass.
    """
    report = DiscoveryReport()
    if not wait and self._cycle_lock.locked():
      report.aborted = True
      report.error = "discovery cycle already running"
      return report

    async with self._cycle_lock:
      try:
        repositories = await self._github.search_repositories(
          self.search_query,
          max_pages=self._search_max_pages,
        )
      except PlatformUnavailableError as exc:
        LOGGER.warning("Plugin search failed, cycle aborted: %s", exc)
        report.aborted = True
        report.error = str(exc)
        return report

      report.discovered = len(repositories)
      for repository in repositories:
        try:
          await self._reconcile(repository, report)
        except RegistryDecodeError as exc:
          LOGGER.error("Registry row for plugin %s is unreadable: %s", repository.id, exc)
          report.skipped += 1

      self._last_cycle_at = utc_now_iso()
      self._last_cycle_report = report
      LOGGER.info(
        "Discovery cycle: %d found, %d registered, %d discarded, %d enriched, %d skipped",
        report.discovered,
        len(report.registered),
        len(report.discarded),
        len(report.enriched),
        report.skipped,
      )
    return report

  def apply_decision(self, decision: ApprovalDecision) -> bool:
    known = self._storage.set_approval(decision.plugin_id, decision.approved)
    if not known:
      LOGGER.warning("Decision '%s' for unknown plugin %s ignored", decision.action, decision.plugin_id)
      return False
    if not decision.approved:
      self._cache.remove(decision.plugin_id)
    LOGGER.info("Plugin %s %s", decision.plugin_id, "approved" if decision.approved else "rejected")
    return True

  async def complete_decision(self, decision: ApprovalDecision) -> bool:
    if not decision.approved:
      return False
    stored = self._storage.get(decision.plugin_id)
    if stored is None or not stored.approved:
      return False
    try:
      repository = await self._github.get_repository(decision.plugin_id)
    except PlatformUnavailableError as exc:
      LOGGER.warning(
        "Repository of approved plugin %s unavailable; next discovery cycle will cache it: %s",
        decision.plugin_id,
        exc,
      )
      return False
    stored = self._sync_repository_fields(stored, repository)
    return await self._enrich_and_cache(stored, repository)

  async def on_decision(
    self,
    plugin_id: int,
    approve: bool,
    *,
    acknowledge: DecisionAck | None = None,
  ) -> bool:
    decision = ApprovalDecision(action="approve" if approve else "reject", plugin_id=int(plugin_id))
    known = self.apply_decision(decision)
    if acknowledge is not None:
      await acknowledge(decision, known)
    if not known:
      return False
    await self.complete_decision(decision)
    return True

  def spawn(self, coroutine: Awaitable[Any], *, name: str = "") -> asyncio.Task:
    task = asyncio.ensure_future(coroutine)
    if name:
      task.set_name(name)
    self._background.add(task)
    task.add_done_callback(self._background.discard)
    return task

  async def _run_cycle_safely(self, *, wait: bool = False) -> None:
    try:
      await self.run_cycle(wait=wait)
    except asyncio.CancelledError:
      raise
    except Exception:
      LOGGER.exception("Discovery cycle crashed")

  async def _discovery_loop(self) -> None:
    while True:
      await self._run_cycle_safely()
      await asyncio.sleep(self._discovery_interval_seconds)

  async def _cache_clear_loop(self) -> None:
    while True:
      await asyncio.sleep(self._cache_clear_interval_seconds)
      self.clear_cache()
      # A pass already in flight may have walked past ids before the clear.
      await self._run_cycle_safely(wait=True)

  def start(self) -> None:
    if self.is_running:
      return
    self._timers = [
      asyncio.create_task(self._discovery_loop(), name="plugin-index-discovery"),
      asyncio.create_task(self._cache_clear_loop(), name="plugin-index-cache-clear"),
    ]
    LOGGER.info(
      "Scheduler started: discovery every %.0fs, cache clear every %.0fs",
      self._discovery_interval_seconds,
      self._cache_clear_interval_seconds,
    )

  async def stop(self) -> None:
    tasks = [*self._timers, *self._background]
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
    self._timers = []
    self._background.clear()

  def snapshot(self) -> dict[str, Any]:
    report = self._last_cycle_report
    return {
      "topic": self._topic,
      "scheduler_running": self.is_running,
      "cached": len(self._cache),
      "enriching": sorted(self._guard.active_ids),
      "last_cycle_at": self._last_cycle_at,
      "last_cycle": report.as_dict() if report is not None else None,
      "last_cache_clear_at": self._last_cache_clear_at,
    }
