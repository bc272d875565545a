from __future__ import annotations

import asyncio

from github_fakes import DEFAULT_LOGO, RecordingApprovalChannel, make_release, make_repo
from plugin_index.plugin_enricher import PluginEnricher
from plugin_index.plugin_pipeline import PluginPipeline
from plugin_index.schemas import ApprovalDecision


async def test_candidate_without_releases_is_discarded(pipeline, platform, storage, cache, approval_channel):
  platform.add_repo(make_repo(42, "foo"))

  report = await pipeline.run_cycle()

  assert report.discarded == [42]
  assert storage.has(42) is False
  assert cache.get(42) is None
  assert approval_channel.sent == []


async def test_new_candidate_is_registered_and_notified_once(pipeline, platform, storage, approval_channel):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1), make_release("v2", 2)])

  report = await pipeline.run_cycle()
  await pipeline.run_cycle()

  assert report.registered == [43]
  stored = storage.get(43)
  assert stored is not None
  assert stored.approved is False
  assert stored.owner.username == "octo"
  assert approval_channel.sent == [(43, DEFAULT_LOGO)]


async def test_failed_release_probe_discards_until_next_cycle(pipeline, platform, storage):
  platform.add_repo(make_repo(50, "later"), releases=[make_release("v1", 1)])
  platform.failing_paths.add("/repos/octo/later/releases")

  first = await pipeline.run_cycle()
  assert first.discarded == [50]
  assert storage.has(50) is False

  platform.failing_paths.clear()
  second = await pipeline.run_cycle()
  assert second.registered == [50]


async def test_approval_enriches_and_caches(pipeline, platform, storage):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 3, 4), make_release("v2", 10)])
  await pipeline.run_cycle()

  assert await pipeline.on_decision(43, True) is True

  assert storage.get(43).approved is True
  plugin = pipeline.get_from_cache(43)
  assert plugin is not None
  assert plugin.downloads == 17
  assert plugin.logo == DEFAULT_LOGO
  assert [item.id for item in pipeline.get_all_from_cache()] == [43]


async def test_acknowledgement_happens_before_enrichment(pipeline, platform, cache):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()
  seen: list[tuple[str, bool, bool]] = []

  async def acknowledge(decision: ApprovalDecision, known: bool) -> None:
    seen.append((decision.action, known, cache.has(43)))

  await pipeline.on_decision(43, True, acknowledge=acknowledge)

  assert seen == [("approve", True, False)]
  assert cache.has(43)


async def test_cached_plugin_is_not_reenriched_or_renotified(pipeline, platform, approval_channel):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()
  await pipeline.on_decision(43, True)
  release_calls = platform.count("GET", "/repos/octo/bar/releases")

  report = await pipeline.run_cycle()

  assert report.enriched == []
  assert report.skipped == 1
  assert platform.count("GET", "/repos/octo/bar/releases") == release_calls
  assert len(approval_channel.sent) == 1


async def test_unapproved_known_plugin_is_skipped(pipeline, platform, cache):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()

  report = await pipeline.run_cycle()

  assert report.skipped == 1
  assert cache.get(43) is None


async def test_double_approval_leaves_single_consistent_entry(pipeline, platform, storage, cache):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 2)])
  await pipeline.run_cycle()

  await pipeline.on_decision(43, True)
  await pipeline.on_decision(43, True)

  assert storage.is_approved(43) is True
  assert [plugin.id for plugin in cache.get_all()] == [43]
  assert cache.get(43).downloads == 2
  assert cache.get(43).name == "bar"


async def test_concurrent_triggers_enrich_once(storage, cache, github, enricher, platform):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 2)])
  gate = asyncio.Event()
  calls: list[int] = []

  class SlowEnricher:
    async def list_releases(self, stored):
      return await enricher.list_releases(stored)

    async def resolve_logo_url(self, stored):
      return DEFAULT_LOGO

    async def enrich(self, stored, repository):
      calls.append(stored.id)
      await gate.wait()
      return await enricher.enrich(stored, repository)

  pipeline = PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=SlowEnricher(),
    approval_channel=RecordingApprovalChannel(),
    topic="test-plugin",
  )
  await pipeline.run_cycle()
  storage.set_approval(43, True)
  decision = ApprovalDecision(action="approve", plugin_id=43)

  first = asyncio.create_task(pipeline.complete_decision(decision))
  await asyncio.sleep(0)
  second = asyncio.create_task(pipeline.run_cycle())
  await asyncio.sleep(0.05)
  gate.set()
  await asyncio.gather(first, second)

  assert calls == [43]
  assert len(cache) == 1


async def test_clear_then_next_cycle_repopulates_approved(pipeline, platform, cache):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  platform.add_repo(make_repo(44, "baz"), releases=[make_release("v1", 1)])
  platform.add_repo(make_repo(45, "pending"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()
  await pipeline.on_decision(43, True)
  await pipeline.on_decision(44, True)

  assert pipeline.clear_cache() == 2
  assert pipeline.get_all_from_cache() == []

  report = await pipeline.run_cycle()

  assert sorted(report.enriched) == [43, 44]
  assert sorted(plugin.id for plugin in cache.get_all()) == [43, 44]
  assert cache.get(45) is None


async def test_search_failure_aborts_cycle(pipeline, platform, storage):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  platform.search_fails = True

  report = await pipeline.run_cycle()

  assert report.aborted is True
  assert storage.has(43) is False


async def test_decision_on_unknown_id_does_not_enrich(pipeline, platform, cache, storage):
  platform.add_repo(make_repo(77, "ghost"), releases=[make_release("v1", 1)], in_search=False)

  assert await pipeline.on_decision(77, True) is False

  assert storage.has(77) is False
  assert cache.get(77) is None
  assert platform.count("GET", "/repositories/77") == 0


async def test_decision_on_zero_id_is_a_no_op(pipeline, platform):
  assert await pipeline.on_decision(0, True) is False
  assert platform.count("GET", "/repositories/") == 0


async def test_rejection_leaves_plugin_uncached(pipeline, platform, storage, cache):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()
  await pipeline.on_decision(43, True)

  await pipeline.on_decision(43, False)

  assert storage.is_approved(43) is False
  assert cache.get(43) is None
  report = await pipeline.run_cycle()
  assert report.enriched == []


async def test_repository_fetch_failure_defers_to_next_cycle(pipeline, platform, storage, cache):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()
  platform.failing_paths.add("/repositories/43")

  await pipeline.on_decision(43, True)

  assert storage.is_approved(43) is True
  assert cache.get(43) is None
  report = await pipeline.run_cycle()
  assert report.enriched == [43]


async def test_notification_failure_keeps_record_pending(storage, cache, github, enricher, platform):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  channel = RecordingApprovalChannel(fail=True)
  pipeline = PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=enricher,
    approval_channel=channel,
    topic="test-plugin",
  )

  report = await pipeline.run_cycle()

  assert report.registered == [43]
  assert storage.get(43).approved is False
  assert len(channel.sent) == 1


async def test_repository_changes_are_written_back(pipeline, platform, storage, cache):
  repo = platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  await pipeline.run_cycle()
  await pipeline.on_decision(43, True)
  pipeline.clear_cache()
  repo["default_branch"] = "develop"
  repo["html_url"] = "https://github.test/octo/bar-renamed"

  await pipeline.run_cycle()

  stored = storage.get(43)
  assert stored.branch == "develop"
  assert stored.url == "https://github.test/octo/bar-renamed"
  assert stored.name == "bar"
  assert cache.get(43).branch == "develop"


async def test_scheduler_runs_initial_cycle_and_stops(pipeline, platform, storage):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])

  pipeline.start()
  for _ in range(50):
    if storage.has(43):
      break
    await asyncio.sleep(0.01)
  await pipeline.stop()

  assert storage.has(43)
  assert pipeline.is_running is False
  assert pipeline.snapshot()["last_cycle"]["registered"] == [43]


async def test_cycle_after_cache_clear_waits_for_running_cycle(storage, cache, github, platform, approval_channel):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  gate = asyncio.Event()

  class GatedEnricher(PluginEnricher):
    async def list_releases(self, stored):
      if stored.id == 44:
        await gate.wait()
      return await super().list_releases(stored)

  pipeline = PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=GatedEnricher(github=github, default_logo_url=DEFAULT_LOGO),
    approval_channel=approval_channel,
    topic="test-plugin",
  )
  await pipeline.run_cycle()
  await pipeline.on_decision(43, True)
  platform.add_repo(make_repo(44, "later"), releases=[make_release("v1", 1)])

  running = asyncio.create_task(pipeline.run_cycle())
  await asyncio.sleep(0.05)
  pipeline.clear_cache()
  queued = asyncio.create_task(pipeline.run_cycle(wait=True))
  await asyncio.sleep(0.05)
  gate.set()
  first, second = await asyncio.gather(running, queued)

  assert first.registered == [44]
  assert second.aborted is False
  assert second.enriched == [43]
  assert cache.has(43)


async def test_run_cycle_without_wait_skips_while_busy(storage, cache, github, platform, approval_channel):
  platform.add_repo(make_repo(44, "later"), releases=[make_release("v1", 1)])
  gate = asyncio.Event()

  class GatedEnricher(PluginEnricher):
    async def list_releases(self, stored):
      await gate.wait()
      return await super().list_releases(stored)

  pipeline = PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=GatedEnricher(github=github, default_logo_url=DEFAULT_LOGO),
    approval_channel=approval_channel,
    topic="test-plugin",
  )
  running = asyncio.create_task(pipeline.run_cycle())
  await asyncio.sleep(0.05)

  skipped = await pipeline.run_cycle()
  gate.set()
  await running

  assert skipped.aborted is True
  assert storage.has(44)


async def test_cache_clear_timer_clears_then_repopulates(storage, cache, github, enricher, platform, approval_channel):
  platform.add_repo(make_repo(43, "bar"), releases=[make_release("v1", 1)])
  pipeline = PluginPipeline(
    storage=storage,
    cache=cache,
    github=github,
    enricher=enricher,
    approval_channel=approval_channel,
    topic="test-plugin",
    discovery_interval_seconds=3600,
    cache_clear_interval_seconds=0.05,
  )
  await pipeline.run_cycle()
  await pipeline.on_decision(43, True)
  enrich_calls = platform.count("GET", "/repos/octo/bar/contributors")

  pipeline.start()
  for _ in range(100):
    if pipeline.snapshot()["last_cache_clear_at"] and cache.has(43):
      break
    await asyncio.sleep(0.01)
  await pipeline.stop()

  assert pipeline.snapshot()["last_cache_clear_at"]
  assert cache.has(43)
  assert platform.count("GET", "/repos/octo/bar/contributors") > enrich_calls
