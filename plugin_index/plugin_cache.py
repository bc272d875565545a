from __future__ import annotations

import threading

try:
  from plugin_index.schemas import EnrichedPlugin
except ModuleNotFoundError:
  from schemas import EnrichedPlugin  # type: ignore


class PluginCache:
  """In-memory serving cache of approved, enriched plugins keyed by id.

  Entries are only ever replaced as a whole. Reads never touch the network.
  """

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self._plugins: dict[int, EnrichedPlugin] = {}

  def put(self, plugin: EnrichedPlugin) -> None:
    with self._lock:
      self._plugins[int(plugin.id)] = plugin

  def get(self, plugin_id: int) -> EnrichedPlugin | None:
    with self._lock:
      return self._plugins.get(int(plugin_id))

  def has(self, plugin_id: int) -> bool:
    with self._lock:
      return int(plugin_id) in self._plugins

  def get_all(self) -> list[EnrichedPlugin]:
    with self._lock:
      return list(self._plugins.values())

  def remove(self, plugin_id: int) -> bool:
    with self._lock:
      return self._plugins.pop(int(plugin_id), None) is not None

  def clear(self) -> int:
    with self._lock:
      dropped = len(self._plugins)
      self._plugins.clear()
    return dropped

  def __len__(self) -> int:
    with self._lock:
      return len(self._plugins)


class EnrichmentGuard:
  """Tracks plugin ids whose enrichment is in flight; at most one per id."""

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self._in_flight: set[int] = set()

  def try_acquire(self, plugin_id: int) -> bool:
    safe_id = int(plugin_id)
    with self._lock:
      if safe_id in self._in_flight:
        return False
      self._in_flight.add(safe_id)
      return True

  def release(self, plugin_id: int) -> None:
    with self._lock:
      self._in_flight.discard(int(plugin_id))

  def is_active(self, plugin_id: int) -> bool:
    with self._lock:
      return int(plugin_id) in self._in_flight

  @property
  def active_ids(self) -> set[int]:
    with self._lock:
      return set(self._in_flight)
