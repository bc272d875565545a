from __future__ import annotations


class PlatformUnavailableError(RuntimeError):
  """Any failure talking to the source platform (network, HTTP status, bad payload)."""


class PluginAlreadyExistsError(ValueError):
  def __init__(self, plugin_id: int) -> None:
    self.plugin_id = int(plugin_id)
    super().__init__(f"Plugin {self.plugin_id} is already registered")


class RegistryDecodeError(ValueError):
  pass


class NotificationError(RuntimeError):
  pass


class InvalidDecisionError(ValueError):
  pass


class InvalidSignatureError(PermissionError):
  pass
