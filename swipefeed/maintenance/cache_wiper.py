"""Central cache wiper with a feature hook registry.

Features register one async (or plain) callable; ``wipe_all`` runs every hook
on sign-out or "reset cache". Hooks are best-effort: a failing hook is logged
and counted, never propagated, and the remaining hooks still run.
"""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Union

from swipefeed.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

CacheWipeHook = Callable[[], Union[None, Awaitable[None]]]


class CacheWiper:
	def __init__(self) -> None:
		self._hooks: list[CacheWipeHook] = []

	def register_hook(self, hook: CacheWipeHook) -> None:
		if hook not in self._hooks:
			self._hooks.append(hook)

	def unregister_hook(self, hook: CacheWipeHook) -> None:
		if hook in self._hooks:
			self._hooks.remove(hook)

	@property
	def hooks(self) -> tuple[CacheWipeHook, ...]:
		return tuple(self._hooks)

	async def wipe_all(self) -> int:
		"""Run every registered hook; returns how many failed."""
		failures = 0
		for hook in list(self._hooks):
			try:
				result = hook()
				if inspect.isawaitable(result):
					await result
			except Exception:
				failures += 1
				obs_metrics.inc_cache_wipe_hook("failed")
				logger.exception("cache_wiper.hook_failed", extra={"hook": getattr(hook, "__qualname__", repr(hook))})
			else:
				obs_metrics.inc_cache_wipe_hook("ok")
		logger.info("cache_wiper.done", extra={"hooks": len(self._hooks), "failures": failures})
		return failures


cache_wiper = CacheWiper()
