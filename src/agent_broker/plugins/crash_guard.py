import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

AutoDisableCallback = Callable[[str, int], None]


class CrashGuard:
    """Per-plugin failure window; crossing the threshold auto-disables the plugin."""

    def __init__(
        self,
        threshold: int = 5,
        window_sec: float = 300.0,
        on_auto_disable: Optional[AutoDisableCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = max(1, int(threshold))
        self.window_sec = float(window_sec)
        self._on_auto_disable = on_auto_disable
        self._clock = clock
        self._failures: Dict[str, List[float]] = {}
        self._disabled: Set[str] = set()
        self._lock = threading.Lock()

    def set_auto_disable_callback(self, callback: Optional[AutoDisableCallback]) -> None:
        self._on_auto_disable = callback

    def record_failure(self, plugin_id: str) -> bool:
        """Returns True when the plugin is (now or already) crash-disabled."""
        with self._lock:
            if plugin_id in self._disabled:
                return True
            now = self._clock()
            cutoff = now - self.window_sec
            recent = [t for t in self._failures.get(plugin_id, []) if t >= cutoff]
            recent.append(now)
            if len(recent) < self.threshold:
                self._failures[plugin_id] = recent
                return False
            self._disabled.add(plugin_id)
            self._failures.pop(plugin_id, None)
            count = len(recent)
        logger.warning(
            "Auto-disabling plugin %s after %d failures in %ss window", plugin_id, count, int(self.window_sec)
        )
        if self._on_auto_disable is not None:
            try:
                self._on_auto_disable(plugin_id, count)
            except Exception:
                logger.warning("Auto-disable callback failed for plugin %s", plugin_id, exc_info=True)
        return True

    def record_success(self, plugin_id: str) -> None:
        with self._lock:
            self._failures.pop(plugin_id, None)

    def is_disabled(self, plugin_id: str) -> bool:
        with self._lock:
            return plugin_id in self._disabled

    def failure_count(self, plugin_id: str) -> int:
        with self._lock:
            return len(self._failures.get(plugin_id, []))

    def reset_plugin(self, plugin_id: str) -> None:
        with self._lock:
            self._disabled.discard(plugin_id)
            self._failures.pop(plugin_id, None)
