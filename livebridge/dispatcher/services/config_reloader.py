# Where: livebridge/dispatcher/services/config_reloader.py
# What: Hot-reload watcher for the functions intake file.
# Why: A redeploy rewrites functions.yml; pick it up without restarting.
"""
Config reloader for hot reload functionality.

Periodically checks functions.yml and calls the reload callback when the file
changes. Works in conjunction with FunctionRegistry.reload().
"""

import logging
import os
import threading
from typing import Callable, Optional

logger = logging.getLogger("dispatcher.config_reloader")


class ConfigFileWatcher:
    """
    Watches a single config file for changes using modification time.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._last_mtime: Optional[int] = None
        self._lock = threading.RLock()

    def has_changed(self) -> bool:
        """
        Check if the file has been created, modified or removed since last check.
        """
        try:
            current_mtime: Optional[int] = os.stat(self.file_path).st_mtime_ns
        except FileNotFoundError:
            current_mtime = None
        except OSError as e:
            logger.error(f"Error checking config file {self.file_path}: {e}")
            return False

        with self._lock:
            if current_mtime != self._last_mtime:
                self._last_mtime = current_mtime
                return True
            return False

    def update_mtime(self) -> None:
        with self._lock:
            try:
                self._last_mtime = os.stat(self.file_path).st_mtime_ns
            except OSError:
                self._last_mtime = None


class ConfigReloader:
    """
    Background thread that reloads functions.yml when it changes.
    """

    def __init__(
        self,
        file_path: str,
        reload_callback: Callable[[], None],
        interval: float = 1.0,
        enabled: bool = True,
    ):
        self._watcher = ConfigFileWatcher(file_path)
        self._reload_callback = reload_callback
        self._interval = max(0.1, interval)
        self._enabled = enabled

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._reload_lock = threading.RLock()

    def start(self) -> None:
        """
        Start the background reloader thread.
        """
        if not self._enabled:
            logger.info("Config reloader is disabled")
            return

        if self._thread is not None and self._thread.is_alive():
            logger.warning("Config reloader already running")
            return

        self._watcher.update_mtime()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="config-reloader")
        self._thread.start()
        logger.info(
            f"Config reloader started for {self._watcher.file_path} (interval={self._interval}s)"
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=self._interval + 1.0)
            self._thread = None
            logger.info("Config reloader stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_and_reload()
            except Exception as e:
                logger.error(f"Error in config reload loop: {e}")

            self._stop_event.wait(timeout=self._interval)

    def check_and_reload(self) -> bool:
        """
        Reload if the watched file changed. Returns True when a reload ran.
        """
        with self._reload_lock:
            if not self._watcher.has_changed():
                return False
            logger.info(f"Detected changes in {self._watcher.file_path}, reloading...")
            try:
                self._reload_callback()
                logger.info("Functions config reloaded successfully")
            except Exception as e:
                logger.error(f"Error reloading functions config: {e}")
            return True
