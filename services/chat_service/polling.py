"""
Fixed-interval poll loop on a background thread.
"""

import threading
from typing import Callable, Optional

from utils.logging_config import get_logger


class PollLoop:
    """
    Runs `task` every `interval` seconds until stopped.

    The task runs on a single thread, so a poll is never issued while the
    previous one is still in flight; a slow poll simply delays the next one.
    """

    def __init__(self, interval: float, task: Callable[[], None], name: str = "chat-poll"):
        self.logger = get_logger(__name__)
        self.interval = interval
        self.task = task
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self.logger.debug(f"Poll loop '{self.name}' started (every {self.interval}s)")

    def _run(self) -> None:
        stop_event = self._stop_event
        while not stop_event.wait(self.interval):
            try:
                self.task()
            except Exception as e:
                self.logger.error(f"Poll task '{self.name}' failed: {e}", exc_info=True)

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        """Stop the loop; an in-flight poll finishes on its own"""
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self.logger.debug(f"Poll loop '{self.name}' stopped")
