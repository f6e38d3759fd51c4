from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import yaml

from voicewake.wake.gate import sanitize_trigger_words

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_WORDS = ["clawd", "claude"]

TriggerListener = Callable[[List[str]], None]


class TriggerWordStore:
    """Trigger words persisted as a YAML list, with change notifications.

    Without a path the store only holds the defaults in memory.
    """

    def __init__(self, path: Optional[Path] = None, defaults: Sequence[str] = DEFAULT_TRIGGER_WORDS) -> None:
        self._path = Path(path) if path else None
        self._defaults = list(defaults)
        self._listeners: List[TriggerListener] = []
        self._mtime: Optional[float] = None
        self._words = self.load()

    @property
    def words(self) -> List[str]:
        return list(self._words)

    def load(self) -> List[str]:
        if self._path is None or not self._path.exists():
            return list(self._defaults)
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
            self._mtime = self._path.stat().st_mtime
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Could not read trigger words from %s: %s", self._path, e)
            return list(self._defaults)
        if not isinstance(data, list):
            return list(self._defaults)
        return [str(item) for item in data if item is not None]

    def save(self, words: Sequence[str]) -> None:
        cleaned = sanitize_trigger_words(words)
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as f:
                yaml.safe_dump(cleaned, f, allow_unicode=True)
            self._mtime = self._path.stat().st_mtime
        self._set(cleaned)

    def subscribe(self, listener: TriggerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def refresh(self) -> bool:
        """Reload from disk; notify listeners and return True when the list changed."""
        return self._set(self.load())

    def _set(self, words: List[str]) -> bool:
        if words == self._words:
            return False
        self._words = words
        logger.info("Trigger words updated: %s", ", ".join(words) or "(none)")
        for listener in list(self._listeners):
            listener(list(words))
        return True

    async def watch(self, interval: float = 2.0) -> None:
        """Poll the file's mtime until cancelled."""
        if self._path is None:
            return
        while True:
            await asyncio.sleep(interval)
            try:
                mtime = self._path.stat().st_mtime
            except OSError:
                mtime = None
            if mtime != self._mtime:
                self._mtime = mtime
                self.refresh()
