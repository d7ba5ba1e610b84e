# coding=utf-8
from __future__ import annotations

import asyncio
import threading
from contextlib import suppress
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterator, List, Optional

KEEPALIVE_SEC = 15.0


@dataclass(frozen=True)
class SubtitleSnapshot:
    text: str
    translated: str
    language: str
    version: int
    running: bool


@dataclass(frozen=True)
class SubtitleConfig:
    source_lang: str
    target_lang: str


class SubtitleBroadcast:
    """
    Single published subtitle record shared by the production loop and every viewer.

    Writers replace the whole record and bump `version`; readers only watch the
    version. The language configuration lives under the same lock so the
    production loop never reads a half-applied update.
    """

    def __init__(self, source_lang: str = "auto", target_lang: str = "") -> None:
        self._cond = threading.Condition(threading.Lock())
        self.text = ""
        self.translated = ""
        self.language = ""
        self.source_lang = str(source_lang or "auto")
        self.target_lang = str(target_lang or "")
        self.version = 0
        self.running = True
        self._listeners: List[Callable[[], None]] = []

    def _snapshot_locked(self) -> SubtitleSnapshot:
        return SubtitleSnapshot(
            text=self.text,
            translated=self.translated,
            language=self.language,
            version=self.version,
            running=self.running,
        )

    def snapshot(self) -> SubtitleSnapshot:
        with self._cond:
            return self._snapshot_locked()

    def publish(self, text: str, translated: str, language: str) -> int:
        with self._cond:
            if not self.running:
                return self.version
            self.text = str(text or "")
            self.translated = str(translated or "")
            self.language = str(language or "")
            self.version += 1
            version = self.version
            self._cond.notify_all()
            listeners = list(self._listeners)
        for fn in listeners:
            fn()
        return version

    def shutdown(self) -> bool:
        with self._cond:
            if not self.running:
                return False
            self.running = False
            self._cond.notify_all()
            listeners = list(self._listeners)
        for fn in listeners:
            fn()
        return True

    def add_listener(self, fn: Callable[[], None]) -> int:
        """
        Call `fn` (from the publishing thread, outside the lock) after every publish and on shutdown.
        """
        with self._cond:
            self._listeners.append(fn)
            return len(self._listeners)

    def remove_listener(self, fn: Callable[[], None]) -> None:
        with self._cond:
            if fn in self._listeners:
                self._listeners.remove(fn)

    def listener_count(self) -> int:
        with self._cond:
            return len(self._listeners)

    def config(self) -> SubtitleConfig:
        with self._cond:
            return SubtitleConfig(source_lang=self.source_lang, target_lang=self.target_lang)

    def update_config(self, source_lang: Optional[str] = None, target_lang: Optional[str] = None) -> SubtitleConfig:
        with self._cond:
            if source_lang is not None:
                self.source_lang = str(source_lang)
            if target_lang is not None:
                self.target_lang = str(target_lang)
            return SubtitleConfig(source_lang=self.source_lang, target_lang=self.target_lang)

    def subscribe(
        self,
        catch_up: bool = True,
        keepalive_sec: float = KEEPALIVE_SEC,
    ) -> Iterator[Optional[SubtitleSnapshot]]:
        """
        Yield a snapshot whenever the version advances, or None as a keepalive.

        With `catch_up` the subscriber starts from version 0 and immediately
        receives the current caption if one was published. The iterator ends
        once the broadcast is shut down and the final state has been delivered.
        """
        with self._cond:
            seen = 0 if catch_up else self.version
        timeout = max(0.01, float(keepalive_sec))

        while True:
            with self._cond:
                self._cond.wait_for(lambda: self.version > seen or not self.running, timeout=timeout)
                snap = self._snapshot_locked() if self.version > seen else None
                running = self.running

            if snap is not None:
                seen = snap.version
                yield snap
                continue
            if not running:
                return
            yield None

    async def subscribe_async(
        self,
        catch_up: bool = True,
        keepalive_sec: float = KEEPALIVE_SEC,
    ) -> AsyncIterator[Optional[SubtitleSnapshot]]:
        """
        Event-loop flavour of `subscribe`: same yields, but waiting costs no thread.

        Publishes wake the waiter through `call_soon_threadsafe`.
        """
        loop = asyncio.get_running_loop()
        wake = asyncio.Event()

        def _wake() -> None:
            # the loop may already be closed when a late publish arrives
            with suppress(RuntimeError):
                loop.call_soon_threadsafe(wake.set)

        with self._cond:
            seen = 0 if catch_up else self.version
        self.add_listener(_wake)
        timeout = max(0.01, float(keepalive_sec))
        try:
            while True:
                wake.clear()
                snap = self.snapshot()
                if snap.version > seen:
                    seen = snap.version
                    yield snap
                    continue
                if not snap.running:
                    return
                try:
                    await asyncio.wait_for(wake.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    yield None
        finally:
            self.remove_listener(_wake)
