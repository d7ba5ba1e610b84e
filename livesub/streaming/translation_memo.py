# coding=utf-8
from __future__ import annotations

from typing import Callable, Optional

# Language codes never contain a tab, so the last tab splits a key unambiguously.
KEY_SEPARATOR = "\t"


class TranslationMemo:
    """
    One-slot translation cache. Last write wins; an empty result is cached too.
    """

    def __init__(self) -> None:
        self.key: Optional[str] = None
        self.result = ""
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(text: str, target_lang: str) -> str:
        return f"{text or ''}{KEY_SEPARATOR}{target_lang or ''}"

    def lookup(self, text: str, target_lang: str, translate: Callable[[], str]) -> str:
        key = self.make_key(text, target_lang)
        if key == self.key:
            self.hits += 1
            return self.result
        self.misses += 1
        result = str(translate() or "")
        self.key = key
        self.result = result
        return result

    def clear(self) -> None:
        self.key = None
        self.result = ""
