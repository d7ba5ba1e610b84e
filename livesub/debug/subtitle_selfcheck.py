from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from livesub.streaming.stability import normalize_for_dedup, repetition_reason


@dataclass
class SubtitleSelfcheckResult:
    event_count: int
    keepalive_count: int
    empty_count: int
    translated_count: int
    max_chars: int
    duplicate_events: int
    repetition_events: int
    languages: List[str]
    examples: List[Dict[str, Any]]


def analyze_subtitle_events(events: Iterable[Dict[str, Any]]) -> SubtitleSelfcheckResult:
    prev_text = ""
    prev_norm = ""
    event_count = 0
    keepalives = 0
    empties = 0
    translated = 0
    max_chars = 0
    duplicates = 0
    repetitions = 0
    languages: List[str] = []
    examples: List[Dict[str, Any]] = []

    for idx, msg in enumerate(events):
        msg_type = str(msg.get("type", "")).lower()
        if msg_type == "keepalive":
            keepalives += 1
            continue
        if msg_type != "event":
            continue

        event_count += 1
        text = str(msg.get("text", "") or "").strip()
        if not text:
            empties += 1
            continue
        if str(msg.get("translated", "") or "").strip():
            translated += 1
        lang = str(msg.get("language", "") or "")
        if lang and lang not in languages:
            languages.append(lang)
        max_chars = max(max_chars, len(text))

        norm = normalize_for_dedup(text)
        if prev_norm and norm == prev_norm:
            duplicates += 1
            if len(examples) < 8:
                examples.append({"kind": "duplicate", "index": idx, "text": text[:160]})
        else:
            reason = repetition_reason(text, prev_text)
            if reason:
                repetitions += 1
                if len(examples) < 8:
                    examples.append({"kind": "repetition", "index": idx, "reason": reason, "text": text[:160]})

        prev_text = text
        prev_norm = norm

    return SubtitleSelfcheckResult(
        event_count=event_count,
        keepalive_count=keepalives,
        empty_count=empties,
        translated_count=translated,
        max_chars=max_chars,
        duplicate_events=duplicates,
        repetition_events=repetitions,
        languages=languages,
        examples=examples,
    )


def summarize_result(result: SubtitleSelfcheckResult) -> str:
    lines = [
        f"events={result.event_count}",
        f"keepalives={result.keepalive_count}",
        f"empty={result.empty_count}",
        f"translated={result.translated_count}",
        f"max_chars={result.max_chars}",
        f"duplicates={result.duplicate_events}",
        f"repetitions={result.repetition_events}",
        f"languages={','.join(result.languages)}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
