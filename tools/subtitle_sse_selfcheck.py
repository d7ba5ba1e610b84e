#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import time
import urllib.request
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from livesub.debug.subtitle_selfcheck import analyze_subtitle_events, summarize_result


def _parse_sse_lines(lines: Iterable[str]) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    data_lines: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if line.startswith(":"):
            events.append({"type": "keepalive"})
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
            continue
        if line == "" and data_lines:
            raw_data = "\n".join(data_lines)
            data_lines = []
            try:
                payload = json.loads(raw_data)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                payload["type"] = "event"
                events.append(payload)
    return events


def _record_events(url: str, duration_sec: float, read_timeout_sec: float) -> List[Dict[str, Any]]:
    deadline = time.monotonic() + max(0.1, float(duration_sec))
    lines: List[str] = []
    req = urllib.request.Request(url, headers={"Accept": "text/event-stream"})
    with urllib.request.urlopen(req, timeout=read_timeout_sec) as resp:
        while time.monotonic() < deadline:
            raw = resp.readline()
            if not raw:
                break
            lines.append(raw.decode("utf-8", errors="replace"))
    return _parse_sse_lines(lines)


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Record the live subtitle SSE stream and self-check caption stability.")
    p.add_argument("--url", default="http://127.0.0.1:8080/events")
    p.add_argument("--duration-sec", type=float, default=0.0, help="record this long from --url (0 = load jsonl only)")
    p.add_argument("--read-timeout-sec", type=float, default=30.0, help="socket timeout; keepalives arrive every 15s")
    p.add_argument("--events-jsonl", default="", help="save recorded events to jsonl; or load existing when not recording")
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.duration_sec > 0:
        events = _record_events(str(args.url), float(args.duration_sec), float(args.read_timeout_sec))
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --duration-sec to record, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    result = analyze_subtitle_events(events)
    print(summarize_result(result))


if __name__ == "__main__":
    main()
