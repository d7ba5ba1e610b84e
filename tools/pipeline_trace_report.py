#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List


PIPELINE_TRACE_RE = re.compile(r"pipeline_trace\s+(\{.*\})\s*$")


def _parse_trace_rows(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            m = PIPELINE_TRACE_RE.search(line.strip())
            if not m:
                continue
            try:
                row = json.loads(m.group(1))
            except json.JSONDecodeError:
                continue
            if str(row.get("topic", "")) != "pipeline":
                continue
            rows.append(row)
    return rows


def _group_rows(rows: List[Dict[str, Any]]) -> Dict[str, Counter]:
    grouped: Dict[str, Counter] = defaultdict(Counter)
    for row in rows:
        event = str(row.get("event", "unknown"))
        if event == "gate":
            reason = str(row.get("reason", "")) or ("admit" if row.get("admit") else "reject")
        elif event == "translation":
            reason = "cached" if row.get("cached") else "fetched"
        else:
            reason = str(row.get("reason", "")) or "-"
        grouped[event][reason] += 1
    return grouped


def _summarize(rows: List[Dict[str, Any]], grouped: Dict[str, Counter]) -> str:
    lines: List[str] = [f"rows={len(rows)}", f"events={len(grouped)}"]
    for event in sorted(grouped):
        counts = grouped[event]
        detail = " ".join(f"{reason}={n}" for reason, n in sorted(counts.items()))
        lines.append(f"[{event}] total={sum(counts.values())} {detail}")

    publishes = [r for r in rows if str(r.get("event", "")) == "publish"]
    if publishes:
        last = max(publishes, key=lambda r: int(r.get("seq", 0) or 0))
        lines.append(f"last_version={int(last.get('version', 0) or 0)}")
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize pipeline_trace events from a live subtitle server log.")
    p.add_argument("--log", required=True, help="Path to server log file")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    rows = _parse_trace_rows(Path(args.log).expanduser())
    print(_summarize(rows, _group_rows(rows)))


if __name__ == "__main__":
    main()
