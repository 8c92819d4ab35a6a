from __future__ import annotations

import re
from collections import deque
from pathlib import Path

# Matches LOG_FORMAT from logging_setup.
LOG_LINE_RE = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2},\d{3})\s+\[(?P<level>[A-Z]+)\]\s+\[(?P<logger>[^\]]+)\]\s?(?P<message>.*)$"
)


def read_tail(path: str, n: int = 200) -> list[str]:
    p = Path(path)
    if not p.exists() or n <= 0:
        return []
    with p.open("r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=n)]


def parse_log_line(line: str) -> dict[str, str]:
    match = LOG_LINE_RE.match(line)
    if match is None:
        # Continuation lines (tracebacks) carry no header.
        return {"raw": line, "ts": "", "level": "", "logger": "", "message": line}
    return {"raw": line, **match.groupdict()}


def build_log_tail_payload(path: str, n: int = 200, level: str | None = None, logger: str | None = None) -> dict:
    """Parse the last ``n`` log lines, optionally keeping one level and one logger subtree."""
    level_wanted = (level or "").strip().upper() or None
    logger_wanted = (logger or "").strip() or None

    items = []
    for line in read_tail(path, n=n):
        entry = parse_log_line(line)
        if level_wanted and entry["level"] != level_wanted:
            continue
        if logger_wanted and not (
            entry["logger"] == logger_wanted or entry["logger"].startswith(logger_wanted + ".")
        ):
            continue
        items.append(entry)

    return {
        "path": path,
        "n": n,
        "level": level_wanted,
        "logger": logger_wanted,
        "count": len(items),
        "tail": "\n".join(entry["raw"] for entry in items),
        "items": items,
    }
