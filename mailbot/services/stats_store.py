"""
Append-only usage statistics
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import structlog

logger = structlog.get_logger()


class StatsStore(ABC):
    """Bookkeeping sink written from concurrent request handlers"""

    @abstractmethod
    async def record(self, event: str, **fields: Any) -> None:
        pass

    @abstractmethod
    async def summary(self) -> Dict[str, Any]:
        pass


class JsonlStatsStore(StatsStore):
    """Stats as one JSON document per line, appended and never rewritten"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def record(self, event: str, **fields: Any) -> None:
        ts = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        entry = {"ts": ts, "event": event, **fields}
        line = json.dumps(entry, sort_keys=True, default=str) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        # One write call per record.
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt stats line", line_number=line_number)
        return entries

    async def summary(self) -> Dict[str, Any]:
        """Fold the log into counters"""
        async with self._lock:
            entries = await asyncio.to_thread(self._load)

        event_counts: Dict[str, int] = {}
        push_outcomes: Dict[str, int] = {}
        installations = set()
        repositories = set()
        for entry in entries:
            event = entry.get("event", "unknown")
            event_counts[event] = event_counts.get(event, 0) + 1
            if event == "push":
                outcome = entry.get("outcome", "unknown")
                push_outcomes[outcome] = push_outcomes.get(outcome, 0) + 1
                if entry.get("repository"):
                    repositories.add(entry["repository"])
            elif event in ("installation", "installation_repositories"):
                installation_id = entry.get("installation_id")
                if entry.get("action") == "deleted":
                    installations.discard(installation_id)
                elif installation_id is not None:
                    installations.add(installation_id)

        return {
            "total_events": len(entries),
            "event_counts": event_counts,
            "push_outcomes": push_outcomes,
            "active_installations": len(installations),
            "repositories_pushed": len(repositories),
        }
