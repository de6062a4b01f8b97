"""
pagegrade/utils/history.py
In-memory store of past overall scores, keyed by normalized URL.

The analyzer only reads snapshots from a store; recording a run is the
caller's decision. Any object with an async get_snapshots(url, limit) works.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from ..models import AnalysisResult, HistorySnapshot
from .urls import normalize_audit_url


class HistoryStore(Protocol):
    async def get_snapshots(self, url: str, limit: int = 10) -> List[HistorySnapshot]:
        ...


class InMemoryHistoryStore:
    def __init__(self):
        self._mem: Dict[str, List[HistorySnapshot]] = {}

    async def record(self, result: AnalysisResult, timestamp: Optional[datetime] = None) -> HistorySnapshot:
        snapshot = HistorySnapshot(
            timestamp=timestamp or result.finished_at or datetime.now(timezone.utc),
            overall_score=result.overall,
        )
        key = normalize_audit_url(result.normalized_url)
        self._mem.setdefault(key, []).append(snapshot)
        return snapshot

    async def get_snapshots(self, url: str, limit: int = 10) -> List[HistorySnapshot]:
        """Last `limit` snapshots for url, oldest first."""
        runs = self._mem.get(normalize_audit_url(url), [])
        return list(runs[-limit:]) if limit > 0 else []

    def clear(self) -> None:
        self._mem.clear()
