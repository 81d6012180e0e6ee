import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ledger_store import LedgerStore, StorageUnavailable


STATS_RECORD = "instanceStats"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class InstanceStats:
    playtime_ms: int = 0
    last_session_at: Optional[int] = None


def format_playtime(duration_ms: Optional[int]) -> str:
    """Форматирует время игры: "1h 5m", "12m" или "40s" для сессий короче минуты."""
    if not duration_ms or duration_ms < 0:
        return "0m"
    total_seconds = int(duration_ms // 1000)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if not hours and not minutes:
        parts.append(f"{seconds}s")
    return " ".join(parts)


class SessionLedger:
    """Накапливает время игры по инстансам между запусками."""

    def __init__(self, store: LedgerStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    def stats_for(self, instance_name: str) -> Optional[InstanceStats]:
        try:
            stats = self.store.read(STATS_RECORD)
        except StorageUnavailable as e:
            logging.warning(f"Не удалось загрузить статистику инстанса: {e}")
            return None
        entry = ((stats or {}).get("instances") or {}).get(instance_name)
        if not isinstance(entry, dict):
            return None
        return InstanceStats(
            playtime_ms=int(entry.get("playtimeMs") or 0),
            last_session_at=entry.get("lastSessionAt"),
        )

    def record_session(self, instance_name: Optional[str], started_at: Optional[int]) -> Optional[InstanceStats]:
        """Добавляет длительность завершённой сессии к статистике инстанса."""
        if not instance_name or started_at is None:
            return None
        now = self.clock()
        duration = max(0, now - started_at)
        with self.store.lock(STATS_RECORD):
            try:
                stats = self.store.read(STATS_RECORD)
                if not stats:
                    stats = self.store.create(STATS_RECORD, {"instances": {}})
            except StorageUnavailable as e:
                logging.warning(f"Не удалось открыть статистику инстансов: {e}")
                return None

            existing: Dict[str, object] = dict(stats.get("instances") or {})
            current = existing.get(instance_name)
            current = dict(current) if isinstance(current, dict) else {}
            playtime_ms = int(current.get("playtimeMs") or 0) + duration
            current.update({"playtimeMs": playtime_ms, "lastSessionAt": now})
            existing[instance_name] = current
            updated = dict(stats)
            updated["instances"] = existing
            try:
                self.store.update(STATS_RECORD, updated, stats.get("ID"))
            except StorageUnavailable as e:
                logging.warning(f"Не удалось сохранить статистику инстанса: {e}")
                return None
        logging.info(f"Сессия {instance_name}: +{format_playtime(duration)}, всего {format_playtime(playtime_ms)}")
        return InstanceStats(playtime_ms, now)
