import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional


class StorageUnavailable(Exception):
    """Хранилище не удалось прочитать или записать."""


class LedgerStore:
    """Простое хранилище записей на JSON-файлах.

    Каждая запись (configClient, accounts, unlockedInstances, instanceStats)
    хранится в отдельном файле ``<name>.json`` как список документов с полем ``ID``.
    Одиночные записи хранятся как список из одного документа.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Сериализует read-modify-write одной записи между потоками."""
        with self._locks_guard:
            rlock = self._locks.setdefault(name, threading.RLock())
        with rlock:
            yield

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def _load(self, name: str) -> List[Dict[str, object]]:
        path = self._path(name)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageUnavailable(f"{path.name}: {e}") from e
        if not isinstance(data, list):
            raise StorageUnavailable(f"{path.name}: ожидался список документов")
        return [d for d in data if isinstance(d, dict)]

    def _dump(self, name: str, docs: List[Dict[str, object]]) -> None:
        path = self._path(name)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(docs, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise StorageUnavailable(f"{path.name}: {e}") from e

    def read(self, name: str, record_id: Optional[object] = None) -> Optional[Dict[str, object]]:
        docs = self._load(name)
        if record_id is None:
            return dict(docs[0]) if docs else None
        for doc in docs:
            if doc.get("ID") == record_id:
                return dict(doc)
        return None

    def read_all(self, name: str) -> List[Dict[str, object]]:
        return [dict(d) for d in self._load(name)]

    def create(self, name: str, document: Dict[str, object]) -> Dict[str, object]:
        with self.lock(name):
            docs = self._load(name)
            next_id = max((int(d["ID"]) for d in docs if isinstance(d.get("ID"), int)), default=0) + 1
            doc = dict(document)
            doc["ID"] = next_id
            docs.append(doc)
            self._dump(name, docs)
            return dict(doc)

    def update(self, name: str, document: Dict[str, object], record_id: Optional[object] = None) -> None:
        """Заменяет документ с указанным ID (по умолчанию первый). Создаёт запись, если её нет."""
        with self.lock(name):
            docs = self._load(name)
            doc = dict(document)
            target_id = record_id if record_id is not None else doc.get("ID")
            for i, existing in enumerate(docs):
                if target_id is None or existing.get("ID") == target_id:
                    doc["ID"] = existing.get("ID")
                    docs[i] = doc
                    break
            else:
                doc["ID"] = target_id if target_id is not None else len(docs) + 1
                docs.append(doc)
                logging.info(f"Создана запись {name}")
            self._dump(name, docs)
