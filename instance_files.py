"""Синхронизация файлов инстанса (моды, конфиги, ресурспаки) по индексу с сервера.

Индекс по адресу ``url`` инстанса: список файлов либо ``{"files": [...]}``,
каждый файл ``{"path", "url", "size"?, "sha1"|"hash"?}``. Пути из ``ignored``
не перезаписываются и не удаляются, если уже есть на диске.
"""
import hashlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Sequence, Tuple

import requests


class InstanceSyncError(Exception):
    """Не удалось скачать часть файлов инстанса."""


@dataclass(frozen=True)
class RemoteFile:
    path: str
    url: str
    size: Optional[int] = None
    sha1: Optional[str] = None


def sha1_of_file(path: Path) -> str:
    h = hashlib.sha1()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _safe_relpath(raw: object) -> Optional[str]:
    rel = str(raw or "").strip().replace("\\", "/")
    if not rel:
        return None
    parts = PurePosixPath(rel).parts
    # абсолютные пути и выход за папку инстанса не принимаем
    if rel.startswith("/") or ".." in parts or (parts and parts[0].endswith(":")):
        return None
    return str(PurePosixPath(*parts))


def parse_file_index(data: object) -> List[RemoteFile]:
    entries = data.get("files") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        return []
    files: List[RemoteFile] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        rel = _safe_relpath(entry.get("path"))
        src_url = str(entry.get("url") or "").strip()
        if not rel or not src_url:
            continue
        size = entry.get("size")
        sha1 = entry.get("sha1") or entry.get("hash")
        files.append(RemoteFile(
            path=rel,
            url=src_url,
            size=int(size) if isinstance(size, (int, float)) and not isinstance(size, bool) else None,
            sha1=str(sha1).strip().lower() if sha1 else None,
        ))
    return files


def is_ignored(rel_path: str, ignored: Sequence[str]) -> bool:
    for pattern in ignored:
        pattern = str(pattern).strip().replace("\\", "/").strip("/")
        if pattern and (rel_path == pattern or rel_path.startswith(pattern + "/")):
            return True
    return False


class InstanceFileSync:
    """Проверяет и докачивает файлы инстанса в несколько потоков.

    verify: сверять sha1 уже скачанных файлов и удалять лишние файлы в папках,
    которыми управляет индекс (например, старые моды из ``mods/``).
    """

    def __init__(self, game_dir: Path, url: str, verify: bool = False, ignored: Sequence[str] = (),
                 workers: int = 5, timeout: float = 60.0, session=None):
        self.game_dir = Path(game_dir)
        self.url = url
        self.verify = verify
        self.ignored = tuple(ignored)
        self.workers = max(1, int(workers or 1))
        self.timeout = timeout
        self.session = session or requests

        self.on_check: Callable[[int, int], None] = lambda current, total: None
        self.on_progress: Callable[[int, int], None] = lambda current, total: None
        self.on_speed: Callable[[float], None] = lambda bytes_per_sec: None
        self.on_estimated: Callable[[int], None] = lambda seconds: None

    def fetch_index(self) -> Optional[List[RemoteFile]]:
        """None, если индекс недоступен: тогда файлы на диске не трогаем."""
        try:
            r = self.session.get(self.url, timeout=self.timeout)
            if r.status_code != 200:
                logging.error(f"Ошибка при получении индекса файлов: {r.status_code}")
                return None
            return parse_file_index(r.json())
        except (requests.RequestException, ValueError) as e:
            logging.error(f"Ошибка при получении индекса файлов {self.url}: {e}")
            return None

    def _needs_download(self, remote: RemoteFile) -> bool:
        dst = self.game_dir / remote.path
        if not dst.is_file():
            return True
        if is_ignored(remote.path, self.ignored):
            return False
        if remote.size is not None and dst.stat().st_size != remote.size:
            return True
        if self.verify and remote.sha1 and sha1_of_file(dst) != remote.sha1:
            return True
        return False

    def check(self, files: List[RemoteFile]) -> List[RemoteFile]:
        missing = []
        for n, remote in enumerate(files, 1):
            if self._needs_download(remote):
                missing.append(remote)
            self.on_check(n, len(files))
        return missing

    def _download_one(self, remote: RemoteFile) -> int:
        r = self.session.get(remote.url, timeout=self.timeout)
        if r.status_code >= 300:
            raise InstanceSyncError(f"{remote.path}: HTTP {r.status_code}")
        data = r.content
        if remote.sha1 and hashlib.sha1(data).hexdigest() != remote.sha1:
            raise InstanceSyncError(f"{remote.path}: контрольная сумма не совпадает")
        dst = self.game_dir / remote.path
        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_name(dst.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(dst)
        return len(data)

    def download(self, files: List[RemoteFile]) -> int:
        if not files:
            return 0
        total_bytes = sum(f.size or 0 for f in files)
        done_files = 0
        done_bytes = 0
        failed: List[Tuple[str, Exception]] = []
        started = time.monotonic()

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(self._download_one, f): f for f in files}
            for future in as_completed(futures):
                remote = futures[future]
                try:
                    size = future.result()
                except (requests.RequestException, OSError, InstanceSyncError) as e:
                    logging.error(f"Не удалось скачать {remote.url}: {e}")
                    failed.append((remote.path, e))
                    continue
                done_files += 1
                done_bytes += size
                elapsed = max(time.monotonic() - started, 1e-3)
                speed = done_bytes / elapsed
                self.on_progress(done_files, len(files))
                self.on_speed(speed)
                if total_bytes and speed:
                    self.on_estimated(int(max(total_bytes - done_bytes, 0) / speed))

        if failed:
            raise InstanceSyncError(f"Не удалось скачать файлов: {len(failed)} (первый: {failed[0][0]})")
        return done_files

    def remove_stale(self, files: List[RemoteFile]) -> List[str]:
        """Удаляет файлы, которых нет в индексе, только в папках, перечисленных в индексе."""
        listed = {f.path for f in files}
        managed_dirs = {PurePosixPath(f.path).parts[0] for f in files if len(PurePosixPath(f.path).parts) > 1}
        removed = []
        for top in sorted(managed_dirs):
            root = self.game_dir / top
            if not root.is_dir():
                continue
            for p in list(root.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(self.game_dir).as_posix()
                if rel in listed or is_ignored(rel, self.ignored):
                    continue
                p.unlink()
                removed.append(rel)
        if removed:
            logging.info(f"Удалены лишние файлы инстанса: {len(removed)}")
        return removed

    def run(self) -> Tuple[int, int]:
        """Возвращает (скачано, удалено)."""
        files = self.fetch_index()
        if files is None:
            return 0, 0
        logging.info(f"Файлов в индексе инстанса: {len(files)}")
        missing = self.check(files)
        downloaded = self.download(missing)
        removed = self.remove_stale(files) if self.verify else []
        return downloaded, len(removed)
