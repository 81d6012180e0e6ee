import logging
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests


@dataclass(frozen=True)
class LoaderInfo:
    minecraft_version: Optional[str] = None
    loader_type: str = "none"
    loader_version: Optional[str] = None


@dataclass(frozen=True)
class Instance:
    name: str
    password: Optional[str] = None
    whitelist_active: bool = False
    whitelist: Tuple[str, ...] = ()
    status: Optional[object] = None
    url: Optional[str] = None
    loader: LoaderInfo = field(default_factory=LoaderInfo)
    verify: bool = False
    ignored: Tuple[str, ...] = ()
    background_url: Optional[str] = None
    avatar_url: Optional[str] = None


def _first(raw: Dict[str, object], *keys: str) -> Optional[object]:
    for key in keys:
        value = raw.get(key)
        if value:
            return value
    return None


def _parse_loader(raw: object) -> LoaderInfo:
    if not isinstance(raw, dict):
        return LoaderInfo()
    loader_type = _first(raw, "loader_type", "loadder_type") or "none"
    version = _first(raw, "loader_version", "loadder_version")
    mc_version = raw.get("minecraft_version")
    return LoaderInfo(
        minecraft_version=str(mc_version) if mc_version else None,
        loader_type=str(loader_type),
        loader_version=str(version) if version else None,
    )


def parse_instance(raw: Dict[str, object], name: Optional[str] = None) -> Optional[Instance]:
    """Разбирает описание инстанса с сервера. Без имени инстанс пропускается."""
    name = name or raw.get("name")  # type: ignore[assignment]
    if not name:
        return None
    password = raw.get("password")
    whitelist = raw.get("whitelist")
    ignored = raw.get("ignored")
    return Instance(
        name=str(name),
        password=str(password) if password else None,
        whitelist_active=bool(raw.get("whitelistActive", False)),
        whitelist=tuple(str(n) for n in whitelist) if isinstance(whitelist, list) else (),
        status=raw.get("status"),
        url=raw.get("url") or None,  # type: ignore[arg-type]
        loader=_parse_loader(_first(raw, "loader", "loadder")),
        verify=bool(raw.get("verify", False)),
        ignored=tuple(str(p) for p in ignored) if isinstance(ignored, list) else (),
        background_url=_first(raw, "backgroundUrl", "background"),  # type: ignore[arg-type]
        avatar_url=_first(raw, "avatarUrl", "iconUrl", "icon"),  # type: ignore[arg-type]
    )


def parse_instance_list(data: object) -> List[Instance]:
    """Принимает как список инстансов, так и словарь name -> описание."""
    items: List[Tuple[Optional[str], object]] = []
    if isinstance(data, dict):
        items = [(str(k), v) for k, v in data.items()]
    elif isinstance(data, list):
        items = [(None, v) for v in data]
    instances: List[Instance] = []
    seen = set()
    for name, raw in items:
        if not isinstance(raw, dict):
            continue
        instance = parse_instance(raw, name)
        if instance is None or instance.name in seen:
            continue
        seen.add(instance.name)
        instances.append(instance)
    return instances


def find_instance(instances: List[Instance], name: Optional[str]) -> Optional[Instance]:
    return next((i for i in instances if i.name == name), None)


class InstanceCatalog:
    def __init__(self, url: str, cache_file: Path, cache_duration: float = 300, timeout: float = 12.0):
        self.url = url
        self.cache_file = Path(cache_file)
        self.cache_duration = cache_duration
        self.timeout = timeout
        self.raw_cache: object = []
        self.last_update = 0.0

        # Загружаем кэш при инициализации
        self._load_cache()

    def _load_cache(self):
        """Загружает кэш списка инстансов из файла"""
        try:
            if self.cache_file.exists():
                with open(self.cache_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                    self.raw_cache = data.get('instances', [])
                    self.last_update = data.get('timestamp', 0)
                    logging.info(f"Загружен кэш инстансов: {len(self.raw_cache)}")
        except Exception as e:
            logging.warning(f"Не удалось загрузить кэш инстансов: {e}")
            self.raw_cache = []

    def _save_cache(self):
        """Сохраняет кэш списка инстансов в файл"""
        try:
            data = {
                'instances': self.raw_cache,
                'timestamp': self.last_update
            }
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except Exception as e:
            logging.warning(f"Не удалось сохранить кэш инстансов: {e}")

    def _update_sync(self):
        """Синхронно обновляет список инстансов с сервера"""
        if not self.url:
            logging.warning("URL списка инстансов не задан, используется кэш")
            return
        try:
            response = requests.get(self.url, timeout=self.timeout)
            if response.status_code != 200:
                logging.error(f"Ошибка при получении списка инстансов: {response.status_code}")
                return
            data = response.json()
            if not isinstance(data, (list, dict)):
                logging.error("Некорректный ответ со списком инстансов")
                return
            self.raw_cache = data
            self.last_update = time.time()
            self._save_cache()
            logging.info(f"Список инстансов обновлён: {len(data)}")
        except (requests.RequestException, ValueError) as e:
            # В случае ошибки используем старый кэш
            logging.error(f"Ошибка при обновлении списка инстансов: {e}")

    def get_instance_list(self) -> List[Instance]:
        """Возвращает упорядоченный список инстансов, обновляя устаревший кэш"""
        if time.time() - self.last_update > self.cache_duration:
            self._update_sync()
        return parse_instance_list(self.raw_cache)

    def force_update(self) -> List[Instance]:
        """Принудительно обновляет список инстансов, не дожидаясь истечения кэша"""
        logging.info("Принудительное обновление списка инстансов...")
        self._update_sync()
        return parse_instance_list(self.raw_cache)
