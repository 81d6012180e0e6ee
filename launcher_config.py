import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from appdirs import user_data_dir

from ledger_store import LedgerStore, StorageUnavailable


LAUNCHER_NAME = "BridgeLauncher"
VALIDATE_URL = "http://51.222.47.158:10023/BridgeClient/api/validate.php"
GUEST_NAME = "Guest"

CLIENT_RECORD = "configClient"
ACCOUNTS_RECORD = "accounts"


def get_data_root() -> Path:
    data_root = Path(user_data_dir(LAUNCHER_NAME, False))
    data_root.mkdir(parents=True, exist_ok=True)
    return data_root


def get_instances_dir() -> Path:
    d = get_data_root() / "instances"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _app_base_dir() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    return Path(__file__).parent


def get_logs_dir() -> Path:
    d = _app_base_dir() / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _init_logging() -> None:
    """Инициализирует логирование лаунчера с ротацией файлов."""
    logs_dir = get_logs_dir()
    log_file = logs_dir / "launcher.log"
    logger = logging.getLogger()
    if logger.handlers:
        return  # уже настроено
    logger.setLevel(logging.INFO)
    handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(fmt)
    logger.addHandler(handler)
    logging.info("Логирование инициализировано")


# --- файловые настройки лаунчера ---

def default_launcher_settings() -> Dict[str, object]:
    return {
        "validate_url": VALIDATE_URL,
        "validate_timeout_sec": 10.0,
        "instances_url": "",
        "catalog_cache_sec": 300,
    }


def read_launcher_settings(data_root: Path) -> Dict[str, object]:
    settings_path = data_root / "launcher_settings.json"
    defaults = default_launcher_settings()
    if settings_path.exists():
        try:
            data = json.loads(settings_path.read_text(encoding="utf-8"))
            for k in list(defaults.keys()):
                if k in data:
                    defaults[k] = data[k]
        except Exception as e:
            logging.warning(f"Не удалось прочитать launcher_settings.json: {e}")
    return defaults


# --- состояние клиента (запись configClient в хранилище) ---

def default_client_config() -> Dict[str, object]:
    return {
        "account_selected": None,
        "instance_selected": None,
        "java_config": {"java_path": None, "java_memory": {"min": 2, "max": 4}},
        "game_config": {"screen_size": {"width": 854, "height": 480}},
        "launcher_config": {
            "download_multi": 5,
            "close_launcher": "close-launcher",
        },
    }


def _fill_defaults(target: Dict[str, object], defaults: Dict[str, object]) -> bool:
    """Дописывает недостающие ключи (рекурсивно). Возвращает True, если что-то добавлено."""
    changed = False
    for key, value in defaults.items():
        if key not in target or (isinstance(value, dict) and not isinstance(target[key], dict)):
            target[key] = json.loads(json.dumps(value))
            changed = True
        elif isinstance(value, dict):
            changed = _fill_defaults(target[key], value) or changed  # type: ignore[arg-type]
    return changed


def load_client_config(store: LedgerStore) -> Dict[str, object]:
    """Читает configClient, дополняет отсутствующие разделы и сохраняет один раз."""
    with store.lock(CLIENT_RECORD):
        try:
            raw = store.read(CLIENT_RECORD)
        except StorageUnavailable as e:
            logging.warning(f"Не удалось прочитать configClient: {e}")
            raw = None
        config = dict(raw) if isinstance(raw, dict) else {}
        if _fill_defaults(config, default_client_config()):
            try:
                store.update(CLIENT_RECORD, config)
            except StorageUnavailable as e:
                logging.warning(f"Не удалось сохранить configClient по умолчанию: {e}")
        return config


def save_client_config(store: LedgerStore, config: Dict[str, object]) -> None:
    with store.lock(CLIENT_RECORD):
        store.update(CLIENT_RECORD, config)


def select_instance(store: LedgerStore, instance_name: Optional[str]) -> None:
    with store.lock(CLIENT_RECORD):
        config = load_client_config(store)
        if config.get("instance_selected") == instance_name:
            return
        config["instance_selected"] = instance_name
        store.update(CLIENT_RECORD, config)


# --- аккаунты ---

def list_accounts(store: LedgerStore) -> List[Dict[str, object]]:
    try:
        return store.read_all(ACCOUNTS_RECORD)
    except StorageUnavailable as e:
        logging.warning(f"Не удалось прочитать аккаунты: {e}")
        return []


def select_account(store: LedgerStore, nickname: str) -> Dict[str, object]:
    """Выбирает оффлайн-аккаунт по нику, создавая его при необходимости."""
    nickname = nickname.strip()
    if not nickname:
        raise ValueError("Пустой ник")
    with store.lock(ACCOUNTS_RECORD):
        account = next((a for a in store.read_all(ACCOUNTS_RECORD) if a.get("name") == nickname), None)
        if account is None:
            account = store.create(ACCOUNTS_RECORD, {"name": nickname})
            logging.info(f"Создан аккаунт {nickname}")
    with store.lock(CLIENT_RECORD):
        config = load_client_config(store)
        config["account_selected"] = account.get("ID")
        store.update(CLIENT_RECORD, config)
    return account


def selected_account(store: LedgerStore, fallback_to_first: bool = False) -> Optional[Dict[str, object]]:
    """Возвращает выбранный аккаунт. С fallback_to_first выбирает первый сохранённый."""
    config = load_client_config(store)
    account_id = config.get("account_selected")
    account = None
    if account_id is not None:
        try:
            account = store.read(ACCOUNTS_RECORD, account_id)
        except StorageUnavailable as e:
            logging.warning(f"Не удалось прочитать аккаунт {account_id}: {e}")
    if account is None and fallback_to_first:
        accounts = list_accounts(store)
        if accounts:
            account = accounts[0]
            config["account_selected"] = account.get("ID")
            try:
                save_client_config(store, config)
            except StorageUnavailable as e:
                logging.warning(f"Не удалось сохранить выбранный аккаунт: {e}")
    return account


def identity_name(store: LedgerStore) -> str:
    """Текущий пользователь для списка инстансов и проверки кодов: выбранный аккаунт, иначе гость."""
    account = selected_account(store, fallback_to_first=True)
    name = account.get("name") if account else None
    return str(name) if name else GUEST_NAME
