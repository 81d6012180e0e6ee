import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from instance_catalog import Instance, find_instance
from launcher_config import load_client_config, selected_account
from ledger_store import LedgerStore
from session_ledger import InstanceStats, SessionLedger, now_ms
from unlock_ledger import InstanceAccess


class ConfigurationMissing(Exception):
    """Запуск невозможен: не выбран инстанс или аккаунт, либо инстанс недоступен."""


@dataclass(frozen=True)
class LaunchOptions:
    instance_name: str
    username: str
    game_dir: Path
    minecraft_version: Optional[str]
    loader_type: str = "none"
    loader_version: Optional[str] = None
    java_path: Optional[str] = None
    memory_min: str = "2048M"
    memory_max: str = "4096M"
    screen: Tuple[int, int] = (854, 480)
    detached: bool = True
    download_multi: int = 5
    url: Optional[str] = None
    verify: bool = False
    ignored: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def loader_enabled(self) -> bool:
        return self.loader_type not in ("", "none")


def build_launch_options(instance: Instance, username: str, config: Dict[str, object], instances_dir: Path) -> LaunchOptions:
    java_config = config.get("java_config") or {}
    memory = java_config.get("java_memory") or {}  # type: ignore[union-attr]
    screen = (config.get("game_config") or {}).get("screen_size") or {}  # type: ignore[union-attr]
    launcher_config = config.get("launcher_config") or {}
    if not instance.loader.minecraft_version:
        logging.warning(f"У инстанса {instance.name} не указана версия, используется последняя")
    return LaunchOptions(
        instance_name=instance.name,
        username=username,
        game_dir=Path(instances_dir) / instance.name,
        minecraft_version=instance.loader.minecraft_version,
        loader_type=instance.loader.loader_type,
        loader_version=instance.loader.loader_version,
        java_path=java_config.get("java_path"),  # type: ignore[union-attr]
        memory_min=f"{int(memory.get('min', 2)) * 1024}M",
        memory_max=f"{int(memory.get('max', 4)) * 1024}M",
        screen=(int(screen.get("width", 854)), int(screen.get("height", 480))),
        detached=launcher_config.get("close_launcher") != "close-all",  # type: ignore[union-attr]
        download_multi=int(launcher_config.get("download_multi", 5)),  # type: ignore[union-attr]
        url=instance.url,
        verify=instance.verify,
        ignored=instance.ignored,
    )


def prepare_launch(store: LedgerStore, access: InstanceAccess, instances_dir: Path) -> LaunchOptions:
    """Проверяет выбор инстанса и аккаунта. Ничего не меняет при ошибке."""
    config = load_client_config(store)
    instance_name = config.get("instance_selected")
    if not instance_name:
        raise ConfigurationMissing("Инстанс не выбран. Выберите инстанс в списке.")
    account = selected_account(store)
    if not account or not account.get("name"):
        raise ConfigurationMissing("Нет выбранного аккаунта. Введите ник.")
    username = str(account["name"])
    instances = access.catalog.get_instance_list()
    instance = find_instance(instances, instance_name)
    if instance is None:
        logging.error(f"Выбранный инстанс не найден в каталоге: {instance_name}")
        raise ConfigurationMissing("Выбранный инстанс не найден. Проверьте настройки.")
    if instance not in access.filter_authorized(instances, username):
        logging.error(f"Пользователь {username} не допущен к инстансу {instance_name}")
        raise ConfigurationMissing(f"У вас нет доступа к инстансу {instance_name}.")
    return build_launch_options(instance, username, config, instances_dir)


class LaunchEvent(Enum):
    EXTRACT = "extract"
    PROGRESS = "progress"
    CHECK = "check"
    ESTIMATED = "estimated"
    SPEED = "speed"
    PATCH = "patch"
    DATA = "data"
    CLOSE = "close"
    ERROR = "error"


TERMINAL_EVENTS = (LaunchEvent.CLOSE, LaunchEvent.ERROR)


class LaunchSession:
    """Обработчик событий одного запуска. Первое завершающее событие записывает сессию."""

    def __init__(self, instance_name: str, session_ledger: SessionLedger,
                 clock: Callable[[], int] = now_ms):
        self.instance_name = instance_name
        self.session_ledger = session_ledger
        self.clock = clock
        self.started_at: Optional[int] = None
        self.finished = False
        self.stats: Optional[InstanceStats] = None

    def start(self) -> None:
        self.started_at = self.clock()

    def handle(self, event: LaunchEvent, *args) -> None:
        if event in TERMINAL_EVENTS:
            if self.finished:
                logging.debug(f"Повторное завершающее событие {event.value} для {self.instance_name} пропущено")
                return
            self.finished = True
            if event is LaunchEvent.ERROR:
                logging.error(f"Ошибка запуска {self.instance_name}: {args[0] if args else ''}")
            else:
                logging.info(f"Игра {self.instance_name} закрыта с кодом {args[0] if args else None}")
            self.stats = self.session_ledger.record_session(self.instance_name, self.started_at)
        elif event in (LaunchEvent.PROGRESS, LaunchEvent.CHECK):
            current, total = (args + (0, 0))[:2]
            logging.debug(f"{event.value}: {current}/{total}")
        elif event is LaunchEvent.ESTIMATED:
            logging.info(f"Оставшееся время: {args[0] if args else '?'}s")
        elif event is LaunchEvent.SPEED:
            speed = float(args[0]) if args else 0.0
            logging.info(f"{speed / 1067008:.2f} Mb/s")
        else:
            logging.info(f"Событие запуска {event.value} для {self.instance_name}")
