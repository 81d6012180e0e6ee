import logging
import os
import subprocess
import traceback
from pathlib import Path
from typing import Dict, List, Optional

import minecraft_launcher_lib as mll
from PySide6.QtCore import QThread, Signal

from instance_files import InstanceFileSync
from launch_session import LaunchEvent, LaunchOptions, LaunchSession


def find_installed_version_id(game_dir: Path, mc_version: str, loader_type: str) -> Optional[str]:
    try:
        installed_ids = [str(v.get("id", "")) for v in mll.utils.get_installed_versions(str(game_dir))]
    except Exception:
        return None
    if loader_type == "fabric":
        # классический id fabric-loader-<loader>-<mc_version>
        candidates = [vid for vid in installed_ids if vid.startswith("fabric-loader-") and vid.endswith(f"-{mc_version}")]
    else:
        candidates = [vid for vid in installed_ids if vid == mc_version]
    if candidates:
        candidates.sort()
        return candidates[-1]
    return None


def process_kwargs(game_dir: Path, detached: bool, os_name: str = os.name) -> Dict[str, object]:
    """Параметры Popen. Отвязанная игра живёт в своей группе процессов и переживает лаунчер."""
    kwargs: Dict[str, object] = {"cwd": str(game_dir)}
    if os_name == 'nt':
        # Скрываем консоль на Windows
        flags = subprocess.CREATE_NO_WINDOW
        if detached:
            flags |= subprocess.CREATE_NEW_PROCESS_GROUP
        kwargs["creationflags"] = flags
    elif detached:
        kwargs["start_new_session"] = True
    return kwargs


class LaunchThread(QThread):
    """Синхронизирует файлы инстанса, устанавливает версию и запускает игру, сообщая о ходе запуска сигналами."""
    sig_status = Signal(str)
    sig_extract = Signal()
    sig_progress = Signal(int, int)  # current, total
    sig_check = Signal(int, int)
    sig_estimated = Signal(int)  # seconds
    sig_speed = Signal(float)  # bytes/s
    sig_patch = Signal()
    sig_data = Signal()
    sig_close = Signal(int)  # exit code
    sig_error = Signal(str)

    def __init__(self, options: LaunchOptions):
        super().__init__()
        self.options = options
        self.proc: Optional[subprocess.Popen] = None
        self._max = 0
        self._validating = False

    def _callback(self):
        def _set_status(text):
            text = str(text)
            self._validating = text.lower().startswith(("validate", "check"))
            self.sig_status.emit(text)

        def _set_max(value):
            self._max = int(value or 0)

        def _set_progress(value):
            if self._validating:
                self.sig_check.emit(int(value or 0), self._max)
            else:
                self.sig_progress.emit(int(value or 0), self._max)

        return {"setStatus": _set_status, "setProgress": _set_progress, "setMax": _set_max}

    def _sync_files(self) -> None:
        opts = self.options
        if not opts.url:
            return
        self.sig_status.emit("Проверка файлов инстанса...")
        sync = InstanceFileSync(opts.game_dir, opts.url, verify=opts.verify, ignored=opts.ignored,
                                workers=opts.download_multi)
        sync.on_check = self.sig_check.emit
        sync.on_progress = self.sig_progress.emit
        sync.on_speed = self.sig_speed.emit
        sync.on_estimated = self.sig_estimated.emit
        downloaded, removed = sync.run()
        logging.info(f"Файлы инстанса {opts.instance_name}: скачано {downloaded}, удалено {removed}")

    def _install(self) -> str:
        opts = self.options
        game_dir = str(opts.game_dir)
        opts.game_dir.mkdir(parents=True, exist_ok=True)
        mc_version = opts.minecraft_version or mll.utils.get_latest_version()["release"]
        callback = self._callback()

        self.sig_extract.emit()
        logging.info(f"Устанавливаем Minecraft {mc_version} для {opts.instance_name}")
        mll.install.install_minecraft_version(mc_version, game_dir, callback=callback)

        if not opts.loader_enabled:
            return mc_version
        if opts.loader_type != "fabric":
            raise Exception(f"Загрузчик {opts.loader_type} не поддерживается")
        self.sig_patch.emit()
        logging.info(f"Устанавливаем Fabric {opts.loader_version or 'latest'} для {mc_version}")
        mll.fabric.install_fabric(mc_version, game_dir, loader_version=opts.loader_version, callback=callback)
        version_id = find_installed_version_id(opts.game_dir, mc_version, "fabric")
        if not version_id:
            raise Exception(f"Fabric для {mc_version} не найден после установки")
        return version_id

    def _build_command(self, version_id: str) -> List[str]:
        opts = self.options
        options = {
            "username": opts.username,
            "uuid": "0" * 32,
            "token": "",
            "jvmArguments": [f"-Xms{opts.memory_min}", f"-Xmx{opts.memory_max}"],
            "customResolution": True,
            "resolutionWidth": str(opts.screen[0]),
            "resolutionHeight": str(opts.screen[1]),
            "launcherName": "BridgeLauncher",
        }
        if opts.java_path:
            options["executablePath"] = opts.java_path
        cmd = mll.command.get_minecraft_command(version_id, str(opts.game_dir), options)
        return [str(x) for x in cmd]

    def run(self):
        try:
            self._sync_files()
            version_id = self._install()
            cmd = self._build_command(version_id)
            logging.info(f"Запуск команды: {' '.join(cmd)}")
            self.proc = subprocess.Popen(cmd, **process_kwargs(self.options.game_dir, self.options.detached))
            self.sig_data.emit()
            code = self.proc.wait()
            self.sig_close.emit(int(code))
        except Exception as e:
            tb = traceback.format_exc()
            logging.exception("Ошибка в потоке запуска")
            self.sig_error.emit(f"{e}\n\n{tb}")

    def stop_game(self) -> None:
        """Завершает игру вместе с лаунчером, если она не отвязана от него."""
        if self.options.detached or self.proc is None or self.proc.poll() is not None:
            return
        logging.info(f"Закрываем игру {self.options.instance_name} вместе с лаунчером")
        self.proc.terminate()


def connect_session(thread: LaunchThread, session: LaunchSession) -> None:
    """Передаёт сигналы потока запуска в обработчик сессии."""
    thread.sig_extract.connect(lambda: session.handle(LaunchEvent.EXTRACT))
    thread.sig_progress.connect(lambda cur, total: session.handle(LaunchEvent.PROGRESS, cur, total))
    thread.sig_check.connect(lambda cur, total: session.handle(LaunchEvent.CHECK, cur, total))
    thread.sig_estimated.connect(lambda sec: session.handle(LaunchEvent.ESTIMATED, sec))
    thread.sig_speed.connect(lambda speed: session.handle(LaunchEvent.SPEED, speed))
    thread.sig_patch.connect(lambda: session.handle(LaunchEvent.PATCH))
    thread.sig_data.connect(lambda: session.handle(LaunchEvent.DATA))
    thread.sig_close.connect(lambda code: session.handle(LaunchEvent.CLOSE, code))
    thread.sig_error.connect(lambda err: session.handle(LaunchEvent.ERROR, err))
