"""Параметры процесса игры и передача событий синхронизации файлов."""

from pathlib import Path

import launch_engine
from launch_engine import LaunchThread, process_kwargs
from launch_session import LaunchOptions


def options(**overrides):
    values = dict(instance_name="Core", username="steve", game_dir=Path("/games/Core"), minecraft_version="1.20.1")
    values.update(overrides)
    return LaunchOptions(**values)


def test_detached_game_gets_own_session():
    assert process_kwargs(Path("/games/Core"), detached=True, os_name="posix") == {
        "cwd": str(Path("/games/Core")),
        "start_new_session": True,
    }


def test_attached_game_stays_in_launcher_session():
    assert process_kwargs(Path("/games/Core"), detached=False, os_name="posix") == {"cwd": str(Path("/games/Core"))}


class FakeSync:
    created = []

    def __init__(self, game_dir, url, verify=False, ignored=(), workers=5):
        self.args = dict(game_dir=game_dir, url=url, verify=verify, ignored=ignored, workers=workers)
        FakeSync.created.append(self)

    def run(self):
        self.on_check(1, 1)
        self.on_progress(1, 1)
        self.on_speed(2048.0)
        self.on_estimated(0)
        return 1, 0


def test_file_sync_uses_instance_options_and_emits_events(monkeypatch):
    FakeSync.created = []
    monkeypatch.setattr(launch_engine, "InstanceFileSync", FakeSync)
    thread = LaunchThread(options(url="http://files.test/Core", verify=True, ignored=("saves",), download_multi=3))
    events = []
    thread.sig_check.connect(lambda cur, total: events.append(("check", cur, total)))
    thread.sig_progress.connect(lambda cur, total: events.append(("progress", cur, total)))
    thread.sig_speed.connect(lambda speed: events.append(("speed", speed)))
    thread.sig_estimated.connect(lambda sec: events.append(("estimated", sec)))

    thread._sync_files()

    [sync] = FakeSync.created
    assert sync.args == dict(game_dir=Path("/games/Core"), url="http://files.test/Core",
                             verify=True, ignored=("saves",), workers=3)
    assert events == [("check", 1, 1), ("progress", 1, 1), ("speed", 2048.0), ("estimated", 0)]


def test_instance_without_file_index_skips_sync(monkeypatch):
    FakeSync.created = []
    monkeypatch.setattr(launch_engine, "InstanceFileSync", FakeSync)
    LaunchThread(options())._sync_files()
    assert FakeSync.created == []
