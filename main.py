import sys
import logging
import time
from typing import List, Optional

from PySide6.QtCore import Qt, QThread, Signal
from PySide6.QtGui import QIcon
from PySide6.QtWidgets import (
    QApplication,
    QWidget,
    QLabel,
    QLineEdit,
    QPushButton,
    QVBoxLayout,
    QHBoxLayout,
    QFrame,
    QMessageBox,
    QListWidget,
    QListWidgetItem,
    QProgressBar,
)

from code_redeemer import CodeRedeemer, RedeemOutcome, RedeemStatus
from instance_catalog import Instance, InstanceCatalog
from launch_engine import LaunchThread, connect_session
from launch_session import ConfigurationMissing, LaunchOptions, LaunchSession, prepare_launch
from launcher_config import (
    _init_logging,
    get_data_root,
    get_instances_dir,
    identity_name,
    load_client_config,
    read_launcher_settings,
    select_account,
    select_instance,
    selected_account,
)
from ledger_store import LedgerStore, StorageUnavailable
from session_ledger import SessionLedger, format_playtime
from unlock_ledger import InstanceAccess


class CatalogThread(QThread):
    """Поток для получения каталога и фильтрации доступных инстансов"""
    sig_done = Signal(object, object)  # List[Instance], preferred instance name
    sig_error = Signal(str)

    def __init__(self, access: InstanceAccess, identity: Optional[str], preferred: Optional[str] = None):
        super().__init__()
        self.access = access
        self.identity = identity
        self.preferred = preferred

    def run(self):
        try:
            self.sig_done.emit(self.access.authorized_instances(self.identity), self.preferred)
        except Exception as e:
            logging.exception("Ошибка в потоке загрузки инстансов")
            self.sig_error.emit(str(e))


class RedeemThread(QThread):
    """Поток для проверки кода разблокировки"""
    sig_done = Signal(object)  # RedeemOutcome
    sig_error = Signal(str)

    def __init__(self, redeemer: CodeRedeemer, code: str, identity: str):
        super().__init__()
        self.redeemer = redeemer
        self.code = code
        self.identity = identity

    def run(self):
        try:
            self.sig_done.emit(self.redeemer.redeem(self.code, self.identity))
        except StorageUnavailable as e:
            logging.exception("Не удалось сохранить разблокировку")
            self.sig_error.emit(str(e))


class PreflightThread(QThread):
    """Поток для проверок перед запуском: каталог, доступ, настройки клиента"""
    sig_ready = Signal(object)  # LaunchOptions
    sig_missing = Signal(str)
    sig_error = Signal(str)

    def __init__(self, store: LedgerStore, access: InstanceAccess, nickname: str):
        super().__init__()
        self.store = store
        self.access = access
        self.nickname = nickname

    def run(self):
        try:
            select_account(self.store, self.nickname)
            self.sig_ready.emit(prepare_launch(self.store, self.access, get_instances_dir()))
        except ConfigurationMissing as e:
            self.sig_missing.emit(str(e))
        except StorageUnavailable as e:
            logging.error(f"Хранилище недоступно при запуске: {e}")
            self.sig_error.emit("Не удалось прочитать настройки лаунчера.")


class LauncherWindow(QWidget):
    def __init__(self):
        super().__init__()
        self.setWindowTitle("Bridge")
        self.setWindowIcon(QIcon())
        self.setFixedSize(420, 760)
        self.setWindowFlags(Qt.Window | Qt.WindowCloseButtonHint | Qt.WindowMinimizeButtonHint | Qt.MSWindowsFixedSizeDialogHint)
        self.setStyleSheet(self._style())

        # ВАЖНО: хранилище и сервисы создаём до построения интерфейса
        self.data_root = get_data_root()
        self.settings = read_launcher_settings(self.data_root)
        self.store = LedgerStore(self.data_root / "db")
        self.catalog = InstanceCatalog(
            str(self.settings.get("instances_url") or ""),
            self.data_root / "instances_cache.json",
            cache_duration=float(self.settings.get("catalog_cache_sec", 300)),
        )
        self.access = InstanceAccess(self.store, self.catalog)
        self.redeemer = CodeRedeemer(
            self.access,
            str(self.settings.get("validate_url")),
            timeout=float(self.settings.get("validate_timeout_sec", 10.0)),
        )
        self.session_ledger = SessionLedger(self.store)
        self.instances: List[Instance] = []
        self.launch_session: Optional[LaunchSession] = None

        # выбор инстанса сбрасывается при каждом запуске лаунчера
        try:
            select_instance(self.store, None)
        except StorageUnavailable as e:
            logging.warning(f"Не удалось сбросить выбранный инстанс: {e}")

        logo = QLabel("BL")
        logo.setObjectName("logo")

        self.nickname = QLineEdit()
        self.nickname.setPlaceholderText("Ник")
        account = selected_account(self.store)
        if account and account.get("name"):
            self.nickname.setText(str(account["name"]))
        self.nickname.editingFinished.connect(self.on_nickname_changed)

        self.instance_list = QListWidget()
        self.instance_list.setObjectName("instanceList")
        self.instance_list.itemClicked.connect(self.on_instance_clicked)

        self.instance_title = QLabel("")
        self.instance_title.setObjectName("instanceTitle")
        self.last_session_label = QLabel("Последняя сессия: —")
        self.playtime_label = QLabel("Время в игре: —")

        self.code_input = QLineEdit()
        self.code_input.setPlaceholderText("Код инстанса")
        self.unlock_btn = QPushButton("Разблокировать")
        self.unlock_btn.clicked.connect(self.on_unlock)
        self.code_input.returnPressed.connect(self.unlock_btn.click)

        self.play_btn = QPushButton("Играть")
        self.play_btn.setEnabled(False)
        self.play_btn.clicked.connect(self.on_play)

        self.status = QLabel("Готово")
        self.status.setObjectName("status")

        # Прогрессбар внизу + бейдж процента
        self.progress_container = QFrame()
        self.progress_container.setObjectName("progressContainer")
        pc_layout = QVBoxLayout(self.progress_container)
        pc_layout.setContentsMargins(0, 0, 0, 0)
        self.progress = QProgressBar(self.progress_container)
        self.progress.setObjectName("progress")
        self.progress.setMinimum(0)
        self.progress.setMaximum(100)
        self.progress.setValue(0)
        self.progress.setTextVisible(False)
        pc_layout.addWidget(self.progress)
        self.progress_container.setVisible(False)
        self.progress_badge = QLabel("0%", self.progress_container)
        self.progress_badge.setObjectName("progressBadge")
        self.progress_badge.setAlignment(Qt.AlignCenter)
        self.progress_badge.setVisible(False)

        top = QHBoxLayout()
        top.addWidget(logo)
        top.addStretch(1)

        code_line = QHBoxLayout()
        code_line.addWidget(self.code_input)
        code_line.addWidget(self.unlock_btn)

        root = QVBoxLayout(self)
        root.addLayout(top)
        root.addSpacing(8)
        card = QFrame()
        card.setObjectName("card")
        card_layout = QVBoxLayout(card)
        card_layout.addWidget(self.nickname)
        card_layout.addSpacing(8)
        card_layout.addWidget(self.instance_list)
        card_layout.addWidget(self.instance_title)
        card_layout.addWidget(self.last_session_label)
        card_layout.addWidget(self.playtime_label)
        card_layout.addSpacing(8)
        card_layout.addLayout(code_line)
        card_layout.addSpacing(12)
        card_layout.addWidget(self.play_btn)
        root.addWidget(card)
        root.addStretch(1)
        root.addWidget(self.status)
        root.addWidget(self.progress_container)

        self.refresh_instances()

    def set_status(self, text: str):
        self.status.setText(text)

    # ---- аккаунт и список инстансов ----
    def on_nickname_changed(self):
        nick = self.nickname.text().strip()
        if not nick:
            return
        try:
            select_account(self.store, nick)
        except StorageUnavailable as e:
            logging.error(f"Не удалось сохранить аккаунт: {e}")
            QMessageBox.critical(self, "Ошибка", "Не удалось сохранить аккаунт.")
            return
        self.refresh_instances()

    def refresh_instances(self, preferred: Optional[str] = None):
        if hasattr(self, "_catalog_thread") and self._catalog_thread.isRunning():
            return
        self.set_status("Загрузка инстансов...")
        self._catalog_thread = CatalogThread(self.access, identity_name(self.store), preferred)
        self._catalog_thread.sig_done.connect(self._on_instances_loaded)
        self._catalog_thread.sig_error.connect(lambda e: self.set_status(f"Ошибка загрузки инстансов: {e}"))
        self._catalog_thread.start()

    def _on_instances_loaded(self, instances: List[Instance], preferred: Optional[str]):
        self.instances = instances
        names = [i.name for i in instances]
        selected = preferred or load_client_config(self.store).get("instance_selected")
        if selected not in names:
            selected = None
        try:
            select_instance(self.store, selected)
        except StorageUnavailable as e:
            logging.warning(f"Не удалось сохранить выбранный инстанс: {e}")

        self.instance_list.clear()
        for instance in instances:
            item = QListWidgetItem(instance.name)
            item.setData(Qt.UserRole, instance.name)
            self.instance_list.addItem(item)
            if instance.name == selected:
                self.instance_list.setCurrentItem(item)
        self.play_btn.setEnabled(bool(selected))
        self.update_instance_display(selected)
        self.set_status(f"Доступно инстансов: {len(instances)}")

    def on_instance_clicked(self, item: QListWidgetItem):
        name = item.data(Qt.UserRole)
        try:
            select_instance(self.store, name)
        except StorageUnavailable as e:
            logging.warning(f"Ошибка при выборе инстанса: {e}")
        self.play_btn.setEnabled(True)
        self.update_instance_display(name)

    def update_instance_display(self, instance_name: Optional[str]):
        self.instance_title.setText(instance_name or "")
        self.last_session_label.setText("Последняя сессия: —")
        self.playtime_label.setText("Время в игре: —")
        if not instance_name:
            return
        stats = self.session_ledger.stats_for(instance_name)
        if stats and stats.last_session_at:
            ts = time.strftime("%Y-%m-%d %H:%M", time.localtime(stats.last_session_at / 1000))
            self.last_session_label.setText(f"Последняя сессия: {ts}")
        if stats and stats.playtime_ms:
            self.playtime_label.setText(f"Время в игре: {format_playtime(stats.playtime_ms)}")

    # ---- разблокировка по коду ----
    def on_unlock(self):
        code = self.code_input.text().strip()
        if not code:
            QMessageBox.warning(self, "Нужен код", "Пожалуйста, введите код инстанса")
            return
        if hasattr(self, "_redeem_thread") and self._redeem_thread.isRunning():
            return
        self.code_input.setText("")
        self.unlock_btn.setEnabled(False)
        self.set_status("Проверка кода...")
        self._redeem_thread = RedeemThread(self.redeemer, code, identity_name(self.store))
        self._redeem_thread.sig_done.connect(self._on_redeem_done)
        self._redeem_thread.sig_error.connect(self._on_redeem_error)
        self._redeem_thread.start()

    def _on_redeem_done(self, outcome: RedeemOutcome):
        self.unlock_btn.setEnabled(True)
        self.set_status("Готово")
        if outcome.status is RedeemStatus.GRANTED:
            QMessageBox.information(self, "Успех", "Код принят! Инстанс разблокирован.")
            self.refresh_instances(outcome.instance_name)
        elif outcome.status is RedeemStatus.ALREADY_GRANTED:
            QMessageBox.information(self, "Доступ уже есть", "У вас уже есть доступ к этому инстансу.")
            self.refresh_instances(outcome.instance_name)
        elif outcome.status is RedeemStatus.CONNECTION_FAILED:
            QMessageBox.critical(self, "Ошибка соединения", "Не удалось связаться с сервером. Попробуйте ещё раз.")
        else:
            QMessageBox.warning(self, "Неверный код", "Код неверный или инстанс не найден.")

    def _on_redeem_error(self, e: str):
        self.unlock_btn.setEnabled(True)
        self.set_status("Готово")
        QMessageBox.critical(self, "Ошибка", f"Ошибка обработки доступа.\n\n{e}")

    # ---- запуск ----
    def on_play(self):
        if hasattr(self, "_launch_thread") and self._launch_thread.isRunning():
            return
        if hasattr(self, "_preflight_thread") and self._preflight_thread.isRunning():
            return
        nick = self.nickname.text().strip()
        if not nick:
            self.nickname.setPlaceholderText("Введите свой ник")
            self.nickname.setFocus()
            return
        self.play_btn.setEnabled(False)
        self.set_status("Проверка перед запуском...")
        self._preflight_thread = PreflightThread(self.store, self.access, nick)
        self._preflight_thread.sig_ready.connect(self._start_launch)
        self._preflight_thread.sig_missing.connect(self._on_preflight_failed)
        self._preflight_thread.sig_error.connect(self._on_preflight_failed)
        self._preflight_thread.start()

    def _on_preflight_failed(self, message: str):
        self.play_btn.setEnabled(True)
        self.set_status("Готово")
        QMessageBox.critical(self, "Ошибка", message)

    def _start_launch(self, options: LaunchOptions):
        self.launch_session = LaunchSession(options.instance_name, self.session_ledger)
        self._launch_thread = LaunchThread(options)
        connect_session(self._launch_thread, self.launch_session)
        self._launch_thread.sig_status.connect(self.set_status)
        self._launch_thread.sig_progress.connect(lambda cur, total: self._on_progress("Скачивание", cur, total))
        self._launch_thread.sig_check.connect(lambda cur, total: self._on_progress("Проверка", cur, total))
        self._launch_thread.sig_patch.connect(lambda: self.set_status("Установка загрузчика..."))
        self._launch_thread.sig_data.connect(self._on_game_started)
        self._launch_thread.sig_close.connect(lambda code: self._on_game_finished())
        self._launch_thread.sig_error.connect(self._on_launch_error)

        self.play_btn.setEnabled(False)
        self.progress.setValue(0)
        self._show_progress()
        self.set_status(f"Запуск {options.instance_name}...")
        self.launch_session.start()
        self._launch_thread.start()

    def _on_progress(self, label: str, current: int, total: int):
        self._on_progress_max(total)
        self._on_progress_value(current)
        if total:
            self.set_status(f"{label} {int(current / total * 100)}%")

    def _on_game_started(self):
        self._hide_progress()
        self.set_status("Игра запущена...")

    def _on_game_finished(self):
        self._hide_progress()
        self.play_btn.setEnabled(True)
        self.set_status("Готово")
        if self.launch_session:
            self.update_instance_display(self.launch_session.instance_name)

    def _on_launch_error(self, e: str):
        self._on_game_finished()
        QMessageBox.critical(self, "Ошибка запуска", e)

    def closeEvent(self, event):
        if hasattr(self, "_launch_thread") and self._launch_thread.isRunning():
            self._launch_thread.stop_game()
        super().closeEvent(event)

    def _style(self) -> str:
        return """
        QWidget { background-color: #0a0a0f; color: #e6e6e6; font-family: Segoe UI, Arial; font-size: 14px; }
        #logo { font-size: 56px; color: #ffe300; font-weight: 900; }
        #status { color: #00f0ff; }
        #instanceTitle { font-size: 18px; font-weight: 800; }
        QFrame#card { background-color: #0d0d14; border: 2px solid #2a2a33; border-radius: 16px; padding: 18px; }
        QLineEdit { background-color: #0f0f19; border: 2px solid #2c2c38; border-radius: 12px; padding: 10px 12px; color: #f0f0f0; }
        QLineEdit:focus { border-color: #00f0ff; }
        QListWidget { background-color: #0f0f19; border: 2px solid #2c2c38; border-radius: 12px; padding: 6px; }
        QListWidget::item:selected { background-color: #ffe300; color: #111117; border-radius: 8px; }
        QPushButton { color: #111117; background-color: #ffe300; border: 2px solid #ffe300; border-radius: 18px; padding: 10px 16px; font-weight: 800; letter-spacing: .5px; }
        QPushButton:hover { background-color: #fff172; }
        QPushButton:disabled { background-color: #3a3a42; border-color: #3a3a42; color: #9aa0a6; }
        QProgressBar { background-color: #14141c; border: 1px solid #2a2a33; border-radius: 10px; padding: 3px; height: 18px; }
        QProgressBar::chunk { background-color: #ffe300; border-radius: 8px; }
        #progressBadge { background-color: #000; border-radius: 10px; padding: 2px 8px; color: #e6e6e6; font-weight: 800; }
        """

    # --- progress helpers ---
    def _show_progress(self):
        self.progress_container.setVisible(True)
        self.progress_badge.setVisible(True)
        self._reposition_badge()

    def _hide_progress(self):
        self.progress_container.setVisible(False)
        self.progress_badge.setVisible(False)

    def _on_progress_max(self, m: int):
        self.progress.setMaximum(int(m) if m else 100)
        self._reposition_badge()

    def _on_progress_value(self, v: int):
        self.progress.setValue(int(v))
        maxv = self.progress.maximum() or 100
        pct = int((self.progress.value() / maxv) * 100)
        self.progress_badge.setText(f"{pct}%")
        self._reposition_badge()

    def _reposition_badge(self):
        bar_geo = self.progress.geometry()
        text = self.progress_badge.text()
        w = max(50, len(text) * 12)
        h = 22
        x = bar_geo.x() + (bar_geo.width() - w) // 2
        y = bar_geo.y() + (bar_geo.height() - h) // 2
        self.progress_badge.setGeometry(x, y, w, h)


def main():
    _init_logging()
    app = QApplication(sys.argv)
    w = LauncherWindow()
    w.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
