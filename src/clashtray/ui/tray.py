"""System tray shell: renders the synchronizer's menu tree with Qt."""

from __future__ import annotations

import logging
from typing import Callable

from PyQt6.QtCore import QObject, QRunnable, QThreadPool, QUrl, pyqtSignal
from PyQt6.QtGui import QAction, QDesktopServices, QIcon
from PyQt6.QtWidgets import QApplication, QMenu, QSystemTrayIcon

from clashtray.core import menu
from clashtray.core.menu import MenuAction, MenuItem, MenuNode, Separator, Submenu
from clashtray.core.synchronizer import CommandResult, StateSynchronizer

logger = logging.getLogger(__name__)

APP_TITLE = "clashtray"
NOTIFY_MS = 4000


class WorkerSignals(QObject):
    result = pyqtSignal(object)
    error = pyqtSignal(str)


class Worker(QRunnable):
    def __init__(self, fn: Callable[[], object]) -> None:
        super().__init__()
        self.fn = fn
        self.signals = WorkerSignals()

    def run(self) -> None:
        try:
            payload = self.fn()
        except Exception as exc:  # pragma: no cover
            logger.exception("Background task failed")
            self.signals.error.emit(str(exc))
            return
        self.signals.result.emit(payload)


class TrayController(QObject):
    def __init__(self, sync: StateSynchronizer, icon: QIcon) -> None:
        super().__init__()
        self._sync = sync
        self._thread_pool = QThreadPool.globalInstance()
        self._workers: set[Worker] = set()
        self._menu_open = False

        self._menu = QMenu()
        self._menu.aboutToShow.connect(self._on_menu_open)
        self._menu.aboutToHide.connect(self._on_menu_close)

        self._tray = QSystemTrayIcon(icon, self)
        self._tray.setToolTip(APP_TITLE)
        self._tray.setContextMenu(self._menu)
        self.render(self._sync.build_menu())

    def show(self) -> None:
        self._tray.show()

    def notify(self, message: str, *, error: bool = True) -> None:
        icon = (
            QSystemTrayIcon.MessageIcon.Warning if error else QSystemTrayIcon.MessageIcon.Information
        )
        self._tray.showMessage(APP_TITLE, message, icon, NOTIFY_MS)

    # --- rendering ---------------------------------------------------------

    def render(self, tree: list[MenuNode]) -> None:
        self._menu.clear()
        self._populate(self._menu, tree)

    def _populate(self, target: QMenu, nodes: list[MenuNode] | tuple[MenuNode, ...]) -> None:
        for node in nodes:
            if isinstance(node, Separator):
                target.addSeparator()
            elif isinstance(node, Submenu):
                sub = target.addMenu(node.label)
                sub.setEnabled(node.enabled)
                self._populate(sub, node.children)
            else:
                target.addAction(self._make_action(target, node))

    def _make_action(self, parent: QMenu, item: MenuItem) -> QAction:
        action = QAction(item.label, parent)
        action.setEnabled(item.enabled)
        if item.checkable:
            action.setCheckable(True)
            action.setChecked(bool(item.checked))
        if item.action is not None:
            command = item.action
            action.triggered.connect(lambda checked, a=action: self._on_activate(command, a, checked))
        return action

    # --- view session ------------------------------------------------------

    def _on_menu_open(self) -> None:
        self._menu_open = True
        self.render(self._sync.open())
        self._run(self._sync.refresh, self._on_refreshed)

    def _on_refreshed(self, tree: object) -> None:
        if self._menu_open:
            self.render(tree)  # type: ignore[arg-type]

    def _on_menu_close(self) -> None:
        self._menu_open = False
        self._sync.close()

    # --- commands ----------------------------------------------------------

    def _on_activate(self, command: MenuAction, action: QAction, checked: bool) -> None:
        if command.command in menu.SHELL_COMMANDS:
            self._run_shell_command(command.command)
            return

        def _done(result: object) -> None:
            if not isinstance(result, CommandResult):  # pragma: no cover
                return
            if not result.ok and result.revert_checked is not None:
                action.setChecked(result.revert_checked)
            if result.message:
                self.notify(result.message, error=not result.ok)

        self._run(lambda: self._sync.dispatch(command, checked), _done)

    def _run_shell_command(self, command: str) -> None:
        active = self._sync.active
        if command == menu.EXIT:
            self._tray.hide()
            self._sync.shutdown()
            QApplication.quit()
        elif command == menu.OPEN_DASHBOARD:
            url = active.credentials.dashboard_url if active.credentials else None
            if url:
                QDesktopServices.openUrl(QUrl(url))
        elif command == menu.EDIT_CONFIG:
            if active.path is None or not active.path.is_file():
                self.notify(f"Config file not found at: {active.path}")
                return
            QDesktopServices.openUrl(QUrl.fromLocalFile(str(active.path)))
        elif command == menu.OPEN_CONFIG_FOLDER:
            folder = active.path.parent if active.path is not None else self._sync.config_dir
            QDesktopServices.openUrl(QUrl.fromLocalFile(str(folder)))

    def _run(self, fn: Callable[[], object], on_result: Callable[[object], None]) -> None:
        worker = Worker(fn)
        self._workers.add(worker)

        def _finish(payload: object) -> None:
            self._workers.discard(worker)
            on_result(payload)

        def _fail(message: str) -> None:
            self._workers.discard(worker)
            self.notify(message)

        worker.signals.result.connect(_finish)
        worker.signals.error.connect(_fail)
        self._thread_pool.start(worker)
