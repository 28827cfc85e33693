"""Application entry point."""

from __future__ import annotations

import logging
from pathlib import Path
import sys

from PyQt6.QtWidgets import QApplication, QMessageBox, QStyle, QSystemTrayIcon

from clashtray.core.config_registry import ConfigRegistry
from clashtray.core.errors import AppError, ConfigMissingError
from clashtray.core.logging_setup import setup_logging
from clashtray.core.process_manager import CoreProcessManager, find_core_binary
from clashtray.core.storage import ensure_dirs
from clashtray.core.synchronizer import StateSynchronizer
from clashtray.core.system_proxy import SystemProxyController
from clashtray.ui.tray import APP_TITLE, TrayController

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    ensure_dirs()
    log_path = setup_logging()
    logger.info("Starting %s (log: %s)", APP_TITLE, log_path)

    app = QApplication(argv if argv is not None else sys.argv)
    app.setApplicationName(APP_TITLE)
    app.setQuitOnLastWindowClosed(False)

    if not QSystemTrayIcon.isSystemTrayAvailable():
        QMessageBox.critical(None, APP_TITLE, "No system tray is available on this desktop.")
        return 1

    registry = ConfigRegistry()
    registry.ensure_default_exists()
    config_path = registry.get_current()

    process = CoreProcessManager()
    startup_warning: str | None = None
    try:
        process.executable = find_core_binary(registry.get_core_path())
        if config_path is None:
            raise ConfigMissingError(
                f"No config file in {registry.config_dir}",
                user_message="No proxy core config file available. API features will be disabled.",
            )
        process.start(Path(config_path))
    except ConfigMissingError as exc:
        logger.warning("Core not started: %s", exc)
        startup_warning = exc.user_message
    except AppError as exc:
        logger.error("Core launch failed: %s", exc)
        QMessageBox.critical(None, APP_TITLE, exc.user_message)
        return 1

    sync = StateSynchronizer(registry, SystemProxyController(), process=process)
    icon = app.style().standardIcon(QStyle.StandardPixmap.SP_DriveNetIcon)
    tray = TrayController(sync, icon)
    tray.show()
    if startup_warning is not None:
        tray.notify(startup_warning)
    elif sync.active.credentials is None:
        tray.notify(f"Failed to read API details from {config_path}. API features will be disabled.")

    app.aboutToQuit.connect(process.stop)
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
