"""Launch and stop the proxy core executable."""

from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
import subprocess
import sys
from typing import IO

from clashtray.core.errors import BinaryMissingError, CoreLaunchError
from clashtray.core.logging_setup import CORE_LOG_FILE_NAME
from clashtray.core.storage import get_data_dir, get_logs_dir

logger = logging.getLogger(__name__)

CORE_ENV_VAR = "CLASHTRAY_CORE"
CORE_BINARY_NAMES = ("mihomo", "clash-meta", "clash")
STOP_TIMEOUT_S = 3.0


def find_core_binary(configured: str | None = None) -> Path:
    suffix = ".exe" if sys.platform == "win32" else ""
    candidates: list[Path] = []
    if configured:
        candidates.append(Path(configured).expanduser())
    env_path = os.environ.get(CORE_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser())
    for name in CORE_BINARY_NAMES:
        candidates.append(get_data_dir() / "core" / f"{name}{suffix}")

    for candidate in candidates:
        if candidate.is_file():
            return candidate

    for name in CORE_BINARY_NAMES:
        found = shutil.which(name)
        if found:
            return Path(found)

    searched = ", ".join(str(c) for c in candidates) or "(none)"
    raise BinaryMissingError(
        f"Proxy core executable not found. Searched: {searched} and PATH",
        user_message=(
            "Proxy core executable not found. Install mihomo/clash, or set "
            f"{CORE_ENV_VAR} to its path."
        ),
    )


class CoreProcessManager:
    def __init__(self, executable: Path | None = None, *, log_path: Path | None = None) -> None:
        self.executable = executable
        self.stdout_path = log_path or (get_logs_dir() / CORE_LOG_FILE_NAME)
        self._process: subprocess.Popen[bytes] | None = None
        self._log_handle: IO[bytes] | None = None

    def start(self, config_path: Path) -> None:
        if self.is_running():
            logger.info("Core already running (pid=%s)", self.pid)
            return

        exe = self.executable
        if exe is None or not Path(exe).is_file():
            raise BinaryMissingError(
                f"Proxy core executable not found at: {exe}",
                user_message=f"Proxy core executable not found at: {exe}",
            )

        assets_dir = Path(exe).resolve().parent
        cmd = [str(exe), "-d", str(assets_dir), "-f", str(config_path)]
        creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0) if sys.platform == "win32" else 0

        self.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = self.stdout_path.open("ab")
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                cwd=str(assets_dir),
                creationflags=creationflags,
            )
        except OSError as exc:
            log_handle.close()
            logger.exception("Failed to start core: %s", cmd)
            raise CoreLaunchError(
                f"Failed to start proxy core: {exc}",
                user_message=f"Failed to start the proxy core: {exc}",
            ) from exc

        self._log_handle = log_handle
        logger.info("Core started pid=%s cmd=%s", self._process.pid, cmd)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def returncode(self) -> int | None:
        if self._process is None:
            return None
        return self._process.poll()

    def stop(self) -> None:
        process = self._process
        if process is not None and process.poll() is None:
            logger.info("Stopping core pid=%s", process.pid)
            try:
                process.terminate()
                process.wait(timeout=STOP_TIMEOUT_S)
            except subprocess.TimeoutExpired:
                logger.warning("Core did not exit in %.1fs; killing", STOP_TIMEOUT_S)
                process.kill()
                try:
                    process.wait(timeout=STOP_TIMEOUT_S)
                except subprocess.TimeoutExpired:
                    logger.error("Core pid=%s still alive after kill", process.pid)
            except ProcessLookupError:
                logger.debug("Core pid=%s already gone", process.pid)
        self._close_log()

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
