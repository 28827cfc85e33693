"""Typed application errors with user-facing messages."""

from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ControlApiError(AppError):
    pass


class CoreUnreachableError(ControlApiError):
    pass


class CommandRejectedError(ControlApiError):
    def __init__(
        self, message: str, user_message: str | None = None, *, status: int | None = None
    ) -> None:
        super().__init__(message, user_message)
        self.status = status


class SystemProxyUnavailableError(AppError):
    pass


class ConfigMissingError(AppError):
    pass


class BinaryMissingError(AppError):
    pass


class CoreLaunchError(AppError):
    pass
