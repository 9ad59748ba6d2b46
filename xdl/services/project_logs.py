import logging
from typing import Any, Callable
from xdl.common.logger import setup_logger
from xdl.schemas.logs import LogRecord, LogTag

logger = setup_logger("Project")

LogListener = Callable[[LogRecord], None]


class ProjectLogger:
    """
    Structured log sink for a single project.

    Every record is echoed to the console logger and handed to attached
    listeners (a UI, a test, a file writer...). Records may carry a
    notification id so a listener can replace or clear a sticky message.
    """

    def __init__(self, project_root):
        self.project_root = str(project_root)
        self._listeners: list[LogListener] = []
        self._notifications: set[str] = set()

    def attach(self, listener: LogListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self.detach(listener)

    def detach(self, listener: LogListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def active_notifications(self) -> set[str]:
        return set(self._notifications)

    def log(self, tag: str | LogTag, level: int, message: str, notification_id: str | None = None, **fields: Any) -> LogRecord:
        record = LogRecord(
            tag=LogTag(tag),
            level=level,
            message=message,
            project_root=self.project_root,
            notification_id=notification_id,
            fields=fields,
        )
        if notification_id:
            self._notifications.add(notification_id)

        if message:
            logger.log(level, f"[{record.tag.value}] {message}")

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"[Project] Log listener failed: {e}")
        return record

    def debug(self, tag, message: str, **kwargs) -> LogRecord:
        return self.log(tag, logging.DEBUG, message, **kwargs)

    def info(self, tag, message: str, **kwargs) -> LogRecord:
        return self.log(tag, logging.INFO, message, **kwargs)

    def warning(self, tag, message: str, **kwargs) -> LogRecord:
        return self.log(tag, logging.WARNING, message, **kwargs)

    def error(self, tag, message: str, **kwargs) -> LogRecord:
        return self.log(tag, logging.ERROR, message, **kwargs)

    def clear_notification(self, notification_id: str) -> None:
        if notification_id in self._notifications:
            self.log(LogTag.EXPO, logging.DEBUG, "", notification_id=notification_id, clear=True)
            self._notifications.discard(notification_id)
