import logging
from rich.logging import RichHandler
from rich.console import Console
from rich.theme import Theme

# Bright colors for dark terminals, plus one style per project log tag
xdl_theme = Theme({
    "logging.level.debug": "cyan",
    "logging.level.info": "bold #FFFFFF on #4630EB",
    "logging.level.warning": "bold #FFFFFF on #DB6900",
    "logging.level.error": "bold #FFFFFF on #d70000",
    "logging.level.critical": "bold #FFFFFF on red",
    "log.time": "#A3A3A3",
    "tag.expo": "bold #4630EB",
    "tag.metro": "bold #F0DB4F",
    "tag.device": "bold #61AD00",
    "tag.tunnel": "bold #00B0D8",
})

console = Console(theme=xdl_theme)

LOGGER_PREFIX = "xdl"

_loggers: list[logging.Logger] = []
_debug_enabled = False


class XDLRichHandler(RichHandler):
    def render_message(self, record, message):
        """Tint warnings and errors so they stand out from bundler noise."""
        text = super().render_message(record, message)
        if record.levelno >= logging.ERROR:
            text.style = "#FF7878"
        elif record.levelno >= logging.WARNING:
            text.style = "#FFD078"
        return text


def setup_logger(name: str = "Project") -> logging.Logger:
    """
    Return the `xdl.<name>` logger, attaching the rich handler on first use.
    """
    logger = logging.getLogger(f"{LOGGER_PREFIX}.{name}")

    if not logger.handlers:
        handler = XDLRichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=True,
            omit_repeated_times=False,
            show_path=False,
            markup=False,
            enable_link_path=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG if _debug_enabled else logging.INFO)

    # Handled here, the root logger would print a second copy
    logger.propagate = False

    if logger not in _loggers:
        _loggers.append(logger)

    return logger


def set_debug_mode(enabled: bool) -> None:
    """Toggle DEBUG level for every logger created through setup_logger."""
    global _debug_enabled
    _debug_enabled = enabled
    level = logging.DEBUG if enabled else logging.INFO
    for logger in _loggers:
        logger.setLevel(level)
