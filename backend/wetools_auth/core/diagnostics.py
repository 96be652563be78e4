import logging


class DiagnosticTrail:
    """Logs each step of a flow and keeps it for display on the error page."""

    def __init__(self, logger: logging.Logger, prefix: str = ""):
        self._logger = logger
        self._prefix = prefix
        self._lines: list[str] = []

    def add(self, message: str, *args, level: int = logging.INFO) -> None:
        text = message % args if args else message
        self._lines.append(text)
        self._logger.log(level, "%s%s", self._prefix, text)

    def warning(self, message: str, *args) -> None:
        self.add(message, *args, level=logging.WARNING)

    def error(self, message: str, *args) -> None:
        self.add(message, *args, level=logging.ERROR)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)


def redact(value: str | None, keep: int = 5) -> str:
    """Shorten secrets (authorization codes, tokens) before they reach a log line."""
    if not value:
        return "N/A"
    return value[:keep] + "..." if len(value) > keep else value
