from __future__ import annotations

import logging

from rich.logging import RichHandler

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class ExtraFieldsFormatter(logging.Formatter):
    """Append `extra={...}` context to the message as sorted key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
        if not extras:
            return message
        context = " ".join(f"{key}={extras[key]}" for key in sorted(extras))
        return f"{message} [{context}]"


def configure_logging(level: str = "INFO") -> None:
    handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    handler.setFormatter(ExtraFieldsFormatter("%(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
