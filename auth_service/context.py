"""Request-scoped context and logging helpers."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s [request_id=%(request_id)s account_id=%(account_id)s] %(message)s"
)


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Correlation data passed explicitly alongside each service call."""

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    account_id: str | None = None

    def with_account(self, account_id: str | None) -> "RequestContext":
        return replace(self, account_id=account_id)

    def log_extra(self) -> dict[str, Any]:
        return {"request_id": self.request_id, "account_id": self.account_id or "-"}


def mask_email(email: str | None) -> str | None:
    """Return ``email`` with the local part hidden except for its first character."""
    if email is None:
        return None
    value = email.strip()
    at = value.find("@")
    if at <= 1:
        return "***"
    return f"{value[0]}***@{value[at + 1:]}"


class _ContextDefaultsFilter(logging.Filter):
    """Fill correlation fields for records logged without a request context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        if not hasattr(record, "account_id"):
            record.account_id = "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a stream handler whose format includes the request id."""
    root = logging.getLogger()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_ContextDefaultsFilter())
    root.handlers = [handler]
    root.setLevel(level)
