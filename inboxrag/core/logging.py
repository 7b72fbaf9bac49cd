from __future__ import annotations

from contextvars import ContextVar
import logging
import re
import sys

from inboxrag.core.config import get_settings


# Job and tenant context flow into every log line emitted while a job runs.
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s job=%(job_id)s tenant=%(tenant_id)s %(message)s"

_SUBSCRIBER_DIGITS = re.compile(r"\d{6}$")

_configured = False


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = job_id_var.get() or "-"
        record.tenant_id = tenant_id_var.get() or "-"
        return True


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(_ContextFilter())
    root.addHandler(handler)
    _configured = True


def mask_phone_number(phone_number: str | None) -> str:
    # Hide the subscriber digits while keeping the prefix for correlation.
    if not phone_number:
        return "-"
    return _SUBSCRIBER_DIGITS.sub("******", phone_number)
