"""User-facing notices (the browser's toasts)."""

from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Notice:
    title: str
    description: str = ""
    variant: str = "default"


Notifier = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    """Default notifier: write the notice to the log."""
    logger.info("client.notice", title=notice.title, description=notice.description)
