from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from line_checks.errors import NotificationDeliveryError
from line_checks.models import Line, NotificationResult, utc_now
from line_checks.notifier import Notifier

if TYPE_CHECKING:
    from line_registry.store import LineStore


logger = structlog.get_logger(__name__)


class NotificationThrottler:
    """
    Deliver an alert that the state machine has already decided on.

    The disarm is part of the health write-back that precedes this call, so a
    failed delivery leaves the line disarmed until the healthy-streak re-arm.
    """

    def __init__(self, store: LineStore, notifier: Notifier) -> None:
        self.store = store
        self.notifier = notifier

    async def dispatch(
        self, line: Line, failure_reasons: list[str], *, now: datetime | None = None
    ) -> NotificationResult:
        try:
            result = await self.notifier.send_failure_alert(line.email, line.phone, list(failure_reasons))
        except NotificationDeliveryError as e:
            result = NotificationResult(success=False, error=str(e))

        if not result.success:
            logger.error(
                "Line alert not delivered",
                line_id=line.id,
                line_phone=line.phone,
                error=result.error,
            )
            return result

        sent_at = now or utc_now()
        await self.store.mark_alert_sent(line.id, sent_at)
        logger.info("Line alert delivered", line_id=line.id, line_phone=line.phone, sent_at=sent_at.isoformat())
        return result
