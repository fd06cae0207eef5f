from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

HIGH_SEVERITY = "high"
MAX_LISTED_TERMS = 3


@dataclass(frozen=True)
class NotificationMessage:
    user_id: str
    title: str
    body: str
    severity: str = "critical"
    category: str = "ai"
    cta_url: str | None = None


class NotificationSink(Protocol):
    async def send(self, message: NotificationMessage) -> None:
        ...


class SqlNotificationSink:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def send(self, message: NotificationMessage) -> None:
        # Insert one in-app notification row.
        async with self._session_factory() as session:
            await audit_repo.insert_notification(
                session,
                user_id=message.user_id,
                category=message.category,
                title=message.title,
                body=message.body,
                severity=message.severity,
                cta_url=message.cta_url,
            )
            await session.commit()


class RiskNotifier:
    def __init__(self, sink: NotificationSink, *, enabled: bool = True) -> None:
        self._sink = sink
        self._enabled = enabled

    def build_message(self, user_id: str, output: dict[str, Any]) -> NotificationMessage | None:
        # Build the notification for high-severity alerts, or None when there are none.
        alerts = [
            alert
            for alert in output.get("alerts") or []
            if isinstance(alert, dict) and alert.get("severity") == HIGH_SEVERITY
        ]
        if not alerts:
            return None
        terms = [str(alert.get("term")) for alert in alerts[:MAX_LISTED_TERMS]]
        suffix = f" and {len(alerts) - MAX_LISTED_TERMS} more" if len(alerts) > MAX_LISTED_TERMS else ""
        return NotificationMessage(
            user_id=user_id,
            title=f"{len(alerts)} high-severity market risk{'s' if len(alerts) > 1 else ''} detected",
            body=f"LexyBrain flagged high-severity risks for {', '.join(terms)}{suffix}.",
            cta_url="/insights/risk",
        )

    async def notify(self, user_id: str | None, output: dict[str, Any]) -> bool:
        # Send at most one notification per risk insight.
        if not self._enabled or not user_id:
            return False
        message = self.build_message(user_id, output)
        if message is None:
            return False
        await self._sink.send(message)
        logger.info("risk_notification_sent user_id=%s", user_id)
        return True
