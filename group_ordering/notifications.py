"""
Group Ordering - Notifications.

============================================================
PURPOSE
============================================================
Announces group order events to the people involved.

NOTIFICATION TYPES:
- Participant joined (to leader)
- Payment marked (to leader)
- Reimbursement marked (to participant)
- Group order submitted / completed (to participants)

DELIVERY REQUIREMENTS:
- Fire-and-forget: never delays or fails the announced action
- Every delivery failure is logged
- Tags get a unique suffix so notifications never collapse

============================================================
"""

import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List, Set
from dataclasses import dataclass, field
from enum import Enum

import aiohttp

from .config import NotificationConfig, TimeoutConfig
from .types import utcnow


logger = logging.getLogger(__name__)


# ============================================================
# NOTIFICATION TYPES
# ============================================================

class NotificationType(Enum):
    """Types of notifications."""

    PARTICIPANT_JOINED = "PARTICIPANT_JOINED"
    """A participant created their order."""

    PAYMENT_MARKED = "PAYMENT_MARKED"
    """A participant marked their order paid/unpaid."""

    REIMBURSEMENT_MARKED = "REIMBURSEMENT_MARKED"
    """The leader marked a participant reimbursed/not reimbursed."""

    GROUP_SUBMITTED = "GROUP_SUBMITTED"
    """Leader finalized the group order."""

    GROUP_COMPLETED = "GROUP_COMPLETED"
    """Backend accepted the group order."""

    GROUP_CLOSED = "GROUP_CLOSED"
    """Leader closed the group order."""


@dataclass
class Notification:
    """A notification to be delivered to one recipient."""

    notification_type: NotificationType
    """Type of notification."""

    recipient_id: str
    """User to notify."""

    title: str
    """Short title."""

    body: str
    """Message body."""

    tag: Optional[str] = None
    """Grouping tag (made unique on delivery)."""

    url: Optional[str] = None
    """Link opened on click."""

    data: Dict[str, Any] = field(default_factory=dict)
    """Additional payload."""

    created_at: datetime = field(default_factory=utcnow)


# ============================================================
# NOTIFIERS
# ============================================================

class Notifier(ABC):
    """
    Delivers notifications.

    Implementations:
    - PushGatewayNotifier: HTTP push gateway
    - LoggingNotifier: Log only
    """

    @abstractmethod
    async def notify(self, notification: Notification) -> None:
        """Deliver one notification. May raise."""
        pass

    async def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Logs notifications and keeps them for inspection."""

    def __init__(self, max_history: int = 100):
        self._history: List[Notification] = []
        self._max_history = max_history

    @property
    def sent(self) -> List[Notification]:
        return list(self._history)

    async def notify(self, notification: Notification) -> None:
        self._history.append(notification)
        if len(self._history) > self._max_history:
            self._history.pop(0)
        logger.info(
            f"Notification {notification.notification_type.value} "
            f"to {notification.recipient_id}: {notification.title}"
        )


class PushGatewayNotifier(Notifier):
    """
    Posts notifications to an HTTP push gateway.

    The gateway owns subscriptions and transport (web push,
    mobile). This client only hands over the payload.
    """

    def __init__(
        self,
        config: NotificationConfig,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        """
        Initialize push gateway notifier.

        Args:
            config: Notification configuration
            timeout_config: Timeout configuration
        """
        self._config = config
        self._timeout_config = timeout_config or TimeoutConfig()
        self._token = os.environ.get(config.gateway_token_env, "")
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._config.gateway_url)

    @staticmethod
    def build_payload(notification: Notification) -> Dict[str, Any]:
        """Gateway payload with a unique tag."""
        unique_tag = (
            f"{notification.tag}-{uuid.uuid4()}" if notification.tag
            else str(uuid.uuid4())
        )
        return {
            "user_id": notification.recipient_id,
            "title": notification.title,
            "body": notification.body,
            "tag": unique_tag,
            "data": {
                **notification.data,
                "type": notification.notification_type.value,
                "url": notification.url,
            },
        }

    async def notify(self, notification: Notification) -> None:
        if not self.is_configured:
            logger.debug(f"Push gateway not configured, dropping: {notification.title}")
            return

        if self._session is None:
            timeout = aiohttp.ClientTimeout(
                total=self._timeout_config.notification_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}

        async with self._session.post(
            self._config.gateway_url,
            json=self.build_payload(notification),
            headers=headers,
        ) as response:
            if response.status >= 400:
                body = await response.text()
                raise RuntimeError(f"Push gateway error {response.status}: {body[:200]}")

        logger.debug(
            f"Notification {notification.notification_type.value} "
            f"delivered to {notification.recipient_id}"
        )

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    """
    Schedules deliveries as tracked background tasks.

    dispatch() returns immediately. Failures are logged and
    never reach the caller.
    """

    def __init__(
        self,
        notifier: Notifier,
        config: Optional[NotificationConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        self._notifier = notifier
        self._config = config or NotificationConfig()
        self._timeout_config = timeout_config or TimeoutConfig()
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def dispatch(self, notification: Notification) -> Optional[asyncio.Task]:
        """Schedule delivery. Must be called from a running loop."""
        if not self._config.enabled:
            return None

        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def dispatch_all(self, notifications: List[Notification]) -> None:
        for notification in notifications:
            self.dispatch(notification)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await asyncio.wait_for(
                self._notifier.notify(notification),
                timeout=self._timeout_config.notification_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(
                f"Failed to deliver {notification.notification_type.value} "
                f"to {notification.recipient_id}: {e}"
            )

    async def drain(self) -> None:
        """Wait for every pending delivery."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self._notifier.close()


# ============================================================
# NOTIFICATION HELPER FUNCTIONS
# ============================================================

def participant_joined(
    leader_id: str,
    participant_id: str,
    group_order_id: str,
    group_name: Optional[str],
    url: Optional[str] = None,
) -> Notification:
    """Create a participant joined notification."""
    return Notification(
        notification_type=NotificationType.PARTICIPANT_JOINED,
        recipient_id=leader_id,
        title="New order in your group",
        body=f"{participant_id} joined {group_name or 'your group order'}",
        tag=f"group-{group_order_id}",
        url=url,
        data={"group_order_id": group_order_id, "participant_id": participant_id},
    )


def payment_marked(
    leader_id: str,
    participant_id: str,
    group_order_id: str,
    paid: bool,
    url: Optional[str] = None,
) -> Notification:
    """Create a payment marked notification."""
    state = "paid" if paid else "not paid"
    return Notification(
        notification_type=NotificationType.PAYMENT_MARKED,
        recipient_id=leader_id,
        title="Payment update",
        body=f"{participant_id} marked their order as {state}",
        tag=f"payment-{group_order_id}",
        url=url,
        data={"group_order_id": group_order_id, "participant_id": participant_id, "paid": paid},
    )


def reimbursement_marked(
    participant_id: str,
    group_order_id: str,
    reimbursed: bool,
    url: Optional[str] = None,
) -> Notification:
    """Create a reimbursement marked notification."""
    state = "reimbursed" if reimbursed else "not reimbursed"
    return Notification(
        notification_type=NotificationType.REIMBURSEMENT_MARKED,
        recipient_id=participant_id,
        title="Reimbursement update",
        body=f"The leader marked your order as {state}",
        tag=f"reimbursement-{group_order_id}",
        url=url,
        data={"group_order_id": group_order_id, "reimbursed": reimbursed},
    )


def group_status_changed(
    notification_type: NotificationType,
    recipient_ids: List[str],
    group_order_id: str,
    group_name: Optional[str],
    url: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> List[Notification]:
    """Create one group status notification per recipient."""
    titles = {
        NotificationType.GROUP_SUBMITTED: "Group order submitted",
        NotificationType.GROUP_COMPLETED: "Group order placed",
        NotificationType.GROUP_CLOSED: "Group order closed",
    }
    label = group_name or "Your group order"
    bodies = {
        NotificationType.GROUP_SUBMITTED: f"{label} is locked and about to be ordered",
        NotificationType.GROUP_COMPLETED: f"{label} was placed with the restaurant",
        NotificationType.GROUP_CLOSED: f"{label} no longer accepts orders",
    }
    return [
        Notification(
            notification_type=notification_type,
            recipient_id=recipient_id,
            title=titles[notification_type],
            body=bodies[notification_type],
            tag=f"group-{group_order_id}",
            url=url,
            data={"group_order_id": group_order_id, **(details or {})},
        )
        for recipient_id in recipient_ids
    ]
