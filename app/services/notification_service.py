"""
Notification service — fire-and-forget mail/push delivery decoupled from the ledger.

Flow:
  1. A service calls queue_notification(session, event). The event is parked
     on session.info; nothing leaves the process yet.
  2. When the session COMMITS, an `after_commit` listener hands the parked
     events to the dispatcher. A rollback discards them, so a failed
     redemption never announces a transaction that does not exist.
  3. The dispatcher puts events on a bounded asyncio.Queue without waiting.
     A background worker task drains the queue and calls the sender.
  4. Sender failures are logged and dropped. They never reach the request
     that produced the event.

The actual mail/push delivery is an external collaborator. The default
LoggingNotificationSender only writes the message to the log; deployments
plug in a real sender with dispatcher.set_sender().
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session

from app.config import settings

log = logging.getLogger(__name__)

_PENDING_KEY = "pending_notifications"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderApproved:
    """A sponsor approved a provider for one of its funds."""
    fund_provider_id: uuid.UUID
    provider_identity: str
    provider_email: str | None
    provider_name: str
    fund_name: str
    sponsor_name: str
    provider_url: str


@dataclass(frozen=True)
class ProviderDeclined:
    """A sponsor declined a provider. Only emitted when NOTIFY_PROVIDER_DECLINED is set."""
    fund_provider_id: uuid.UUID
    provider_identity: str
    provider_email: str | None
    provider_name: str
    fund_name: str
    sponsor_name: str


@dataclass(frozen=True)
class TransactionRecorded:
    """
    Push to the voucher holder after a redemption was recorded.

    `available_cents` is what is left to spend afterwards; for a product
    voucher spawned from a regular one it is the parent's remaining amount.
    """
    transaction_id: uuid.UUID
    identity_address: str
    amount_cents: int
    fund_name: str
    product_name: str | None
    available_cents: int


@dataclass(frozen=True)
class VoucherSent:
    """The holder asked for their share-safe voucher code by mail."""
    voucher_id: uuid.UUID
    identity_address: str
    title: str
    token_address: str


@dataclass(frozen=True)
class VoucherShared:
    """
    A product voucher shared with the product's organization, or the holder's
    copy of that message.
    """
    voucher_id: uuid.UUID
    recipient_identity: str
    recipient_email: str | None
    holder_identity: str
    product_name: str
    token_address: str
    reason: str


@dataclass(frozen=True)
class PaymentCompleted:
    """Push to the provider once the payout for a transaction succeeded."""
    transaction_id: uuid.UUID
    provider_identity: str
    amount_cents: int


@dataclass(frozen=True)
class VoucherExpiring:
    """Reminder to a holder whose regular voucher expires soon with money left."""
    voucher_id: uuid.UUID
    identity_address: str
    fund_name: str
    sponsor_name: str
    available_cents: int
    expire_at: str


NotificationEvent = (
    ProviderApproved
    | ProviderDeclined
    | TransactionRecorded
    | PaymentCompleted
    | VoucherExpiring
    | VoucherSent
    | VoucherShared
)


# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------

class NotificationSender(Protocol):
    async def send(self, notification: NotificationEvent) -> None: ...


class LoggingNotificationSender:
    """Default sender: records the notification in the log."""

    async def send(self, notification: NotificationEvent) -> None:
        log.info("notification %s: %s", type(notification).__name__, notification)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class NotificationDispatcher:
    """Owns the in-process queue and the worker task that drains it."""

    def __init__(self, sender: NotificationSender, maxsize: int = 1000):
        self.sender = sender
        self.maxsize = maxsize
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def set_sender(self, sender: NotificationSender) -> None:
        self.sender = sender

    async def start(self) -> None:
        if self.running:
            return
        # A fresh queue per start: asyncio queues bind to the loop that first waits on them
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
        log.info("Notification dispatcher started")

    async def stop(self) -> None:
        """Deliver whatever is queued, then stop the worker."""
        if not self.running:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
        log.info("Notification dispatcher stopped")

    async def drain(self) -> None:
        """Wait until every queued notification was handed to the sender."""
        if self._queue is not None:
            await self._queue.join()

    def publish(self, notification: NotificationEvent) -> bool:
        """Enqueue without waiting. Returns False if the event was dropped."""
        if not self.running:
            log.warning(
                "Notification dispatcher not running; dropping %s",
                type(notification).__name__,
            )
            return False
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            log.warning(
                "Notification queue full; dropping %s", type(notification).__name__
            )
            return False
        return True

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self.sender.send(notification)
            except Exception:
                # Delivery is best-effort; the ledger never depends on it
                log.exception(
                    "Failed to deliver %s", type(notification).__name__
                )
            finally:
                self._queue.task_done()


dispatcher = NotificationDispatcher(
    LoggingNotificationSender(),
    maxsize=settings.NOTIFICATION_QUEUE_SIZE,
)


# ---------------------------------------------------------------------------
# Session integration
# ---------------------------------------------------------------------------

def queue_notification(session, notification: NotificationEvent) -> None:
    """
    Park a notification until the session commits.

    Accepts either an AsyncSession or a plain Session; both expose `.info`
    backed by the same dictionary.
    """
    session.info.setdefault(_PENDING_KEY, []).append(notification)


@event.listens_for(Session, "after_commit")
def _release_on_commit(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    for notification in pending or ():
        dispatcher.publish(notification)


@event.listens_for(Session, "after_rollback")
def _discard_on_rollback(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    if pending:
        log.debug("Discarding %d notification(s) after rollback", len(pending))
