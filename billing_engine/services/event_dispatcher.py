"""Billing audit event publishing to Google Cloud Pub/Sub.

Responsibilities:
- Build BillingEvent messages
- Publish to the audit topic
- Manage Pub/Sub client lifecycle

Publishing is best-effort: a failed publish is logged and reported as
False, it never interrupts billing.
"""

from datetime import datetime
from decimal import Decimal
from threading import RLock
from typing import Any, Optional

from google.cloud import pubsub_v1

from billing_engine.logging_config import get_logger
from billing_engine.models.events import BillingEvent, BillingEventType
from billing_engine.models.plan import AuditSettings

logger = get_logger(__name__)


class EventDispatcher:
    """Dispatches billing events to Google Cloud Pub/Sub.

    When auditing is disabled in configuration, events are only logged.

    Thread-safe singleton pattern.
    """

    def __init__(
            self,
            settings: Optional[AuditSettings] = None,
            publisher: Optional[pubsub_v1.PublisherClient] = None,
    ):
        """Initialize event dispatcher.

        Args:
            settings: Audit settings. If not provided, uses global config.
            publisher: Pre-built publisher client (tests); created on demand otherwise
        """
        self._lock = RLock()
        self._publisher = publisher
        self._topic_path: Optional[str] = None
        self._settings = settings
        self._enabled = False

        self._initialize()

    def _initialize(self) -> None:
        """Init pub/sub publisher from config"""
        if self._settings is None:
            from billing_engine.config import get_config

            self._settings = get_config().audit_settings

        self._enabled = self._settings.enabled
        if not self._enabled:
            logger.info("event_dispatcher_disabled", message="Billing audit events are disabled in config")
            return

        try:
            if self._publisher is None:
                self._publisher = pubsub_v1.PublisherClient()

            project_id = self._settings.project_id
            topic_name = self._settings.topic
            self._topic_path = self._publisher.topic_path(project_id, topic_name)
            self._ensure_topic_exists()

            logger.info(
                "event_dispatcher_initialized",
                project_id=project_id,
                topic=topic_name,
                topic_path=self._topic_path,
            )

        except Exception as e:
            logger.error(
                "event_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            # Billing keeps running without an audit sink
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        """Create the audit topic if it does not exist yet."""
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_enabled(self) -> bool:
        """Check if event dispatcher is enabled.

        Returns:
            True if audit events are enabled and client is initialized
        """
        return self._enabled and self._publisher is not None

    def publish_event(
            self,
            event_type: BillingEventType,
            event_time: datetime,
            actor: str = "system",
            subscription_id: Optional[str] = None,
            user_id: Optional[str] = None,
            amount: Optional[Decimal] = None,
            currency: Optional[str] = None,
            message: Optional[str] = None,
            **attributes: Any,
    ) -> bool:
        """Publish one billing event.

        Args:
            event_type: Type of billing event
            event_time: Processing time of the event
            actor: Who triggered it
            subscription_id: Subscription concerned
            user_id: User concerned
            amount: Amount involved
            currency: Currency code
            message: Decline reason or summary
            **attributes: Extra event data

        Returns:
            True if published successfully, False otherwise
        """
        event = BillingEvent(
            event_type=event_type,
            event_time=event_time,
            actor=actor,
            subscription_id=subscription_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            message=message,
            attributes=attributes,
        )

        if not self.is_enabled():
            logger.debug(
                "billing_event_not_published",
                event_type=event_type.value,
                subscription_id=subscription_id,
            )
            return False

        with self._lock:
            try:
                self._publish(event)
                logger.info(
                    "billing_event_published",
                    event_type=event_type.value,
                    subscription_id=subscription_id,
                )
                return True
            except Exception as e:
                logger.error(
                    "billing_event_publish_failed",
                    event_type=event_type.value,
                    subscription_id=subscription_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

    def _publish(self, event: BillingEvent) -> None:
        """Publish an event and wait for the ack.

        Raises:
            GoogleAPIError: If publication fails after retries
        """
        if not self._publisher or not self._topic_path:
            raise RuntimeError("Publisher is not initialized")

        future = self._publisher.publish(
            self._topic_path,
            event.model_dump_json().encode("utf-8"),
            # Attributes for subscription filters
            event_type=event.event_type.value,
            subscription_id=event.subscription_id or "",
        )
        message_id = future.result(timeout=self._settings.publish_timeout_seconds)
        logger.debug("pubsub_message_published", message_id=message_id)

    def shutdown(self) -> None:
        """Shutdown the event dispatcher and close connections."""
        with self._lock:
            if self._publisher:
                logger.info("event_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None
                logger.info("event_dispatcher_shutdown_complete")


_event_dispatcher: Optional[EventDispatcher] = None
_dispatcher_lock = RLock()


def get_event_dispatcher() -> EventDispatcher:
    """Get or create the singleton EventDispatcher instance."""
    global _event_dispatcher
    if _event_dispatcher is None:
        with _dispatcher_lock:
            if _event_dispatcher is None:
                _event_dispatcher = EventDispatcher()
    return _event_dispatcher


def reset_event_dispatcher() -> None:
    """Reset the singleton EventDispatcher instance (for testing)."""
    global _event_dispatcher

    with _dispatcher_lock:
        if _event_dispatcher is not None:
            _event_dispatcher.shutdown()
            _event_dispatcher = None
