"""New-purchase publishing to Google Cloud Pub/Sub.

Responsibilities:
- Format PurchaseNotification messages
- Publish to the verification server's Pub/Sub topic
- Manage Pub/Sub client lifecycle
"""

import time
from threading import RLock
from typing import Optional

from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud import pubsub_v1

from iap_reconciler.logging_config import get_logger, shorten_token
from iap_reconciler.models import PubSubConfig, Purchase, PurchaseNotification

logger = get_logger(__name__)

PUBLISH_TIMEOUT_SECONDS = 5.0


class PurchasePublisher:
    """Publishes verified new purchases to Pub/Sub.

    A failed initialization disables the publisher instead of raising, so the
    reconciler keeps working without server notifications.

    Thread-safe.
    """

    def __init__(self, settings: PubSubConfig, package_name: str):
        """Initialize the publisher.

        Args:
            settings: Pub/Sub settings
            package_name: Package name stamped on every notification
        """
        self._lock = RLock()
        self._settings = settings
        self._package_name = package_name
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._enabled = False

        self._initialize()

    def _initialize(self) -> None:
        """Init pub/sub publisher from settings"""
        if not self._settings.enabled:
            logger.info("purchase_publisher_disabled", message="Purchase notifications are disabled in config")
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(
                self._settings.project_id, self._settings.topic
            )
            self._ensure_topic_exists()
            self._enabled = True

            logger.info(
                "purchase_publisher_initialized",
                project_id=self._settings.project_id,
                topic=self._settings.topic,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "purchase_publisher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._publisher = None
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        """Ensure the Pub/Sub topic exists, create it if it doesn't."""
        if not self._publisher or not self._topic_path:
            return

        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except NotFound:
            try:
                topic = self._publisher.create_topic(request={"name": self._topic_path})
                logger.info("pubsub_topic_created", topic_path=topic.name)
            except AlreadyExists:
                logger.info("pubsub_topic_exists", topic_path=self._topic_path)

    def is_enabled(self) -> bool:
        """Check if the publisher is enabled and has a client."""
        return self._enabled and self._publisher is not None

    def publish_purchase(self, purchase: Purchase) -> bool:
        """Publish one new purchase.

        Args:
            purchase: Verified purchase

        Returns:
            True if published, False if the publisher is disabled

        Raises:
            Exception: Whatever the Pub/Sub client raised on publish failure
        """
        if not self.is_enabled():
            logger.debug("purchase_publisher_disabled", message="Skipping notification")
            return False

        notification = PurchaseNotification(
            package_name=self._package_name,
            event_time_millis=int(time.time() * 1000),
            purchase_token=purchase.purchase_token,
            product_id=purchase.product_id,
            original_json=purchase.original_json,
            signature=purchase.signature,
        )

        with self._lock:
            future = self._publisher.publish(
                self._topic_path,
                notification.model_dump_json().encode("utf-8"),
                product_id=purchase.product_id,
                package_name=self._package_name,
            )

        try:
            message_id = future.result(timeout=PUBLISH_TIMEOUT_SECONDS)
        except Exception as e:
            logger.error(
                "pubsub_publish_failed",
                product_id=purchase.product_id,
                token=shorten_token(purchase.purchase_token),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise

        logger.info(
            "purchase_notification_published",
            product_id=purchase.product_id,
            token=shorten_token(purchase.purchase_token),
            message_id=message_id,
        )
        return True

    def shutdown(self) -> None:
        """Shutdown the publisher."""
        with self._lock:
            if self._publisher:
                logger.info("purchase_publisher_shutting_down")
                self._publisher = None
                self._topic_path = None
                self._enabled = False
                logger.info("purchase_publisher_shutdown_complete")
