"""Verification server client.

New purchases are pushed through Pub/Sub; server-side purchase state is
pulled over HTTP. Both are opaque to the reconciliation engine, which only
sees ``notify_new_purchases`` and ``query_server_purchases``.
"""

from typing import Iterable, List, Optional

import httpx

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models import InvalidPurchasePayloadError, Purchase
from iap_reconciler.services.purchase_publisher import PurchasePublisher

logger = get_logger(__name__)


class VerificationServerError(Exception):
    """Raised when a call to the verification server fails."""

    pass


class VerificationServerClient:
    """Client for the remote verification server."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        publisher: Optional[PurchasePublisher] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Server base URL; server queries return nothing if unset
            publisher: Pub/Sub publisher for new-purchase notifications
            timeout: HTTP timeout in seconds
            http_client: Pre-built httpx client (tests inject a MockTransport)
        """
        self._base_url = base_url.rstrip("/") if base_url else None
        self._publisher = publisher
        self._owns_http_client = http_client is None
        self._http_client = http_client
        if self._http_client is None and self._base_url:
            self._http_client = httpx.Client(base_url=self._base_url, timeout=timeout)

    @property
    def query_enabled(self) -> bool:
        return self._http_client is not None

    def notify_new_purchases(self, batch: Iterable[Purchase]) -> bool:
        """Report a batch of newly verified purchases.

        Returns:
            True if every purchase was published, False if publishing is disabled

        Raises:
            VerificationServerError: If publishing failed
        """
        purchases = list(batch)
        if self._publisher is None or not self._publisher.is_enabled():
            logger.debug("server_notification_skipped", count=len(purchases))
            return False

        try:
            for purchase in purchases:
                self._publisher.publish_purchase(purchase)
        except Exception as e:
            raise VerificationServerError(f"Failed to notify new purchases: {e}") from e

        logger.info("server_notified", count=len(purchases))
        return True

    def query_server_purchases(self) -> List[Purchase]:
        """Pull the purchases the server has recorded.

        Expects ``{"purchases": [{"original_json": ..., "signature": ...}]}``.
        Entries whose payload cannot be parsed are skipped with a warning.

        Raises:
            VerificationServerError: On transport errors, non-2xx responses or a
                malformed body
        """
        if self._http_client is None:
            logger.debug("server_query_skipped", reason="no_base_url")
            return []

        try:
            response = self._http_client.get("/purchases")
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise VerificationServerError(
                f"Verification server returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise VerificationServerError(f"Verification server request failed: {e}") from e
        except ValueError as e:
            raise VerificationServerError(f"Verification server returned invalid JSON: {e}") from e

        entries = body.get("purchases") if isinstance(body, dict) else None
        if not isinstance(entries, list):
            raise VerificationServerError("Verification server response missing 'purchases' list")

        purchases = []
        for entry in entries:
            try:
                purchases.append(
                    Purchase.from_original_json(entry["original_json"], entry.get("signature", ""))
                )
            except (InvalidPurchasePayloadError, KeyError, TypeError) as e:
                logger.warning("server_purchase_skipped", error=str(e))

        logger.info("server_purchases_fetched", count=len(purchases))
        return purchases

    def close(self) -> None:
        """Close the HTTP client (if this instance created it) and the publisher."""
        if self._http_client is not None and self._owns_http_client:
            self._http_client.close()
        if self._publisher is not None:
            self._publisher.shutdown()
