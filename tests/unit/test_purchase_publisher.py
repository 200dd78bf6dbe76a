"""Unit tests for the Pub/Sub purchase publisher."""

import json
from unittest.mock import Mock, patch

import pytest
from google.api_core.exceptions import NotFound

from iap_reconciler.models import PubSubConfig
from iap_reconciler.services.purchase_publisher import PurchasePublisher

TOPIC_PATH = "projects/reconciler-project/topics/purchase-notifications"


@pytest.fixture
def enabled_settings():
    return PubSubConfig(enabled=True)


@pytest.fixture
def mock_publisher():
    publisher = Mock()
    publisher.topic_path.return_value = TOPIC_PATH
    future = Mock()
    future.result.return_value = "message-id-1"
    publisher.publish.return_value = future
    return publisher


class TestInitialization:
    """Publisher initialization and configuration."""

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_disabled_in_config(self, mock_publisher_class):
        publisher = PurchasePublisher(PubSubConfig(enabled=False), "com.example.trivialdrive")

        assert publisher.is_enabled() is False
        mock_publisher_class.assert_not_called()

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_enabled(self, mock_publisher_class, enabled_settings, mock_publisher):
        mock_publisher_class.return_value = mock_publisher

        publisher = PurchasePublisher(enabled_settings, "com.example.trivialdrive")

        assert publisher.is_enabled() is True
        mock_publisher.topic_path.assert_called_once_with("reconciler-project", "purchase-notifications")

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_creates_missing_topic(self, mock_publisher_class, enabled_settings, mock_publisher):
        mock_publisher.get_topic.side_effect = NotFound("no topic")
        mock_publisher_class.return_value = mock_publisher

        PurchasePublisher(enabled_settings, "com.example.trivialdrive")

        mock_publisher.create_topic.assert_called_once_with(request={"name": TOPIC_PATH})

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_init_failure_disables(self, mock_publisher_class, enabled_settings):
        mock_publisher_class.side_effect = Exception("no credentials")

        publisher = PurchasePublisher(enabled_settings, "com.example.trivialdrive")

        assert publisher.is_enabled() is False


class TestPublishing:
    """Notification publishing."""

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_publish_format(self, mock_publisher_class, enabled_settings, mock_publisher, make_purchase):
        mock_publisher_class.return_value = mock_publisher
        publisher = PurchasePublisher(enabled_settings, "com.example.trivialdrive")
        purchase = make_purchase("premium_car")

        assert publisher.publish_purchase(purchase) is True

        args, attrs = mock_publisher.publish.call_args
        assert args[0] == TOPIC_PATH
        message = json.loads(args[1].decode("utf-8"))
        assert message["purchase_token"] == purchase.purchase_token
        assert message["original_json"] == purchase.original_json
        assert message["package_name"] == "com.example.trivialdrive"
        assert attrs == {"product_id": "premium_car", "package_name": "com.example.trivialdrive"}

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_publish_when_disabled(self, mock_publisher_class, mock_publisher, make_purchase):
        mock_publisher_class.return_value = mock_publisher
        publisher = PurchasePublisher(PubSubConfig(enabled=False), "com.example.trivialdrive")

        assert publisher.publish_purchase(make_purchase("gas")) is False
        mock_publisher.publish.assert_not_called()

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_publish_failure_raises(self, mock_publisher_class, enabled_settings, mock_publisher, make_purchase):
        mock_publisher.publish.return_value.result.side_effect = Exception("Pub/Sub error")
        mock_publisher_class.return_value = mock_publisher
        publisher = PurchasePublisher(enabled_settings, "com.example.trivialdrive")

        with pytest.raises(Exception, match="Pub/Sub error"):
            publisher.publish_purchase(make_purchase("gas"))


class TestShutdown:
    """Publisher shutdown."""

    @patch("iap_reconciler.services.purchase_publisher.pubsub_v1.PublisherClient")
    def test_shutdown_cleans_up(self, mock_publisher_class, enabled_settings, mock_publisher):
        mock_publisher_class.return_value = mock_publisher
        publisher = PurchasePublisher(enabled_settings, "com.example.trivialdrive")

        publisher.shutdown()

        assert publisher.is_enabled() is False
