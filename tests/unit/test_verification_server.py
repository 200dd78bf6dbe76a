"""Tests for the verification server client."""

import json
from unittest.mock import Mock

import httpx
import pytest

from iap_reconciler.clients.verification_server import (
    VerificationServerClient,
    VerificationServerError,
)

BASE_URL = "https://verify.example.com"


def client_for(handler):
    http_client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return VerificationServerClient(base_url=BASE_URL, http_client=http_client)


class TestQueryServerPurchases:
    """GET /purchases."""

    def test_parses_purchases(self, make_purchase):
        purchase = make_purchase("premium_car")

        def handler(request):
            assert request.url.path == "/purchases"
            return httpx.Response(
                200,
                json={"purchases": [{"original_json": purchase.original_json, "signature": purchase.signature}]},
            )

        assert client_for(handler).query_server_purchases() == [purchase]

    def test_skips_bad_entries(self, make_purchase):
        purchase = make_purchase("gas")

        def handler(request):
            return httpx.Response(
                200,
                json={
                    "purchases": [
                        {"original_json": "not json", "signature": "x"},
                        {"signature": "missing payload"},
                        {
                            "original_json": json.dumps(
                                {"productId": "gas", "purchaseToken": "t1", "purchaseTime": "soon"}
                            ),
                            "signature": "x",
                        },
                        {
                            "original_json": json.dumps(
                                {"productId": "gas", "purchaseToken": "t2", "quantity": 0}
                            ),
                            "signature": "x",
                        },
                        {"original_json": purchase.original_json, "signature": purchase.signature},
                    ]
                },
            )

        assert client_for(handler).query_server_purchases() == [purchase]

    def test_http_error(self):
        client = client_for(lambda request: httpx.Response(503))
        with pytest.raises(VerificationServerError, match="503"):
            client.query_server_purchases()

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(VerificationServerError):
            client_for(handler).query_server_purchases()

    def test_invalid_json(self):
        client = client_for(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(VerificationServerError, match="invalid JSON"):
            client.query_server_purchases()

    def test_missing_purchases_list(self):
        client = client_for(lambda request: httpx.Response(200, json={"items": []}))
        with pytest.raises(VerificationServerError):
            client.query_server_purchases()

    def test_no_base_url_returns_empty(self):
        client = VerificationServerClient()
        assert client.query_enabled is False
        assert client.query_server_purchases() == []


class TestNotifyNewPurchases:
    """Notifications through the publisher."""

    def test_no_publisher(self, make_purchase):
        assert VerificationServerClient().notify_new_purchases([make_purchase("gas")]) is False

    def test_publishes_each_purchase(self, make_purchase):
        publisher = Mock()
        publisher.is_enabled.return_value = True
        batch = [make_purchase("gas"), make_purchase("premium_car")]

        assert VerificationServerClient(publisher=publisher).notify_new_purchases(batch) is True
        assert publisher.publish_purchase.call_count == 2

    def test_publish_failure_wrapped(self, make_purchase):
        publisher = Mock()
        publisher.is_enabled.return_value = True
        publisher.publish_purchase.side_effect = RuntimeError("timeout")

        with pytest.raises(VerificationServerError):
            VerificationServerClient(publisher=publisher).notify_new_purchases([make_purchase("gas")])

    def test_close_shuts_down_publisher(self):
        publisher = Mock()
        VerificationServerClient(publisher=publisher).close()
        publisher.shutdown.assert_called_once()
