"""Shared fixtures: catalog, signing keys, purchase factory and deterministic executors."""

import base64
import json
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from iap_reconciler.clients.local_billing_client import generate_private_key
from iap_reconciler.models import (
    MutuallyExclusiveGroup,
    ProductCatalog,
    ProductCategory,
    ProductDefinition,
    Purchase,
    PurchaseState,
)
from iap_reconciler.repositories.product_repository import ProductRepository
from iap_reconciler.utils.token_generator import generate_purchase_token

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "reconciler.yaml"


class InlineExecutor(Executor):
    """Runs submitted callables immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class _Handle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Records delayed calls instead of starting timers."""

    def __init__(self) -> None:
        self.calls: List[Tuple[float, Callable[[], None], _Handle]] = []

    def __call__(self, delay_seconds: float, fn: Callable[[], None]) -> _Handle:
        handle = _Handle()
        self.calls.append((delay_seconds, fn, handle))
        return handle

    @property
    def delays(self) -> List[float]:
        return [delay for delay, _, _ in self.calls]

    def fire(self, index: int = -1) -> None:
        _, fn, handle = self.calls[index]
        if not handle.cancelled:
            fn()

    def fire_all(self) -> None:
        pending = list(self.calls)
        for _, fn, handle in pending:
            if not handle.cancelled:
                fn()


@pytest.fixture
def config_path() -> Path:
    return CONFIG_PATH


@pytest.fixture
def catalog() -> ProductCatalog:
    """Catalog mirroring config/reconciler.yaml."""
    return ProductCatalog(
        products=[
            ProductDefinition(
                id="gas",
                category=ProductCategory.INAPP,
                kind="consumable",
                title="Gas",
                price_micros=990000,
                entitlement_key="gas_tank",
                increment=1,
                max_balance=4,
            ),
            ProductDefinition(
                id="premium_car",
                category=ProductCategory.INAPP,
                kind="one_time",
                title="Premium Car",
                price_micros=2990000,
            ),
            ProductDefinition(
                id="gold_monthly",
                category=ProductCategory.SUBS,
                kind="subscription",
                title="Gold Monthly",
                price_micros=4990000,
            ),
            ProductDefinition(
                id="gold_yearly",
                category=ProductCategory.SUBS,
                kind="subscription",
                title="Gold Yearly",
                price_micros=39990000,
            ),
        ],
        mutually_exclusive_group=MutuallyExclusiveGroup(
            name="gold_status", members=["gold_monthly", "gold_yearly"]
        ),
    )


@pytest.fixture
def products(catalog) -> ProductRepository:
    return ProductRepository(catalog)


@pytest.fixture(scope="session")
def private_key():
    """One RSA key for the whole session (key generation is slow)."""
    return generate_private_key()


@pytest.fixture(scope="session")
def public_key_b64(private_key) -> str:
    der = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def sign(private_key) -> Callable[[str], str]:
    def _sign(payload: str) -> str:
        signature = private_key.sign(payload.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())
        return base64.b64encode(signature).decode("ascii")

    return _sign


@pytest.fixture
def make_purchase(sign) -> Callable[..., Purchase]:
    """Factory for signed purchases."""

    def _make(
        product_id: str,
        purchase_time_millis: int = 1_700_000_000_000,
        token: Optional[str] = None,
        quantity: int = 1,
        state: PurchaseState = PurchaseState.PURCHASED,
        signature: Optional[str] = None,
    ) -> Purchase:
        category = ProductCategory.SUBS if product_id.startswith("gold_") else ProductCategory.INAPP
        payload = json.dumps(
            {
                "orderId": "GPA.1234-5678-9012-3456",
                "packageName": "com.example.trivialdrive",
                "productId": product_id,
                "purchaseTime": purchase_time_millis,
                "purchaseState": int(state),
                "purchaseToken": token
                or generate_purchase_token(category=category, now_millis=purchase_time_millis),
                "quantity": quantity,
                "acknowledged": False,
            },
            separators=(",", ":"),
        )
        return Purchase.from_original_json(payload, signature if signature is not None else sign(payload))

    return _make


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture(autouse=True)
def in_memory_state(monkeypatch):
    """Keep state in memory; tests that persist clear STATE_DIR themselves."""
    monkeypatch.setenv("STATE_DIR", "")
