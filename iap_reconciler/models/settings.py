"""Reconciler settings models.

Validated shape of config/reconciler.yaml.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .product import ProductCatalog


class SignatureConfig(BaseModel):
    """Purchase signature verification settings."""

    public_key: Optional[str] = Field(
        None,
        description="Base64 X.509 public key (or PEM). Defaults to the local billing key.",
    )
    digest: str = Field(default="SHA1", description="Digest used with RSA PKCS#1 v1.5")


class ConnectionConfig(BaseModel):
    """Billing service reconnection policy."""

    max_retry: int = Field(default=5, ge=1, description="Attempt cap before giving up")
    base_delay_millis: int = Field(default=500, ge=0, description="Backoff base delay")
    task_delay_millis: int = Field(
        default=2000, ge=0, description="Fallback wait before running a queued task"
    )


class ThrottleConfig(BaseModel):
    """Verification server throttle settings."""

    dead_band_millis: int = Field(default=7_200_000, ge=0, description="Minimum gap between server queries")
    namespace: str = Field(default="BillingRepository.Throttle", description="Preferences namespace")


class StorageConfig(BaseModel):
    """Local cache settings."""

    state_dir: Optional[str] = Field(
        ".reconciler_state",
        description="Directory for the entitlement cache and preferences (null keeps them in memory)",
    )


class VerificationServerConfig(BaseModel):
    """Remote verification server settings."""

    base_url: Optional[str] = Field(None, description="Server base URL (queries disabled if unset)")
    timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP timeout")


class PubSubConfig(BaseModel):
    """Pub/Sub settings for new-purchase notifications."""

    enabled: bool = Field(default=False, description="Publish new purchases to Pub/Sub")
    project_id: str = Field(default="reconciler-project", description="GCP project ID")
    topic: str = Field(default="purchase-notifications", description="Pub/Sub topic name")


class LocalBillingConfig(BaseModel):
    """In-process billing service settings."""

    private_key_path: Optional[str] = Field(
        None, description="PEM private key used to sign purchases (generated if unset)"
    )
    subscriptions_supported: bool = Field(default=True, description="Report subscription support")
    token_prefix: str = Field(default="local", description="Purchase token prefix")


class ReconcilerSettings(BaseModel):
    """Complete reconciler.yaml configuration."""

    package_name: str = Field(..., description="Application package name")
    catalog: ProductCatalog
    signature: SignatureConfig = Field(default_factory=SignatureConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    verification_server: VerificationServerConfig = Field(default_factory=VerificationServerConfig)
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)
    local_billing: LocalBillingConfig = Field(default_factory=LocalBillingConfig)
    worker_threads: int = Field(default=4, ge=1, description="Background reconciliation workers")
