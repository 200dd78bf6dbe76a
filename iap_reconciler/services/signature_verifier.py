"""Purchase signature verification.

Checks that a purchase payload was signed by the billing service's key with
RSA PKCS#1 v1.5. Every failure path returns False: an unverifiable purchase
is simply not entitled.
"""

import base64
import binascii
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from iap_reconciler.config import ConfigurationError
from iap_reconciler.logging_config import get_logger

logger = get_logger(__name__)

SUPPORTED_DIGESTS = {
    "SHA1": hashes.SHA1,
    "SHA256": hashes.SHA256,
    "SHA384": hashes.SHA384,
    "SHA512": hashes.SHA512,
}


def _digest_for(name: str) -> hashes.HashAlgorithm:
    digest_class = SUPPORTED_DIGESTS.get(name.upper().replace("-", ""))
    if digest_class is None:
        raise ConfigurationError(
            f"Unsupported signature digest: {name}. "
            f"Supported: {sorted(SUPPORTED_DIGESTS)}"
        )
    return digest_class()


def load_public_key(encoded_key: str) -> rsa.RSAPublicKey:
    """Load an RSA public key from base64 DER (X.509 SubjectPublicKeyInfo) or PEM.

    Raises:
        ValueError: If the key cannot be decoded or is not an RSA key
    """
    encoded_key = encoded_key.strip()
    try:
        if encoded_key.startswith("-----BEGIN"):
            key = serialization.load_pem_public_key(encoded_key.encode("ascii"))
        else:
            der = base64.b64decode(encoded_key, validate=True)
            key = serialization.load_der_public_key(der)
    except (binascii.Error, UnsupportedAlgorithm, ValueError) as e:
        raise ValueError(f"Invalid public key: {e}") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError(f"Public key must be RSA, got {type(key).__name__}")
    return key


def verify_purchase(
    public_key: Optional[str],
    payload: Optional[str],
    signature: Optional[str],
    digest: str = "SHA1",
) -> bool:
    """Verify that ``payload`` was signed with the private half of ``public_key``.

    Args:
        public_key: Base64-encoded (or PEM) RSA public key
        payload: Signed JSON string (signed, not encrypted)
        signature: Base64 signature over the payload
        digest: Digest algorithm name

    Returns:
        True only if the signature matches; False on any missing input or failure
    """
    if not payload or not signature or not public_key:
        logger.warning(
            "purchase_verification_failed",
            reason="missing_data",
            has_payload=bool(payload),
            has_signature=bool(signature),
            has_key=bool(public_key),
        )
        return False

    try:
        key = load_public_key(public_key)
    except ValueError as e:
        logger.warning("purchase_verification_failed", reason="invalid_key", error=str(e))
        return False

    return _verify(key, payload, signature, _digest_for(digest))


def _verify(
    key: rsa.RSAPublicKey,
    payload: str,
    signature: str,
    digest: hashes.HashAlgorithm,
) -> bool:
    try:
        signature_bytes = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("purchase_verification_failed", reason="signature_not_base64")
        return False

    try:
        key.verify(signature_bytes, payload.encode("utf-8"), padding.PKCS1v15(), digest)
    except InvalidSignature:
        logger.warning("purchase_verification_failed", reason="signature_mismatch")
        return False
    except (TypeError, ValueError) as e:
        logger.warning("purchase_verification_failed", reason="verify_error", error=str(e))
        return False
    return True


class SignatureVerifier:
    """Verifier bound to one public key and digest.

    The key is parsed once. A bad key is logged at construction and makes
    every verification fail closed.
    """

    def __init__(self, public_key: Optional[str], digest: str = "SHA1"):
        """Initialize the verifier.

        Args:
            public_key: Base64-encoded (or PEM) RSA public key
            digest: Digest algorithm name (SHA1, SHA256, SHA384, SHA512)

        Raises:
            ConfigurationError: If the digest is not supported
        """
        self._digest = _digest_for(digest)
        self._digest_name = digest.upper()
        self._key: Optional[rsa.RSAPublicKey] = None

        if not public_key:
            logger.warning("signature_verifier_without_key")
            return
        try:
            self._key = load_public_key(public_key)
        except ValueError as e:
            logger.warning("signature_verifier_invalid_key", error=str(e))

    @property
    def has_key(self) -> bool:
        return self._key is not None

    def verify(self, payload: Optional[str], signature: Optional[str]) -> bool:
        """Verify a payload/signature pair against the configured key."""
        if not payload or not signature or self._key is None:
            logger.warning(
                "purchase_verification_failed",
                reason="missing_data",
                has_payload=bool(payload),
                has_signature=bool(signature),
                has_key=self._key is not None,
            )
            return False
        return _verify(self._key, payload, signature, self._digest)

    def __repr__(self) -> str:
        return f"SignatureVerifier(digest={self._digest_name}, has_key={self.has_key})"
