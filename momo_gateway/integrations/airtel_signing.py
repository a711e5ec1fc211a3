"""
Airtel Money message signing and PIN encryption.

Signed requests carry two headers:
- x-signature: base64 HMAC-SHA256 of the exact request body
- x-key: a fresh AES-256 key and 128-bit IV, wrapped with Airtel's RSA
  public key (OAEP, SHA-256)

The wallet PIN is encrypted with the same public key before it goes into
the disbursement payload.
"""
import base64
import hashlib
import hmac
import json
import os
import re
from typing import Any, Dict

import structlog
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from momo_gateway.core.errors import ProviderAuthError
from momo_gateway.core.vault import DecryptedCredentials

logger = structlog.get_logger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")
AES_KEY_BYTES = 32
IV_BYTES = 16

OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def canonical_body(payload: Dict[str, Any]) -> bytes:
    """Compact JSON; the bytes signed are the bytes sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode()


class AirtelSigner:
    """Signs Airtel requests for one tenant's credential bundle."""

    def __init__(self, signing_secret: str, public_key_pem: str):
        self.signing_secret = signing_secret
        try:
            public_key = serialization.load_pem_public_key(public_key_pem.encode())
        except ValueError as e:
            raise ProviderAuthError("Airtel encryption public key is not a valid PEM key") from e
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ProviderAuthError("Airtel encryption public key must be an RSA key")
        self.public_key = public_key

    @classmethod
    def from_credentials(cls, credentials: DecryptedCredentials) -> "AirtelSigner":
        """
        Build a signer from the vault bundle.

        Raises:
            ProviderAuthError: signing_secret or encryption_public_key missing or unusable
        """
        return cls(
            credentials.require("signing_secret"),
            credentials.require("encryption_public_key"),
        )

    def sign(self, body: bytes) -> str:
        digest = hmac.new(self.signing_secret.encode(), body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def encrypted_key(self) -> str:
        """Wrap a random AES key and IV for the x-key header."""
        material = os.urandom(AES_KEY_BYTES) + os.urandom(IV_BYTES)
        return base64.b64encode(self.public_key.encrypt(material, OAEP)).decode()

    def encrypt_pin(self, pin: str) -> str:
        """
        RSA-OAEP encrypt a 4-digit wallet PIN.

        Raises:
            ProviderAuthError: The stored PIN is not exactly 4 digits
        """
        if not PIN_PATTERN.match(pin):
            raise ProviderAuthError("Airtel PIN must be exactly 4 digits")
        return base64.b64encode(self.public_key.encrypt(pin.encode(), OAEP)).decode()

    def headers(self, body: bytes) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-signature": self.sign(body),
            "x-key": self.encrypted_key(),
        }
