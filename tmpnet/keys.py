"""Key material for funding keys and node staking identities."""

from __future__ import annotations

import datetime
import hashlib
import logging
from typing import List, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

PRIVATE_KEY_PREFIX = "PrivateKey-"
NODE_ID_PREFIX = "NodeID-"


class PrivateKey:
    """A secp256k1 private key used to fund and sign transactions."""

    def __init__(self, key: ec.EllipticCurvePrivateKey) -> None:
        self._key = key

    @classmethod
    def generate(cls) -> "PrivateKey":
        return cls(ec.generate_private_key(ec.SECP256K1()))

    @classmethod
    def from_string(cls, value: str) -> "PrivateKey":
        """Parse a key serialized with `to_string`."""
        raw = value[len(PRIVATE_KEY_PREFIX):] if value.startswith(PRIVATE_KEY_PREFIX) else value
        try:
            secret = int(raw, 16)
        except ValueError as e:
            raise ValueError(f"invalid private key encoding: {e}") from e
        return cls(ec.derive_private_key(secret, ec.SECP256K1()))

    def to_string(self) -> str:
        return f"{PRIVATE_KEY_PREFIX}{self._key.private_numbers().private_value:064x}"

    def public_key_bytes(self) -> bytes:
        return self._key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    @property
    def address(self) -> str:
        """Short address derived from the compressed public key."""
        return hashlib.sha256(self.public_key_bytes()).digest()[:20].hex()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.to_string() == other.to_string()

    def __hash__(self) -> int:
        return hash(self.to_string())

    def __repr__(self) -> str:
        return f"PrivateKey(address={self.address})"


def new_private_keys(count: int) -> List[PrivateKey]:
    return [PrivateKey.generate() for _ in range(count)]


def new_staking_cert_and_key() -> Tuple[bytes, bytes]:
    """
    Generate a self-signed staking certificate.

    Returns:
        (key_pem, cert_pem)
    """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "tmpnet-node")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365 * 100))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


def node_id_from_cert(cert_pem: bytes) -> str:
    """Derive a node id from the DER encoding of a staking certificate."""
    cert = x509.load_pem_x509_certificate(cert_pem)
    der = cert.public_bytes(serialization.Encoding.DER)
    return NODE_ID_PREFIX + hashlib.sha256(der).digest()[:20].hex()
