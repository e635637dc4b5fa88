# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Certificate value objects and PEM helpers."""

import dataclasses
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

log = logging.getLogger(__name__)

PEM_CERTIFICATE_BEGIN = b"-----BEGIN CERTIFICATE-----"
PEM_CERTIFICATE_END = b"-----END CERTIFICATE-----"


def decode_pem_certificate(pem: bytes) -> x509.Certificate:
    """Decode the first certificate of a PEM chain.

    Args:
        pem (bytes): PEM encoded certificate chain

    Returns:
        x509.Certificate: the leading certificate of the chain

    Raises:
        ValueError: if the data holds no PEM certificate
    """
    return x509.load_pem_x509_certificate(pem)


def decode_pem_private_key(pem: bytes) -> CertificateIssuerPrivateKeyTypes:
    """Decode an unencrypted PEM private key.

    Raises:
        ValueError: if the data holds no usable private key
        TypeError: if the key is of a type that cannot sign certificates
    """
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, rsa.RSAPrivateKey) and not hasattr(key, "sign"):
        raise TypeError(f"Unsupported private key type {type(key).__name__}")
    return key  # type: ignore[return-value]


def encode_certificate(cert: x509.Certificate) -> bytes:
    """Encode an x509 certificate as PEM."""
    return cert.public_bytes(serialization.Encoding.PEM)


def encode_private_key(key: rsa.RSAPrivateKey) -> bytes:
    """Encode a private key as an unencrypted PKCS#8 PEM block."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def generate_private_key(key_size: int) -> rsa.RSAPrivateKey:
    """Generate an RSA private key of the given size."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def split_pem_bundle(bundle: bytes) -> List[bytes]:
    """Split a PEM bundle into its individual certificate blocks.

    Args:
        bundle (bytes): concatenated PEM certificates

    Returns:
        List[bytes]: each certificate block, terminated by a newline
    """
    blocks = []
    for part in bundle.split(PEM_CERTIFICATE_END):
        start = part.find(PEM_CERTIFICATE_BEGIN)
        if start == -1:
            continue
        blocks.append(part[start:] + PEM_CERTIFICATE_END + b"\n")
    return blocks


def merge_pem_bundles(*bundles: bytes) -> bytes:
    """Concatenate PEM bundles dropping duplicate certificates, keeping order."""
    seen: List[bytes] = []
    for bundle in bundles:
        for block in split_pem_bundle(bundle):
            if block not in seen:
                seen.append(block)
    return b"".join(seen)


@dataclasses.dataclass(frozen=True)
class Certificate:
    """An x509 certificate with its key and trust context.

    Values are never mutated: renewing, re-rooting or tagging a certificate
    always produces a new Certificate.

    Attributes:
        common_name (str): subject common name
        serial_number (str): decimal serial number
        cert_chain (bytes): PEM encoded certificate chain, leaf first
        private_key (bytes): PEM encoded private key, empty when not held
        issuing_ca (bytes): PEM encoded CA that signed this certificate
        trusted_cas (bytes): PEM bundle the holder validates peers against
        expiration (datetime): not-after timestamp (UTC)
        signing_issuer_id (str): MRC that signed this certificate
        validating_issuer_id (str): MRC bundle current when this was issued
        cert_type (str): internal, service or ingressGateway
        cache_key (str): key under which the manager caches this certificate
        not_before (Optional[datetime]): not-before timestamp (UTC)
    """

    common_name: str
    serial_number: str
    cert_chain: bytes
    private_key: bytes
    issuing_ca: bytes
    trusted_cas: bytes
    expiration: datetime
    signing_issuer_id: str = ""
    validating_issuer_id: str = ""
    cert_type: str = ""
    cache_key: str = ""
    not_before: Optional[datetime] = None

    @classmethod
    def from_pem(
        cls, cert_chain: bytes, private_key: bytes = b"", issuing_ca: bytes = b""
    ) -> "Certificate":
        """Build a Certificate from PEM components.

        Args:
            cert_chain (bytes): PEM certificate chain, leaf first
            private_key (bytes): PEM private key (may be empty)
            issuing_ca (bytes): PEM issuing CA, defaults to the chain itself

        Returns:
            Certificate: the decoded certificate

        Raises:
            ValueError: if the chain cannot be decoded
        """
        try:
            x509_cert = decode_pem_certificate(cert_chain)
        except ValueError:
            log.error("Error converting PEM cert to x509 to obtain serial number")
            raise
        names = x509_cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
        common_name = str(names[0].value) if names else ""
        issuing_ca = issuing_ca or cert_chain
        return cls(
            common_name=common_name,
            serial_number=str(x509_cert.serial_number),
            cert_chain=cert_chain,
            private_key=private_key,
            issuing_ca=issuing_ca,
            trusted_cas=issuing_ca,
            expiration=x509_cert.not_valid_after_utc,
            not_before=x509_cert.not_valid_before_utc,
        )

    @property
    def has_private_key(self) -> bool:
        """Return whether signing material is present."""
        return bool(self.private_key and self.private_key.strip())

    @property
    def validity(self) -> Optional[timedelta]:
        """Total validity window, when the not-before time is known."""
        if self.not_before is None:
            return None
        return self.expiration - self.not_before

    def to_pem(self) -> Tuple[bytes, bytes]:
        """Return the (certificate chain, private key) pair."""
        return self.cert_chain, self.private_key

    def with_trusted_cas(self, *roots: bytes) -> "Certificate":
        """Return a copy whose trust context also includes the given roots."""
        return dataclasses.replace(
            self, trusted_cas=merge_pem_bundles(self.issuing_ca, *roots)
        )

    def tagged(self, **attrs: str) -> "Certificate":
        """Return a copy carrying the manager's bookkeeping attributes."""
        return dataclasses.replace(self, **attrs)

    def __str__(self) -> str:
        """Return a short description without key material."""
        return (
            f"cert: CommonName: {self.common_name}, SerialNumber: {self.serial_number}, "
            f"Expiration: {self.expiration.isoformat()}"
        )
