# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Locally generated certificate authority."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from mesh_trust.certificate import (
    Certificate,
    decode_pem_certificate,
    decode_pem_private_key,
    encode_certificate,
    encode_private_key,
    generate_private_key,
)
from mesh_trust.errors import CertificateIssueFailed, MissingPrivateKey
from mesh_trust.literals import (
    CA_COMMON_NAME,
    CA_COUNTRY,
    CA_LOCALITY,
    CA_ORGANIZATION,
    CA_VALIDITY,
    DEFAULT_KEY_BIT_SIZE,
)
from mesh_trust.options import IssueOptions
from mesh_trust.providers import Issuer, uri_sans

log = logging.getLogger(__name__)


def new_ca(
    common_name: str = CA_COMMON_NAME,
    validity: timedelta = CA_VALIDITY,
    key_bit_size: int = DEFAULT_KEY_BIT_SIZE,
    country: str = CA_COUNTRY,
    locality: str = CA_LOCALITY,
    organization: str = CA_ORGANIZATION,
) -> Certificate:
    """Generate a self-signed root certificate authority.

    Args:
        common_name: subject common name of the root
        validity: how long the root stays valid
        key_bit_size: RSA key size
        country: subject country
        locality: subject locality
        organization: subject organization

    Returns:
        the root certificate with its private key
    """
    key = generate_private_key(key_bit_size)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.COUNTRY_NAME, country),
            x509.NameAttribute(NameOID.LOCALITY_NAME, locality),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        ]
    )
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(private_key=key, algorithm=hashes.SHA256())
    )
    log.info("Generated root CA %s valid until %s", common_name, cert.not_valid_after_utc)
    return Certificate.from_pem(encode_certificate(cert), encode_private_key(key))


class TresorIssuer(Issuer):
    """Issuer signing with a CA whose key is held in memory."""

    def __init__(
        self,
        ca: Certificate,
        key_bit_size: int = DEFAULT_KEY_BIT_SIZE,
        organization: str = CA_ORGANIZATION,
    ):
        """Initialise the TresorIssuer.

        Args:
            ca: root certificate with its private key
            key_bit_size: RSA key size of issued certificates
            organization: subject organization of issued certificates

        Raises:
            MissingPrivateKey: if the CA carries no usable private key
        """
        if not ca.has_private_key:
            raise MissingPrivateKey(f"CA {ca.common_name} has no private key")
        try:
            self._ca_key = decode_pem_private_key(ca.private_key)
        except (ValueError, TypeError) as e:
            raise MissingPrivateKey(f"CA {ca.common_name} private key is unusable: {e}") from e
        self._ca_cert = decode_pem_certificate(ca.cert_chain)
        self.ca = ca
        self.key_bit_size = key_bit_size
        self.organization = organization

    def issue_certificate(
        self, common_name: str, validity: timedelta, options: Optional[IssueOptions] = None
    ) -> Certificate:
        """Sign a certificate with the in-memory CA."""
        key = generate_private_key(self.key_bit_size)
        now = datetime.now(timezone.utc)
        sans: list = [x509.DNSName(common_name)]
        sans += [x509.UniformResourceIdentifier(uri) for uri in uri_sans(options)]
        builder = (
            x509.CertificateBuilder()
            .subject_name(
                x509.Name(
                    [
                        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
                        x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
                    ]
                )
            )
            .issuer_name(self._ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + validity)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage(
                    [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                ),
                critical=False,
            )
            .add_extension(x509.SubjectAlternativeName(sans), critical=False)
        )
        try:
            cert = builder.sign(private_key=self._ca_key, algorithm=hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise CertificateIssueFailed(f"Failed to sign certificate {common_name}: {e}") from e
        log.debug("Issued certificate %s valid until %s", common_name, cert.not_valid_after_utc)
        return Certificate.from_pem(
            encode_certificate(cert), encode_private_key(key), issuing_ca=self.ca.cert_chain
        )
