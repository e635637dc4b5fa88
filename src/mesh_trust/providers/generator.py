# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Build the issuer matching a MeshRootCertificate's provider."""

import logging
from datetime import timedelta
from typing import Any, Callable, Optional, Tuple

from mesh_trust.certificate import Certificate
from mesh_trust.errors import (
    CertificateIssueFailed,
    InvalidCertSecret,
    IssuerConstructionFailed,
    MissingPrivateKey,
    UnsupportedProvider,
)
from mesh_trust.k8s.store import AlreadyExists, KubeStore, NotFound, StoreError
from mesh_trust.literals import (
    APP_NAME_LABEL_KEY,
    APP_NAME_LABEL_VALUE,
    APP_VERSION_LABEL_KEY,
    CA_COMMON_NAME,
    CA_EXTRACTION_CN,
    CA_SECRET_CERT_KEY,
    CA_SECRET_PRIVATE_KEY_KEY,
    CA_VALIDITY,
    DEFAULT_KEY_BIT_SIZE,
    DEFAULT_NAMESPACE,
    INTERNAL_CERT_VALIDITY,
    VERSION,
)
from mesh_trust.models import (
    CertManagerProvider,
    MeshRootCertificate,
    TresorProvider,
    VaultProvider,
)
from mesh_trust.providers import Issuer
from mesh_trust.providers.certmanager import CertManagerIssuer
from mesh_trust.providers.tresor import TresorIssuer, new_ca
from mesh_trust.providers.vault import VaultIssuer, vault_address
from mesh_trust.validator import check_provider_fields

log = logging.getLogger(__name__)

VaultClientFactory = Callable[[str, str], Any]


class ProviderGenerator:
    """Turn MeshRootCertificate provider specs into ready-to-use issuers."""

    def __init__(
        self,
        store: KubeStore,
        namespace: str = DEFAULT_NAMESPACE,
        key_bit_size: int = DEFAULT_KEY_BIT_SIZE,
        ca_common_name: str = CA_COMMON_NAME,
        ca_validity: timedelta = CA_VALIDITY,
        default_vault_token: Optional[str] = None,
        vault_client_factory: Optional[VaultClientFactory] = None,
        cert_manager_options: Optional[dict] = None,
    ):
        """Initialise the ProviderGenerator.

        Args:
            store: backing store for CA secrets and CertificateRequests
            namespace: control-plane namespace
            key_bit_size: RSA key size for generated keys
            ca_common_name: common name of generated Tresor roots
            ca_validity: validity of generated Tresor roots
            default_vault_token: token used when a Vault MRC has no token reference
            vault_client_factory: builds hvac clients from (address, token)
            cert_manager_options: extra keyword arguments for CertManagerIssuer
        """
        self.store = store
        self.namespace = namespace
        self.key_bit_size = key_bit_size
        self.ca_common_name = ca_common_name
        self.ca_validity = ca_validity
        self.default_vault_token = default_vault_token
        self.vault_client_factory = vault_client_factory
        self.cert_manager_options = cert_manager_options or {}

    def get_issuer_for_mrc(self, mrc: MeshRootCertificate) -> Tuple[Issuer, bytes]:
        """Build the issuer for an MRC and return it with its root CA.

        Args:
            mrc: the MeshRootCertificate to build an issuer for

        Returns:
            the issuer and the PEM encoded root it signs under

        Raises:
            UnsupportedProvider: if the provider kind is unknown
            InvalidProviderConfig: if provider fields are missing
            MissingPrivateKey: if a Tresor CA has no private key
            InvalidCertSecret: if a Tresor secret is malformed
            IssuerConstructionFailed: if a remote issuer cannot be set up
        """
        check_provider_fields(mrc.spec, bool(self.default_vault_token))
        provider = mrc.spec.provider
        if isinstance(provider, TresorProvider):
            ref = provider.ca.secret_ref
            ca = self.ensure_ca_secret(ref.namespace, ref.name)
            return TresorIssuer(ca, self.key_bit_size), ca.cert_chain
        if isinstance(provider, VaultProvider):
            address = vault_address(provider.protocol, provider.host, provider.port)
            token = self.resolve_vault_token(provider)
            client = None
            if self.vault_client_factory:
                client = self.vault_client_factory(address, token)
            issuer: Issuer = VaultIssuer(address, token, provider.role, client=client)
            return issuer, self.extract_ca(issuer, mrc)
        if isinstance(provider, CertManagerProvider):
            issuer = CertManagerIssuer(
                self.store,
                self.namespace,
                provider.issuer_name,
                provider.issuer_kind,
                provider.issuer_group,
                key_bit_size=self.key_bit_size,
                **self.cert_manager_options,
            )
            return issuer, self.extract_ca(issuer, mrc)
        raise UnsupportedProvider(
            f"MeshRootCertificate {mrc.namespaced_name} has unsupported provider {provider!r}"
        )

    def ensure_ca_secret(self, namespace: str, name: str) -> Certificate:
        """Bootstrap a Tresor CA and return the one every replica agrees on.

        Every caller tries to create the secret; the store lets exactly one
        create succeed. All callers then read the stored CA back.
        """
        created = self.try_create_ca_secret(namespace, name)
        ca = self.fetch_ca_secret(namespace, name)
        log.info(
            "Using root CA %s from secret %s/%s (created here: %s)",
            ca.serial_number,
            namespace,
            name,
            created,
        )
        return ca

    def try_create_ca_secret(self, namespace: str, name: str) -> bool:
        """Generate a root CA and try to persist it.

        Returns:
            True if this call created the secret, False if it already existed

        Raises:
            MissingPrivateKey: if the generated CA has no private key
            StoreError: on any store failure other than an existing secret
        """
        ca = new_ca(self.ca_common_name, self.ca_validity, self.key_bit_size)
        if not ca.has_private_key:
            raise MissingPrivateKey(f"Generated root CA for {namespace}/{name} has no private key")
        labels = {APP_NAME_LABEL_KEY: APP_NAME_LABEL_VALUE, APP_VERSION_LABEL_KEY: VERSION}
        data = {CA_SECRET_CERT_KEY: ca.cert_chain, CA_SECRET_PRIVATE_KEY_KEY: ca.private_key}
        try:
            self.store.create_secret(namespace, name, data, labels=labels)
        except AlreadyExists:
            log.info("Secret %s/%s already exists, using the stored root CA", namespace, name)
            return False
        return True

    def fetch_ca_secret(self, namespace: str, name: str) -> Certificate:
        """Load a root CA from its secret.

        Raises:
            InvalidCertSecret: if the secret is missing or lacks the certificate
            MissingPrivateKey: if the secret lacks the private key
        """
        try:
            data = self.store.get_secret(namespace, name)
        except NotFound as e:
            raise InvalidCertSecret(f"Secret {namespace}/{name} not found") from e
        cert_chain = data.get(CA_SECRET_CERT_KEY)
        if not cert_chain:
            raise InvalidCertSecret(f"Secret {namespace}/{name} has no {CA_SECRET_CERT_KEY}")
        private_key = data.get(CA_SECRET_PRIVATE_KEY_KEY, b"")
        if not private_key.strip():
            raise MissingPrivateKey(
                f"Secret {namespace}/{name} has no {CA_SECRET_PRIVATE_KEY_KEY}"
            )
        try:
            return Certificate.from_pem(cert_chain, private_key)
        except ValueError as e:
            raise InvalidCertSecret(f"Secret {namespace}/{name} holds no valid CA: {e}") from e

    def resolve_vault_token(self, provider: VaultProvider) -> str:
        """Return the Vault token from its secret, or the configured default.

        Raises:
            IssuerConstructionFailed: if the referenced token cannot be read
        """
        ref = provider.token.secret_key_ref if provider.token else None
        if ref is None or not ref.name:
            if not self.default_vault_token:
                raise IssuerConstructionFailed("No Vault token reference or default token")
            return self.default_vault_token
        try:
            data = self.store.get_secret(ref.namespace, ref.name)
        except StoreError as e:
            raise IssuerConstructionFailed(
                f"Failed to read Vault token secret {ref.namespace}/{ref.name}: {e}"
            ) from e
        token = data.get(ref.key, b"").decode().strip()
        if not token:
            raise IssuerConstructionFailed(
                f"Secret {ref.namespace}/{ref.name} has no Vault token under {ref.key}"
            )
        return token

    def extract_ca(self, issuer: Issuer, mrc: MeshRootCertificate) -> bytes:
        """Learn a remote issuer's root by issuing a throwaway certificate.

        Raises:
            IssuerConstructionFailed: if the issuer cannot sign
        """
        common_name = f"{CA_EXTRACTION_CN}.{mrc.spec.trust_domain}"
        try:
            cert = issuer.issue_certificate(common_name, INTERNAL_CERT_VALIDITY)
        except CertificateIssueFailed as e:
            raise IssuerConstructionFailed(
                f"Failed to fetch the root CA of {mrc.namespaced_name}: {e}"
            ) from e
        return cert.issuing_ca
