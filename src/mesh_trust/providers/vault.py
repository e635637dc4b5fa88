# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Issuer backed by a Vault PKI secrets engine."""

import logging
from datetime import timedelta
from typing import Any, Optional

import hvac
import requests

from mesh_trust.certificate import Certificate
from mesh_trust.errors import CertificateIssueFailed, IssuerConstructionFailed
from mesh_trust.literals import VAULT_PKI_MOUNT, VAULT_PROTOCOLS
from mesh_trust.options import IssueOptions
from mesh_trust.providers import Issuer, uri_sans
from mesh_trust.utils import format_duration

log = logging.getLogger(__name__)


def vault_address(protocol: str, host: str, port: int) -> str:
    """Build and check a Vault address.

    Raises:
        IssuerConstructionFailed: if any part is invalid
    """
    if protocol not in VAULT_PROTOCOLS:
        raise IssuerConstructionFailed(
            f"Vault protocol must be one of {VAULT_PROTOCOLS}, got {protocol!r}"
        )
    if not host:
        raise IssuerConstructionFailed("Vault host must be set")
    if not 0 < port < 65536:
        raise IssuerConstructionFailed(f"Vault port {port} is out of range")
    return f"{protocol}://{host}:{port}"


class VaultIssuer(Issuer):
    """Issuer delegating signing to a Vault PKI role."""

    def __init__(
        self,
        address: str,
        token: str,
        role: str,
        mount_point: str = VAULT_PKI_MOUNT,
        client: Optional[Any] = None,
    ):
        """Initialise the VaultIssuer.

        Args:
            address: Vault URL, e.g. https://vault.internal:8200
            token: Vault token allowed to use the role
            role: PKI role used for signing
            mount_point: where the PKI engine is mounted
            client: preconfigured hvac client

        Raises:
            IssuerConstructionFailed: if the client cannot be created
        """
        if not role:
            raise IssuerConstructionFailed("Vault role must be set")
        if not token:
            raise IssuerConstructionFailed("Vault token must be set")
        try:
            self.client = client or hvac.Client(url=address, token=token)
        except (hvac.exceptions.VaultError, ValueError) as e:
            raise IssuerConstructionFailed(
                f"Failed to create Vault client for {address}: {e}"
            ) from e
        self.address = address
        self.role = role
        self.mount_point = mount_point

    def issue_certificate(
        self, common_name: str, validity: timedelta, options: Optional[IssueOptions] = None
    ) -> Certificate:
        """Sign a certificate through the Vault PKI role."""
        extra_params = {"ttl": format_duration(validity)}
        if sans := uri_sans(options):
            extra_params["uri_sans"] = ",".join(sans)
        try:
            resp = self.client.secrets.pki.generate_certificate(
                name=self.role,
                common_name=common_name,
                extra_params=extra_params,
                mount_point=self.mount_point,
            )
        except (hvac.exceptions.VaultError, requests.exceptions.RequestException) as e:
            raise CertificateIssueFailed(
                f"Vault at {self.address} failed to issue {common_name}: {e}"
            ) from e

        data = resp.get("data") or {}
        missing = [k for k in ("certificate", "private_key", "issuing_ca") if not data.get(k)]
        if missing:
            raise CertificateIssueFailed(
                f"Vault response for {common_name} is missing {', '.join(missing)}"
            )
        log.debug("Vault issued certificate %s", common_name)
        return Certificate.from_pem(
            data["certificate"].encode(),
            data["private_key"].encode(),
            issuing_ca=data["issuing_ca"].encode(),
        )
