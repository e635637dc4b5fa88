# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Unit tests for the Vault issuer."""

import unittest
from datetime import timedelta
from unittest.mock import MagicMock

import hvac
import pytest
import requests

from mesh_trust.errors import CertificateIssueFailed, IssuerConstructionFailed
from mesh_trust.options import for_service_identity
from mesh_trust.providers.tresor import TresorIssuer, new_ca
from mesh_trust.providers.vault import VaultIssuer, vault_address


class TestVaultIssuer(unittest.TestCase):
    """Test VaultIssuer against a mocked hvac client."""

    def setUp(self):
        """Set up an issuer with a mocked client."""
        self.client = MagicMock()
        self.issuer = VaultIssuer(
            "https://vault:8200", "s.token", "mesh", mount_point="pki_int", client=self.client
        )

    def _respond(self, leaf):
        chain, key = leaf.to_pem()
        self.client.secrets.pki.generate_certificate.return_value = {
            "data": {
                "certificate": chain.decode(),
                "private_key": key.decode(),
                "issuing_ca": leaf.issuing_ca.decode(),
            }
        }

    def test_issue_certificate(self):
        """The role signs with the requested ttl and SPIFFE id."""
        leaf = TresorIssuer(new_ca(key_bit_size=2048)).issue_certificate(
            "bookbuyer.bookstore.cluster.local", timedelta(hours=1)
        )
        self._respond(leaf)
        options = for_service_identity("bookbuyer", "bookstore").with_trust_domain(
            "cluster.local", True
        )

        cert = self.issuer.issue_certificate(leaf.common_name, timedelta(hours=1), options)

        self.client.secrets.pki.generate_certificate.assert_called_once_with(
            name="mesh",
            common_name="bookbuyer.bookstore.cluster.local",
            extra_params={
                "ttl": "3600s",
                "uri_sans": "spiffe://cluster.local/bookbuyer/bookstore",
            },
            mount_point="pki_int",
        )
        self.assertEqual(cert.serial_number, leaf.serial_number)
        self.assertEqual(cert.issuing_ca, leaf.issuing_ca)

    def test_vault_errors(self):
        """Vault and transport failures become CertificateIssueFailed."""
        for error in (
            hvac.exceptions.Forbidden("permission denied"),
            requests.exceptions.ConnectionError("refused"),
        ):
            self.client.secrets.pki.generate_certificate.side_effect = error
            with self.assertRaises(CertificateIssueFailed):
                self.issuer.issue_certificate("a.cluster.local", timedelta(hours=1))

    def test_incomplete_response(self):
        """A response without issuing CA is refused."""
        self.client.secrets.pki.generate_certificate.return_value = {
            "data": {"certificate": "x", "private_key": "y"}
        }
        with self.assertRaisesRegex(CertificateIssueFailed, "issuing_ca"):
            self.issuer.issue_certificate("a.cluster.local", timedelta(hours=1))

    def test_requires_role_and_token(self):
        """Role and token are mandatory."""
        with self.assertRaises(IssuerConstructionFailed):
            VaultIssuer("https://vault:8200", "s.token", "", client=self.client)
        with self.assertRaises(IssuerConstructionFailed):
            VaultIssuer("https://vault:8200", "", "mesh", client=self.client)


def test_vault_address():
    """Addresses are built from protocol, host and port."""
    assert vault_address("https", "vault", 8200) == "https://vault:8200"


@pytest.mark.parametrize(
    "args", [("ftp", "vault", 8200), ("http", "", 8200), ("http", "vault", 0)]
)
def test_vault_address_invalid(args):
    """Unknown protocols, empty hosts and bad ports are refused."""
    with pytest.raises(IssuerConstructionFailed):
        vault_address(*args)
