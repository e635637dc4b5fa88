# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Certificate issuer backends."""

from datetime import timedelta
from typing import List, Optional

from mesh_trust.certificate import Certificate
from mesh_trust.options import IssueOptions


class Issuer:
    """Signs leaf certificates with the CA of one MeshRootCertificate.

    CA material is loaded once, when the issuer is built.
    """

    def issue_certificate(
        self, common_name: str, validity: timedelta, options: Optional[IssueOptions] = None
    ) -> Certificate:
        """Sign a new certificate.

        Args:
            common_name: subject common name
            validity: how long the certificate stays valid
            options: issuance options, for the SPIFFE URI SAN

        Returns:
            the signed certificate with its private key and issuing CA

        Raises:
            CertificateIssueFailed: if the backend fails to sign
        """
        raise NotImplementedError


def uri_sans(options: Optional[IssueOptions]) -> List[str]:
    """Return the URI SANs requested by the options."""
    san = options.uri_san() if options else None
    return [san] if san else []
