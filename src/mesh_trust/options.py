# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Issuance options for leaf certificates."""

import dataclasses
from datetime import timedelta
from enum import Enum
from typing import Optional


class CertType(str, Enum):
    """Kinds of certificate the manager issues."""

    INTERNAL = "internal"
    SERVICE = "service"
    INGRESS_GATEWAY = "ingressGateway"


@dataclasses.dataclass(frozen=True)
class IssueOptions:
    """Describe how a leaf certificate should be issued.

    Attributes:
        cn_prefix (str): common name without the trust domain, or the full
            common name when full_cn is set
        full_cn (bool): use cn_prefix verbatim as the common name
        cert_type (CertType): which validity and bookkeeping rules apply
        validity (Optional[timedelta]): overrides the default validity
        trust_domain (str): suffix appended to the common name
        spiffe_enabled (bool): add a SPIFFE URI SAN to the certificate
        spiffe_path (str): path component of the SPIFFE id
    """

    cn_prefix: str
    full_cn: bool = False
    cert_type: CertType = CertType.INTERNAL
    validity: Optional[timedelta] = None
    trust_domain: str = ""
    spiffe_enabled: bool = False
    spiffe_path: str = ""

    @property
    def cache_key(self) -> str:
        """Key under which the issued certificate is cached.

        Internal certificates are keyed by their prefix; workload certificates
        also carry their type, so a service account can hold a service and an
        ingress gateway certificate at once.
        """
        if self.cert_type == CertType.INTERNAL:
            return self.cn_prefix
        return f"{self.cert_type.value}/{self.cn_prefix}"

    def common_name(self, trust_domain: Optional[str] = None) -> str:
        """Return the common name to request.

        Args:
            trust_domain: overrides the trust domain held by the options

        Returns:
            the prefix joined with the trust domain, or the prefix alone
            when it already is a full common name
        """
        domain = trust_domain if trust_domain is not None else self.trust_domain
        if self.full_cn or not domain:
            return self.cn_prefix
        return f"{self.cn_prefix}.{domain}"

    def uri_san(self, trust_domain: Optional[str] = None) -> Optional[str]:
        """Return the SPIFFE id, or None when SPIFFE is disabled."""
        if not self.spiffe_enabled:
            return None
        domain = trust_domain if trust_domain is not None else self.trust_domain
        path = self.spiffe_path or self.cn_prefix
        return f"spiffe://{domain}/{path.lstrip('/')}"

    def with_trust_domain(self, trust_domain: str, spiffe_enabled: bool) -> "IssueOptions":
        """Return a copy bound to an MRC's trust domain and SPIFFE setting."""
        return dataclasses.replace(
            self, trust_domain=trust_domain, spiffe_enabled=self.spiffe_enabled or spiffe_enabled
        )


def for_service_identity(
    name: str, namespace: str, validity: Optional[timedelta] = None
) -> IssueOptions:
    """Return options for a workload's service identity certificate.

    Args:
        name: service account name
        namespace: service account namespace
        validity: overrides the service certificate validity
    """
    return IssueOptions(
        cn_prefix=f"{name}.{namespace}",
        cert_type=CertType.SERVICE,
        validity=validity,
        spiffe_path=f"{name}/{namespace}",
    )


def for_ingress_gateway(
    name: str, namespace: str, validity: Optional[timedelta] = None
) -> IssueOptions:
    """Return options for an ingress gateway certificate."""
    return IssueOptions(
        cn_prefix=f"{name}.{namespace}",
        cert_type=CertType.INGRESS_GATEWAY,
        validity=validity,
        spiffe_path=f"{name}/{namespace}",
    )


def for_common_name_prefix(prefix: str, validity: Optional[timedelta] = None) -> IssueOptions:
    """Return options for an internal certificate under the trust domain."""
    return IssueOptions(cn_prefix=prefix, validity=validity)


def for_common_name(common_name: str, validity: Optional[timedelta] = None) -> IssueOptions:
    """Return options for an internal certificate with an exact common name."""
    return IssueOptions(cn_prefix=common_name, full_cn=True, validity=validity)
