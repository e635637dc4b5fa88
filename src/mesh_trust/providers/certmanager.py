# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Issuer delegating to a cert-manager Issuer or ClusterIssuer."""

import base64
import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID
from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from mesh_trust.certificate import Certificate, encode_private_key, generate_private_key
from mesh_trust.errors import CertificateIssueFailed, IssuerConstructionFailed
from mesh_trust.k8s.store import KubeStore, NotFound, StoreError
from mesh_trust.literals import (
    CERT_MANAGER_FAILED_REASONS,
    CERT_MANAGER_POLL_INTERVAL,
    CERT_MANAGER_READY_TIMEOUT,
    CERT_MANAGER_REQUEST_PREFIX,
    DEFAULT_KEY_BIT_SIZE,
)
from mesh_trust.options import IssueOptions
from mesh_trust.providers import Issuer, uri_sans
from mesh_trust.utils import format_duration

log = logging.getLogger(__name__)

USAGES = ["digital signature", "key encipherment", "server auth", "client auth"]


class RequestNotReady(Exception):
    """Raised while a CertificateRequest has not been signed yet."""


def ready_condition(request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the Ready condition of a CertificateRequest, if any."""
    conditions = (request.get("status") or {}).get("conditions") or []
    return next((c for c in conditions if c.get("type") == "Ready"), None)


class CertManagerIssuer(Issuer):
    """Issuer signing through cert-manager CertificateRequests."""

    def __init__(
        self,
        store: KubeStore,
        namespace: str,
        issuer_name: str,
        issuer_kind: str,
        issuer_group: str,
        key_bit_size: int = DEFAULT_KEY_BIT_SIZE,
        ready_timeout: timedelta = CERT_MANAGER_READY_TIMEOUT,
        poll_interval: timedelta = CERT_MANAGER_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialise the CertManagerIssuer.

        Args:
            store: backing store used to create the requests
            namespace: namespace the requests are created in
            issuer_name: name of the cert-manager issuer
            issuer_kind: Issuer or ClusterIssuer
            issuer_group: API group of the issuer
            key_bit_size: RSA key size of issued certificates
            ready_timeout: how long to wait for a request to be signed
            poll_interval: delay between readiness checks
            sleep: used between readiness checks

        Raises:
            IssuerConstructionFailed: if the issuer reference is incomplete
        """
        if store is None:
            raise IssuerConstructionFailed("cert-manager issuer needs a Kubernetes client")
        if not (issuer_name and issuer_kind and issuer_group):
            raise IssuerConstructionFailed(
                "cert-manager issuer needs issuerName, issuerKind and issuerGroup"
            )
        self.store = store
        self.namespace = namespace
        self.issuer_ref = {"name": issuer_name, "kind": issuer_kind, "group": issuer_group}
        self.key_bit_size = key_bit_size
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    def issue_certificate(
        self, common_name: str, validity: timedelta, options: Optional[IssueOptions] = None
    ) -> Certificate:
        """Sign a certificate through a CertificateRequest."""
        key = generate_private_key(self.key_bit_size)
        sans: list = [x509.DNSName(common_name)]
        sans += [x509.UniformResourceIdentifier(uri) for uri in uri_sans(options)]
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .add_extension(x509.SubjectAlternativeName(sans), critical=False)
            .sign(key, hashes.SHA256())
        )
        csr_pem = csr.public_bytes(encoding=serialization.Encoding.PEM)
        body = {
            "metadata": {"generateName": CERT_MANAGER_REQUEST_PREFIX},
            "spec": {
                "duration": format_duration(validity),
                "isCA": False,
                "usages": USAGES,
                "request": base64.b64encode(csr_pem).decode(),
                "issuerRef": self.issuer_ref,
            },
        }
        try:
            created = self.store.create_certificate_request(self.namespace, body)
        except StoreError as e:
            raise CertificateIssueFailed(
                f"Failed to request certificate {common_name}: {e}"
            ) from e
        name = created["metadata"]["name"]
        log.debug("Created CertificateRequest %s/%s for %s", self.namespace, name, common_name)

        try:
            request = self._wait_for_ready(name)
        finally:
            self._delete_request(name)

        status = request.get("status") or {}
        if not status.get("certificate"):
            raise CertificateIssueFailed(f"CertificateRequest {name} holds no certificate")
        if not status.get("ca"):
            raise CertificateIssueFailed(f"CertificateRequest {name} holds no CA")
        return Certificate.from_pem(
            base64.b64decode(status["certificate"]),
            encode_private_key(key),
            issuing_ca=base64.b64decode(status["ca"]),
        )

    def _wait_for_ready(self, name: str) -> Dict[str, Any]:
        """Poll a CertificateRequest until cert-manager signs it.

        Raises:
            CertificateIssueFailed: if the request fails, is denied or times out
        """
        try:
            for attempt in Retrying(
                retry=retry_if_exception_type(RequestNotReady),
                stop=stop_after_delay(self.ready_timeout.total_seconds()),
                wait=wait_fixed(self.poll_interval.total_seconds()),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    try:
                        request = self.store.get_certificate_request(self.namespace, name)
                    except StoreError as e:
                        raise CertificateIssueFailed(
                            f"Failed to read CertificateRequest {name}: {e}"
                        ) from e
                    condition = ready_condition(request)
                    if condition and condition.get("status") == "True":
                        return request
                    if condition and condition.get("reason") in CERT_MANAGER_FAILED_REASONS:
                        raise CertificateIssueFailed(
                            f"CertificateRequest {name} {condition['reason']}: "
                            f"{condition.get('message', '')}"
                        )
                    raise RequestNotReady(name)
        except RequestNotReady as e:
            raise CertificateIssueFailed(
                f"CertificateRequest {name} not ready after {format_duration(self.ready_timeout)}"
            ) from e
        raise CertificateIssueFailed(f"CertificateRequest {name} was never checked")

    def _delete_request(self, name: str) -> None:
        try:
            self.store.delete_certificate_request(self.namespace, name)
        except NotFound:
            pass
        except StoreError:
            log.exception("Failed to delete CertificateRequest %s/%s", self.namespace, name)
