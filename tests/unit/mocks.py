# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Mocks for unit tests."""

import copy
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from unittest.mock import MagicMock

from lightkube.core.exceptions import ApiError

from mesh_trust.certificate import Certificate
from mesh_trust.k8s.store import AlreadyExists, Conflict, NotFound
from mesh_trust.models import MeshRootCertificate
from mesh_trust.options import IssueOptions
from mesh_trust.providers import Issuer

Key = Tuple[str, str]

NAMESPACE = "osm-system"
TRUST_DOMAIN = "cluster.local"


def api_error(code: int, reason: str = "") -> ApiError:
    """Craft a lightkube ApiError carrying an HTTP status code.

    Args:
        code: HTTP status code
        reason: Kubernetes status reason
    """
    response = MagicMock()
    response.json.return_value = {
        "apiVersion": "v1",
        "kind": "Status",
        "code": code,
        "reason": reason,
        "message": f"mock error {code}",
        "metadata": {},
        "status": "Failure",
    }
    return ApiError(request=MagicMock(), response=response)


def mrc_dict(
    name: str,
    state: Optional[str] = "inactive",
    provider: Optional[Dict[str, Any]] = None,
    secret: Optional[str] = None,
    namespace: str = NAMESPACE,
    trust_domain: str = TRUST_DOMAIN,
    last_transition_time: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the mapping of a MeshRootCertificate.

    Args:
        name: MRC name
        state: status.state, omitted when None
        provider: provider mapping, a Tresor provider when None
        secret: Tresor secret name, defaults to "<name>-ca"
        namespace: MRC namespace
        trust_domain: spec.trustDomain
        last_transition_time: status.lastTransitionTime
    """
    if provider is None:
        provider = {
            "tresor": {
                "ca": {"secretRef": {"name": secret or f"{name}-ca", "namespace": namespace}}
            }
        }
    status: Dict[str, Any] = {}
    if state is not None:
        status["state"] = state
    if last_transition_time:
        status["lastTransitionTime"] = last_transition_time
    return {
        "apiVersion": "config.openservicemesh.io/v1alpha2",
        "kind": "MeshRootCertificate",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"trustDomain": trust_domain, "provider": provider},
        "status": status,
    }


def make_mrc(name: str, state: str = "inactive", **kwargs: Any) -> MeshRootCertificate:
    """Build a MeshRootCertificate model, see mrc_dict for the arguments."""
    return MeshRootCertificate.from_dict(mrc_dict(name, state, **kwargs))


class FakeStore:
    """In-memory stand-in for KubeStore.

    Creates are atomic, status writes are conditional on resource versions
    and every MRC change is queued for watch_mrcs.
    """

    def __init__(self):
        """Initialise an empty store."""
        self.secrets: Dict[Key, Dict[str, bytes]] = {}
        self.secret_labels: Dict[Key, Dict[str, str]] = {}
        self.mrcs: Dict[Key, Dict[str, Any]] = {}
        self.requests: Dict[Key, Dict[str, Any]] = {}
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.secret_create_attempts = 0
        self.secret_creates = 0
        self.stale_writes = 0
        self.on_request: Optional[Callable[[Dict[str, Any]], None]] = None
        self._lock = threading.Lock()
        self._version = 0

    def _bump(self, raw: Dict[str, Any]) -> None:
        self._version += 1
        raw["metadata"]["resourceVersion"] = str(self._version)

    # Secrets

    def create_secret(self, namespace, name, data, labels=None):
        """Create a secret atomically."""
        with self._lock:
            self.secret_create_attempts += 1
            if (namespace, name) in self.secrets:
                raise AlreadyExists(f"secret {namespace}/{name} exists")
            self.secrets[(namespace, name)] = dict(data)
            self.secret_labels[(namespace, name)] = dict(labels or {})
            self.secret_creates += 1

    def get_secret(self, namespace, name):
        """Return a copy of the secret data."""
        with self._lock:
            if (namespace, name) not in self.secrets:
                raise NotFound(f"secret {namespace}/{name} not found")
            return dict(self.secrets[(namespace, name)])

    def delete_secret(self, namespace, name):
        """Delete a secret."""
        with self._lock:
            if self.secrets.pop((namespace, name), None) is None:
                raise NotFound(f"secret {namespace}/{name} not found")

    # MeshRootCertificates

    def add_mrc(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Store an MRC as is, bypassing every check."""
        raw = copy.deepcopy(raw)
        meta = raw["metadata"]
        with self._lock:
            self._bump(raw)
            self.mrcs[(meta["namespace"], meta["name"])] = raw
            self.events.append(("ADDED", copy.deepcopy(raw)))
        return copy.deepcopy(raw)

    def list_mrcs(self, namespace=None):
        """List stored MRCs."""
        with self._lock:
            return [
                copy.deepcopy(raw)
                for (ns, _), raw in sorted(self.mrcs.items())
                if namespace is None or ns == namespace
            ]

    def get_mrc(self, namespace, name):
        """Return one MRC."""
        with self._lock:
            if (namespace, name) not in self.mrcs:
                raise NotFound(f"MeshRootCertificate {namespace}/{name} not found")
            return copy.deepcopy(self.mrcs[(namespace, name)])

    def create_mrc(self, raw):
        """Create an MRC; like the API server, the status is dropped."""
        raw = copy.deepcopy(raw)
        raw["status"] = {}
        meta = raw["metadata"]
        with self._lock:
            if (meta["namespace"], meta["name"]) in self.mrcs:
                raise AlreadyExists(f"MeshRootCertificate {meta['name']} exists")
            self._bump(raw)
            self.mrcs[(meta["namespace"], meta["name"])] = raw
            self.events.append(("ADDED", copy.deepcopy(raw)))
            return copy.deepcopy(raw)

    def patch_mrc_status(self, namespace, name, status, resource_version=None):
        """Write an MRC status if resource_version still matches."""
        with self._lock:
            if (namespace, name) not in self.mrcs:
                raise NotFound(f"MeshRootCertificate {namespace}/{name} not found")
            raw = self.mrcs[(namespace, name)]
            if resource_version and raw["metadata"]["resourceVersion"] != resource_version:
                self.stale_writes += 1
                raise Conflict(f"MeshRootCertificate {namespace}/{name} changed")
            raw["status"] = copy.deepcopy(status)
            self._bump(raw)
            self.events.append(("MODIFIED", copy.deepcopy(raw)))
            return copy.deepcopy(raw)

    def delete_mrc(self, namespace, name):
        """Delete an MRC."""
        with self._lock:
            raw = self.mrcs.pop((namespace, name), None)
            if raw is None:
                raise NotFound(f"MeshRootCertificate {namespace}/{name} not found")
            self.events.append(("DELETED", raw))

    def watch_mrcs(self, namespace=None) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield every queued MRC event."""
        for op, raw in list(self.events):
            if namespace is None or raw["metadata"]["namespace"] == namespace:
                yield op, copy.deepcopy(raw)

    # cert-manager CertificateRequests

    def create_certificate_request(self, namespace, raw):
        """Create a CertificateRequest with a generated name."""
        raw = copy.deepcopy(raw)
        with self._lock:
            self._version += 1
            name = f"{raw['metadata']['generateName']}{self._version:05d}"
            raw["metadata"] = {"name": name, "namespace": namespace}
            self.requests[(namespace, name)] = raw
        if self.on_request:
            self.on_request(raw)
        return copy.deepcopy(raw)

    def get_certificate_request(self, namespace, name):
        """Return one CertificateRequest."""
        if (namespace, name) not in self.requests:
            raise NotFound(f"CertificateRequest {namespace}/{name} not found")
        return copy.deepcopy(self.requests[(namespace, name)])

    def delete_certificate_request(self, namespace, name):
        """Delete a CertificateRequest."""
        if self.requests.pop((namespace, name), None) is None:
            raise NotFound(f"CertificateRequest {namespace}/{name} not found")


class FakeIssuer(Issuer):
    """Issuer recording its calls and delegating to a real one."""

    def __init__(self, delegate: Issuer, error: Optional[Exception] = None):
        """Initialise the FakeIssuer.

        Args:
            delegate: issuer doing the signing
            error: raised instead of signing when set
        """
        self.delegate = delegate
        self.error = error
        self.calls: List[Tuple[str, timedelta]] = []
        self._lock = threading.Lock()

    def issue_certificate(
        self, common_name: str, validity: timedelta, options: Optional[IssueOptions] = None
    ) -> Certificate:
        """Record the call, then sign or fail."""
        with self._lock:
            self.calls.append((common_name, validity))
        if self.error:
            raise self.error
        return self.delegate.issue_certificate(common_name, validity, options)


class FakeGenerator:
    """Provider generator handing out prepared issuers by MRC name."""

    def __init__(self, issuers: Dict[str, Tuple[Issuer, bytes]]):
        """Initialise the FakeGenerator.

        Args:
            issuers: issuer and root CA per MRC name
        """
        self.issuers = issuers
        self.errors: Dict[str, Exception] = {}
        self.built: List[str] = []

    def get_issuer_for_mrc(self, mrc: MeshRootCertificate) -> Tuple[Issuer, bytes]:
        """Return the prepared issuer or raise the prepared error."""
        self.built.append(mrc.name)
        if mrc.name in self.errors:
            raise self.errors[mrc.name]
        return self.issuers[mrc.name]
