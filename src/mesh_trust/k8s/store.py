# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Access to the Kubernetes objects backing the trust core."""

import base64
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import httpx
from lightkube import ApiError, Client, KubeConfig
from lightkube.generic_resource import create_namespaced_resource
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import Secret
from lightkube.types import PatchType

from mesh_trust.errors import TrustError
from mesh_trust.literals import (
    CERT_MANAGER_GROUP,
    CERT_MANAGER_REQUEST_KIND,
    CERT_MANAGER_REQUEST_PLURAL,
    CERT_MANAGER_VERSION,
    MRC_GROUP,
    MRC_KIND,
    MRC_PLURAL,
    MRC_VERSION,
)

log = logging.getLogger(__name__)

MeshRootCertificateResource = create_namespaced_resource(
    MRC_GROUP, MRC_VERSION, MRC_KIND, MRC_PLURAL
)
CertificateRequestResource = create_namespaced_resource(
    CERT_MANAGER_GROUP,
    CERT_MANAGER_VERSION,
    CERT_MANAGER_REQUEST_KIND,
    CERT_MANAGER_REQUEST_PLURAL,
)


class StoreError(TrustError):
    """Base exception for backing store failures."""


class AlreadyExists(StoreError):
    """Raised when creating an object that already exists."""


class NotFound(StoreError):
    """Raised when an object does not exist."""


class Conflict(StoreError):
    """Raised when an update races with a concurrent writer."""


def _translate(e: Exception, action: str, creating: bool = False) -> StoreError:
    """Map a lightkube or transport failure onto a StoreError.

    Args:
        e: the original exception
        action: description of the failed call
        creating: whether the call created an object

    Returns:
        the matching StoreError subclass
    """
    code = e.status.code if isinstance(e, ApiError) else None
    if code == 404:
        return NotFound(f"Failed to {action}: {e}")
    if code == 409:
        return (AlreadyExists if creating else Conflict)(f"Failed to {action}: {e}")
    return StoreError(f"Failed to {action}: {e}")


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Return the plain mapping of a generic lightkube resource."""
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


class KubeStore:
    """Secrets, MeshRootCertificates and CertificateRequests in one cluster."""

    def __init__(self, kubeconfig_path: Optional[Path] = None, field_manager: str = "mesh-trust"):
        """Initialise the KubeStore.

        Args:
            kubeconfig_path: kubeconfig to load, the in-cluster config when None
            field_manager: name recorded on server-side writes
        """
        self.kubeconfig_path = kubeconfig_path
        self.field_manager = field_manager
        self.client: Optional[Client] = None

    def _get_client(self) -> Client:
        """Return the client instance."""
        if self.client is None:
            if self.kubeconfig_path:
                config = KubeConfig.from_file(str(self.kubeconfig_path))
                self.client = Client(config=config.get(), field_manager=self.field_manager)
            else:
                self.client = Client(field_manager=self.field_manager)
        return self.client

    # Secrets

    def create_secret(
        self,
        namespace: str,
        name: str,
        data: Mapping[str, bytes],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Create an opaque secret, failing if it already exists.

        Args:
            namespace: secret namespace
            name: secret name
            data: raw (not yet base64 encoded) secret values
            labels: labels to apply to the secret

        Raises:
            AlreadyExists: if another writer created the secret first
            StoreError: on any other failure
        """
        secret = Secret(
            metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
            type="Opaque",
            data={k: base64.b64encode(v).decode() for k, v in data.items()},
        )
        try:
            self._get_client().create(secret, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"create secret {namespace}/{name}", creating=True) from e
        log.info("Created secret %s/%s", namespace, name)

    def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        """Return the decoded data of a secret.

        Raises:
            NotFound: if the secret does not exist
            StoreError: on any other failure
        """
        try:
            secret = self._get_client().get(Secret, name, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"get secret {namespace}/{name}") from e
        return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

    def delete_secret(self, namespace: str, name: str) -> None:
        """Delete a secret.

        Raises:
            NotFound: if the secret does not exist
            StoreError: on any other failure
        """
        try:
            self._get_client().delete(Secret, name, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"delete secret {namespace}/{name}") from e
        log.info("Deleted secret %s/%s", namespace, name)

    # MeshRootCertificates

    def list_mrcs(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """List MeshRootCertificates, across all namespaces when none is given."""
        try:
            client = self._get_client()
            found = client.list(MeshRootCertificateResource, namespace=namespace or "*")
            return [_as_dict(obj) for obj in found]
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, "list MeshRootCertificates") from e

    def get_mrc(self, namespace: str, name: str) -> Dict[str, Any]:
        """Return one MeshRootCertificate.

        Raises:
            NotFound: if the MRC does not exist
            StoreError: on any other failure
        """
        try:
            obj = self._get_client().get(MeshRootCertificateResource, name, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"get MeshRootCertificate {namespace}/{name}") from e
        return _as_dict(obj)

    def create_mrc(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Create a MeshRootCertificate from its mapping.

        Raises:
            AlreadyExists: if an MRC with the same name exists
            StoreError: on any other failure
        """
        metadata = raw["metadata"]
        obj = MeshRootCertificateResource(
            metadata=ObjectMeta(name=metadata["name"], namespace=metadata["namespace"]),
            spec=raw.get("spec", {}),
            status=raw.get("status", {}),
        )
        action = f"create MeshRootCertificate {metadata['namespace']}/{metadata['name']}"
        try:
            created = self._get_client().create(obj, namespace=metadata["namespace"])
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, action, creating=True) from e
        return _as_dict(created)

    def patch_mrc_status(
        self,
        namespace: str,
        name: str,
        status: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write the status subresource of a MeshRootCertificate.

        Args:
            namespace: MRC namespace
            name: MRC name
            status: the new status mapping
            resource_version: version the write is conditional on

        Returns:
            the updated MRC mapping

        Raises:
            Conflict: if the MRC changed since resource_version
            NotFound: if the MRC does not exist
            StoreError: on any other failure
        """
        body: Dict[str, Any] = {"status": status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        try:
            obj = self._get_client().patch(
                MeshRootCertificateResource.Status,
                name,
                body,
                namespace=namespace,
                patch_type=PatchType.MERGE,
            )
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"update MeshRootCertificate {namespace}/{name} status") from e
        return _as_dict(obj)

    def delete_mrc(self, namespace: str, name: str) -> None:
        """Delete a MeshRootCertificate.

        Raises:
            NotFound: if the MRC does not exist
            StoreError: on any other failure
        """
        try:
            self._get_client().delete(MeshRootCertificateResource, name, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"delete MeshRootCertificate {namespace}/{name}") from e

    def watch_mrcs(self, namespace: Optional[str] = None) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event type, MRC mapping) pairs as MeshRootCertificates change.

        Raises:
            StoreError: if the watch cannot be established or breaks
        """
        try:
            for op, obj in self._get_client().watch(
                MeshRootCertificateResource, namespace=namespace or "*"
            ):
                yield op, _as_dict(obj)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, "watch MeshRootCertificates") from e

    # cert-manager CertificateRequests

    def create_certificate_request(self, namespace: str, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Create a CertificateRequest and return it with its generated name."""
        obj = CertificateRequestResource(
            metadata=ObjectMeta(
                generateName=raw["metadata"].get("generateName"),
                name=raw["metadata"].get("name"),
                namespace=namespace,
            ),
            spec=raw["spec"],
        )
        try:
            created = self._get_client().create(obj, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"create CertificateRequest in {namespace}", creating=True) from e
        return _as_dict(created)

    def get_certificate_request(self, namespace: str, name: str) -> Dict[str, Any]:
        """Return one CertificateRequest."""
        try:
            obj = self._get_client().get(CertificateRequestResource, name, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"get CertificateRequest {namespace}/{name}") from e
        return _as_dict(obj)

    def delete_certificate_request(self, namespace: str, name: str) -> None:
        """Delete a CertificateRequest."""
        try:
            self._get_client().delete(CertificateRequestResource, name, namespace=namespace)
        except (ApiError, httpx.HTTPError) as e:
            raise _translate(e, f"delete CertificateRequest {namespace}/{name}") from e
