# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""MeshRootCertificate resource models."""

import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

from mesh_trust.errors import InvalidProviderConfig, UnsupportedProvider
from mesh_trust.literals import MRC_GROUP, MRC_KIND, MRC_VERSION

log = logging.getLogger(__name__)

PROVIDER_KEYS = ("tresor", "vault", "certManager")


class MRCState(str, Enum):
    """Rotation states of a MeshRootCertificate."""

    INACTIVE = "inactive"
    VALIDATING_ROLLOUT = "validatingRollout"
    ISSUING_ROLLOUT = "issuingRollout"
    ACTIVE = "active"
    VALIDATING_ROLLBACK = "validatingRollback"
    ISSUING_ROLLBACK = "issuingRollback"
    ERROR = "error"


ACTIVE_TRACK_STATES = frozenset(
    {
        MRCState.VALIDATING_ROLLOUT,
        MRCState.ISSUING_ROLLOUT,
        MRCState.ACTIVE,
        MRCState.VALIDATING_ROLLBACK,
        MRCState.ISSUING_ROLLBACK,
    }
)


class IssuerRole(str, Enum):
    """Part an MRC's issuer plays in the certificate manager."""

    SIGNING = "signing"
    VALIDATING = "validating"
    RETIRED = "retired"


class OperatorRole(str, Enum):
    """Coarse roles shown to a human operator."""

    ACTIVE = "active"
    PASSIVE = "passive"
    INACTIVE = "inactive"


def issuer_role(state: MRCState) -> IssuerRole:
    """Return the manager role for an MRC state.

    Only ``active`` signs. Every other active-track state keeps the root in
    the trust bundle without signing with it.
    """
    if state == MRCState.ACTIVE:
        return IssuerRole.SIGNING
    if state in ACTIVE_TRACK_STATES:
        return IssuerRole.VALIDATING
    return IssuerRole.RETIRED


def operator_role(state: MRCState) -> OperatorRole:
    """Map a rotation state onto the active/passive/inactive vocabulary."""
    return {
        IssuerRole.SIGNING: OperatorRole.ACTIVE,
        IssuerRole.VALIDATING: OperatorRole.PASSIVE,
        IssuerRole.RETIRED: OperatorRole.INACTIVE,
    }[issuer_role(state)]


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SecretReference(_Model):
    """Reference to a Kubernetes secret.

    Attributes:
        name (str): secret name
        namespace (str): secret namespace
    """

    name: str = ""
    namespace: str = ""


class SecretKeyReference(SecretReference):
    """Reference to one key of a Kubernetes secret.

    Attributes:
        key (str): key within the secret data
    """

    key: str = ""


class TresorCA(_Model):
    """Location of a Tresor root CA."""

    secret_ref: SecretReference = Field(default_factory=SecretReference, alias="secretRef")


class TresorProvider(_Model):
    """Locally generated CA persisted into a secret.

    Attributes:
        kind (str): literal string defining this provider
        ca (TresorCA): where the CA is stored
    """

    kind: Literal["tresor"] = Field("tresor", exclude=True)
    ca: TresorCA = Field(default_factory=TresorCA)


class VaultToken(_Model):
    """Location of the Vault token."""

    secret_key_ref: SecretKeyReference = Field(
        default_factory=SecretKeyReference, alias="secretKeyRef"
    )


class VaultProvider(_Model):
    """Remote Vault PKI backend.

    Attributes:
        kind (str): literal string defining this provider
        host (str): Vault host name
        port (int): Vault port
        protocol (str): http or https
        role (str): PKI role used for signing
        token (Optional[VaultToken]): secret holding the access token
    """

    kind: Literal["vault"] = Field("vault", exclude=True)
    host: str = ""
    port: int = 0
    protocol: str = ""
    role: str = ""
    token: Optional[VaultToken] = None

    @property
    def address(self) -> str:
        """Vault address built from protocol, host and port."""
        return f"{self.protocol}://{self.host}:{self.port}"


class CertManagerProvider(_Model):
    """Cluster cert-manager issuer delegate.

    Attributes:
        kind (str): literal string defining this provider
        issuer_name (str): name of the Issuer or ClusterIssuer
        issuer_kind (str): Issuer or ClusterIssuer
        issuer_group (str): API group of the issuer
    """

    kind: Literal["certManager"] = Field("certManager", exclude=True)
    issuer_name: str = Field("", alias="issuerName")
    issuer_kind: str = Field("", alias="issuerKind")
    issuer_group: str = Field("", alias="issuerGroup")


ProviderSpec = Annotated[
    Union[TresorProvider, VaultProvider, CertManagerProvider], Field(discriminator="kind")
]


def _provider_key(value: Dict[str, Any]) -> str:
    """Return the single provider key of a wrapped provider mapping.

    Raises:
        UnsupportedProvider: if the mapping names no provider, several providers
            or an unknown one
    """
    keys = [k for k, v in value.items() if v is not None]
    unknown = [k for k in keys if k not in PROVIDER_KEYS]
    if unknown:
        raise UnsupportedProvider(f"Unknown certificate provider {unknown[0]}")
    if len(keys) != 1:
        raise UnsupportedProvider(
            f"Exactly one certificate provider must be set, got {len(keys)}"
        )
    return keys[0]


class MeshRootCertificateSpec(_Model):
    """Desired configuration of a MeshRootCertificate.

    Attributes:
        trust_domain (str): suffix applied to issued common names
        spiffe_enabled (bool): add SPIFFE URI SANs to issued certificates
        provider (ProviderSpec): the single CA backend
    """

    trust_domain: str = Field("", alias="trustDomain")
    spiffe_enabled: bool = Field(False, alias="spiffeEnabled")
    provider: ProviderSpec

    @field_validator("provider", mode="before")
    @classmethod
    def _unwrap_provider(cls, value: Any) -> Any:
        """Turn ``{"tresor": {...}}`` into a tagged provider mapping.

        Args:
            value: the raw provider value

        Returns:
            the provider mapping carrying its ``kind`` tag

        Raises:
            ValueError: if the mapping does not hold exactly one known provider
        """
        if not isinstance(value, dict) or "kind" in value:
            return value
        try:
            key = _provider_key(value)
        except UnsupportedProvider as e:
            raise ValueError(str(e)) from e
        return {"kind": key, **(value[key] or {})}

    @field_serializer("provider")
    def _wrap_provider(self, provider: Any) -> Dict[str, Any]:
        """Serialize the provider back into its wrapped form."""
        return {provider.kind: provider.model_dump(by_alias=True, exclude_none=True)}

    @property
    def provider_kind(self) -> str:
        """Tag of the configured provider."""
        return self.provider.kind


class MRCStatus(_Model):
    """Observed state of a MeshRootCertificate.

    Attributes:
        state (MRCState): current rotation state
        last_transition_time (Optional[datetime]): when the state last changed
    """

    state: MRCState = MRCState.INACTIVE
    last_transition_time: Optional[datetime] = Field(None, alias="lastTransitionTime")


class MeshRootCertificate(_Model):
    """A MeshRootCertificate resource.

    Attributes:
        name (str): resource name
        namespace (str): resource namespace
        spec (MeshRootCertificateSpec): desired configuration
        status (MRCStatus): observed state
        resource_version (Optional[str]): store version used for conflict detection
    """

    name: str
    namespace: str
    spec: MeshRootCertificateSpec
    status: MRCStatus = Field(default_factory=MRCStatus)
    resource_version: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MeshRootCertificate":
        """Build an MRC from its Kubernetes representation.

        Args:
            raw: the resource as a mapping (metadata, spec, status)

        Returns:
            the parsed MeshRootCertificate

        Raises:
            UnsupportedProvider: if the provider is unset or unknown
            InvalidProviderConfig: if any field is malformed
        """
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        provider = spec.get("provider")
        if not isinstance(provider, dict):
            raise UnsupportedProvider(
                f"MeshRootCertificate {metadata.get('name')} has no certificate provider"
            )
        _provider_key(provider)
        try:
            return cls(
                name=metadata.get("name", ""),
                namespace=metadata.get("namespace", ""),
                resource_version=metadata.get("resourceVersion"),
                spec=spec,
                status=raw.get("status") or {},
            )
        except ValidationError as e:
            raise InvalidProviderConfig(
                f"Invalid MeshRootCertificate {metadata.get('name')}: {e}"
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        """Return the Kubernetes representation of this MRC."""
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": f"{MRC_GROUP}/{MRC_VERSION}",
            "kind": MRC_KIND,
            "metadata": metadata,
            "spec": self.spec.model_dump(mode="json", by_alias=True),
            "status": self.status.model_dump(mode="json", by_alias=True, exclude_none=True),
        }

    @property
    def key(self) -> Tuple[str, str]:
        """Identity of this MRC as (namespace, name)."""
        return self.namespace, self.name

    @property
    def namespaced_name(self) -> str:
        """Identity of this MRC as ``namespace/name``."""
        return f"{self.namespace}/{self.name}"

    @property
    def state(self) -> MRCState:
        """Current rotation state."""
        return self.status.state

    @property
    def role(self) -> IssuerRole:
        """Manager role derived from the current state."""
        return issuer_role(self.state)

    def tresor_secret(self) -> Optional[Tuple[str, str]]:
        """Return the (namespace, name) of the backing secret for Tresor MRCs."""
        provider = self.spec.provider
        if not isinstance(provider, TresorProvider):
            return None
        ref = provider.ca.secret_ref
        return ref.namespace, ref.name

    def with_state(
        self, state: MRCState, when: Optional[datetime] = None
    ) -> "MeshRootCertificate":
        """Return a copy in the given state, stamped with its transition time."""
        status = MRCStatus(state=state, last_transition_time=when)
        return self.model_copy(update={"status": status})
