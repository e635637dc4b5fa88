# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Admission rules for MeshRootCertificate changes.

The rotation protocol is captured by ``TRANSITIONS``; every state change the
trust core writes is checked against it, together with the bound on how many
MRCs may be on the active track at once.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from mesh_trust.errors import IllegalTransition, InvalidProviderConfig, InvariantViolation
from mesh_trust.literals import VAULT_PROTOCOLS
from mesh_trust.models import (
    ACTIVE_TRACK_STATES,
    CertManagerProvider,
    MeshRootCertificate,
    MeshRootCertificateSpec,
    MRCState,
    TresorProvider,
    VaultProvider,
)

log = logging.getLogger(__name__)

MAX_ACTIVE_TRACK = 2

TRANSITIONS: Dict[MRCState, FrozenSet[MRCState]] = {
    MRCState.INACTIVE: frozenset({MRCState.VALIDATING_ROLLOUT, MRCState.ERROR}),
    MRCState.VALIDATING_ROLLOUT: frozenset({MRCState.ISSUING_ROLLOUT, MRCState.ERROR}),
    MRCState.ISSUING_ROLLOUT: frozenset({MRCState.ACTIVE, MRCState.ERROR}),
    MRCState.ACTIVE: frozenset({MRCState.VALIDATING_ROLLBACK, MRCState.ERROR}),
    MRCState.VALIDATING_ROLLBACK: frozenset({MRCState.ISSUING_ROLLBACK, MRCState.ERROR}),
    MRCState.ISSUING_ROLLBACK: frozenset({MRCState.INACTIVE, MRCState.ERROR}),
    MRCState.ERROR: frozenset(),
}

DELETABLE_STATES = frozenset({MRCState.INACTIVE, MRCState.ERROR})


def is_valid_transition(old: MRCState, new: MRCState) -> bool:
    """Return whether the rotation protocol allows moving from old to new."""
    return new in TRANSITIONS.get(old, frozenset())


def check_provider_fields(
    spec: MeshRootCertificateSpec, has_default_vault_token: bool = False
) -> None:
    """Check that every field the configured provider needs is set.

    Args:
        spec: the MRC spec to check
        has_default_vault_token: whether a Vault token is configured globally,
            which makes the token secret reference optional

    Raises:
        InvalidProviderConfig: naming the first missing field
    """
    if not spec.trust_domain:
        raise InvalidProviderConfig("trustDomain must be non empty")

    provider = spec.provider
    missing = []
    if isinstance(provider, TresorProvider):
        ref = provider.ca.secret_ref
        missing = [
            f"tresor.ca.secretRef.{f}" for f in ("name", "namespace") if not getattr(ref, f)
        ]
    elif isinstance(provider, VaultProvider):
        missing = [f"vault.{f}" for f in ("host", "protocol", "role") if not getattr(provider, f)]
        if not has_default_vault_token:
            ref = provider.token.secret_key_ref if provider.token else None
            missing += [
                f"vault.token.secretKeyRef.{f}"
                for f in ("name", "key", "namespace")
                if ref is None or not getattr(ref, f)
            ]
        if provider.protocol and provider.protocol not in VAULT_PROTOCOLS:
            raise InvalidProviderConfig(
                f"vault.protocol must be one of {VAULT_PROTOCOLS}, got {provider.protocol}"
            )
    elif isinstance(provider, CertManagerProvider):
        missing = [
            f"certManager.{f}"
            for f, v in (
                ("issuerName", provider.issuer_name),
                ("issuerKind", provider.issuer_kind),
                ("issuerGroup", provider.issuer_group),
            )
            if not v
        ]
    if missing:
        raise InvalidProviderConfig(f"{missing[0]} must be non empty")


class MRCStateValidator:
    """Decide whether a MeshRootCertificate create, update or delete is legal."""

    def __init__(self, has_default_vault_token: bool = False):
        """Initialise the MRCStateValidator.

        Args:
            has_default_vault_token: whether Vault MRCs may omit their token reference
        """
        self.has_default_vault_token = has_default_vault_token

    @staticmethod
    def is_valid_transition(old: MRCState, new: MRCState) -> bool:
        """Return whether the rotation protocol allows moving from old to new."""
        return is_valid_transition(old, new)

    def validate_transition(
        self, old: MRCState, new: MRCState, mrc: Optional[str] = None
    ) -> None:
        """Reject a state change that is not part of the rotation protocol.

        Args:
            old: current state
            new: proposed state
            mrc: namespaced name used in the error

        Raises:
            IllegalTransition: if the pair is not in the transition table
        """
        if not is_valid_transition(old, new):
            raise IllegalTransition(
                f"MeshRootCertificate {mrc or ''} cannot move from {old.value} to {new.value}",
                mrc=mrc,
            )

    def check_active_track(
        self, mrc: MeshRootCertificate, others: Iterable[MeshRootCertificate]
    ) -> None:
        """Reject mrc joining the active track when two others already are on it.

        Only MRCs in mrc's namespace count, each namespace being its own mesh.

        Raises:
            InvariantViolation: if the bound would be exceeded
        """
        on_track = sorted(
            o.namespaced_name
            for o in others
            if o.key != mrc.key
            and o.namespace == mrc.namespace
            and o.state in ACTIVE_TRACK_STATES
        )
        if len(on_track) >= MAX_ACTIVE_TRACK:
            raise InvariantViolation(
                f"MeshRootCertificate {mrc.namespaced_name} cannot join the rotation, "
                f"already in progress between {', '.join(on_track)}",
                mrc=mrc.namespaced_name,
            )

    def validate_create(
        self, mrc: MeshRootCertificate, existing: Iterable[MeshRootCertificate]
    ) -> None:
        """Check a new MeshRootCertificate.

        Args:
            mrc: the MRC to create
            existing: every MRC currently stored

        Raises:
            InvalidProviderConfig: if the MRC spec is incomplete
            IllegalTransition: if the MRC is not created inactive
            InvariantViolation: if two MRCs are already on the active track
        """
        check_provider_fields(mrc.spec, self.has_default_vault_token)
        if mrc.state != MRCState.INACTIVE:
            raise IllegalTransition(
                f"MeshRootCertificate {mrc.namespaced_name} must be created in state "
                f"{MRCState.INACTIVE.value}, got {mrc.state.value}",
                mrc=mrc.namespaced_name,
            )
        self.check_active_track(mrc, existing)

    def validate_update(
        self,
        old: MeshRootCertificate,
        new: MeshRootCertificate,
        existing: Iterable[MeshRootCertificate],
    ) -> None:
        """Check a change to an existing MeshRootCertificate.

        Args:
            old: the stored MRC
            new: the proposed MRC
            existing: every MRC currently stored

        Raises:
            IllegalTransition: if the MRC spec changes or the state change is not allowed
            InvariantViolation: if the change adds a third MRC to the active track
        """
        name = new.namespaced_name
        for field, label in (
            ("provider", "provider"),
            ("trust_domain", "trustDomain"),
            ("spiffe_enabled", "spiffeEnabled"),
        ):
            if getattr(old.spec, field) != getattr(new.spec, field):
                raise IllegalTransition(
                    f"MeshRootCertificate {name}: {label} cannot be changed", mrc=name
                )
        if old.state == new.state:
            return
        self.validate_transition(old.state, new.state, mrc=name)
        joins_track = old.state not in ACTIVE_TRACK_STATES and new.state in ACTIVE_TRACK_STATES
        if joins_track or new.state == MRCState.ACTIVE:
            self.check_active_track(new, existing)

    def validate_delete(self, mrc: MeshRootCertificate) -> None:
        """Allow deletion only of MRCs that take no part in a rotation.

        Raises:
            IllegalTransition: if the MRC is on the active track
        """
        if mrc.state not in DELETABLE_STATES:
            raise IllegalTransition(
                f"MeshRootCertificate {mrc.namespaced_name} cannot be deleted in state "
                f"{mrc.state.value}",
                mrc=mrc.namespaced_name,
            )
