# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Typed failures returned by the trust core.

Callers (the control-plane runtime or an operator tool) map each of these
to a descriptive message; the core never prints or exits on its own.
"""

from typing import Optional


class TrustError(Exception):
    """Base exception for mesh trust errors."""


class InvalidProviderConfig(TrustError):
    """Raised when a MeshRootCertificate provider spec is malformed."""


class UnsupportedProvider(TrustError):
    """Raised when a MeshRootCertificate names no known provider."""


class MissingPrivateKey(TrustError):
    """Raised when a generated or loaded CA has no signing material."""


class IssuerConstructionFailed(TrustError):
    """Raised when a remote issuer backend cannot be reached or configured."""


class CertificateIssueFailed(TrustError):
    """Raised when an issuer backend refuses or fails to sign a certificate."""


class NoActiveIssuer(TrustError):
    """Raised when issuance is requested while no MRC can sign."""


class InvalidCertSecret(TrustError):
    """Raised when a CA backing secret is missing required fields."""


class TransitionError(TrustError):
    """Base for rejected MeshRootCertificate changes.

    Attributes:
        mrc (str): namespaced name of the rejected MeshRootCertificate
    """

    def __init__(self, msg: str, mrc: Optional[str] = None) -> None:
        """Initialise the TransitionError.

        Args:
            msg (str): Message associated with the error
            mrc (Optional[str]): namespaced name of the MeshRootCertificate
        """
        super().__init__(msg)
        self.mrc = mrc


class IllegalTransition(TransitionError):
    """Raised when a state change is not part of the rotation protocol."""


class InvariantViolation(TransitionError):
    """Raised when a change would exceed the active-track bound."""


class RotationError(TrustError):
    """Raised when a root rotation cannot start or continue."""
