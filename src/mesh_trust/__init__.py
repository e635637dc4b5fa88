# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Certificate authority issuance and rotation for a service mesh control plane."""

from mesh_trust.literals import VERSION

__version__ = VERSION
