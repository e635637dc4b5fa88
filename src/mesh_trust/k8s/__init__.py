# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Kubernetes backed storage for MeshRootCertificates and CA secrets."""
