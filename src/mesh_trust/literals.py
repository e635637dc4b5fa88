# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Literals for the mesh trust core."""

from datetime import timedelta

VERSION = "0.3.0"

# Logging
VALID_LOG_LEVELS = ["info", "debug", "warning", "error", "critical"]

# Kubernetes API surface
MRC_GROUP = "config.openservicemesh.io"
MRC_VERSION = "v1alpha2"
MRC_KIND = "MeshRootCertificate"
MRC_PLURAL = "meshrootcertificates"
CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CERT_MANAGER_REQUEST_KIND = "CertificateRequest"
CERT_MANAGER_REQUEST_PLURAL = "certificaterequests"
CERT_MANAGER_REQUEST_PREFIX = "mesh-"
DEFAULT_NAMESPACE = "osm-system"

# Labels
APP_NAME_LABEL_KEY = "app.kubernetes.io/name"
APP_NAME_LABEL_VALUE = "openservicemesh.io"
APP_VERSION_LABEL_KEY = "app.kubernetes.io/version"

# Tresor backing secret
CA_SECRET_CERT_KEY = "ca.crt"
CA_SECRET_PRIVATE_KEY_KEY = "private.key"
CA_SECRET_NAME_PREFIX = "mesh-ca-bundle"
DEFAULT_MRC_NAME = "osm-mesh-root-certificate"

# Root certificate subject
CA_COMMON_NAME = "Open Service Mesh Certification Authority"
CA_COUNTRY = "US"
CA_LOCALITY = "CA"
CA_ORGANIZATION = "Open Service Mesh"
CA_VALIDITY = timedelta(hours=87600)

# Keys
SUPPORTED_KEY_BIT_SIZES = [2048, 3072, 4096]
DEFAULT_KEY_BIT_SIZE = 2048

# Leaf certificates
INTERNAL_CERT_VALIDITY = timedelta(days=365)
DEFAULT_SERVICE_CERT_VALIDITY = timedelta(hours=24)
DEFAULT_INGRESS_CERT_VALIDITY = timedelta(hours=24)
DEFAULT_CHECK_INTERVAL = timedelta(seconds=5)
MIN_ROTATE_BEFORE_EXPIRY = timedelta(minutes=5)
WATCH_RETRY_MAX_WAIT = timedelta(seconds=30)
VALIDITY_FRACTION_BEFORE_ROTATE = 3
ROTATION_JITTER_SECONDS = 5
CA_EXTRACTION_CN = "init-cert"

# Cert-manager
CERT_MANAGER_READY_TIMEOUT = timedelta(seconds=60)
CERT_MANAGER_POLL_INTERVAL = timedelta(seconds=1)
CERT_MANAGER_FAILED_REASONS = ["Failed", "Denied"]

# Vault
VAULT_PROTOCOLS = ["http", "https"]
VAULT_PKI_MOUNT = "pki"

# Rotation
DEFAULT_ROTATION_WAIT = timedelta(seconds=60)
STATUS_UPDATE_ATTEMPTS = 5

# Settings
SETTINGS_ENV_PREFIX = "MESH_TRUST_"
