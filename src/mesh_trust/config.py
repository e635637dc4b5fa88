# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Settings of the trust core."""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError, field_validator

from mesh_trust.k8s.mrc_client import MRCClient
from mesh_trust.k8s.store import KubeStore
from mesh_trust.literals import (
    CA_COMMON_NAME,
    CA_VALIDITY,
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_INGRESS_CERT_VALIDITY,
    DEFAULT_KEY_BIT_SIZE,
    DEFAULT_NAMESPACE,
    DEFAULT_ROTATION_WAIT,
    DEFAULT_SERVICE_CERT_VALIDITY,
    SETTINGS_ENV_PREFIX,
    SUPPORTED_KEY_BIT_SIZES,
    VALID_LOG_LEVELS,
)
from mesh_trust.manager import CertificateManager
from mesh_trust.providers.generator import ProviderGenerator
from mesh_trust.rotation import Confirm, RotationOrchestrator
from mesh_trust.utils import parse_duration
from mesh_trust.validator import MRCStateValidator

log = logging.getLogger(__name__)


class TrustSettings(BaseModel):
    """Settings of the trust core.

    Attributes:
        namespace (str): control-plane namespace
        key_bit_size (int): RSA key size for generated keys
        service_cert_validity (timedelta): default validity of service certificates
        ingress_cert_validity (timedelta): default validity of ingress certificates
        check_interval (timedelta): how often issued certificates are checked
        rotation_wait (timedelta): propagation pause between rotation steps
        ca_common_name (str): common name of generated roots
        ca_validity (timedelta): validity of generated roots
        default_vault_token (Optional[SecretStr]): token for Vault MRCs without a token secret
        log_level (str): root log level
    """

    model_config = ConfigDict(extra="forbid")

    namespace: str = DEFAULT_NAMESPACE
    key_bit_size: int = DEFAULT_KEY_BIT_SIZE
    service_cert_validity: timedelta = DEFAULT_SERVICE_CERT_VALIDITY
    ingress_cert_validity: timedelta = DEFAULT_INGRESS_CERT_VALIDITY
    check_interval: timedelta = DEFAULT_CHECK_INTERVAL
    rotation_wait: timedelta = DEFAULT_ROTATION_WAIT
    ca_common_name: str = CA_COMMON_NAME
    ca_validity: timedelta = CA_VALIDITY
    default_vault_token: Optional[SecretStr] = None
    log_level: str = "info"

    @field_validator(
        "service_cert_validity",
        "ingress_cert_validity",
        "check_interval",
        "rotation_wait",
        "ca_validity",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> timedelta:
        """Accept durations such as "24h", "1h30m" or a number of seconds."""
        return parse_duration(value)

    @field_validator("key_bit_size", mode="after")
    @classmethod
    def _check_key_bit_size(cls, value: int) -> int:
        """Check the key size is one the issuers support.

        Raises:
            ValueError: if the size is not supported
        """
        if value not in SUPPORTED_KEY_BIT_SIZES:
            raise ValueError(f"must be one of {SUPPORTED_KEY_BIT_SIZES}")
        return value

    @field_validator("log_level", mode="after")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        """Check the log level is a known one.

        Raises:
            ValueError: if the level is unknown
        """
        if value.lower() not in VALID_LOG_LEVELS:
            raise ValueError(f"must be one of {VALID_LOG_LEVELS}")
        return value.lower()

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "TrustSettings":
        """Read settings from a YAML file and the environment.

        Keys in the file may use dashes or underscores. Environment variables
        named ``MESH_TRUST_<OPTION>`` override the file.

        Args:
            path: optional YAML settings file
            environ: environment to read, os.environ when None

        Returns:
            the validated settings

        Raises:
            ValueError: naming the first invalid option
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        if path:
            loaded = yaml.safe_load(Path(path).read_text()) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Settings file {path} must hold a mapping")
            values.update({str(k).replace("-", "_"): v for k, v in loaded.items()})
        for field in cls.model_fields:
            env_key = f"{SETTINGS_ENV_PREFIX}{field.upper()}"
            if env_key in environ:
                values[field] = environ[env_key]
        try:
            return cls(**values)
        except ValidationError as e:
            error = e.errors()[0]
            option = ".".join(str(p) for p in error["loc"]) or "settings"
            raise ValueError(f"Invalid value for option '{option}': {error['msg']}") from e

    def vault_token(self) -> Optional[str]:
        """Return the default Vault token in clear."""
        return self.default_vault_token.get_secret_value() if self.default_vault_token else None

    def provider_generator(self, store: KubeStore, **kwargs: Any) -> ProviderGenerator:
        """Build a ProviderGenerator configured from these settings."""
        return ProviderGenerator(
            store,
            namespace=self.namespace,
            key_bit_size=self.key_bit_size,
            ca_common_name=self.ca_common_name,
            ca_validity=self.ca_validity,
            default_vault_token=self.vault_token(),
            **kwargs,
        )

    def mrc_client(self, store: KubeStore) -> MRCClient:
        """Build an MRCClient scoped to the mesh namespace."""
        validator = MRCStateValidator(has_default_vault_token=bool(self.vault_token()))
        return MRCClient(store, validator, namespace=self.namespace)

    def certificate_manager(self, store: KubeStore) -> CertificateManager:
        """Build a CertificateManager wired to the store."""
        return CertificateManager(
            self.provider_generator(store),
            mrc_client=self.mrc_client(store),
            check_interval=self.check_interval,
            service_cert_validity=self.service_cert_validity,
            ingress_cert_validity=self.ingress_cert_validity,
        )

    def rotation_orchestrator(
        self, store: KubeStore, confirm: Confirm, delete_old: bool = False
    ) -> RotationOrchestrator:
        """Build a RotationOrchestrator wired to the store."""
        return RotationOrchestrator(
            self.mrc_client(store),
            confirm=confirm,
            wait=self.rotation_wait,
            delete_old=delete_old,
            namespace=self.namespace,
        )
