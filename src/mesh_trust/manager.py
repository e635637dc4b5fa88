# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Certificate manager.

Tracks one issuer per MeshRootCertificate, decides which of them signs and
which are only trusted, and issues, caches and renews leaf certificates.
"""

import dataclasses
import logging
import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, wait_exponential

from mesh_trust.certificate import Certificate, merge_pem_bundles
from mesh_trust.errors import NoActiveIssuer, TrustError
from mesh_trust.k8s.mrc_client import DELETED, MRCClient, MRCEvent
from mesh_trust.k8s.store import StoreError
from mesh_trust.literals import (
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_INGRESS_CERT_VALIDITY,
    DEFAULT_SERVICE_CERT_VALIDITY,
    INTERNAL_CERT_VALIDITY,
    MIN_ROTATE_BEFORE_EXPIRY,
    ROTATION_JITTER_SECONDS,
    VALIDITY_FRACTION_BEFORE_ROTATE,
    WATCH_RETRY_MAX_WAIT,
)
from mesh_trust.models import IssuerRole, MeshRootCertificate, MRCState
from mesh_trust.options import CertType, IssueOptions, for_common_name_prefix
from mesh_trust.providers import Issuer
from mesh_trust.providers.generator import ProviderGenerator

log = logging.getLogger(__name__)

RotationCallback = Callable[[Certificate], None]
MRCKey = Tuple[str, str]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclasses.dataclass(frozen=True)
class IssuerEntry:
    """An MRC together with the issuer built for it.

    Attributes:
        mrc (MeshRootCertificate): the MRC as last observed
        issuer (Issuer): issuer signing under the MRC's root
        ca_pem (bytes): the MRC's root CA
    """

    mrc: MeshRootCertificate
    issuer: Issuer
    ca_pem: bytes

    @property
    def id(self) -> str:
        """Identity of the issuer."""
        return self.mrc.namespaced_name


@dataclasses.dataclass(frozen=True)
class Registry:
    """Immutable snapshot of every known issuer.

    Attributes:
        entries (Mapping[MRCKey, IssuerEntry]): issuers keyed by (namespace, name)
    """

    entries: Mapping[MRCKey, IssuerEntry] = dataclasses.field(default_factory=dict)

    def signing(self) -> Optional[IssuerEntry]:
        """Return the issuer that signs new certificates.

        With two active MRCs the most recently activated one signs; ties are
        broken by name.
        """
        signers = [e for e in self.entries.values() if e.mrc.role == IssuerRole.SIGNING]
        if not signers:
            return None
        latest = max(e.mrc.status.last_transition_time or _EPOCH for e in signers)
        return min(
            (e for e in signers if (e.mrc.status.last_transition_time or _EPOCH) == latest),
            key=lambda e: e.id,
        )

    def trusted(self) -> List[IssuerEntry]:
        """Return every issuer whose root belongs in the trust bundle."""
        return sorted(
            (e for e in self.entries.values() if e.mrc.role != IssuerRole.RETIRED),
            key=lambda e: e.id,
        )

    @property
    def signing_id(self) -> str:
        """Identity of the signing issuer, empty when none signs."""
        signer = self.signing()
        return signer.id if signer else ""

    @property
    def validating_id(self) -> str:
        """Identity of the current trust bundle."""
        return ",".join(e.id for e in self.trusted())

    def with_entry(self, entry: IssuerEntry) -> "Registry":
        """Return a snapshot including entry."""
        return Registry({**self.entries, entry.mrc.key: entry})

    def without(self, key: MRCKey) -> "Registry":
        """Return a snapshot excluding key."""
        return Registry({k: v for k, v in self.entries.items() if k != key})


class CertificateManager:
    """Issue leaf certificates with whichever MRC currently signs."""

    def __init__(
        self,
        generator: ProviderGenerator,
        mrc_client: Optional[MRCClient] = None,
        check_interval: timedelta = DEFAULT_CHECK_INTERVAL,
        service_cert_validity: timedelta = DEFAULT_SERVICE_CERT_VALIDITY,
        ingress_cert_validity: timedelta = DEFAULT_INGRESS_CERT_VALIDITY,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        jitter: Callable[[], float] = lambda: random.uniform(0, ROTATION_JITTER_SECONDS),
        watch_retry_max_wait: timedelta = WATCH_RETRY_MAX_WAIT,
    ):
        """Initialise the CertificateManager.

        Args:
            generator: builds issuers from MRC provider specs
            mrc_client: used to watch MRCs and flag failed ones
            check_interval: how often cached certificates are checked for renewal
            service_cert_validity: default validity of service certificates
            ingress_cert_validity: default validity of ingress gateway certificates
            clock: current time source
            jitter: seconds added to the renewal window, spreading renewals
            watch_retry_max_wait: longest pause before re-establishing a broken watch
        """
        self.generator = generator
        self.mrc_client = mrc_client
        self.check_interval = check_interval
        self.validities = {
            CertType.INTERNAL: INTERNAL_CERT_VALIDITY,
            CertType.SERVICE: service_cert_validity,
            CertType.INGRESS_GATEWAY: ingress_cert_validity,
        }
        self._clock = clock
        self._jitter = jitter
        self.watch_retry_max_wait = watch_retry_max_wait

        self._registry = Registry()
        self._registry_lock = threading.Lock()
        self._cache: Dict[str, Certificate] = {}
        self._options: Dict[str, IssueOptions] = {}
        self._cache_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._subscribers: Dict[str, List[RotationCallback]] = {}
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # Registry

    @property
    def registry(self) -> Registry:
        """Current registry snapshot."""
        return self._registry

    def on_mrc_event(self, event: MRCEvent) -> None:
        """Update the registry for an added, changed or deleted MRC.

        Issuers are rebuilt only when the provider spec changes; a state change
        just re-evaluates the MRC's role. Issuers are built without holding the
        registry lock, so a slow backend never delays other MRCs' updates.

        Args:
            event: the MRC change
        """
        mrc = event.mrc
        if event.type == DELETED or mrc.state == MRCState.ERROR:
            with self._registry_lock:
                current = self._registry
                if mrc.key in current.entries:
                    self._swap(current.without(mrc.key), f"removed {mrc.namespaced_name}")
            return

        while True:
            built = None
            if not self._has_issuer(self._registry, mrc):
                built = self._build_entry(mrc)
                if built is None:
                    return
            with self._registry_lock:
                current = self._registry
                if self._has_issuer(current, mrc):
                    entry = dataclasses.replace(current.entries[mrc.key], mrc=mrc)
                elif built is not None:
                    entry = built
                else:
                    # replaced by an entry for another spec while unlocked
                    continue
                self._swap(
                    current.with_entry(entry), f"{mrc.namespaced_name} is {mrc.state.value}"
                )
                return

    @staticmethod
    def _has_issuer(registry: Registry, mrc: MeshRootCertificate) -> bool:
        existing = registry.entries.get(mrc.key)
        return existing is not None and existing.mrc.spec == mrc.spec

    def _build_entry(self, mrc: MeshRootCertificate) -> Optional[IssuerEntry]:
        try:
            issuer, ca_pem = self.generator.get_issuer_for_mrc(mrc)
        except TrustError:
            log.exception("Failed to build issuer for MeshRootCertificate %s", mrc.namespaced_name)
            if mrc.state == MRCState.INACTIVE and self.mrc_client is not None:
                self._mark_failed(mrc)
            return None
        log.info("Built %s issuer for %s", mrc.spec.provider_kind, mrc.namespaced_name)
        return IssuerEntry(mrc, issuer, ca_pem)

    def _mark_failed(self, mrc: MeshRootCertificate) -> None:
        try:
            self.mrc_client.update_state(mrc.namespace, mrc.name, MRCState.ERROR)  # type: ignore
        except TrustError:
            log.exception("Failed to move MeshRootCertificate %s to error", mrc.namespaced_name)

    def _swap(self, registry: Registry, reason: str) -> None:
        before = self._registry
        self._registry = registry
        log.info(
            "Issuers updated (%s): signing=%s trusted=%s",
            reason,
            registry.signing_id or "<none>",
            registry.validating_id or "<none>",
        )
        if before.signing_id != registry.signing_id:
            log.info(
                "Signing issuer changed from %s to %s", before.signing_id, registry.signing_id
            )

    def sync(self) -> None:
        """Load every stored MRC and drop issuers for MRCs that are gone."""
        if self.mrc_client is None:
            return
        mrcs = self.mrc_client.list()
        seen = {m.key for m in mrcs}
        for mrc in mrcs:
            self.on_mrc_event(MRCEvent("ADDED", mrc))
        with self._registry_lock:
            stale = [k for k in self._registry.entries if k not in seen]
            for key in stale:
                self._swap(self._registry.without(key), f"removed {key[0]}/{key[1]}")

    def watch(self) -> None:
        """Apply MRC events until stopped or the watch ends.

        A broken watch is re-established with an exponential backoff, and the
        registry is re-synced first so events missed in between are not lost.
        """
        if self.mrc_client is None:
            return
        for attempt in Retrying(
            retry=retry_if_exception_type(StoreError),
            stop=lambda _: self._stop.is_set(),
            wait=wait_exponential(max=self.watch_retry_max_wait.total_seconds()),
            sleep=self._stop.wait,
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.sync()
                self._watch_events()

    def _watch_events(self) -> None:
        for event in self.mrc_client.watch():  # type: ignore
            if self._stop.is_set():
                return
            try:
                self.on_mrc_event(event)
            except Exception:  # pylint: disable=broad-except
                log.exception("Failed to handle event for %s", event.mrc.namespaced_name)

    # Trust

    def get_trusted_cas(self) -> List[Certificate]:
        """Return the roots of every signing or validating issuer."""
        return [Certificate.from_pem(e.ca_pem) for e in self._registry.trusted()]

    def trust_bundle(self) -> bytes:
        """Return the trusted roots as one PEM bundle."""
        return merge_pem_bundles(*(e.ca_pem for e in self._registry.trusted()))

    # Issuance

    def issue_certificate(
        self,
        common_name: str,
        validity: Optional[timedelta] = None,
        options: Optional[IssueOptions] = None,
    ) -> Certificate:
        """Return a certificate for common_name, issuing one when needed.

        Args:
            common_name: common name prefix; the signing MRC's trust domain is
                appended unless the options ask for a full common name
            validity: overrides the default validity for the certificate type
            options: issuance options, defaults to an internal certificate

        Returns:
            the cached certificate, or a freshly signed one

        Raises:
            NoActiveIssuer: if no MRC is active
            CertificateIssueFailed: if the signing backend fails
        """
        options = options or for_common_name_prefix(common_name)
        options = dataclasses.replace(
            options, cn_prefix=common_name, validity=validity or options.validity
        )
        return self.issue(options)

    def issue(self, options: IssueOptions) -> Certificate:
        """Return a certificate for the options, issuing one when needed."""
        key = options.cache_key
        cached = self._cache.get(key)
        if cached is not None and not self.should_rotate(cached):
            return cached

        with self._key_lock(key):
            cached = self._cache.get(key)
            if cached is not None and not self.should_rotate(cached):
                return cached
            cert = self._sign(options)
            with self._cache_lock:
                self._cache[key] = cert
                self._options[key] = options

        if cached is not None:
            log.info(
                "Rotated certificate %s, serial %s -> %s",
                key,
                cached.serial_number,
                cert.serial_number,
            )
            self._notify(key, cert)
        return cert

    def _key_lock(self, key: str) -> threading.Lock:
        with self._cache_lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def _sign(self, options: IssueOptions) -> Certificate:
        registry = self._registry
        signer = registry.signing()
        if signer is None:
            raise NoActiveIssuer("No active MeshRootCertificate to issue certificates with")
        spec = signer.mrc.spec
        bound = options.with_trust_domain(spec.trust_domain, spec.spiffe_enabled)
        cert = signer.issuer.issue_certificate(
            bound.common_name(), options.validity or self.validities[options.cert_type], bound
        )
        roots = [e.ca_pem for e in registry.trusted()]
        return cert.with_trusted_cas(*roots).tagged(
            signing_issuer_id=registry.signing_id,
            validating_issuer_id=registry.validating_id,
            cert_type=options.cert_type.value,
            cache_key=options.cache_key,
        )

    def should_rotate(self, cert: Certificate) -> bool:
        """Return whether a certificate must be re-issued.

        A certificate is renewed when it gets close to expiring, or when it was
        issued under a different signing issuer or trust bundle than the
        current ones.
        """
        registry = self._registry
        if cert.signing_issuer_id != registry.signing_id:
            log.debug("Certificate %s was signed by %s", cert.cache_key, cert.signing_issuer_id)
            return True
        if cert.validating_issuer_id != registry.validating_id:
            log.debug("Certificate %s trusts an outdated bundle", cert.cache_key)
            return True
        validity = cert.validity or MIN_ROTATE_BEFORE_EXPIRY
        renew_before = max(validity / VALIDITY_FRACTION_BEFORE_ROTATE, MIN_ROTATE_BEFORE_EXPIRY)
        renew_before += timedelta(seconds=self._jitter())
        return cert.expiration - self._clock() <= renew_before

    def check_and_rotate(self) -> List[str]:
        """Re-issue every cached certificate that should rotate.

        Returns:
            keys of the rotated certificates
        """
        rotated = []
        for key, cert in self._snapshot():
            if not self.should_rotate(cert):
                continue
            with self._cache_lock:
                options = self._options.get(key)
            if options is None:
                log.debug("Certificate %s was released, not rotating it", key)
                continue
            try:
                self.issue(options)
            except TrustError:
                log.exception("Failed to rotate certificate %s", key)
                continue
            rotated.append(key)
        return rotated

    def _snapshot(self) -> List[Tuple[str, Certificate]]:
        with self._cache_lock:
            return sorted(self._cache.items())

    def release_certificate(self, key: str) -> None:
        """Forget a cached certificate so it is no longer renewed."""
        with self._cache_lock:
            self._cache.pop(key, None)
            self._options.pop(key, None)
            self._key_locks.pop(key, None)
        log.debug("Released certificate %s", key)

    def list_issued_certificates(self) -> List[Certificate]:
        """Return every cached certificate, ordered by key."""
        return [cert for _, cert in self._snapshot()]

    # Rotation notifications

    def subscribe_rotations(self, key: str, callback: RotationCallback) -> Callable[[], None]:
        """Call callback with the new certificate every time key is rotated.

        Returns:
            a function removing the subscription
        """
        with self._cache_lock:
            self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            with self._cache_lock:
                callbacks = self._subscribers.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _notify(self, key: str, cert: Certificate) -> None:
        with self._cache_lock:
            callbacks = list(self._subscribers.get(key, []))
        for callback in callbacks:
            try:
                callback(cert)
            except Exception:  # pylint: disable=broad-except
                log.exception("Rotation subscriber for %s failed", key)

    # Background work

    def start(self) -> None:
        """Start the renewal ticker, and the MRC watch when a client is set."""
        self._stop.clear()
        self.sync()
        targets = [self._tick]
        if self.mrc_client is not None:
            targets.append(self.watch)
        for target in targets:
            thread = threading.Thread(
                target=target, name=f"mesh-trust-{target.__name__}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the renewal ticker.

        The watch thread exits with the next MRC event; it is not waited for.
        """
        self._stop.set()
        for thread in self._threads:
            if thread.name.endswith("_tick"):
                thread.join(timeout)
        self._threads = []

    def _tick(self) -> None:
        while not self._stop.wait(self.check_interval.total_seconds()):
            try:
                rotated = self.check_and_rotate()
            except Exception:  # pylint: disable=broad-except
                log.exception("Certificate renewal check failed")
                continue
            if rotated:
                log.info("Rotated %d certificates", len(rotated))
