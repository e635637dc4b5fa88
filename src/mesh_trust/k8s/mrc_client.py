# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Validated access to MeshRootCertificate resources."""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from mesh_trust.errors import TrustError
from mesh_trust.k8s.store import Conflict, KubeStore, NotFound, StoreError
from mesh_trust.literals import STATUS_UPDATE_ATTEMPTS
from mesh_trust.models import MeshRootCertificate, MRCState
from mesh_trust.validator import MRCStateValidator

log = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclasses.dataclass(frozen=True)
class MRCEvent:
    """A change to one MeshRootCertificate.

    Attributes:
        type (str): ADDED, MODIFIED or DELETED
        mrc (MeshRootCertificate): the MRC after the change
    """

    type: str
    mrc: MeshRootCertificate


class MRCClient:
    """List, watch and change MeshRootCertificates through the state validator."""

    def __init__(
        self,
        store: KubeStore,
        validator: Optional[MRCStateValidator] = None,
        clock: Callable[[], datetime] = _utcnow,
        namespace: Optional[str] = None,
    ):
        """Initialise the MRCClient.

        Args:
            store: backing store holding the MRCs
            validator: admission rules, the defaults when None
            clock: source of transition timestamps
            namespace: namespace of the mesh whose MRCs are listed and watched,
                every namespace when None
        """
        self.store = store
        self.validator = validator or MRCStateValidator()
        self.clock = clock
        self.namespace = namespace

    def list(self, namespace: Optional[str] = None) -> List[MeshRootCertificate]:
        """Return the mesh's MeshRootCertificates, sorted by namespace and name.

        Args:
            namespace: namespace to list, the client's own when None
        """
        raws = self.store.list_mrcs(namespace or self.namespace)
        mrcs = [MeshRootCertificate.from_dict(raw) for raw in raws]
        return sorted(mrcs, key=lambda m: m.key)

    def get(self, namespace: str, name: str) -> MeshRootCertificate:
        """Return one MeshRootCertificate.

        Raises:
            NotFound: if it does not exist
        """
        return MeshRootCertificate.from_dict(self.store.get_mrc(namespace, name))

    def create(self, mrc: MeshRootCertificate) -> MeshRootCertificate:
        """Create a MeshRootCertificate after validating it.

        Args:
            mrc: the MRC to create, normally in state inactive

        Returns:
            the stored MRC

        Raises:
            InvalidProviderConfig: if the MRC spec is incomplete
            IllegalTransition: if the MRC is not inactive
            InvariantViolation: if a rotation is already in progress
            AlreadyExists: if the name is taken
        """
        self.validator.validate_create(mrc, self.list(mrc.namespace))
        created = self.store.create_mrc(mrc.to_dict())
        log.info("Created MeshRootCertificate %s", mrc.namespaced_name)
        return MeshRootCertificate.from_dict(created)

    def update_state(self, namespace: str, name: str, state: MRCState) -> MeshRootCertificate:
        """Move a MeshRootCertificate to a new state.

        The stored MRC is re-read and re-validated whenever the conditional
        write loses a race with another writer.

        Args:
            namespace: MRC namespace
            name: MRC name
            state: the state to move to

        Returns:
            the updated MRC

        Raises:
            IllegalTransition: if the transition is not allowed
            InvariantViolation: if it would add a third MRC to the active track
            Conflict: if every attempt raced with another writer
        """
        for attempt in Retrying(
            retry=retry_if_exception_type(Conflict),
            stop=stop_after_attempt(STATUS_UPDATE_ATTEMPTS),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                current = self.get(namespace, name)
                proposed = current.with_state(state, self.clock())
                self.validator.validate_update(current, proposed, self.list(namespace))
                raw = self.store.patch_mrc_status(
                    namespace,
                    name,
                    proposed.to_dict()["status"],
                    resource_version=current.resource_version,
                )
        log.info(
            "MeshRootCertificate %s/%s moved from %s to %s",
            namespace,
            name,
            current.state.value,
            state.value,
        )
        return MeshRootCertificate.from_dict(raw)

    def delete(self, namespace: str, name: str) -> None:
        """Delete an inactive or failed MeshRootCertificate.

        The backing secret of a Tresor MRC is removed as well, unless another
        MRC points at the same secret.

        Raises:
            IllegalTransition: if the MRC is on the active track
            NotFound: if it does not exist
        """
        mrc = self.get(namespace, name)
        self.validator.validate_delete(mrc)
        self.store.delete_mrc(namespace, name)
        log.info("Deleted MeshRootCertificate %s", mrc.namespaced_name)

        secret = mrc.tresor_secret()
        if secret is None:
            return
        sharing = [m.namespaced_name for m in self.list() if m.tresor_secret() == secret]
        if sharing:
            log.info(
                "Keeping secret %s/%s, still referenced by %s", *secret, ", ".join(sharing)
            )
            return
        try:
            self.store.delete_secret(*secret)
        except NotFound:
            log.info("Secret %s/%s already removed", *secret)
        except StoreError:
            log.exception("Failed to clean up secret %s/%s", *secret)

    def watch(self, namespace: Optional[str] = None) -> Iterator[MRCEvent]:
        """Yield an MRCEvent for every change to a MeshRootCertificate.

        Only the client's namespace is watched unless namespace is given.
        Resources that cannot be parsed are logged and skipped.
        """
        for op, raw in self.store.watch_mrcs(namespace or self.namespace):
            try:
                mrc = MeshRootCertificate.from_dict(raw)
            except TrustError:
                name = (raw.get("metadata") or {}).get("name")
                log.exception("Ignoring invalid MeshRootCertificate %s", name)
                continue
            yield MRCEvent(op, mrc)
