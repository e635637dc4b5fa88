# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Drive a root certificate rotation from one MeshRootCertificate to another.

The incumbent (active) and candidate (inactive) MRCs move through the
rotation states in four steps. Each step waits for a confirmation, is
checked against the state validator before anything is written, and is
followed by a pause so proxies can pick up the new trust bundle.
"""

import dataclasses
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import yaml

from mesh_trust.errors import RotationError
from mesh_trust.k8s.mrc_client import MRCClient
from mesh_trust.k8s.store import NotFound
from mesh_trust.literals import (
    CA_SECRET_NAME_PREFIX,
    DEFAULT_MRC_NAME,
    DEFAULT_NAMESPACE,
    DEFAULT_ROTATION_WAIT,
)
from mesh_trust.models import (
    MeshRootCertificate,
    MRCState,
    OperatorRole,
    SecretReference,
    TresorCA,
    TresorProvider,
    operator_role,
)
from mesh_trust.utils import format_duration, generate_suffix

log = logging.getLogger(__name__)

Confirm = Callable[[str], bool]
MRCKey = Tuple[str, str]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclasses.dataclass(frozen=True)
class RotationStep:
    """One confirmed step of a rotation.

    Attributes:
        name (str): operator facing step name
        target (str): "candidate" or "incumbent"
        states (Tuple[MRCState, ...]): states the target moves through, in order
    """

    name: str
    target: str
    states: Tuple[MRCState, ...]


CANDIDATE_PATH = (
    MRCState.INACTIVE,
    MRCState.VALIDATING_ROLLOUT,
    MRCState.ISSUING_ROLLOUT,
    MRCState.ACTIVE,
)
INCUMBENT_PATH = (
    MRCState.ACTIVE,
    MRCState.VALIDATING_ROLLBACK,
    MRCState.ISSUING_ROLLBACK,
    MRCState.INACTIVE,
)

STEPS = (
    RotationStep(
        "promote-to-passive",
        "candidate",
        (MRCState.VALIDATING_ROLLOUT, MRCState.ISSUING_ROLLOUT),
    ),
    RotationStep("promote-to-active", "candidate", (MRCState.ACTIVE,)),
    RotationStep(
        "demote-to-passive",
        "incumbent",
        (MRCState.VALIDATING_ROLLBACK, MRCState.ISSUING_ROLLBACK),
    ),
    RotationStep("demote-to-inactive", "incumbent", (MRCState.INACTIVE,)),
)


@dataclasses.dataclass
class RotationResult:
    """Outcome of a rotation run.

    Attributes:
        incumbent (MeshRootCertificate): the MRC being retired, as last written
        candidate (MeshRootCertificate): the MRC being rolled out, as last written
        completed (List[str]): names of the committed steps
        aborted (bool): whether a confirmation was declined
        deleted (bool): whether the incumbent was deleted
    """

    incumbent: MeshRootCertificate
    candidate: MeshRootCertificate
    completed: List[str] = dataclasses.field(default_factory=list)
    aborted: bool = False
    deleted: bool = False


class RotationOrchestrator:
    """Rotate the mesh from its active root to a candidate root."""

    def __init__(
        self,
        mrc_client: MRCClient,
        confirm: Confirm = lambda _: True,
        wait: timedelta = DEFAULT_ROTATION_WAIT,
        sleep: Callable[[float], None] = time.sleep,
        delete_old: bool = False,
        namespace: str = DEFAULT_NAMESPACE,
    ):
        """Initialise the RotationOrchestrator.

        Args:
            mrc_client: validated access to the MRCs
            confirm: asked before every step, the rotation stops on False
            wait: propagation pause after every step
            sleep: used for the propagation pause
            delete_old: offer to delete the incumbent once it is inactive
            namespace: control-plane namespace holding the MRCs
        """
        self.mrc_client = mrc_client
        self.confirm = confirm
        self.wait = wait
        self.sleep = sleep
        self.delete_old = delete_old
        self.namespace = namespace

    def find_active_root(self) -> MeshRootCertificate:
        """Return the single active MRC.

        Raises:
            RotationError: if no MRC or several MRCs are active, or if another
                MRC is already part of a rotation
        """
        mrcs = self.mrc_client.list(self.namespace)
        active = [m for m in mrcs if operator_role(m.state) == OperatorRole.ACTIVE]
        passive = [m for m in mrcs if operator_role(m.state) == OperatorRole.PASSIVE]
        if not active:
            raise RotationError(f"No active MeshRootCertificate found in {self.namespace}")
        if len(active) > 1 or passive:
            names = ", ".join(m.namespaced_name for m in active + passive)
            raise RotationError(f"A root rotation appears to be in progress between {names}")
        log.info("Active MeshRootCertificate is %s", active[0].namespaced_name)
        return active[0]

    def create_or_select_candidate(
        self,
        incumbent: MeshRootCertificate,
        name: Optional[str] = None,
        manifest: Optional[Union[str, Path]] = None,
        trust_domain: Optional[str] = None,
    ) -> MeshRootCertificate:
        """Return the inactive MRC the mesh rotates to.

        Args:
            incumbent: the active MRC
            name: use this existing MRC
            manifest: create the MRC described by this YAML file
            trust_domain: trust domain of a generated Tresor candidate

        Returns:
            the candidate MRC

        Raises:
            RotationError: if the candidate is not usable or cannot be generated
        """
        if name:
            try:
                candidate = self.mrc_client.get(self.namespace, name)
            except NotFound as e:
                raise RotationError(
                    f"MeshRootCertificate {self.namespace}/{name} not found"
                ) from e
            self._require_inactive(candidate)
            return candidate

        if manifest:
            candidate = self._load_manifest(Path(manifest))
            self._require_inactive(candidate)
            try:
                self.mrc_client.get(candidate.namespace, candidate.name)
            except NotFound:
                return self.mrc_client.create(candidate)
            raise RotationError(
                f"MeshRootCertificate {candidate.namespaced_name} already exists, "
                "select it by name instead"
            )

        if not isinstance(incumbent.spec.provider, TresorProvider):
            raise RotationError(
                f"A {incumbent.spec.provider_kind} root cannot be generated, "
                "name an existing MeshRootCertificate or pass a manifest"
            )
        suffix = generate_suffix()
        ref = incumbent.spec.provider.ca.secret_ref
        provider = TresorProvider(
            ca=TresorCA(
                secret_ref=SecretReference(
                    name=f"{CA_SECRET_NAME_PREFIX}-{suffix}", namespace=ref.namespace
                )
            )
        )
        spec = incumbent.spec.model_copy(
            update={
                "provider": provider,
                "trust_domain": trust_domain or incumbent.spec.trust_domain,
            }
        )
        candidate = MeshRootCertificate(
            name=f"{DEFAULT_MRC_NAME}-{suffix}", namespace=incumbent.namespace, spec=spec
        )
        return self.mrc_client.create(candidate)

    def _load_manifest(self, path: Path) -> MeshRootCertificate:
        try:
            raw = yaml.safe_load(path.read_text())
        except (OSError, yaml.YAMLError) as e:
            raise RotationError(f"Failed to read MeshRootCertificate manifest {path}: {e}") from e
        if not isinstance(raw, dict):
            raise RotationError(f"Manifest {path} does not describe a MeshRootCertificate")
        raw.setdefault("metadata", {}).setdefault("namespace", self.namespace)
        return MeshRootCertificate.from_dict(raw)

    @staticmethod
    def _require_inactive(mrc: MeshRootCertificate) -> None:
        if mrc.state != MRCState.INACTIVE:
            raise RotationError(
                f"Candidate {mrc.namespaced_name} must be {MRCState.INACTIVE.value}, "
                f"it is {mrc.state.value}"
            )

    def check_steps(
        self,
        pairs: Sequence[Tuple[MeshRootCertificate, Sequence[MRCState]]],
    ) -> None:
        """Validate state changes against the stored MRCs without writing.

        Args:
            pairs: each MRC with the states it moves through, in order

        Raises:
            IllegalTransition: if any change breaks the rotation protocol
            InvariantViolation: if any change overloads the active track
        """
        snapshot: Dict[MRCKey, MeshRootCertificate] = {
            m.key: m for m in self.mrc_client.list(self.namespace)
        }
        validator = self.mrc_client.validator
        for mrc, states in pairs:
            current = snapshot.get(mrc.key, mrc)
            for state in states:
                proposed = current.with_state(state)
                validator.validate_update(current, proposed, snapshot.values())
                snapshot[mrc.key] = current = proposed

    def _apply(self, mrc: MeshRootCertificate, states: Sequence[MRCState]) -> MeshRootCertificate:
        self.check_steps([(mrc, states)])
        for state in states:
            mrc = self.mrc_client.update_state(mrc.namespace, mrc.name, state)
        return mrc

    def promote_to_passive(self, candidate: MeshRootCertificate) -> MeshRootCertificate:
        """Add the candidate's root to the trust bundle without signing with it."""
        return self._apply(candidate, STEPS[0].states)

    def promote_to_active(self, candidate: MeshRootCertificate) -> MeshRootCertificate:
        """Start signing with the candidate's root."""
        return self._apply(candidate, STEPS[1].states)

    def demote_to_passive(self, incumbent: MeshRootCertificate) -> MeshRootCertificate:
        """Stop signing with the incumbent's root, keeping it trusted."""
        return self._apply(incumbent, STEPS[2].states)

    def demote_to_inactive(self, incumbent: MeshRootCertificate) -> MeshRootCertificate:
        """Drop the incumbent's root from the trust bundle."""
        return self._apply(incumbent, STEPS[3].states)

    def delete_incumbent(self, incumbent: MeshRootCertificate) -> None:
        """Delete the retired MRC; its secret is kept while another MRC uses it."""
        self.mrc_client.delete(incumbent.namespace, incumbent.name)

    def find_rotation_in_progress(self) -> Tuple[MeshRootCertificate, MeshRootCertificate]:
        """Return the (incumbent, candidate) pair of an interrupted rotation.

        Raises:
            RotationError: if no rotation is in progress
        """
        on_track = [
            m
            for m in self.mrc_client.list(self.namespace)
            if operator_role(m.state) != OperatorRole.INACTIVE
        ]
        rolling_back = [m for m in on_track if m.state in INCUMBENT_PATH[1:3]]
        rolling_out = [m for m in on_track if m.state in CANDIDATE_PATH[1:3]]
        active = sorted(
            (m for m in on_track if m.state == MRCState.ACTIVE),
            key=lambda m: (m.status.last_transition_time or _EPOCH, m.namespaced_name),
        )
        if len(on_track) == 2:
            if len(active) == 2:
                return active[0], active[1]
            if len(active) == 1 and len(rolling_out) == 1:
                return active[0], rolling_out[0]
            if len(active) == 1 and len(rolling_back) == 1:
                return rolling_back[0], active[0]
        names = ", ".join(m.namespaced_name for m in on_track) or "none"
        raise RotationError(f"No root rotation in progress (MRCs on the active track: {names})")

    def run(
        self,
        name: Optional[str] = None,
        manifest: Optional[Union[str, Path]] = None,
        trust_domain: Optional[str] = None,
    ) -> RotationResult:
        """Rotate from the active root to a candidate.

        Declining a confirmation stops the rotation. Committed steps are kept
        and the rotation can be picked up again with resume().

        Args:
            name: existing candidate MRC
            manifest: YAML file describing the candidate MRC
            trust_domain: trust domain of a generated Tresor candidate

        Returns:
            the outcome, with both MRCs as last written

        Raises:
            RotationError: if no rotation can be started
            IllegalTransition: if a step breaks the rotation protocol
            InvariantViolation: if a step overloads the active track
        """
        incumbent = self.find_active_root()
        candidate = self.create_or_select_candidate(incumbent, name, manifest, trust_domain)
        return self._drive(incumbent, candidate)

    def resume(self) -> RotationResult:
        """Finish a rotation that was stopped part way.

        Raises:
            RotationError: if no rotation is in progress
        """
        incumbent, candidate = self.find_rotation_in_progress()
        log.info(
            "Resuming rotation from %s (%s) to %s (%s)",
            incumbent.namespaced_name,
            incumbent.state.value,
            candidate.namespaced_name,
            candidate.state.value,
        )
        return self._drive(incumbent, candidate)

    def _drive(
        self, incumbent: MeshRootCertificate, candidate: MeshRootCertificate
    ) -> RotationResult:
        result = RotationResult(incumbent=incumbent, candidate=candidate)
        mrcs = {"incumbent": incumbent, "candidate": candidate}
        plan = [(step, remaining_states(step, mrcs[step.target])) for step in STEPS]
        plan = [(step, states) for step, states in plan if states]
        self.check_steps([(mrcs[step.target], states) for step, states in plan])

        for index, (step, states) in enumerate(plan):
            target = mrcs[step.target]
            prompt = (
                f"{step.name}: move {step.target} {target.namespaced_name} from "
                f"{operator_role(target.state).value} to {operator_role(states[-1]).value}?"
            )
            if not self.confirm(prompt):
                log.info("Rotation stopped before %s", step.name)
                result.aborted = True
                return result
            mrcs[step.target] = self._apply(target, states)
            result.incumbent, result.candidate = mrcs["incumbent"], mrcs["candidate"]
            result.completed.append(step.name)
            log.info("Completed %s for %s", step.name, target.namespaced_name)
            if index < len(plan) - 1 or self.delete_old:
                log.info("Waiting %s for proxies to converge", format_duration(self.wait))
                self.sleep(self.wait.total_seconds())

        if self.delete_old:
            prompt = f"delete: remove retired {result.incumbent.namespaced_name}?"
            if not self.confirm(prompt):
                result.aborted = True
                return result
            self.delete_incumbent(result.incumbent)
            result.deleted = True
        return result


def remaining_states(step: RotationStep, mrc: MeshRootCertificate) -> Tuple[MRCState, ...]:
    """Return the states of step that mrc has not gone through yet.

    Raises:
        RotationError: if mrc is in a state that is not on its rotation path
    """
    path = CANDIDATE_PATH if step.target == "candidate" else INCUMBENT_PATH
    if mrc.state not in path:
        raise RotationError(
            f"{step.target.capitalize()} {mrc.namespaced_name} is {mrc.state.value}, "
            "which is not part of a rotation"
        )
    position = path.index(mrc.state)
    return tuple(s for s in step.states if path.index(s) > position)
