# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Unit tests for the rotation orchestrator."""

from datetime import timedelta

import pytest
import yaml
from mocks import NAMESPACE, make_mrc, mrc_dict  # pylint: disable=import-error

from mesh_trust.errors import IllegalTransition, InvariantViolation, RotationError
from mesh_trust.models import MRCState
from mesh_trust.rotation import STEPS, RotationOrchestrator, remaining_states

VAULT = {
    "vault": {
        "host": "vault.internal",
        "port": 8200,
        "protocol": "https",
        "role": "mesh",
        "token": {"secretKeyRef": {"name": "vault-token", "key": "token", "namespace": "osm"}},
    }
}


class Prompter:
    """Confirmation callback answering from a script."""

    def __init__(self, decline_at=None):
        """Decline the prompt starting with decline_at, accept the others."""
        self.decline_at = decline_at
        self.prompts = []

    def __call__(self, prompt):
        """Record the prompt and answer it."""
        self.prompts.append(prompt)
        return not (self.decline_at and prompt.startswith(self.decline_at))


@pytest.fixture
def sleeps():
    """Recorded propagation pauses."""
    return []


@pytest.fixture
def prompter():
    """Prompter accepting everything."""
    return Prompter()


@pytest.fixture
def orchestrator(mrc_client, prompter, sleeps):
    """Orchestrator pausing one minute between steps."""
    return RotationOrchestrator(
        mrc_client, confirm=prompter, wait=timedelta(minutes=1), sleep=sleeps.append
    )


def states(store):
    """Return the stored state of every MRC by name."""
    return {name: raw["status"].get("state") for (_, name), raw in store.mrcs.items()}


def test_find_active_root(orchestrator, store):
    """Exactly one active MRC and no passive ones are required."""
    with pytest.raises(RotationError, match="No active"):
        orchestrator.find_active_root()

    store.add_mrc(mrc_dict("a", "active"))
    assert orchestrator.find_active_root().name == "a"

    store.add_mrc(mrc_dict("b", "issuingRollout"))
    with pytest.raises(RotationError, match="in progress"):
        orchestrator.find_active_root()


def test_run_with_named_candidate(orchestrator, store, prompter, sleeps):
    """A full rotation moves the candidate to active and the incumbent out."""
    store.add_mrc(mrc_dict("a", "active"))
    store.add_mrc(mrc_dict("b"))

    result = orchestrator.run(name="b")

    assert states(store) == {"a": "inactive", "b": "active"}
    assert result.completed == [step.name for step in STEPS]
    assert not result.aborted
    assert result.candidate.state == MRCState.ACTIVE
    assert result.incumbent.state == MRCState.INACTIVE
    assert sleeps == [60.0, 60.0, 60.0]
    assert prompter.prompts[0] == (
        f"promote-to-passive: move candidate {NAMESPACE}/b from inactive to passive?"
    )
    assert prompter.prompts[3] == (
        f"demote-to-inactive: move incumbent {NAMESPACE}/a from passive to inactive?"
    )


def test_declined_step_stops_and_resumes(mrc_client, store, sleeps):
    """Declining keeps committed steps; resume finishes the rotation."""
    store.add_mrc(mrc_dict("a", "active"))
    store.add_mrc(mrc_dict("b"))
    declining = RotationOrchestrator(
        mrc_client, confirm=Prompter("promote-to-active"), sleep=sleeps.append
    )

    result = declining.run(name="b")

    assert result.aborted
    assert result.completed == ["promote-to-passive"]
    assert states(store) == {"a": "active", "b": "issuingRollout"}

    prompter = Prompter()
    resumed = RotationOrchestrator(mrc_client, confirm=prompter, sleep=sleeps.append).resume()

    assert resumed.completed == ["promote-to-active", "demote-to-passive", "demote-to-inactive"]
    assert len(prompter.prompts) == 3
    assert states(store) == {"a": "inactive", "b": "active"}


def test_resume_with_two_active(orchestrator, store):
    """With two active MRCs the older one is retired."""
    store.add_mrc(mrc_dict("a", "active", last_transition_time="2025-01-02T00:00:00Z"))
    store.add_mrc(mrc_dict("b", "active", last_transition_time="2025-01-01T00:00:00Z"))

    incumbent, candidate = orchestrator.find_rotation_in_progress()
    assert (incumbent.name, candidate.name) == ("b", "a")

    orchestrator.resume()
    assert states(store) == {"a": "active", "b": "inactive"}


def test_resume_while_rolling_back(orchestrator, store):
    """A half demoted incumbent is picked up where it stopped."""
    store.add_mrc(mrc_dict("a", "validatingRollback"))
    store.add_mrc(mrc_dict("b", "active"))

    result = orchestrator.resume()

    assert result.completed == ["demote-to-passive", "demote-to-inactive"]
    assert states(store) == {"a": "inactive", "b": "active"}


def test_resume_without_rotation(orchestrator, store):
    """Nothing to resume with a single active MRC."""
    store.add_mrc(mrc_dict("a", "active"))
    with pytest.raises(RotationError, match="No root rotation"):
        orchestrator.resume()


def test_generated_tresor_candidate(orchestrator, store):
    """Without a candidate a fresh Tresor MRC is generated."""
    store.add_mrc(mrc_dict("a", "active"))

    result = orchestrator.run(trust_domain="mesh.example")

    candidate = result.candidate
    assert candidate.name.startswith("osm-mesh-root-certificate-")
    assert candidate.spec.trust_domain == "mesh.example"
    namespace, secret = candidate.tresor_secret()
    assert namespace == NAMESPACE
    assert secret.startswith("mesh-ca-bundle-")
    assert secret[len("mesh-ca-bundle-") :] == candidate.name[len("osm-mesh-root-certificate-") :]
    assert states(store)[candidate.name] == "active"


def test_non_tresor_incumbent_needs_candidate(orchestrator, store):
    """Only Tresor roots can be generated."""
    store.add_mrc(mrc_dict("a", "active", provider=VAULT))
    with pytest.raises(RotationError, match="vault"):
        orchestrator.run()


def test_manifest_candidate(orchestrator, store, tmp_path):
    """A manifest candidate is created in the control-plane namespace."""
    store.add_mrc(mrc_dict("a", "active"))
    raw = mrc_dict("m")
    del raw["metadata"]["namespace"]
    del raw["status"]
    manifest = tmp_path / "mrc.yaml"
    manifest.write_text(yaml.safe_dump(raw))

    result = orchestrator.run(manifest=manifest)

    assert result.candidate.namespaced_name == f"{NAMESPACE}/m"
    assert states(store) == {"a": "inactive", "m": "active"}

    with pytest.raises(RotationError, match="already exists"):
        orchestrator.create_or_select_candidate(result.candidate, manifest=manifest)


def test_unreadable_manifest(orchestrator, tmp_path):
    """A manifest must exist and hold a mapping."""
    incumbent = make_mrc("a", "active")
    with pytest.raises(RotationError):
        orchestrator.create_or_select_candidate(incumbent, manifest=tmp_path / "missing.yaml")
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n")
    with pytest.raises(RotationError):
        orchestrator.create_or_select_candidate(incumbent, manifest=listing)


def test_candidate_must_be_inactive(orchestrator, store):
    """Named candidates must exist and be inactive."""
    store.add_mrc(mrc_dict("a", "active"))
    store.add_mrc(mrc_dict("b", "error"))
    incumbent = orchestrator.find_active_root()

    with pytest.raises(RotationError, match="must be inactive"):
        orchestrator.create_or_select_candidate(incumbent, name="b")
    with pytest.raises(RotationError, match="not found"):
        orchestrator.create_or_select_candidate(incumbent, name="missing")


def test_delete_old(mrc_client, store, sleeps):
    """The retired MRC and its secret are deleted once confirmed."""
    store.add_mrc(mrc_dict("a", "active", secret="ca-a"))
    store.add_mrc(mrc_dict("b", secret="ca-b"))
    store.create_secret(NAMESPACE, "ca-a", {"ca.crt": b"pem"})
    store.create_secret(NAMESPACE, "ca-b", {"ca.crt": b"pem"})
    prompter = Prompter()
    orchestrator = RotationOrchestrator(
        mrc_client, confirm=prompter, sleep=sleeps.append, delete_old=True
    )

    result = orchestrator.run(name="b")

    assert result.deleted
    assert states(store) == {"b": "active"}
    assert list(store.secrets) == [(NAMESPACE, "ca-b")]
    assert prompter.prompts[-1].startswith("delete:")
    assert len(sleeps) == 4


def test_delete_old_declined(mrc_client, store, sleeps):
    """Declining the delete keeps the retired MRC."""
    store.add_mrc(mrc_dict("a", "active"))
    store.add_mrc(mrc_dict("b"))
    orchestrator = RotationOrchestrator(
        mrc_client, confirm=Prompter("delete"), sleep=sleeps.append, delete_old=True
    )

    result = orchestrator.run(name="b")

    assert result.aborted
    assert not result.deleted
    assert states(store) == {"a": "inactive", "b": "active"}


def test_check_steps_writes_nothing(orchestrator, store):
    """Invalid plans are refused before the first write."""
    store.add_mrc(mrc_dict("a", "active"))
    store.add_mrc(mrc_dict("b", "validatingRollout"))
    store.add_mrc(mrc_dict("c"))
    before = dict(states(store))

    with pytest.raises(IllegalTransition):
        orchestrator.check_steps([(make_mrc("c"), [MRCState.ACTIVE])])
    with pytest.raises(InvariantViolation):
        orchestrator.check_steps([(make_mrc("c"), [MRCState.VALIDATING_ROLLOUT])])
    with pytest.raises(InvariantViolation):
        orchestrator.promote_to_passive(make_mrc("c"))
    assert states(store) == before


def test_remaining_states():
    """Steps already taken are skipped; off-path states are refused."""
    promote = STEPS[0]
    assert remaining_states(promote, make_mrc("b")) == (
        MRCState.VALIDATING_ROLLOUT,
        MRCState.ISSUING_ROLLOUT,
    )
    assert remaining_states(promote, make_mrc("b", "validatingRollout")) == (
        MRCState.ISSUING_ROLLOUT,
    )
    assert remaining_states(promote, make_mrc("b", "active")) == ()
    with pytest.raises(RotationError):
        remaining_states(promote, make_mrc("b", "validatingRollback"))
