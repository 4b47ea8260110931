from types import SimpleNamespace

import pytest

from zkbridge.core.errors import ProofGenerationFailed
from zkbridge.infrastructure.zkp.witness import (
    AttestationInvalid,
    AttestationWitnessSource,
    StaticWitnessSource,
    issue_attestation,
    witness_source_from_settings,
)
from zkbridge.schemas.bridge import Role

SECRETS = {Role.AGENT: "agent-secret", Role.BANK: "bank-secret"}


@pytest.fixture
def source():
    return AttestationWitnessSource(SECRETS)


def test_witness_built_from_both_attestations(source):
    assert source.submit(issue_attestation(42, Role.AGENT, "agent-secret")) == (42, Role.AGENT)
    assert not source.has_witness(42)
    source.submit(issue_attestation(42, Role.BANK, "bank-secret"))

    witness = source.witness_for(42)
    assert source.has_witness(42)
    assert (witness.asset_id, witness.agent_approved, witness.bank_approved) == (42, True, True)
    assert witness.to_circuit_input() == {"agentApproved": 1, "bankApproved": 1, "houseId": "42"}


def test_missing_attestation_fails_proof_generation(source):
    source.submit(issue_attestation(42, Role.AGENT, "agent-secret"))
    with pytest.raises(ProofGenerationFailed):
        source.witness_for(42)


def test_negative_attestation_is_carried_into_witness(source):
    source.submit(issue_attestation(5, Role.AGENT, "agent-secret"))
    source.submit(issue_attestation(5, Role.BANK, "bank-secret", approved=False))
    assert source.witness_for(5).bank_approved is False


def test_attestation_signed_with_other_role_secret_rejected(source):
    with pytest.raises(AttestationInvalid):
        source.submit(issue_attestation(42, Role.BANK, "agent-secret"))


def test_housing_dept_is_not_a_circuit_witness(source):
    with pytest.raises(AttestationInvalid):
        source.submit(issue_attestation(42, Role.HOUSING_DEPT, "whatever"))


@pytest.mark.parametrize("token", ["", "no-dot", "!!!.sig", "e30.sig"])
def test_malformed_attestation_rejected(source, token):
    with pytest.raises(AttestationInvalid):
        source.submit(token)


def test_tampered_payload_rejected(source):
    token = issue_attestation(42, Role.AGENT, "agent-secret")
    forged = issue_attestation(43, Role.AGENT, "agent-secret")
    spliced = forged.split(".")[0] + "." + token.split(".")[1]
    with pytest.raises(AttestationInvalid):
        source.submit(spliced)


def test_missing_secret_rejected():
    with pytest.raises(ValueError):
        AttestationWitnessSource({Role.AGENT: "only-one"})


def test_settings_choose_attestation_source():
    configured = SimpleNamespace(ATTESTATION_SECRET_AGENT="a", ATTESTATION_SECRET_BANK="b")
    unconfigured = SimpleNamespace(ATTESTATION_SECRET_AGENT="a", ATTESTATION_SECRET_BANK=None)

    assert isinstance(witness_source_from_settings(configured), AttestationWitnessSource)
    assert isinstance(witness_source_from_settings(unconfigured), StaticWitnessSource)
