import hashlib
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

class Proof(BaseModel):
    pi_a: List[str]
    pi_b: List[List[str]]
    pi_c: List[str]
    protocol: str = "groth16"
    curve: str = "bn128"

class ProofBundle(BaseModel):
    """A proof together with the public-input vector it is bound to."""
    proof: Proof
    public_signals: List[str]

    def public_asset_id(self) -> Optional[int]:
        """First public signal as an integer, None when absent or malformed."""
        if not self.public_signals:
            return None
        try:
            return int(self.public_signals[0])
        except (TypeError, ValueError):
            return None

    def fingerprint(self) -> str:
        """SHA-256 over the canonical JSON of proof and public signals."""
        canonical = json.dumps(
            {"proof": self.proof.model_dump(), "public_signals": self.public_signals},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

class WitnessBundle(BaseModel):
    """
    Private circuit input for a single proof-generation call.

    Only the agent and bank flags are private signals of the approval
    circuit; the asset id is its single public signal.
    """
    asset_id: int = Field(ge=0)
    agent_approved: bool
    bank_approved: bool

    def to_circuit_input(self) -> Dict[str, Any]:
        return {
            "agentApproved": int(self.agent_approved),
            "bankApproved": int(self.bank_approved),
            "houseId": str(self.asset_id),
        }
