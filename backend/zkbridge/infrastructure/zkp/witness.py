"""
Witness Sources — Confidential Approval Attestations.

The relayer must not read private approval flags from the registry's
storage; that would leak exactly what the proof hides. Instead the
approving parties send it short HMAC-signed attestations over a
confidential channel, and the witness bundle is assembled from those.

Attestation format (compact, URL-safe):
    base64url(json{asset_id, role, approved, iat}) "." base64url(HMAC-SHA256)

Each role signs with its own shared secret, so one party cannot attest
on another's behalf.
"""

import base64
import hashlib
import hmac
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Tuple

from zkbridge.core.errors import ProofGenerationFailed
from zkbridge.schemas.bridge import Role
from zkbridge.schemas.zkp import WitnessBundle

logger = logging.getLogger(__name__)

# Roles whose approval is a private signal of the approval circuit.
CIRCUIT_ROLES = (Role.AGENT, Role.BANK)


class AttestationInvalid(Exception):
    """Raised when an attestation's format or signature is bad."""
    pass


class WitnessSource(ABC):
    """Supplies the private witness for one proof-generation call."""

    @abstractmethod
    def witness_for(self, asset_id: int) -> WitnessBundle:
        """Raises ProofGenerationFailed when the witness is unavailable."""
        ...


class StaticWitnessSource(WitnessSource):
    """
    Constant witnesses (every circuit role approved).

    Only for local demos: it attests approvals nobody actually sent.
    """

    def witness_for(self, asset_id: int) -> WitnessBundle:
        return WitnessBundle(asset_id=asset_id, agent_approved=True, bank_approved=True)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _sign(secret: str, data: str) -> str:
    sig_bytes = hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).digest()
    return _b64(sig_bytes)


def issue_attestation(asset_id: int, role: Role, secret: str, approved: bool = True) -> str:
    """Create a signed attestation. Called on the approving party's side."""
    payload = {
        "asset_id": asset_id,
        "role": role.value,
        "approved": approved,
        "iat": int(time.time()),
    }
    json_bytes = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    payload_b64 = _b64(json_bytes)
    return f"{payload_b64}.{_sign(secret, payload_b64)}"


class AttestationWitnessSource(WitnessSource):
    """
    Builds witnesses from signed role attestations.

    Usage:
        source = AttestationWitnessSource({Role.AGENT: "s1", Role.BANK: "s2"})
        source.submit(issue_attestation(42, Role.AGENT, "s1"))
        source.submit(issue_attestation(42, Role.BANK, "s2"))
        source.witness_for(42)
    """

    def __init__(self, secrets: Mapping[Role, str]) -> None:
        missing = [r.value for r in CIRCUIT_ROLES if not secrets.get(r)]
        if missing:
            raise ValueError(f"Attestation secret not configured: {', '.join(missing)}")
        self._secrets: Dict[Role, str] = {r: secrets[r] for r in CIRCUIT_ROLES}
        self._attested: Dict[Tuple[int, Role], bool] = {}
        self._lock = threading.Lock()

    def submit(self, token: str) -> Tuple[int, Role]:
        """
        Verify and store an attestation.

        Returns:
            (asset_id, role) the attestation covers.

        Raises:
            AttestationInvalid: if format, role or signature is bad.
        """
        if not token or "." not in token:
            raise AttestationInvalid("Invalid attestation format")

        payload_b64, provided_sig = token.rsplit(".", 1)
        try:
            padding = "=" * (-len(payload_b64) % 4)
            payload = json.loads(base64.urlsafe_b64decode(payload_b64 + padding))
            role = Role(payload["role"])
            asset_id = int(payload["asset_id"])
            approved = bool(payload["approved"])
        except (ValueError, KeyError, TypeError) as e:
            raise AttestationInvalid(f"Corrupt payload: {e}")

        secret = self._secrets.get(role)
        if secret is None:
            raise AttestationInvalid(f"Role {role.value} is not a circuit witness")
        if not hmac.compare_digest(provided_sig, _sign(secret, payload_b64)):
            raise AttestationInvalid("Invalid signature")

        with self._lock:
            self._attested[(asset_id, role)] = approved
        logger.info(f"[ZKP] Attestation accepted — house {asset_id} role={role.value}")
        return asset_id, role

    def has_witness(self, asset_id: int) -> bool:
        with self._lock:
            return all((asset_id, r) in self._attested for r in CIRCUIT_ROLES)

    def witness_for(self, asset_id: int) -> WitnessBundle:
        with self._lock:
            agent = self._attested.get((asset_id, Role.AGENT))
            bank = self._attested.get((asset_id, Role.BANK))
        if agent is None or bank is None:
            raise ProofGenerationFailed(f"witness unavailable for house {asset_id}")
        return WitnessBundle(asset_id=asset_id, agent_approved=agent, bank_approved=bank)


def witness_source_from_settings(settings) -> WitnessSource:
    """Attestation source when secrets are configured, static otherwise."""
    secrets: Dict[Role, Optional[str]] = {
        Role.AGENT: settings.ATTESTATION_SECRET_AGENT,
        Role.BANK: settings.ATTESTATION_SECRET_BANK,
    }
    if all(secrets.values()):
        return AttestationWitnessSource(secrets)
    logger.warning("[ZKP] Attestation secrets not set — using static demo witnesses")
    return StaticWitnessSource()
