"""
Deployment Record — Component Address Book.

A small JSON file mapping logical component names to ledger addresses.
Each ledger's deployment tooling writes its own entries and merges with
what is already there, so the permissioned-side and public-side deploys
never clobber one another. The relayer reads it once at startup.

    {
      "approvalRegistry": "0x…",   # permissioned ledger
      "verifier":         "0x…",   # public ledger
      "mintGate":         "0x…",   # public ledger
      "network":          "hardhat-localhost-8546",
      "quorumRpcUrl":     "http://127.0.0.1:8545",
      "deployedAt":       "2026-…Z"
    }
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class DeploymentRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    approval_registry: Optional[str] = Field(default=None, alias="approvalRegistry")
    verifier: Optional[str] = None
    mint_gate: Optional[str] = Field(default=None, alias="mintGate")
    network: Optional[str] = None
    quorum_rpc_url: Optional[str] = Field(default=None, alias="quorumRpcUrl")
    deployed_at: Optional[str] = Field(default=None, alias="deployedAt")

    def require(self, *names: str) -> None:
        """Raise if any of the given component addresses is missing."""
        missing = [n for n in names if not getattr(self, n, None)]
        if missing:
            raise ValueError(f"Deployment record is missing: {', '.join(missing)}")

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def load_deployment(path: str) -> DeploymentRecord:
    """Read the record; a missing file yields an empty record."""
    if not os.path.exists(path):
        logger.warning(f"[DEPLOY] No deployment record at {path}")
        return DeploymentRecord()
    with open(path, "r") as f:
        return DeploymentRecord.model_validate(json.load(f))


def save_deployment(path: str, **updates: Any) -> DeploymentRecord:
    """
    Merge `updates` (field names or JSON aliases) into the record at `path`.

    Existing keys not named in `updates` are preserved. The file is
    replaced atomically.
    """
    data = load_deployment(path).to_json_dict()
    data.update({_alias(k): v for k, v in updates.items()})
    if "deployedAt" not in {_alias(k) for k in updates}:
        data["deployedAt"] = datetime.now(timezone.utc).isoformat()
    merged = DeploymentRecord.model_validate(data)
    data = merged.to_json_dict()

    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".deployed-", dir=directory)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)

    logger.info(f"[DEPLOY] Addresses saved to: {path}")
    return merged


_ALIASES = {
    name: field.alias
    for name, field in DeploymentRecord.model_fields.items()
    if field.alias
}


def _alias(key: str) -> str:
    return _ALIASES.get(key, key)
