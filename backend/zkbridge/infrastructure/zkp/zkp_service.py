import json
import logging
import os
import shlex
import subprocess
import tempfile
from abc import ABC, abstractmethod
from typing import List, Optional

from zkbridge.core.config import settings
from zkbridge.core.errors import ProofGenerationFailed
from zkbridge.schemas.zkp import Proof, ProofBundle, WitnessBundle

logger = logging.getLogger(__name__)


class ProofService(ABC):
    """
    Opaque proving capability.

    prove() must either succeed with a proof bound to the witness's asset
    id or raise ProofGenerationFailed; it never returns partial output.
    """

    @abstractmethod
    def prove(self, witness: WitnessBundle) -> ProofBundle:
        ...

    @abstractmethod
    def verify_locally(self, bundle: ProofBundle) -> bool:
        ...


def _snarkjs_argv(command: str, *args: str) -> List[str]:
    return shlex.split(command) + list(args)


class SnarkjsVerifier:
    """Groth16 verification via `snarkjs groth16 verify`."""

    def __init__(
        self,
        verification_key_path: Optional[str] = None,
        snarkjs_command: Optional[str] = None,
    ):
        self.vk_path = os.path.abspath(verification_key_path or settings.VERIFICATION_KEY_PATH)
        self.command = snarkjs_command or settings.SNARKJS_COMMAND

        if not os.path.exists(self.vk_path):
            logger.warning(f"[ZKP] Verification Key not found at {self.vk_path}. ZKP verification will fail.")

    def verify(self, bundle: ProofBundle) -> bool:
        """
        Verifies a Groth16 proof using snarkjs via CLI.
        Payload contains the proof and public signals.
        """
        with tempfile.TemporaryDirectory(prefix="zkbridge-verify-") as workdir:
            proof_path = os.path.join(workdir, "proof.json")
            public_path = os.path.join(workdir, "public.json")
            with open(proof_path, "w") as f:
                json.dump(bundle.proof.model_dump(), f)
            with open(public_path, "w") as f:
                json.dump(bundle.public_signals, f)

            # Command: snarkjs groth16 verify verification_key.json public.json proof.json
            cmd = _snarkjs_argv(self.command, "groth16", "verify", self.vk_path, public_path, proof_path)
            try:
                result = subprocess.run(cmd, capture_output=True, text=True)
            except OSError as e:
                logger.error(f"[ZKP] Could not run snarkjs: {e}")
                return False

        if result.returncode == 0 and "OK" in result.stdout:
            logger.info("[ZKP] Verification Successful")
            return True
        logger.error(f"[ZKP] Verification Failed: {result.stderr or result.stdout}")
        return False


class SnarkjsProofService(ProofService):
    """
    Groth16 prover via `snarkjs groth16 fullprove`.

    Witness values are written to a private temporary directory that is
    removed as soon as the call returns.
    """

    def __init__(
        self,
        wasm_path: Optional[str] = None,
        zkey_path: Optional[str] = None,
        verifier: Optional[SnarkjsVerifier] = None,
        snarkjs_command: Optional[str] = None,
    ):
        self.wasm_path = os.path.abspath(wasm_path or settings.CIRCUIT_WASM_PATH)
        self.zkey_path = os.path.abspath(zkey_path or settings.CIRCUIT_ZKEY_PATH)
        self.command = snarkjs_command or settings.SNARKJS_COMMAND
        self.verifier = verifier or SnarkjsVerifier(snarkjs_command=self.command)

        for path in (self.wasm_path, self.zkey_path):
            if not os.path.exists(path):
                logger.warning(f"[ZKP] Circuit artifact not found at {path}. Proof generation will fail.")

    def prove(self, witness: WitnessBundle) -> ProofBundle:
        with tempfile.TemporaryDirectory(prefix="zkbridge-prove-") as workdir:
            input_path = os.path.join(workdir, "input.json")
            proof_path = os.path.join(workdir, "proof.json")
            public_path = os.path.join(workdir, "public.json")
            with open(input_path, "w") as f:
                json.dump(witness.to_circuit_input(), f)

            cmd = _snarkjs_argv(
                self.command, "groth16", "fullprove",
                input_path, self.wasm_path, self.zkey_path, proof_path, public_path,
            )
            try:
                result = subprocess.run(cmd, capture_output=True, text=True)
            except OSError as e:
                raise ProofGenerationFailed(f"could not run snarkjs: {e}") from e

            if result.returncode != 0:
                # stderr may echo the input file path, never the witness values
                raise ProofGenerationFailed(
                    f"snarkjs fullprove exited {result.returncode}: "
                    f"{(result.stderr or result.stdout).strip()[:500]}"
                )

            try:
                with open(proof_path) as f:
                    proof = Proof(**json.load(f))
                with open(public_path) as f:
                    public_signals = [str(s) for s in json.load(f)]
            except (OSError, ValueError) as e:
                raise ProofGenerationFailed(f"malformed snarkjs output: {e}") from e

        bundle = ProofBundle(proof=proof, public_signals=public_signals)
        if bundle.public_asset_id() != witness.asset_id:
            raise ProofGenerationFailed(
                f"prover bound proof to {public_signals[:1]}, expected {witness.asset_id}"
            )
        logger.info(f"[ZKP] Proof generated for house {witness.asset_id}")
        return bundle

    def verify_locally(self, bundle: ProofBundle) -> bool:
        return self.verifier.verify(bundle)
