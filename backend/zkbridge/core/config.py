from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "ZK-APPROVAL-BRIDGE"
    API_V1_STR: str = "/api/v1"

    # Deployment
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    DEPLOYMENT_RECORD_PATH: str = ".deployed.json"

    # Permissioned ledger (GoQuorum)
    QUORUM_RPC_URL: str = "http://127.0.0.1:8545"
    QUORUM_AGENT_ADDRESS: str = ""
    QUORUM_BANK_ADDRESS: str = ""
    QUORUM_HOUSING_DEPT_ADDRESS: str = ""

    # Public ledger (Hardhat / EVM)
    HARDHAT_RPC_URL: str = "http://127.0.0.1:8546"
    RELAYER_PRIVATE_KEY: str = ""
    NFT_RECIPIENT: str = ""
    TOKEN_BASE_URI: str = "ipfs://QmPlaceholderCID/{id}.json"

    # Circuit artifacts (snarkjs)
    SNARKJS_COMMAND: str = "npx snarkjs"
    CIRCUIT_WASM_PATH: str = "circuits/houseApproval_js/houseApproval.wasm"
    CIRCUIT_ZKEY_PATH: str = "circuits/circuit_final.zkey"
    VERIFICATION_KEY_PATH: str = "circuits/verification_key.json"

    # Confidential attestation channel (per-role HMAC secrets)
    ATTESTATION_SECRET_AGENT: Optional[str] = None
    ATTESTATION_SECRET_BANK: Optional[str] = None

    # Relayer tunables
    PROOF_MAX_ATTEMPTS: int = 3
    SUBMIT_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    MINT_POLL_INTERVAL_SECONDS: float = 2.0
    MINT_POLL_TIMEOUT_SECONDS: float = 60.0
    RELAYER_STATE_PATH: Optional[str] = ".relayer-state.json"

    class Config:
        case_sensitive = True
        env_file = ".env"

settings = Settings()
