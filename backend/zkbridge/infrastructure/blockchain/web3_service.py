"""
Web3 Ledger Clients — Live Permissioned and Public Chains.

Thin JSON-RPC clients for the deployed contracts. They expose the same
surface the relayer uses against the in-process contracts:

    Web3ApprovalRegistryClient  (permissioned, QBFT/PoA)
        approve_as(role, asset_id, private_key)
        get_approval_state(asset_id)
        aggregated_assets() / events(from_cursor)   ← relayer feed
    Web3MintGateClient          (public EVM)
        is_minted / balance_of / mint_with_proof    ← relayer gate

Error Mapping:
    ContractLogicError (revert)          → BridgeRevertError subclass
    connection failure / receipt timeout → TransientLedgerError
    other JSON-RPC error responses       → TransientLedgerError
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

from zkbridge.core.errors import TransientLedgerError, revert_from_reason
from zkbridge.schemas.bridge import ApprovalState, Role
from zkbridge.schemas.zkp import ProofBundle

logger = logging.getLogger(__name__)

FALLBACK_GAS_LIMIT = 2_000_000
GAS_BUFFER = 1.2
RECEIPT_TIMEOUT_SECONDS = 120


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


GOVERNANCE_ABI = [
    _fn("approveAsAgent", [("houseId", "uint256")]),
    _fn("approveAsBank", [("houseId", "uint256")]),
    _fn("approveAsHousingDept", [("houseId", "uint256")]),
    _fn("getApprovalState", [("houseId", "uint256")], ("bool", "bool", "bool", "bool"), "view"),
    {
        "type": "event",
        "name": "HouseApproved",
        "anonymous": False,
        "inputs": [
            {"name": "houseId", "type": "uint256", "indexed": True},
            {"name": "approver", "type": "address", "indexed": True},
            {"name": "role", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "HouseFullyApproved",
        "anonymous": False,
        "inputs": [{"name": "houseId", "type": "uint256", "indexed": True}],
    },
]

HOUSE_TOKEN_ABI = [
    _fn("balanceOf", [("account", "address"), ("id", "uint256")], ("uint256",), "view"),
    _fn("minted", [("houseId", "uint256")], ("bool",), "view"),
    _fn(
        "mintHouseToken",
        [
            ("to", "address"),
            ("houseId", "uint256"),
            ("_pA", "uint256[2]"),
            ("_pB", "uint256[2][2]"),
            ("_pC", "uint256[2]"),
            ("_pubSignals", "uint256[1]"),
        ],
    ),
]

_APPROVE_FUNCTIONS = {
    Role.AGENT: "approveAsAgent",
    Role.BANK: "approveAsBank",
    Role.HOUSING_DEPT: "approveAsHousingDept",
}


def groth16_calldata(bundle: ProofBundle) -> Tuple[list, list, list, list]:
    """
    Format a snarkjs proof for the generated Solidity verifier.

    G2 coordinates of pi_b are swapped to match the EVM pairing
    precompile's (imaginary, real) ordering.
    """
    p = bundle.proof
    a = [int(p.pi_a[0]), int(p.pi_a[1])]
    b = [
        [int(p.pi_b[0][1]), int(p.pi_b[0][0])],
        [int(p.pi_b[1][1]), int(p.pi_b[1][0])],
    ]
    c = [int(p.pi_c[0]), int(p.pi_c[1])]
    public = [int(s) for s in bundle.public_signals[:1]]
    return a, b, c, public


def _revert_message(error: ContractLogicError) -> str:
    return getattr(error, "message", None) or str(error)


class _Web3Client:
    """Shared connection, signing and send/wait logic."""

    def __init__(self, rpc_url: str, address: str, abi: list, private_key: str = "", poa: bool = False):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        if poa:
            self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.rpc_url = rpc_url
        self.private_key = private_key
        self.account = self.w3.eth.account.from_key(private_key) if private_key else None
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def is_connected(self) -> bool:
        try:
            return self.w3.is_connected()
        except OSError:
            return False

    def _call(self, fn_name: str, *args):
        try:
            return getattr(self.contract.functions, fn_name)(*args).call()
        except ContractLogicError as e:
            raise revert_from_reason(_revert_message(e)) from e
        except Web3RPCError as e:
            raise TransientLedgerError(f"{self.rpc_url} rejected {fn_name}: {e}") from e
        except OSError as e:
            raise TransientLedgerError(f"{self.rpc_url} unreachable: {e}") from e

    def _transact(self, func, private_key: Optional[str] = None) -> str:
        key = private_key or self.private_key
        if not key:
            raise ValueError("No private key configured for transaction signing")
        account = self.w3.eth.account.from_key(key)

        try:
            try:
                gas_estimate = func.estimate_gas({"from": account.address})
                gas_limit = int(gas_estimate * GAS_BUFFER)
            except ContractLogicError:
                # Surface the revert reason instead of paying for a failing tx
                raise
            except Web3RPCError as e:
                logger.warning(f"[WEB3] Gas estimation failed, using fallback: {e}")
                gas_limit = FALLBACK_GAS_LIMIT

            tx_data = func.build_transaction({
                "chainId": self.w3.eth.chain_id,
                "gas": gas_limit,
                "gasPrice": self.w3.eth.gas_price,
                "nonce": self.w3.eth.get_transaction_count(account.address),
                "from": account.address,
            })
            signed_tx = account.sign_transaction(tx_data)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            logger.info(f"[WEB3] TX sent: {self.w3.to_hex(tx_hash)}")
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS,
            )
        except ContractLogicError as e:
            raise revert_from_reason(_revert_message(e)) from e
        except TimeExhausted as e:
            raise TransientLedgerError(f"receipt not observed: {e}") from e
        except Web3RPCError as e:
            raise TransientLedgerError(f"{self.rpc_url} rejected transaction: {e}") from e
        except OSError as e:
            raise TransientLedgerError(f"{self.rpc_url} unreachable: {e}") from e

        if receipt.status != 1:
            raise revert_from_reason("Transaction reverted on-chain")
        return self.w3.to_hex(tx_hash)


class Web3ApprovalRegistryClient(_Web3Client):
    """Governance contract on the permissioned ledger."""

    def __init__(self, rpc_url: str, address: str, private_key: str = "", poll_interval: float = 2.0):
        super().__init__(rpc_url, address, GOVERNANCE_ABI, private_key, poa=True)
        self.poll_interval = poll_interval

    def approve_as(self, role: Role, asset_id: int, private_key: Optional[str] = None) -> str:
        func = getattr(self.contract.functions, _APPROVE_FUNCTIONS[role])(asset_id)
        tx_hash = self._transact(func, private_key)
        logger.info(f"[WEB3] {role.value} approved house {asset_id} tx={tx_hash}")
        return tx_hash

    def get_approval_state(self, asset_id: int) -> ApprovalState:
        agent, bank, housing, full = self._call("getApprovalState", asset_id)
        return ApprovalState(agent=agent, bank=bank, housing_dept=housing, fully_approved=full)

    def fully_approved_since(self, from_block: int, to_block: Optional[int] = None) -> List[Tuple[int, int]]:
        """(block_number, house_id) for every HouseFullyApproved log in range."""
        try:
            logs = self.contract.events.HouseFullyApproved.get_logs(
                from_block=from_block,
                to_block=to_block if to_block is not None else "latest",
            )
        except (OSError, Web3RPCError) as e:
            raise TransientLedgerError(f"{self.rpc_url} unreachable: {e}") from e
        return [(log["blockNumber"], int(log["args"]["houseId"])) for log in logs]

    def _block_number(self) -> int:
        try:
            return self.w3.eth.block_number
        except (OSError, Web3RPCError) as e:
            raise TransientLedgerError(f"{self.rpc_url} unreachable: {e}") from e

    def aggregated_assets(self) -> List[int]:
        return sorted({house_id for _, house_id in self.fully_approved_since(0)})

    async def events(self, from_cursor: int = 0) -> AsyncIterator[Tuple[int, int]]:
        """
        Poll for FullyApproved logs from block `from_cursor` onwards.

        Yields (block_number, house_id). The last block is re-read on the
        next poll, so delivery is at-least-once.
        """
        cursor = from_cursor
        while True:
            head = await asyncio.to_thread(self._block_number)
            if head >= cursor:
                found = await asyncio.to_thread(self.fully_approved_since, cursor, head)
                for block_number, house_id in found:
                    yield block_number, house_id
                cursor = head
            await asyncio.sleep(self.poll_interval)


class Web3MintGateClient(_Web3Client):
    """House token (ERC-1155) with embedded Groth16 verifier, public ledger."""

    def __init__(self, rpc_url: str, address: str, private_key: str = ""):
        super().__init__(rpc_url, address, HOUSE_TOKEN_ABI, private_key)

    def is_minted(self, asset_id: int) -> bool:
        return bool(self._call("minted", asset_id))

    def balance_of(self, account: str, asset_id: int) -> int:
        return int(self._call("balanceOf", Web3.to_checksum_address(account), asset_id))

    def mint_with_proof(self, asset_id: int, bundle: ProofBundle, recipient: str) -> str:
        a, b, c, public = groth16_calldata(bundle)
        func = self.contract.functions.mintHouseToken(
            Web3.to_checksum_address(recipient), asset_id, a, b, c, public,
        )
        tx_hash = self._transact(func)
        logger.info(f"[WEB3] mintHouseToken({asset_id}) included tx={tx_hash}")
        return tx_hash
