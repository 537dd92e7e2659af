"""Relayer: forwards pre-built proofs to the zLink contract.

Proofs are not verified here.  For private transfers the only guard is that
each non-padding output's encrypted-data hash in the public signals matches
keccak256 of the submitted ciphertext, modulo the BN254 scalar field.
"""
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3

from zlink_indexer.errors import RelayError
from zlink_indexer.helpers import hex_to_int, strip_0x, to_hex

logger = logging.getLogger(__name__)

FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617
PADDING_OUTPUT_COMMITMENT = "0x02ef1ed4a39e48f251af2b443fb42a1cc01f4861c3cf1b1f92a17b17a2782894"

TRANSFER_OUTPUTS  = 20
COMMITMENT_OFFSET = 10
DATA_HASH_OFFSET  = 30

UNSHIELD_NATIVE   = "unshieldNative"
TRANSFER_SHIELDED = "transferShieldedAssets"

_PROOF_INPUT = {
    "name": "proof",
    "type": "tuple",
    "components": [
        {"name": "pi_a", "type": "uint256[2]"},
        {"name": "pi_b", "type": "uint256[2][2]"},
        {"name": "pi_c", "type": "uint256[2]"},
    ],
}

ZLINK_ABI = [
    {
        "type": "function",
        "name": UNSHIELD_NATIVE,
        "stateMutability": "nonpayable",
        "inputs": [
            _PROOF_INPUT,
            {"name": "publicSignals", "type": "uint256[7]"},
            {"name": "encryptedUTXOsUpdate", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": TRANSFER_SHIELDED,
        "stateMutability": "payable",
        "inputs": [
            _PROOF_INPUT,
            {"name": "publicSignals", "type": "uint256[50]"},
            {"name": "encryptedUTXOsUpdates", "type": "bytes[20]"},
            {"name": "receiver", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


# ---------- proof helpers ----------
def proof_helper(proof: Dict[str, Any]) -> tuple:
    """snarkjs proof -> solidity (pi_a, pi_b, pi_c); pi_b coordinates are swapped."""
    try:
        pi_a = [hex_to_int(proof["pi_a"][0]), hex_to_int(proof["pi_a"][1])]
        pi_b = [
            [hex_to_int(proof["pi_b"][0][1]), hex_to_int(proof["pi_b"][0][0])],
            [hex_to_int(proof["pi_b"][1][1]), hex_to_int(proof["pi_b"][1][0])],
        ]
        pi_c = [hex_to_int(proof["pi_c"][0]), hex_to_int(proof["pi_c"][1])]
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise RelayError(f"malformed proof: {e}") from e
    return (pi_a, pi_b, pi_c)

def hash_encrypted_data(data_hex: str) -> int:
    return int.from_bytes(Web3.keccak(_bytes(data_hex)), "big")

def check_encrypted_data_hashes(public_signals: Sequence, encrypted_data: Sequence[str]) -> None:
    for i in range(TRANSFER_OUTPUTS):
        if DATA_HASH_OFFSET + i >= len(public_signals):
            raise RelayError(f"Encrypted data hash not found in public signals index {DATA_HASH_OFFSET + i}")
        commitment = "0x%064x" % hex_to_int(public_signals[COMMITMENT_OFFSET + i])
        if commitment == PADDING_OUTPUT_COMMITMENT:
            continue
        if i >= len(encrypted_data):
            raise RelayError(f"Encrypted data missing for output {i}")
        expected = hex_to_int(public_signals[DATA_HASH_OFFSET + i]) % FIELD_MODULUS
        if hash_encrypted_data(encrypted_data[i]) % FIELD_MODULUS != expected:
            raise RelayError(f"Encrypted data hash is not valid in index {i}")

def _bytes(h: str) -> bytes:
    try:
        return bytes.fromhex(strip_0x(h))
    except (TypeError, ValueError) as e:
        raise RelayError(f"encrypted data is not hex: {e}") from e


class Relayer:
    def __init__(self, settings, w3: Optional[AsyncWeb3] = None):
        self.settings = settings
        self._w3 = w3

    @property
    def available(self) -> bool:
        return bool(self.settings.private_key)

    def _web3(self) -> AsyncWeb3:
        if self._w3 is None:
            self._w3 = AsyncWeb3(AsyncHTTPProvider(self.settings.rpc_url))
        return self._w3

    def build_call(self, contract, method: str, proof, public_signals: List,
                   encrypted_data, receiver: Optional[str] = None):
        signals = [hex_to_int(s) for s in public_signals]
        if method == UNSHIELD_NATIVE:
            if not isinstance(encrypted_data, str):
                raise RelayError("unshieldNative expects a single encrypted payload")
            return contract.functions.unshieldNative(proof_helper(proof), signals, _bytes(encrypted_data))
        if method == TRANSFER_SHIELDED:
            if not receiver:
                raise RelayError("receiver is required")
            if isinstance(encrypted_data, str):
                raise RelayError("transferShieldedAssets expects a list of encrypted payloads")
            check_encrypted_data_hashes(public_signals, encrypted_data)
            return contract.functions.transferShieldedAssets(
                proof_helper(proof), signals, [_bytes(d) for d in encrypted_data],
                Web3.to_checksum_address(receiver),
            )
        raise RelayError("Invalid method")

    async def submit(self, method: str, proof, public_signals: List,
                     encrypted_data, receiver: Optional[str] = None) -> str:
        if not self.available:
            raise RelayError("Relayer is unavailable")
        w3 = self._web3()
        contract = w3.eth.contract(address=self.settings.contract_address, abi=ZLINK_ABI)
        call = self.build_call(contract, method, proof, public_signals, encrypted_data, receiver)

        account = Account.from_key(self.settings.private_key)
        chain_id = self.settings.chain_id or await w3.eth.chain_id
        tx = await call.build_transaction({
            "from": account.address,
            "nonce": await w3.eth.get_transaction_count(account.address),
            "chainId": chain_id,
        })
        signed = account.sign_transaction(tx)
        tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("[relay] submitted %s tx %s", method, to_hex(tx_hash))
        return to_hex(tx_hash)


def _b64_json(value: str):
    return json.loads(base64.b64decode(value).decode("utf-8"))

async def handle_submit(relayer: Relayer, method: str, body: Dict[str, Any]):
    """HTTP-shaped wrapper: ``(status_code, payload)``."""
    if not relayer.available:
        return 400, {"isSuccess": False, "message": "Relayer is unavailable !!!"}
    if method not in (UNSHIELD_NATIVE, TRANSFER_SHIELDED):
        return 400, {"isSuccess": False, "message": "Invalid method"}

    proof, signals, encrypted = body.get("proof"), body.get("publicSignals"), body.get("encryptedData")
    if not proof or not signals or not encrypted:
        return 400, {"isSuccess": False, "message": "Invalid request"}
    try:
        proof, signals = _b64_json(proof), _b64_json(signals)
    except (ValueError, TypeError) as e:
        return 400, {"isSuccess": False, "message": f"Invalid request: {e}"}

    try:
        tx_hash = await relayer.submit(method, proof, signals, encrypted, body.get("receiver"))
    except RelayError as e:
        return 400, {"isSuccess": False, "message": str(e)}
    except Exception as e:
        logger.error("[relay] %s failed: %s", method, e)
        return 500, {"isSuccess": False, "message": "Transaction failed"}
    return 200, {"isSuccess": True, "data": {"txHash": tx_hash}}
