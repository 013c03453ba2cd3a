"""
Transaction executor: sign, send, wait for confirmations, classify.

submit() never raises. Whatever happens (simulation revert while estimating gas,
RPC rejection, receipt timeout, mined revert) comes back as a TransactionOutcome so
a batch of actions can keep recording after one of them fails.

Negative tests use expect_revert() instead: the call is simulated from the signer
and must be rejected with an exact revert reason before it is ever broadcast.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from eth_abi import decode as abi_decode
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

from cdk_harness import console
from cdk_harness.accounts import Signer
from cdk_harness.ledger import to_jsonable

DEFAULT_GAS_LIMIT = 400_000
GAS_MULTIPLIER = 1.2

# Error(string) selector used by require(cond, "reason")
ERROR_STRING_SELECTOR = "0x08c379a0"

OUTCOME_MINED_SUCCESS = "mined_success"
OUTCOME_MINED_REVERT = "mined_revert"
OUTCOME_SUBMISSION_EXCEPTION = "submission_exception"
OUTCOME_WAIT_EXCEPTION = "wait_exception"

QUANTITY_FIELDS = ("gasUsed", "cumulativeGasUsed", "effectiveGasPrice", "gas", "gasPrice",
                   "maxFeePerGas", "maxPriorityFeePerGas", "value")


def _hex_data(data: Union[bytes, str, None]) -> str:
    if data is None:
        return "0x"
    if isinstance(data, str):
        return data if data.startswith("0x") else "0x" + data
    return "0x" + bytes(data).hex()


def _tx_hash_hex(tx_hash) -> str:
    if isinstance(tx_hash, (bytes, bytearray, HexBytes)):
        return "0x" + bytes(tx_hash).hex()
    return tx_hash if str(tx_hash).startswith("0x") else "0x" + str(tx_hash)


def chain_record(obj) -> Optional[Dict[str, Any]]:
    """Receipt/transaction as a JSON-safe dict; gas, fee and value quantities as decimal strings."""
    if obj is None:
        return None
    record = to_jsonable(dict(obj))
    for key in QUANTITY_FIELDS:
        if key in record and record[key] is not None:
            record[key] = str(record[key])
    return record


def error_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or type(exc).__name__


REVERT_MARKERS = (
    "execution reverted",
    "reverted with reason string",
    "VM Exception while processing transaction: revert",
)


def is_revert(exc: BaseException) -> bool:
    """ContractLogicError, or a provider-specific error carrying the node's revert message."""
    if isinstance(exc, ContractLogicError):
        return True
    message = error_message(exc)
    return any(marker in message for marker in REVERT_MARKERS)


def revert_reason(exc: BaseException) -> Optional[str]:
    """Human-readable reason from a revert error: ABI-decoded Error(string) data first, message text second."""
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = "0x" + bytes(data).hex()
    if isinstance(data, str) and data.lower().startswith(ERROR_STRING_SELECTOR):
        try:
            (reason,) = abi_decode(["string"], bytes.fromhex(data[10:]))
            return reason
        except Exception as e:
            console.debug(f"Could not ABI-decode revert data {data[:74]}: {e}")

    message = error_message(exc)
    for prefix in ("execution reverted: ", "reverted with reason string ", "revert "):
        if prefix in message:
            return message.split(prefix, 1)[1].strip().strip("'\"")
    if message.strip() == "execution reverted":
        return ""
    return message or None


@dataclass
class PreparedCall:
    to: Optional[str]
    data: Union[bytes, str, None]
    signer: Signer
    value: int = 0
    function: Any = None
    label: str = ""

    @classmethod
    def from_function(cls, fn, signer: Signer, value: int = 0, label: str = "") -> "PreparedCall":
        data = fn._encode_transaction_data()
        return cls(to=fn.address, data=data, signer=signer, value=value, function=fn,
                   label=label or getattr(fn, "fn_name", ""))

    @property
    def data_hex(self) -> str:
        return _hex_data(self.data)

    def describe(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "from": self.signer.address,
            "to": self.to,
            "value": str(self.value),
            "data": self.data_hex,
        }


@dataclass
class TransactionOutcome:
    request: Dict[str, Any]
    kind: str = ""
    tx_hash: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    receipt: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind == OUTCOME_MINED_SUCCESS

    @property
    def broadcast(self) -> bool:
        return self.tx_hash is not None

    def to_dict(self) -> Dict[str, Any]:
        d = {"kind": self.kind, "request": self.request, "txHash": self.tx_hash,
             "response": self.response, "receipt": self.receipt, "error": self.error}
        d.update(self.diagnostics)
        return d


@dataclass
class RevertCheck:
    passed: bool
    expected_reason: str
    actual_reason: Optional[str] = None
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    receipt: Optional[Dict[str, Any]] = None


class TransactionExecutor:
    def __init__(self, w3: Web3, receipt_timeout: int = 600, poll_interval: float = 2.0):
        self.w3 = w3
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

    # -------------------------
    # Build / sign / send
    # -------------------------
    def _fee_params(self) -> Dict[str, int]:
        try:
            base_fee = self.w3.eth.get_block("latest").get("baseFeePerGas")
            if base_fee is None:
                raise ValueError("latest block has no baseFeePerGas")
            priority = self.w3.eth.max_priority_fee
            return {"maxPriorityFeePerGas": priority, "maxFeePerGas": base_fee * 2 + priority, "type": 2}
        except Exception as e:
            console.debug(f"EIP-1559 fees unavailable ({e}); falling back to legacy gasPrice")
            return {"gasPrice": self.w3.eth.gas_price}

    def build_transaction(self, call: PreparedCall) -> Dict[str, Any]:
        signer = call.signer
        tx: Dict[str, Any] = {"from": signer.address, "value": int(call.value), "data": call.data_hex}
        if call.to:
            tx["to"] = to_checksum_address(call.to)
        if not signer.is_local:
            # node-managed account: eth_sendTransaction fills nonce, gas and fees
            return tx

        try:
            gas = int(self.w3.eth.estimate_gas(dict(tx)) * GAS_MULTIPLIER)
        except Exception as e:
            if is_revert(e):
                raise
            console.warn(f"Gas estimation failed for {call.label or 'tx'} ({e}); using fallback {DEFAULT_GAS_LIMIT}")
            gas = DEFAULT_GAS_LIMIT

        tx["nonce"] = self.w3.eth.get_transaction_count(signer.address, "pending")
        tx["chainId"] = self.w3.eth.chain_id
        tx["gas"] = gas
        tx.update(self._fee_params())
        return tx

    def _broadcast(self, call: PreparedCall, tx: Dict[str, Any]):
        if call.signer.is_local:
            signed = call.signer.account.sign_transaction(tx)
            return self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.eth.send_transaction(tx)

    def wait_for_confirmations(self, receipt, confirmations: int):
        """Block until `confirmations` blocks exist counting the inclusion block. No deadline."""
        if confirmations <= 1:
            return
        target = receipt["blockNumber"] + confirmations - 1
        while True:
            current = self.w3.eth.block_number
            if current >= target:
                return
            console.debug(f"  block {current}, waiting for {target} ({confirmations} confirmations)")
            time.sleep(self.poll_interval)

    def submit(self, call: PreparedCall, confirmations: int = 1) -> TransactionOutcome:
        outcome = TransactionOutcome(request=call.describe())
        label = call.label or "transaction"

        try:
            tx = self.build_transaction(call)
            tx_hash = self._broadcast(call, tx)
        except Exception as e:
            outcome.kind = OUTCOME_SUBMISSION_EXCEPTION
            outcome.error = error_message(e)
            console.error(f"Exception while submitting {label}: {outcome.error}")
            return outcome

        outcome.tx_hash = _tx_hash_hex(tx_hash)
        console.info(f"  {label}: sent {outcome.tx_hash}. Waiting for {confirmations} confirmation(s)...")

        try:
            outcome.response = chain_record(self.w3.eth.get_transaction(tx_hash))
        except Exception as e:
            console.debug(f"Could not fetch transaction {outcome.tx_hash}: {e}")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_interval
            )
            self.wait_for_confirmations(receipt, confirmations)
        except Exception as e:
            outcome.kind = OUTCOME_WAIT_EXCEPTION
            outcome.error = error_message(e)
            console.error(f"Waiting for {outcome.tx_hash} failed: {outcome.error}")
            return outcome

        outcome.receipt = chain_record(receipt)
        status = receipt["status"]
        if status == 1:
            outcome.kind = OUTCOME_MINED_SUCCESS
            console.info(f"  {label}: mined in block {receipt['blockNumber']} (status 1)")
        else:
            outcome.kind = OUTCOME_MINED_REVERT
            outcome.error = f"Transaction reverted with status {status}"
            console.error(f"  {label}: {outcome.tx_hash} REVERTED in block {receipt['blockNumber']} (status {status})")
        return outcome

    def send_value(self, signer: Signer, to: str, amount_wei: int, confirmations: int = 1) -> TransactionOutcome:
        call = PreparedCall(to=to, data=b"", signer=signer, value=amount_wei, label=f"transfer to {to}")
        return self.submit(call, confirmations)

    # -------------------------
    # Negative-path checks
    # -------------------------
    def _simulate(self, call: PreparedCall):
        tx = {"from": call.signer.address, "value": int(call.value)}
        if call.function is not None:
            return call.function.call(tx)
        tx["data"] = call.data_hex
        if call.to:
            tx["to"] = to_checksum_address(call.to)
        return self.w3.eth.call(tx)

    def recover_transaction(self, exc: BaseException) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        """
        Best effort: some clients attach the rejected transaction to the error.
        Returns (tx_hash, receipt) when one can be found, (None, None) otherwise,
        which is the normal case for a simulation-time revert.
        """
        candidates = [getattr(exc, "transaction_hash", None), getattr(exc, "tx_hash", None)]
        for arg in getattr(exc, "args", ()):
            if isinstance(arg, dict):
                candidates.extend([arg.get("transactionHash"), arg.get("hash")])
        for candidate in candidates:
            if not candidate:
                continue
            tx_hash = _tx_hash_hex(candidate)
            try:
                receipt = chain_record(self.w3.eth.get_transaction_receipt(tx_hash))
            except Exception as e:
                console.debug(f"No receipt for recovered tx {tx_hash}: {e}")
                receipt = None
            return tx_hash, receipt
        return None, None

    def expect_revert(self, call: PreparedCall, expected_reason: str) -> RevertCheck:
        check = RevertCheck(passed=False, expected_reason=expected_reason)
        label = call.label or "call"
        try:
            self._simulate(call)
        except Exception as e:
            if not is_revert(e):
                check.error = (
                    f"Expected revert with reason '{expected_reason}', "
                    f"but call raised {type(e).__name__}: {error_message(e)}"
                )
                return check
            check.actual_reason = revert_reason(e)
            check.tx_hash, check.receipt = self.recover_transaction(e)
            if check.actual_reason == expected_reason:
                check.passed = True
                console.info(f"  {label}: reverted as expected with '{expected_reason}'")
            else:
                check.error = (
                    f"Expected revert with reason '{expected_reason}', "
                    f"but reverted with '{check.actual_reason}'"
                )
            return check

        check.error = f"Expected revert with reason '{expected_reason}', but the call succeeded"
        return check
