#!/usr/bin/env python3
"""
Stage 1: raw eth_call to the SHA-256 precompile (0x...02).

Run: cdk-stage1   (or python -m cdk_harness.stage1_precompile)

The returned bytes must equal hashlib's SHA-256 of the same input. No
transaction is sent, so transactionHash is always null.
"""

import hashlib
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from web3 import Web3

from cdk_harness import console
from cdk_harness.accounts import primary_signer
from cdk_harness.config import HarnessConfig, connect
from cdk_harness.executor import error_message
from cdk_harness.orchestrator import Step, StageRun, StepOutcome, stage_main

STAGE_NAME = "Stage 1: Raw Precompile Invocation (sha256)"
PRECOMPILE_ADDRESS = "0x0000000000000000000000000000000000000002"
INPUT_STRING = "Hello, CDK Erigon Precompile!"


def new_payload(caller: Optional[str]) -> Dict[str, Any]:
    data = INPUT_STRING.encode("utf-8")
    return {
        "inputs": {
            "precompileAddress": PRECOMPILE_ADDRESS,
            "inputDataHex": "0x" + data.hex(),
            "inputDataString": INPUT_STRING,
            "callerAddress": caller,
        },
        "callDetails": {},
        "decodedOutput": None,
        "expectedOutput": None,
        "transactionHash": None,
        "receiverAddress": PRECOMPILE_ADDRESS,
        "blockNumber": None,
        "validationNotes": "",
    }


def invoke_precompile(w3: Web3, payload: Dict[str, Any]) -> StepOutcome:
    """Call the precompile and fill payload in place. Mismatch or call error is a failed outcome."""
    data = INPUT_STRING.encode("utf-8")
    call: Dict[str, Any] = {"to": PRECOMPILE_ADDRESS, "data": payload["inputs"]["inputDataHex"]}
    caller = payload["inputs"]["callerAddress"]
    if caller:
        call["from"] = caller
    console.info(f"Attempting direct call to {PRECOMPILE_ADDRESS} with data: {call['data']} from {caller}")

    try:
        block = w3.eth.get_block("latest")
        payload["blockNumber"] = block["number"]
        payload["callDetails"]["blockHash"] = "0x" + bytes(block["hash"]).hex()
        payload["callDetails"]["blockTimestamp"] = (
            datetime.fromtimestamp(block["timestamp"], timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )

        result = w3.eth.call(call)
    except Exception as e:
        message = error_message(e)
        notes = f"Error during direct precompile call: {message}"
        payload["callDetails"]["error"] = message
        revert_data = getattr(e, "data", None)
        if revert_data:
            revert_data = revert_data if isinstance(revert_data, str) else "0x" + bytes(revert_data).hex()
            payload["callDetails"]["revertData"] = revert_data
            notes += f" | Revert data: {revert_data}"
        payload["validationNotes"] = notes
        console.error(notes)
        return StepOutcome.failed(notes)

    expected = "0x" + hashlib.sha256(data).hexdigest()
    returned = "0x" + bytes(result).hex()
    payload["expectedOutput"] = expected
    payload["decodedOutput"] = returned

    if returned != expected:
        notes = f"Direct call failed. Returned data {returned} does not match expected SHA256 hash {expected}."
        payload["validationNotes"] = notes
        console.error(f"Precompile returned: {returned}, Expected: {expected}")
        return StepOutcome.failed(notes)

    payload["validationNotes"] = "Direct call successful. Returned data matches expected SHA256 hash."
    console.info(f"Precompile returned: {returned}")
    console.info(f"Expected hash:       {expected}")
    return StepOutcome.passed()


def run(stage: StageRun, cfg: HarnessConfig):
    w3 = connect(cfg)
    signer = primary_signer(w3, cfg.private_key, "Caller")
    caller = signer.address if signer else None

    payload = new_payload(caller)
    stage.record.payload = payload
    stage.run_steps([Step("SHA-256 precompile returns expected digest", lambda: invoke_precompile(w3, payload))])


def main() -> int:
    return stage_main(STAGE_NAME, run)


if __name__ == "__main__":
    sys.exit(main())
