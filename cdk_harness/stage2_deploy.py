#!/usr/bin/env python3
"""
Stage 2: deploy Ballot("Proposal A", "Proposal B", "Proposal C").

Run: cdk-stage2   (or python -m cdk_harness.stage2_deploy)

The deployment waits for DEPLOY_CONFIRMATIONS (default 2) blocks and is only a
success if code exists at the new address. contractAddress and contractAbi are
what stage 3 reads back. Each run replaces the previous stage 2 record(s).
"""

import sys
from typing import Any, Dict

from web3 import Web3

from cdk_harness import console
from cdk_harness.accounts import primary_signer
from cdk_harness.config import HarnessConfig, connect
from cdk_harness.contracts import BALLOT_PROPOSALS, encode_bytes32_string, load_ballot
from cdk_harness.errors import HarnessError
from cdk_harness.executor import PreparedCall, TransactionExecutor
from cdk_harness.inspector import ChainInspector
from cdk_harness.orchestrator import Step, StageRun, StepOutcome, check, stage_main

STAGE_NAME = "Stage 2: Contract Deployment (Ballot)"


def new_payload(cfg: HarnessConfig) -> Dict[str, Any]:
    return {
        "contractAddress": None,
        "transactionHash": None,
        "blockNumber": None,
        "gasUsed": None,
        "contractAbi": None,
        "deploymentDetails": {
            "network": cfg.network_name,
            "chainId": str(cfg.chain_id) if cfg.chain_id is not None else None,
            "deployer": None,
            "gasPrice": None,
            "gasLimit": None,
            "receipt": None,
            "codeSize": None,
            "proposals": list(BALLOT_PROPOSALS),
        },
    }


class BallotDeployment:
    def __init__(self, w3: Web3, cfg: HarnessConfig, payload: Dict[str, Any], deployer, executor, inspector):
        self.w3 = w3
        self.cfg = cfg
        self.payload = payload
        self.deployer = deployer
        self.executor = executor
        self.inspector = inspector
        self.abi = None
        self.bytecode = None

    def load_artifact(self) -> StepOutcome:
        self.abi, self.bytecode = load_ballot(self.cfg)
        console.info(f"Ballot ABI entries: {len(self.abi)}, bytecode: {len(self.bytecode) // 2 - 1} bytes")
        return StepOutcome.passed()

    def deploy(self) -> StepOutcome:
        proposal_bytes = [encode_bytes32_string(p) for p in BALLOT_PROPOSALS]
        console.info("Deploying Ballot with proposals:")
        for name, raw in zip(BALLOT_PROPOSALS, proposal_bytes):
            console.info(f"  {name:<12} 0x{raw.hex()}")

        factory = self.w3.eth.contract(abi=self.abi, bytecode=self.bytecode)
        data = factory.constructor(proposal_bytes).data_in_transaction
        call = PreparedCall(to=None, data=data, signer=self.deployer, label="deploy Ballot")
        outcome = self.executor.submit(call, self.cfg.deploy_confirmations)

        details = self.payload["deploymentDetails"]
        self.payload["transactionHash"] = outcome.tx_hash
        if outcome.response:
            details["gasPrice"] = outcome.response.get("gasPrice") or outcome.response.get("maxFeePerGas")
            details["gasLimit"] = outcome.response.get("gas")

        if not outcome.ok:
            if outcome.receipt is None and outcome.response is not None:
                # keep what is known about the broadcast transaction
                details["receipt"] = {
                    "hash": outcome.tx_hash,
                    "from": outcome.response.get("from"),
                    "to": outcome.response.get("to"),
                    "value": outcome.response.get("value"),
                }
            else:
                details["receipt"] = outcome.receipt
            return StepOutcome.failed(f"Deployment failed: {outcome.error}")

        receipt = outcome.receipt
        details["receipt"] = receipt
        self.payload["contractAddress"] = receipt.get("contractAddress")
        self.payload["blockNumber"] = str(receipt.get("blockNumber"))
        self.payload["gasUsed"] = receipt.get("gasUsed")
        self.payload["contractAbi"] = self.abi
        self.inspector.describe(outcome.response, receipt, None, "Ballot deployment")
        check(bool(self.payload["contractAddress"]), "Deployment receipt has no contractAddress")
        return StepOutcome.passed()

    def verify_code(self) -> StepOutcome:
        address = self.payload["contractAddress"]
        code = self.w3.eth.get_code(address)
        self.payload["deploymentDetails"]["codeSize"] = len(code)
        check(len(code) > 0, f"Empty contract code at {address}")
        console.info(f"Successfully deployed at {address} ({len(code)} bytes of code)")
        return StepOutcome.passed()


def run(stage: StageRun, cfg: HarnessConfig):
    w3 = connect(cfg)
    payload = new_payload(cfg)
    stage.record.payload = payload

    deployer = primary_signer(w3, cfg.private_key, "Deployer")
    if deployer is None:
        raise HarnessError("No deployer account: PRIVATE_KEY is unusable and the node manages no accounts.")
    payload["deploymentDetails"]["deployer"] = deployer.address
    console.info(f"Deployer: {deployer.address}")

    inspector = ChainInspector(w3)
    executor = TransactionExecutor(w3, cfg.receipt_timeout, cfg.poll_interval)
    inspector.balances([deployer], "Initial balance")

    deployment = BallotDeployment(w3, cfg, payload, deployer, executor, inspector)
    ok = stage.run_steps([
        Step("Load Ballot artifact", deployment.load_artifact),
        Step("Deploy Ballot", deployment.deploy),
        Step("Deployed code is non-empty", deployment.verify_code),
    ])
    if ok:
        inspector.balances([deployer], "Balance after deployment")


def main() -> int:
    return stage_main(STAGE_NAME, run, replace_existing=True)


if __name__ == "__main__":
    sys.exit(main())
