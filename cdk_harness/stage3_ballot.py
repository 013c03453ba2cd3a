#!/usr/bin/env python3
"""
Stage 3: drive the Ballot deployed by stage 2 through the voting workflow.

Run: cdk-stage3   (or python -m cdk_harness.stage3_ballot)

Needs a successful stage 2 record (contractAddress + contractAbi) in the results
ledger and five accounts: PRIVATE_KEY plus four keys derived from it, or five
node-managed accounts.
"""

import json
import sys

from eth_utils import to_checksum_address
from web3 import Web3

from cdk_harness import console
from cdk_harness.accounts import EXPECTED_ACCOUNT_COUNT, build_signers, derive_test_keys
from cdk_harness.config import HarnessConfig, connect
from cdk_harness.executor import TransactionExecutor
from cdk_harness.inspector import ChainInspector
from cdk_harness.ledger import require_fields
from cdk_harness.orchestrator import StageRun, stage_main
from cdk_harness.stage2_deploy import STAGE_NAME as DEPLOY_STAGE_NAME
from cdk_harness.voting import ROLES, Actors, VotingWorkflow

STAGE_NAME = "Stage 3: Contract Invocation and Tests (Ballot)"


def run(stage: StageRun, cfg: HarnessConfig):
    stage.record.actions = []
    stage.record.payload["finalState"] = {}

    deployment = stage.ledger.find_latest_success(DEPLOY_STAGE_NAME)
    require_fields(deployment, ("contractAddress", "contractAbi"))
    address = to_checksum_address(deployment["contractAddress"])
    abi = deployment["contractAbi"]
    if isinstance(abi, str):
        abi = json.loads(abi)
    console.info(f"Using Ballot at {address} (deployed in run {deployment.get('runId', 'n/a')})")

    w3 = connect(cfg)
    keys = derive_test_keys(cfg.private_key, EXPECTED_ACCOUNT_COUNT)
    signers = build_signers(w3, keys, ROLES)
    console.info(f"Retrieved {len(signers)} signer(s) for network {cfg.network_name}.")
    for i, role in enumerate(ROLES):
        console.info(f"{role}: {signers[i].address if i < len(signers) else 'undefined'}")
    actors = Actors.from_signers(signers)

    inspector = ChainInspector(w3)
    executor = TransactionExecutor(w3, cfg.receipt_timeout, cfg.poll_interval)
    inspector.balances(actors.all(), "Initial Account Balances")

    ballot = w3.eth.contract(address=address, abi=abi)
    workflow = VotingWorkflow(stage, ballot, executor, inspector, actors, cfg.tx_confirmations)
    workflow.fund_accounts(Web3.to_wei(cfg.fund_amount_eth, "ether"))
    workflow.run_phases()


def main() -> int:
    return stage_main(STAGE_NAME, run)


if __name__ == "__main__":
    sys.exit(main())
