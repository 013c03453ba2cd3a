"""
Ballot voting workflow: fund the actors, then five phases of checked steps.

Actors (in provisioning order): chairperson, voter 1, voter 2, voter 3 (never
granted a right to vote) and an unauthorized signer. Every state-changing call is
recorded as an Action before it is sent and updated once its outcome is known.
Every read-back is checked and a mismatch fails the step (and so the stage).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3

from cdk_harness import console
from cdk_harness.accounts import Signer
from cdk_harness.contracts import BALLOT_PROPOSALS, decode_bytes32_string
from cdk_harness.errors import HarnessError, StepFailed
from cdk_harness.executor import (
    OUTCOME_MINED_REVERT,
    PreparedCall,
    TransactionExecutor,
    TransactionOutcome,
    error_message,
)
from cdk_harness.inspector import ChainInspector
from cdk_harness.orchestrator import Step, StageRun, StepOutcome, expect_equal
from cdk_harness.records import ACTION_REVERTED_EXPECTEDLY, Action

ROLES = ("Chairperson", "Voter 1", "Voter 2", "Voter 3 (no rights initially)", "Unauthorized Signer")

REASON_NO_RIGHT = "Has no right to vote"
REASON_ONLY_CHAIRPERSON = "Only chairperson can give right to vote."

EXPECTED_WINNER_INDEX = 0
EXPECTED_WINNER_NAME = BALLOT_PROPOSALS[0]


def _short(address: str) -> str:
    return address[:10]


@dataclass
class Actors:
    chairperson: Signer
    voter1: Signer
    voter2: Signer
    voter3: Signer
    unauthorized: Signer

    @classmethod
    def from_signers(cls, signers: Sequence[Signer]) -> "Actors":
        if len(signers) < len(ROLES):
            missing = ", ".join(ROLES[len(signers):])
            raise HarnessError(
                f"Required signer(s) undefined: {missing}. Got {len(signers)} account(s); "
                f"the voting workflow needs {len(ROLES)}. Check PRIVATE_KEY or the node's accounts."
            )
        return cls(*signers[: len(ROLES)])

    def all(self) -> List[Signer]:
        return [self.chairperson, self.voter1, self.voter2, self.voter3, self.unauthorized]


class VotingWorkflow:
    def __init__(self, run: StageRun, ballot, executor: TransactionExecutor, inspector: ChainInspector,
                 actors: Actors, confirmations: int = 1):
        self.run = run
        self.record = run.record
        self.ballot = ballot
        self.executor = executor
        self.inspector = inspector
        self.actors = actors
        self.confirmations = confirmations
        if self.record.actions is None:
            self.record.actions = []
        self.record.payload.setdefault("finalState", {})

    # -------------------------
    # Reads
    # -------------------------
    def voter_weight(self, address: str) -> int:
        voter = self.ballot.functions.voters(address).call()
        console.debug(f"  voters({address}) -> {voter}")
        return int(voter[0])

    def proposal(self, index: int):
        name, vote_count = self.ballot.functions.proposals(index).call()
        return decode_bytes32_string(name), int(vote_count)

    def all_proposals(self) -> List[Dict[str, Any]]:
        proposals = []
        for i in range(len(BALLOT_PROPOSALS)):
            try:
                name, vote_count = self.proposal(i)
                proposals.append({"name": name, "voteCount": str(vote_count)})
            except Exception as e:
                console.warn(f"  Could not read proposals({i}): {error_message(e)}")
                proposals.append({"name": f"Error fetching P[{i}]", "voteCount": "N/A"})
        return proposals

    # -------------------------
    # Writes
    # -------------------------
    def _transact(self, action: Action, fn, signer: Signer, context: str) -> TransactionOutcome:
        call = PreparedCall.from_function(fn, signer, label=context)
        console.info(f"[{context}] Attempting... (from={signer.address})")
        outcome = self.executor.submit(call, self.confirmations)
        action.tx_hash = outcome.tx_hash
        action.receipt = outcome.receipt
        if not outcome.ok:
            action.mark("failure" if outcome.kind == OUTCOME_MINED_REVERT else "exception", outcome.error)
            if outcome.broadcast:
                self.inspector.describe(outcome.response, outcome.receipt, self.ballot, f"Failed {context}")
            raise StepFailed(f"{context}: {outcome.error}")
        self.inspector.describe(outcome.response, outcome.receipt, self.ballot, context)
        return outcome

    def _checked_action(self, action: Action, body):
        """Run body for action; a failed check after a mined tx still marks the action failed."""
        try:
            body()
        except Exception as e:
            if action.status.startswith("pending"):
                action.mark("failure", str(e) if isinstance(e, StepFailed) else error_message(e))
            raise
        action.mark("success")

    def _expect_rejected(self, action: Action, fn, signer: Signer, reason: str, context: str) -> StepOutcome:
        call = PreparedCall.from_function(fn, signer, label=context)
        console.info(f"[{context}] Expecting revert '{reason}'")
        check = self.executor.expect_revert(call, reason)
        action.tx_hash = check.tx_hash
        action.receipt = check.receipt
        if not check.passed:
            action.mark("failure", check.error)
            return StepOutcome.failed(check.error)

        action.status = ACTION_REVERTED_EXPECTEDLY
        if check.tx_hash:
            self.inspector.describe(None, check.receipt, self.ballot, f"{context} (reverted)")
        else:
            console.info(f"  No transaction was mined for {context}; decoding the rejected call data.")
            self.inspector.describe({"from": signer.address, "to": call.to, "data": call.data_hex, "value": 0},
                                    None, self.ballot, f"{context} (reverted, not mined)")
        return StepOutcome.reverted_expectedly()

    # -------------------------
    # Funding
    # -------------------------
    def fund_accounts(self, amount_wei: int):
        chair = self.actors.chairperson
        console.section(f"Funding Test Accounts from Chairperson ({chair.address})")
        for signer in self.actors.all()[1:]:
            if signer.address.lower() == chair.address.lower():
                console.info(f"Skipping self-funding for {signer.address}")
                continue
            balance = self.inspector.balance_of(signer.address)
            if balance is not None and balance >= amount_wei:
                console.info(f"Skipping {signer.address}: already holds {Web3.from_wei(balance, 'ether')} ETH")
                continue

            action = self.record.add_action(Action(
                f"FundAccount_{signer.address}",
                kind="fund",
                fields={"from": chair.address, "to": signer.address, "value": str(amount_wei)},
            ))
            console.info(f"Funding {signer.address} with {Web3.from_wei(amount_wei, 'ether')} ETH...")
            outcome = self.executor.send_value(chair, signer.address, amount_wei, self.confirmations)
            action.tx_hash = outcome.tx_hash
            action.receipt = outcome.receipt
            if outcome.ok:
                action.mark("success")
                console.info(f"  Sent {Web3.from_wei(amount_wei, 'ether')} ETH to {signer.address}. Tx: {outcome.tx_hash}")
            elif outcome.kind == OUTCOME_MINED_REVERT:
                action.mark("failure", outcome.error)
            else:
                action.mark("exception", outcome.error)
            if outcome.broadcast:
                context = f"Funding {signer.address}" if outcome.ok else f"Failed Funding {signer.address}"
                self.inspector.describe(outcome.response, outcome.receipt, None, context)

        self.inspector.balances(self.actors.all(), "Account Balances After Funding")

    # -------------------------
    # Phases
    # -------------------------
    def initial_state_steps(self) -> List[Step]:
        def initial_state():
            chair, voter1 = self.actors.chairperson, self.actors.voter1
            expect_equal(self.voter_weight(chair.address), 1, "Chairperson weight")
            expect_equal(self.voter_weight(voter1.address), 0, "Voter1 initial weight")
            console.info("  Chairperson weight 1, Voter1 weight 0")

        return [Step("Initial State Checks", initial_state)]

    def grant_rights_steps(self, voters: Optional[Sequence[Signer]] = None) -> List[Step]:
        chair = self.actors.chairperson
        voters = voters if voters is not None else [self.actors.voter1, self.actors.voter2]

        def grant(voter: Signer, context: str):
            def step():
                action = self.record.add_action(Action("GrantVoteRight", fields={"by": chair.address, "to": voter.address}))

                def body():
                    self._transact(action, self.ballot.functions.giveRightToVote(voter.address), chair, context)
                    expect_equal(self.voter_weight(voter.address), 1, f"Voter {voter.address} weight after grant")

                self._checked_action(action, body)
            return step

        return [
            Step(f"Grant Voting Rights to {_short(v.address)}...", grant(v, f"Grant Voting Rights to {_short(v.address)}..."))
            for v in voters
        ]

    def voting_steps(self) -> List[Step]:
        voter1, voter2 = self.actors.voter1, self.actors.voter2

        def vote():
            action = self.record.add_action(Action("Vote", fields={"voter": voter1.address, "proposalIndex": 0}))
            self._checked_action(action, lambda: self._transact(
                action, self.ballot.functions.vote(0), voter1, "Voting Process - Voter1 Votes"))

        def delegate():
            action = self.record.add_action(Action("Delegate", fields={"delegator": voter2.address, "to": voter1.address}))
            self._checked_action(action, lambda: self._transact(
                action, self.ballot.functions.delegate(voter1.address), voter2, "Voting Process - Voter2 Delegates to Voter1"))

        def verify_count():
            name, vote_count = self.proposal(0)
            console.info(f"  Proposal 0 ({name}) voteCount: {vote_count}")
            expect_equal(vote_count, 2, "Proposal 0 vote count")

        return [
            Step("Voting Process - Voter1 Votes", vote),
            Step("Voting Process - Voter2 Delegates to Voter1", delegate),
            Step("Voting Process - Verify Vote Count", verify_count),
        ]

    def negative_steps(self) -> List[Step]:
        voter3, intruder = self.actors.voter3, self.actors.unauthorized
        vote_context = f"Negative Test - Unauthorized Vote by {_short(voter3.address)}"
        grant_context = f"Negative Test - Unauthorized Grant by {_short(intruder.address)}"

        def unauthorized_vote():
            action = self.record.add_action(Action("UnauthorizedVoteAttempt", fields={"voter": voter3.address}))
            return self._expect_rejected(action, self.ballot.functions.vote(0), voter3, REASON_NO_RIGHT, vote_context)

        def unauthorized_grant():
            action = self.record.add_action(Action(
                "UnauthorizedGrantAttempt", fields={"granter": intruder.address, "to": voter3.address}))
            return self._expect_rejected(action, self.ballot.functions.giveRightToVote(voter3.address), intruder,
                                         REASON_ONLY_CHAIRPERSON, grant_context)

        return [Step(vote_context, unauthorized_vote), Step(grant_context, unauthorized_grant)]

    def final_state_steps(self) -> List[Step]:
        def final_state():
            winner_index = int(self.ballot.functions.winningProposal().call())
            winner_name = decode_bytes32_string(self.ballot.functions.winnerName().call())
            _, winning_votes = self.proposal(winner_index)
            console.info(f"  Winning proposal: {winner_index} ({winner_name}) with {winning_votes} vote(s)")
            expect_equal(winner_index, EXPECTED_WINNER_INDEX, "Winning proposal index")
            expect_equal(winner_name, EXPECTED_WINNER_NAME, "Winner name")
            self.record.payload["finalState"] = {
                "winnerIndex": str(winner_index),
                "winnerName": winner_name,
                "winningProposalVoteCount": str(winning_votes),
                "allProposals": self.all_proposals(),
            }

        return [Step("Final State Verification", final_state)]

    def run_phases(self) -> bool:
        phases = [
            ("Initial State Checks", self.initial_state_steps()),
            ("Grant Voting Rights", self.grant_rights_steps()),
            ("Voting Process", self.voting_steps()),
            ("Negative Tests", self.negative_steps()),
            ("Final State Checks", self.final_state_steps()),
        ]
        for title, steps in phases:
            if not self.run.run_steps(steps, title=title):
                return False
        return True
