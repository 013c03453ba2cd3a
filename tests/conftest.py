import copy
import itertools

import pytest
from unittest.mock import MagicMock
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.providers.eth_tester import EthereumTesterProvider

from cdk_harness.accounts import Signer
from cdk_harness.contracts import BALLOT_PROPOSALS, encode_bytes32_string
from cdk_harness.executor import (
    OUTCOME_MINED_REVERT,
    OUTCOME_MINED_SUCCESS,
    OUTCOME_SUBMISSION_EXCEPTION,
    TransactionExecutor,
    TransactionOutcome,
)
from cdk_harness.inspector import ChainInspector
from cdk_harness.ledger import ResultLedger

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
BALLOT_ADDRESS = "0x00000000000000000000000000000000000000BA"


@pytest.fixture
def ledger(tmp_path):
    return ResultLedger(tmp_path / "results" / "results.json", "testnet")


@pytest.fixture
def w3():
    return Web3(EthereumTesterProvider())


# -------------------------
# In-memory Ballot
# -------------------------
class FakeFunction:
    def __init__(self, ballot, fn_name, args):
        self.ballot = ballot
        self.fn_name = fn_name
        self.args = args
        self.address = ballot.address

    def _encode_transaction_data(self):
        return "0x" + self.fn_name.encode().hex()

    def call(self, tx=None):
        sender = (tx or {}).get("from")
        if self.fn_name in FakeBallot.WRITES:
            # simulate against a copy; state is untouched
            state = copy.deepcopy(self.ballot.state)
            self.ballot.apply(state, self.fn_name, self.args, sender)
            return []
        return self.ballot.read(self.fn_name, self.args)


class _Functions:
    def __init__(self, ballot):
        self._ballot = ballot

    def __getattr__(self, name):
        return lambda *args: FakeFunction(self._ballot, name, args)


class FakeBallot:
    """Ballot semantics in memory: weights, delegation, votes and the two revert reasons under test."""

    WRITES = ("giveRightToVote", "vote", "delegate")

    def __init__(self, chairperson, proposals=BALLOT_PROPOSALS, address=BALLOT_ADDRESS):
        self.address = address
        self.abi = []
        self.chairperson = chairperson
        self.state = {
            "voters": {chairperson: {"weight": 1, "voted": False, "delegate": ZERO_ADDRESS, "vote": 0}},
            "proposals": [{"name": encode_bytes32_string(p), "voteCount": 0} for p in proposals],
        }
        self.functions = _Functions(self)

    @staticmethod
    def _voter(state, address):
        return state["voters"].setdefault(address, {"weight": 0, "voted": False, "delegate": ZERO_ADDRESS, "vote": 0})

    @staticmethod
    def _require(condition, reason="execution reverted"):
        if not condition:
            raise ContractLogicError(f"execution reverted: {reason}" if reason != "execution reverted" else reason)

    def apply(self, state, fn_name, args, sender):
        if fn_name == "giveRightToVote":
            (voter,) = args
            self._require(sender == self.chairperson, "Only chairperson can give right to vote.")
            self._require(not self._voter(state, voter)["voted"], "The voter already voted.")
            self._require(self._voter(state, voter)["weight"] == 0)
            self._voter(state, voter)["weight"] = 1
        elif fn_name == "vote":
            (proposal,) = args
            me = self._voter(state, sender)
            self._require(me["weight"] != 0, "Has no right to vote")
            self._require(not me["voted"], "Already voted.")
            me["voted"] = True
            me["vote"] = proposal
            state["proposals"][proposal]["voteCount"] += me["weight"]
        elif fn_name == "delegate":
            (to,) = args
            me = self._voter(state, sender)
            self._require(me["weight"] != 0, "You have no right to vote")
            self._require(not me["voted"], "You already voted.")
            self._require(to != sender, "Self-delegation is disallowed.")
            while self._voter(state, to)["delegate"] != ZERO_ADDRESS:
                to = self._voter(state, to)["delegate"]
                self._require(to != sender, "Found loop in delegation.")
            target = self._voter(state, to)
            me["voted"] = True
            me["delegate"] = to
            if target["voted"]:
                state["proposals"][target["vote"]]["voteCount"] += me["weight"]
            else:
                target["weight"] += me["weight"]
        else:
            raise AttributeError(fn_name)

    def transact(self, fn_name, args, sender):
        self.apply(self.state, fn_name, args, sender)

    def winning_proposal(self):
        best, index = 0, 0
        for i, p in enumerate(self.state["proposals"]):
            if p["voteCount"] > best:
                best, index = p["voteCount"], i
        return index

    def read(self, fn_name, args):
        if fn_name == "voters":
            v = self._voter(copy.deepcopy(self.state), args[0])
            return [v["weight"], v["voted"], v["delegate"], v["vote"]]
        if fn_name == "proposals":
            p = self.state["proposals"][args[0]]
            return [p["name"], p["voteCount"]]
        if fn_name == "winningProposal":
            return self.winning_proposal()
        if fn_name == "winnerName":
            return self.state["proposals"][self.winning_proposal()]["name"]
        raise AttributeError(fn_name)


class FakeExecutor(TransactionExecutor):
    """Applies calls to a FakeBallot and value transfers to an in-memory balance map."""

    def __init__(self, ballot, balances=None):
        super().__init__(MagicMock(), receipt_timeout=1, poll_interval=0)
        self.ballot = ballot
        self.balances = balances if balances is not None else {}
        self.fail_transfers_to = set()
        self.submitted = []
        self._block = itertools.count(100)

    def _mined(self, outcome, status):
        n = next(self._block)
        outcome.tx_hash = "0x" + format(n, "064x")
        outcome.receipt = {"status": status, "blockNumber": n, "gasUsed": "21000", "logs": []}
        outcome.kind = OUTCOME_MINED_SUCCESS if status == 1 else OUTCOME_MINED_REVERT
        if status != 1:
            outcome.error = f"Transaction reverted with status {status}"
        return outcome

    def submit(self, call, confirmations=1):
        self.submitted.append(call)
        outcome = TransactionOutcome(request=call.describe())
        if call.function is None:
            if call.to in self.fail_transfers_to:
                outcome.kind = OUTCOME_SUBMISSION_EXCEPTION
                outcome.error = "insufficient funds for gas * price + value"
                return outcome
            self.balances[call.to] = self.balances.get(call.to, 0) + call.value
            return self._mined(outcome, 1)
        try:
            self.ballot.transact(call.function.fn_name, call.function.args, call.signer.address)
        except ContractLogicError:
            return self._mined(outcome, 0)
        return self._mined(outcome, 1)


@pytest.fixture
def actors_signers():
    addresses = [Web3.to_checksum_address("0x" + format(i, "040x")) for i in range(0xA1, 0xA6)]
    labels = ("Chairperson", "Voter 1", "Voter 2", "Voter 3 (no rights initially)", "Unauthorized Signer")
    return [Signer(a, None, l) for a, l in zip(addresses, labels)]


@pytest.fixture
def fake_ballot(actors_signers):
    return FakeBallot(actors_signers[0].address)


@pytest.fixture
def fake_executor(fake_ballot):
    return FakeExecutor(fake_ballot)


@pytest.fixture
def fake_inspector(fake_executor):
    w3 = MagicMock()
    w3.eth.get_balance.side_effect = lambda address: fake_executor.balances.get(address, 0)
    return ChainInspector(w3)
