from unittest.mock import MagicMock

import pytest
from eth_abi import encode as abi_encode
from eth_utils import event_abi_to_log_topic, function_abi_to_4byte_selector
from hexbytes import HexBytes

from cdk_harness.accounts import Signer
from cdk_harness.inspector import ChainInspector

VOTE_ABI = {"type": "function", "name": "vote", "stateMutability": "nonpayable",
            "inputs": [{"name": "proposal", "type": "uint256"}], "outputs": []}
VOTED_ABI = {"type": "event", "name": "Voted", "anonymous": False, "inputs": [
    {"name": "voter", "type": "address", "indexed": True},
    {"name": "proposal", "type": "uint256", "indexed": False},
]}
VOTER = "0x" + "ab" * 20


@pytest.fixture
def contract(w3):
    return w3.eth.contract(abi=[VOTE_ABI, VOTED_ABI])


def _log(topics, data):
    return {
        "address": "0x" + "cd" * 20,
        "topics": topics,
        "data": HexBytes(data),
        "blockHash": HexBytes("0x" + "01" * 32),
        "blockNumber": 1,
        "transactionHash": HexBytes("0x" + "02" * 32),
        "transactionIndex": 0,
        "logIndex": 0,
    }


def test_describe_decodes_input_and_logs(w3, contract):
    data = "0x" + (function_abi_to_4byte_selector(VOTE_ABI) + abi_encode(["uint256"], [2])).hex()
    voted = _log([HexBytes(event_abi_to_log_topic(VOTED_ABI)), HexBytes(abi_encode(["address"], [VOTER]))],
                 abi_encode(["uint256"], [2]))
    unknown = _log([HexBytes("0x" + "ee" * 32)], b"")
    receipt = {"status": 1, "blockNumber": 1, "gasUsed": "50000", "logs": [voted, unknown],
               "blockHash": "0x" + "99" * 32}

    summary = ChainInspector(w3).describe({"hash": "0x" + "02" * 32, "input": data, "value": 0}, receipt, contract, "vote")

    assert summary["decodedInput"]["function"] == "vote"
    assert summary["decodedInput"]["args"] == {"proposal": 2}
    assert summary["decodedLogs"][0]["event"] == "Voted"
    assert summary["decodedLogs"][0]["args"]["proposal"] == 2
    assert summary["decodedLogs"][0]["args"]["voter"].lower() == VOTER
    assert summary["decodedLogs"][1] == {"index": 1, "event": None, "topic0": "0x" + "ee" * 32,
                                         "address": "0x" + "cd" * 20}
    # unknown block hash: logged, not raised
    assert summary["block"] is None


def test_describe_never_raises(contract):
    w3 = MagicMock()
    w3.eth.get_block.side_effect = ConnectionError("down")
    inspector = ChainInspector(w3)

    summary = inspector.describe({"input": "0xdeadbeef", "value": 0}, {"logs": None, "blockHash": "0x01"}, contract, "junk")
    assert summary["decodedInput"] is None
    assert summary["block"] is None

    assert inspector.describe(None, None, None, "nothing")["txHash"] is None
    assert inspector.describe("not a dict", None, None, "garbage")["context"] == "garbage"


def test_fetch_block_summary(w3):
    w3.eth.send_transaction({"from": w3.eth.accounts[0], "to": w3.eth.accounts[1], "value": 1})
    latest = w3.eth.get_block("latest")
    summary = ChainInspector(w3).fetch_block(latest["hash"])
    assert summary["number"] == latest["number"]
    assert summary["transactionCount"] == 1


def test_balances_snapshot(w3):
    signers = [Signer(a, None, f"acct{i}") for i, a in enumerate(w3.eth.accounts[:2])]
    snapshot = ChainInspector(w3).balances(signers, "Balances")
    assert [s["label"] for s in snapshot] == ["acct0", "acct1"]
    assert snapshot[0]["balanceWei"] == str(w3.eth.get_balance(w3.eth.accounts[0]))

    broken = MagicMock()
    broken.eth.get_balance.side_effect = ConnectionError("down")
    assert ChainInspector(broken).balances(signers[:1], "Balances")[0]["balanceWei"] is None
