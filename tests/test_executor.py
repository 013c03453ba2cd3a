from unittest.mock import MagicMock, PropertyMock

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from hexbytes import HexBytes
from web3.exceptions import ContractLogicError

from cdk_harness.accounts import Signer
from cdk_harness.executor import (
    OUTCOME_MINED_REVERT,
    OUTCOME_MINED_SUCCESS,
    OUTCOME_SUBMISSION_EXCEPTION,
    OUTCOME_WAIT_EXCEPTION,
    PreparedCall,
    TransactionExecutor,
    chain_record,
    revert_reason,
)

KEY = "0x" + "4c" * 32
TX_HASH = HexBytes("0x" + "aa" * 32)


def _revert(reason):
    data = "0x08c379a0" + abi_encode(["string"], [reason]).hex()
    return ContractLogicError("execution reverted", data)


@pytest.fixture
def mock_w3():
    w3 = MagicMock()
    w3.eth.send_transaction.return_value = TX_HASH
    w3.eth.get_transaction.return_value = {"hash": TX_HASH, "from": "0x1", "value": 0, "gas": 21000}
    return w3


@pytest.fixture
def node_signer():
    return Signer("0x" + "11" * 20, None, "node")


def test_value_transfer_from_node_account(w3):
    sender, receiver = w3.eth.accounts[0], w3.eth.accounts[1]
    before = w3.eth.get_balance(receiver)

    outcome = TransactionExecutor(w3, receipt_timeout=10, poll_interval=0).send_value(Signer(sender), receiver, 12345)

    assert outcome.kind == OUTCOME_MINED_SUCCESS
    assert outcome.ok
    assert outcome.tx_hash.startswith("0x") and len(outcome.tx_hash) == 66
    assert outcome.receipt["status"] == 1
    assert isinstance(outcome.receipt["gasUsed"], str)
    assert outcome.response["value"] == "12345"
    assert w3.eth.get_balance(receiver) - before == 12345


def test_value_transfer_signed_locally(w3):
    local = Signer.from_key(KEY, "local")
    w3.eth.send_transaction({"from": w3.eth.accounts[0], "to": local.address, "value": 10**18})
    executor = TransactionExecutor(w3, receipt_timeout=10, poll_interval=0)

    tx = executor.build_transaction(PreparedCall(to=w3.eth.accounts[2], data=b"", signer=local, value=1))
    assert tx["nonce"] == 0
    assert tx["chainId"] == w3.eth.chain_id
    assert tx["gas"] >= 21000

    outcome = executor.send_value(local, w3.eth.accounts[2], 1)
    assert outcome.ok
    assert outcome.response["from"] == Account.from_key(KEY).address


def test_submission_failure_is_an_outcome(mock_w3, node_signer):
    mock_w3.eth.send_transaction.side_effect = ConnectionError("node unreachable")

    outcome = TransactionExecutor(mock_w3).send_value(node_signer, "0x" + "22" * 20, 1)

    assert outcome.kind == OUTCOME_SUBMISSION_EXCEPTION
    assert outcome.error == "node unreachable"
    assert outcome.tx_hash is None
    assert outcome.response is None
    assert not outcome.broadcast


def test_gas_estimation_revert_is_a_submission_exception(mock_w3):
    mock_w3.eth.get_transaction_count.return_value = 0
    mock_w3.eth.chain_id = 1
    mock_w3.eth.get_block.return_value = {"baseFeePerGas": 10}
    mock_w3.eth.max_priority_fee = 1
    mock_w3.eth.estimate_gas.side_effect = _revert("Has no right to vote")

    call = PreparedCall(to="0x" + "22" * 20, data="0xabcdef", signer=Signer.from_key(KEY))
    outcome = TransactionExecutor(mock_w3).submit(call)

    assert outcome.kind == OUTCOME_SUBMISSION_EXCEPTION
    assert outcome.error == "execution reverted"
    mock_w3.eth.send_raw_transaction.assert_not_called()


def test_other_estimation_errors_use_fallback_gas(mock_w3):
    mock_w3.eth.get_transaction_count.return_value = 3
    mock_w3.eth.chain_id = 1
    mock_w3.eth.get_block.return_value = {}
    mock_w3.eth.gas_price = 7
    mock_w3.eth.estimate_gas.side_effect = ValueError("method not supported")

    tx = TransactionExecutor(mock_w3).build_transaction(
        PreparedCall(to="0x" + "22" * 20, data=b"", signer=Signer.from_key(KEY)))

    assert tx["gas"] == 400_000
    assert tx["gasPrice"] == 7
    assert "maxFeePerGas" not in tx


def test_mined_revert(mock_w3, node_signer):
    mock_w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 9, "gasUsed": 30000}

    outcome = TransactionExecutor(mock_w3).send_value(node_signer, "0x" + "22" * 20, 1)

    assert outcome.kind == OUTCOME_MINED_REVERT
    assert outcome.error == "Transaction reverted with status 0"
    assert outcome.tx_hash == "0x" + "aa" * 32
    assert outcome.receipt["gasUsed"] == "30000"


def test_receipt_timeout_after_broadcast(mock_w3, node_signer):
    mock_w3.eth.wait_for_transaction_receipt.side_effect = TimeoutError("not mined in 600s")

    outcome = TransactionExecutor(mock_w3).send_value(node_signer, "0x" + "22" * 20, 1)

    assert outcome.kind == OUTCOME_WAIT_EXCEPTION
    assert outcome.broadcast
    assert outcome.receipt is None


def test_waits_for_requested_confirmations(mock_w3, node_signer):
    mock_w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 5}
    heights = PropertyMock(side_effect=[5, 6, 7])
    type(mock_w3.eth).block_number = heights

    outcome = TransactionExecutor(mock_w3, poll_interval=0).send_value(node_signer, "0x" + "22" * 20, 1, confirmations=3)

    assert outcome.ok
    assert heights.call_count == 3


def test_single_confirmation_does_not_poll(mock_w3, node_signer):
    mock_w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 5}
    heights = PropertyMock(return_value=5)
    type(mock_w3.eth).block_number = heights

    TransactionExecutor(mock_w3, poll_interval=0).send_value(node_signer, "0x" + "22" * 20, 1)
    heights.assert_not_called()


@pytest.mark.parametrize("exc,expected", [
    (_revert("Only chairperson can give right to vote."), "Only chairperson can give right to vote."),
    (ContractLogicError("execution reverted: Has no right to vote"), "Has no right to vote"),
    (ContractLogicError("execution reverted"), ""),
    (ContractLogicError("VM Exception while processing transaction: revert Already voted."), "Already voted."),
])
def test_revert_reason(exc, expected):
    assert revert_reason(exc) == expected


def _function_raising(exc):
    fn = MagicMock()
    fn.address = "0x" + "33" * 20
    fn.fn_name = "vote"
    fn._encode_transaction_data.return_value = "0x0121b93f"
    fn.call.side_effect = exc
    return fn


def test_expect_revert_exact_reason(mock_w3, node_signer):
    fn = _function_raising(_revert("Has no right to vote"))
    check = TransactionExecutor(mock_w3).expect_revert(PreparedCall.from_function(fn, node_signer), "Has no right to vote")

    assert check.passed
    assert check.actual_reason == "Has no right to vote"
    assert check.tx_hash is None
    fn.call.assert_called_once_with({"from": node_signer.address, "value": 0})
    mock_w3.eth.send_transaction.assert_not_called()


def test_expect_revert_wrong_reason(mock_w3, node_signer):
    fn = _function_raising(_revert("Already voted."))
    check = TransactionExecutor(mock_w3).expect_revert(PreparedCall.from_function(fn, node_signer), "Has no right to vote")

    assert not check.passed
    assert "but reverted with 'Already voted.'" in check.error


def test_expect_revert_when_call_succeeds(mock_w3, node_signer):
    fn = _function_raising(None)
    fn.call.side_effect = None
    fn.call.return_value = []
    check = TransactionExecutor(mock_w3).expect_revert(PreparedCall.from_function(fn, node_signer), "Has no right to vote")

    assert not check.passed
    assert check.error.endswith("but the call succeeded")


def test_expect_revert_accepts_provider_specific_revert_error(mock_w3, node_signer):
    class TransactionFailed(Exception):
        pass

    fn = _function_raising(TransactionFailed("execution reverted: Has no right to vote"))
    check = TransactionExecutor(mock_w3).expect_revert(PreparedCall.from_function(fn, node_signer), "Has no right to vote")

    assert check.passed
    assert check.actual_reason == "Has no right to vote"


def test_expect_revert_on_transport_error(mock_w3, node_signer):
    fn = _function_raising(ConnectionError("reset by peer"))
    check = TransactionExecutor(mock_w3).expect_revert(PreparedCall.from_function(fn, node_signer), "Has no right to vote")

    assert not check.passed
    assert "ConnectionError" in check.error


def test_recover_transaction_from_error_payload(mock_w3):
    mock_w3.eth.get_transaction_receipt.return_value = {"status": 0, "gasUsed": 30000}
    exc = ContractLogicError("execution reverted", {"transactionHash": "0x" + "bb" * 32})

    tx_hash, receipt = TransactionExecutor(mock_w3).recover_transaction(exc)

    assert tx_hash == "0x" + "bb" * 32
    assert receipt == {"status": 0, "gasUsed": "30000"}
    assert TransactionExecutor(mock_w3).recover_transaction(ContractLogicError("execution reverted")) == (None, None)


def test_chain_record_stringifies_quantities():
    record = chain_record({"gasUsed": 21000, "effectiveGasPrice": 10**9, "blockNumber": 3, "logs": []})
    assert record == {"gasUsed": "21000", "effectiveGasPrice": "1000000000", "blockNumber": 3, "logs": []}
    assert chain_record(None) is None
