"""
Chain inspector: human-readable diagnostics for transactions and balances.

Nothing here raises. A decode or RPC failure becomes a log line and a null field
in the returned summary; diagnostics must never change a stage's verdict.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from eth_utils import event_abi_to_log_topic
from web3 import Web3

from cdk_harness import console
from cdk_harness.accounts import Signer
from cdk_harness.ledger import to_jsonable


def _topic_hex(topic) -> Optional[str]:
    if topic is None:
        return None
    if isinstance(topic, (bytes, bytearray)):
        return "0x" + bytes(topic).hex()
    return str(topic)


class ChainInspector:
    def __init__(self, w3: Web3):
        self.w3 = w3

    def decode_input(self, data, value, contract) -> Optional[Dict[str, Any]]:
        if contract is None or not data or data in ("0x", b""):
            return None
        try:
            func, args = contract.decode_function_input(data)
        except Exception as e:
            console.warn(f"  Could not decode transaction input: {e}")
            return None
        value = int(value or 0)
        decoded = {
            "function": func.fn_name,
            "signature": getattr(func, "signature", None),
            "args": to_jsonable(dict(args)),
            "value": str(value),
            "valueEth": str(Web3.from_wei(value, "ether")),
        }
        console.info(f"  Decoded function: {decoded['function']}")
        for name, arg in decoded["args"].items():
            console.info(f"    {name}: {arg}")
        if value:
            console.info(f"  Value: {decoded['valueEth']} ETH")
        return decoded

    def _event_topics(self, contract) -> Dict[bytes, str]:
        topics = {}
        for entry in getattr(contract, "abi", None) or []:
            if entry.get("type") != "event" or entry.get("anonymous"):
                continue
            try:
                topics[bytes(event_abi_to_log_topic(entry))] = entry["name"]
            except Exception as e:
                console.debug(f"  Skipping event ABI {entry.get('name')}: {e}")
        return topics

    def decode_logs(self, logs: Sequence[Any], contract) -> List[Dict[str, Any]]:
        topics = self._event_topics(contract) if contract is not None else {}
        decoded = []
        for i, log in enumerate(logs or []):
            log_topics = log.get("topics") or []
            topic0 = log_topics[0] if log_topics else None
            topic_key = None
            if topic0 is not None:
                topic_key = bytes(topic0) if isinstance(topic0, (bytes, bytearray)) else bytes.fromhex(str(topic0)[2:])
            name = topics.get(topic_key)
            if name is None:
                console.info(f"  Log {i}: unknown event, topic0={_topic_hex(topic0)} address={log.get('address')}")
                decoded.append({"index": i, "event": None, "topic0": _topic_hex(topic0), "address": log.get("address")})
                continue
            try:
                event = getattr(contract.events, name)().process_log(log)
                args = to_jsonable(dict(event["args"]))
                console.info(f"  Log {i}: {name} {json.dumps(args)}")
                decoded.append({"index": i, "event": name, "args": args, "address": log.get("address")})
            except Exception as e:
                console.warn(f"  Log {i}: matched {name} but could not be parsed: {e}")
                decoded.append({"index": i, "event": name, "topic0": _topic_hex(topic0), "error": str(e)})
        return decoded

    def fetch_block(self, block_hash) -> Optional[Dict[str, Any]]:
        if not block_hash:
            return None
        try:
            block = self.w3.eth.get_block(block_hash)
        except Exception as e:
            console.warn(f"  Block {_topic_hex(block_hash)} could not be fetched: {e}")
            return None
        if block is None:
            console.warn(f"  Block with hash {_topic_hex(block_hash)} not found.")
            return None
        summary = {
            "number": block.get("number"),
            "hash": _topic_hex(block.get("hash")),
            "timestamp": block.get("timestamp"),
            "gasUsed": str(block.get("gasUsed")),
            "transactionCount": len(block.get("transactions") or []),
        }
        console.info(f"  Block {summary['number']} timestamp={summary['timestamp']} txs={summary['transactionCount']}")
        return summary

    def describe(self, response: Optional[Dict[str, Any]] = None, receipt: Optional[Dict[str, Any]] = None,
                 contract=None, context: str = "N/A") -> Dict[str, Any]:
        """Decode what is known about one transaction (or bare call data) and print it."""
        console.section(f"Transaction details: {context}")
        summary: Dict[str, Any] = {"context": context, "txHash": None, "decodedInput": None,
                                   "decodedLogs": [], "block": None}
        try:
            if response is not None:
                summary["txHash"] = response.get("hash")
                console.info(f"  From: {response.get('from')}  To: {response.get('to')}  Hash: {summary['txHash']}")
                console.debug(f"  Raw transaction: {json.dumps(to_jsonable(response))}")
                data = response.get("input") or response.get("data")
                summary["decodedInput"] = self.decode_input(data, response.get("value"), contract)
            else:
                console.info("  No transaction response available.")

            if receipt is not None:
                summary["txHash"] = summary["txHash"] or receipt.get("transactionHash")
                console.info(
                    f"  Receipt: status={receipt.get('status')} block={receipt.get('blockNumber')} "
                    f"gasUsed={receipt.get('gasUsed')}"
                )
                console.debug(f"  Raw receipt: {json.dumps(to_jsonable(receipt))}")
                summary["decodedLogs"] = self.decode_logs(receipt.get("logs"), contract)
                summary["block"] = self.fetch_block(receipt.get("blockHash"))
            else:
                console.info("  No receipt available.")
        except Exception as e:
            console.warn(f"  Inspection of '{context}' stopped early: {e}")
        return summary

    def balance_of(self, address: str) -> Optional[int]:
        try:
            return int(self.w3.eth.get_balance(address))
        except Exception as e:
            console.warn(f"  Could not fetch balance for {address}: {e}")
            return None

    def balances(self, signers: Sequence[Signer], label: str) -> List[Dict[str, Any]]:
        console.section(label)
        snapshot = []
        for signer in signers:
            wei = self.balance_of(signer.address)
            if wei is None:
                snapshot.append({"address": signer.address, "label": signer.label, "balanceWei": None})
                continue
            console.info(f"  {signer.label or 'Account'} {signer.address}: {Web3.from_wei(wei, 'ether')} ETH ({wei} wei)")
            snapshot.append({"address": signer.address, "label": signer.label, "balanceWei": str(wei)})
        return snapshot
