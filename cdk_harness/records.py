"""
Record shapes written to the results ledger.

Every stage writes one StageRecord: a fixed envelope (stage, runId, timestamp,
verdict; networkUsed is added by the ledger writer) plus a stage-specific payload.
Actions and TestResults are created in a pending state before the work they
describe and are mutated in place afterwards; they are never removed, so a failed
run still shows what was attempted.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

VERDICT_PENDING = "pending"
VERDICT_SUCCESS = "success"
VERDICT_FAILURE = "failure"

TEST_PENDING = "pending_test"
TEST_PASSED = "passed"
TEST_PASSED_REVERTED = "passed_reverted_expectedly"
TEST_FAILED = "failed"
TEST_TERMINAL = (TEST_PASSED, TEST_PASSED_REVERTED, TEST_FAILED)

ACTION_REVERTED_EXPECTEDLY = "success_reverted_expectedly"

CRASH_SUFFIX = " - CRASH"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def action_status(phase: str, kind: str) -> str:
    """action_status("pending", "fund") -> "pending_fund"."""
    return f"{phase}_{kind}"


@dataclass
class TestResult:
    __test__ = False

    test: str
    status: str = TEST_PENDING
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TEST_TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        d = {"test": self.test, "status": self.status}
        if self.reason is not None:
            d["reason"] = self.reason
        return d


@dataclass
class Action:
    """
    One attempted on-chain action. `fields` carries the actor columns
    (from/to/by/voter/delegator/granter/value/proposalIndex) in insertion order.
    """

    action: str
    kind: str = "action"
    fields: Dict[str, Any] = field(default_factory=dict)
    status: str = ""
    tx_hash: Optional[str] = None
    receipt: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.status:
            self.status = action_status("pending", self.kind)

    def mark(self, phase: str, error: Optional[str] = None):
        self.status = action_status(phase, self.kind)
        if error is not None:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        d = {"action": self.action}
        d.update(self.fields)
        d["status"] = self.status
        if self.tx_hash is not None:
            d["txHash"] = self.tx_hash
        if self.receipt is not None:
            d["receipt"] = self.receipt
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class StageRecord:
    stage: str
    verdict: str = VERDICT_PENDING
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=utc_timestamp)
    payload: Dict[str, Any] = field(default_factory=dict)
    test_results: List[TestResult] = field(default_factory=list)
    actions: Optional[List[Action]] = None
    error: Optional[str] = None
    stack: Optional[str] = None
    crashed: bool = False

    def add_test(self, name: str) -> TestResult:
        result = TestResult(name)
        self.test_results.append(result)
        return result

    def add_action(self, action: Action) -> Action:
        if self.actions is None:
            self.actions = []
        self.actions.append(action)
        return action

    def mark_crashed(self, error: str, stack: Optional[str] = None):
        if not self.stage.endswith(CRASH_SUFFIX):
            self.stage = self.stage + CRASH_SUFFIX
        self.verdict = VERDICT_FAILURE
        self.crashed = True
        self.error = error
        self.stack = stack

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "stage": self.stage,
            "runId": self.run_id,
            "timestamp": self.timestamp,
            "verdict": self.verdict,
        }
        d.update(self.payload)
        if self.actions is not None:
            d["actions"] = [a.to_dict() for a in self.actions]
        d["testResults"] = [t.to_dict() for t in self.test_results]
        d["error"] = self.error
        if self.stack:
            d["stack"] = self.stack
        if self.crashed:
            d["crashed"] = True
        return d
