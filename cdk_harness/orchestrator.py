"""
Stage orchestration: ordered steps, fail-fast, crash boundary, single ledger write.

A stage body receives a StageRun and the loaded config. It does its own setup
(connecting, reading the predecessor record, provisioning accounts) and hands
named Steps to run.run_steps(). Each step gets a pending TestResult before it
runs; the first step that does not pass marks the run failed and nothing after it
runs, including steps handed over by later run_steps() calls.

Anything raised outside a step is a crash: the record is relabelled
"<stage> - CRASH", the traceback is stored, and the process exit code is 1.
The record is appended to the ledger exactly once, in a finally block.
"""

import os
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from cdk_harness import console
from cdk_harness.config import DEFAULT_RESULTS_DIR, HarnessConfig, load_config
from cdk_harness.errors import ConfigError, StepFailed
from cdk_harness.executor import error_message
from cdk_harness.ledger import ResultLedger
from cdk_harness.records import (
    CRASH_SUFFIX,
    TEST_FAILED,
    TEST_PASSED,
    TEST_PASSED_REVERTED,
    VERDICT_FAILURE,
    VERDICT_PENDING,
    VERDICT_SUCCESS,
    StageRecord,
)


@dataclass
class StepOutcome:
    status: str = TEST_PASSED
    reason: Optional[str] = None

    @classmethod
    def passed(cls, reason: Optional[str] = None) -> "StepOutcome":
        return cls(TEST_PASSED, reason)

    @classmethod
    def reverted_expectedly(cls, reason: Optional[str] = None) -> "StepOutcome":
        return cls(TEST_PASSED_REVERTED, reason)

    @classmethod
    def failed(cls, reason: str) -> "StepOutcome":
        return cls(TEST_FAILED, reason)

    @property
    def ok(self) -> bool:
        return self.status in (TEST_PASSED, TEST_PASSED_REVERTED)


@dataclass
class Step:
    name: str
    run: Callable[[], Optional[StepOutcome]]


def check(condition: bool, message: str):
    if not condition:
        raise StepFailed(message)


def expect_equal(actual: Any, expected: Any, message: str):
    if actual != expected:
        raise StepFailed(f"{message}: expected {expected!r}, got {actual!r}")


class StageRun:
    def __init__(self, ledger: ResultLedger, stage_name: str, replace_existing: bool = False):
        self.ledger = ledger
        self.record = StageRecord(stage_name)
        self.replace_existing = replace_existing
        self.failed_step: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.failed_step is not None

    def _execute(self, step: Step) -> StepOutcome:
        try:
            outcome = step.run()
        except StepFailed as e:
            return StepOutcome.failed(str(e))
        except Exception as e:
            console.debug(traceback.format_exc())
            return StepOutcome.failed(f"{type(e).__name__}: {error_message(e)}")
        return outcome or StepOutcome.passed()

    def run_steps(self, steps: Iterable[Step], title: Optional[str] = None) -> bool:
        """Run steps in order until one fails. Returns False once the run has failed."""
        if self.failed:
            return False
        if title:
            console.section(title)
        for step in steps:
            result = self.record.add_test(step.name)
            console.info(f"--- {step.name} ---")
            outcome = self._execute(step)
            result.status = outcome.status
            result.reason = outcome.reason
            if not outcome.ok:
                console.error(f"❌ {step.name} FAILED: {outcome.reason}")
                self.failed_step = step.name
                self.record.error = f"{step.name}: {outcome.reason}"
                return False
            console.success(f"✅ {step.name} ({outcome.status})")
        return True

    def finish(self):
        if self.record.verdict == VERDICT_PENDING:
            self.record.verdict = VERDICT_FAILURE if self.failed else VERDICT_SUCCESS


StageBody = Callable[[StageRun, HarnessConfig], None]


def run_stage(ledger: ResultLedger, stage_name: str, body: Callable[[StageRun], None],
              replace_existing: bool = False) -> int:
    """Run body inside the crash boundary and write its record once. Returns the process exit code."""
    run = StageRun(ledger, stage_name, replace_existing)
    exit_code = 0
    console.section(f"Executing {stage_name}")
    try:
        body(run)
        run.finish()
    except Exception as e:
        stack = traceback.format_exc()
        console.error(f"{stage_name} CRASHED: {type(e).__name__}: {error_message(e)}")
        print(stack, file=sys.stderr, flush=True)
        run.record.mark_crashed(f"{type(e).__name__}: {error_message(e)}", stack)
        exit_code = 1
    finally:
        if not run.ledger.append(run.record, replace_label=_replace_label(run)):
            console.error(f"Results for {run.record.stage} could not be written to {ledger.path}")
        console.info(f"{run.record.stage} finished. Verdict: {run.record.verdict}")
    if exit_code == 0 and run.record.verdict == VERDICT_FAILURE:
        console.warn(f"{stage_name} completed with failures (see testResults).")
    return exit_code


def _replace_label(run: StageRun) -> Optional[str]:
    if not run.replace_existing:
        return None
    # crash records carry the suffixed label, but still replace the stage's history
    return run.record.stage.split(CRASH_SUFFIX)[0]


def stage_main(stage_name: str, body: StageBody, replace_existing: bool = False,
               env_file: Optional[str] = None) -> int:
    """Load config, open the ledger and run body. Config errors become crash records."""
    try:
        cfg = load_config(env_file)
        config_error = None
        ledger = ResultLedger(cfg.results_file, cfg.network_name)
    except ConfigError as e:
        cfg = None
        config_error = e
        results_dir = Path(os.getenv("RESULTS_DIR", DEFAULT_RESULTS_DIR))
        network = os.getenv("NETWORK_NAME") or os.getenv("HARDHAT_NETWORK") or "default"
        ledger = ResultLedger(results_dir / "results.json", network)

    def guarded(run: StageRun):
        if config_error is not None:
            raise config_error
        body(run, cfg)

    return run_stage(ledger, stage_name, guarded, replace_existing)
