"""
Error classes for the staged harness.

- ConfigError: environment is missing or malformed; raised before any chain call.
- LedgerError family: the results ledger cannot supply a predecessor record.
  Each cause has its own class so a dependent stage reports exactly what is wrong.
- StepFailed: an assertion inside an orchestrated step did not hold.

Transaction submission failures and mined reverts are NOT exceptions; they are
carried on TransactionOutcome and turned into failed steps by the caller.
"""


class HarnessError(Exception):
    """Base exception for the harness."""


class ConfigError(HarnessError):
    """Environment configuration missing or invalid."""


class ArtifactError(HarnessError):
    """Contract artifact could not be loaded or compiled."""


class LedgerError(HarnessError):
    """Base class for results ledger read failures."""


class LedgerMissingError(LedgerError):
    """Results file does not exist."""


class LedgerEmptyError(LedgerError):
    """Results file exists but holds only whitespace."""


class LedgerMalformedError(LedgerError):
    """Results file is not valid UTF-8 JSON."""


class LedgerShapeError(LedgerError):
    """Ledger parsed but is not a JSON array."""


class PredecessorNotFoundError(LedgerError):
    """No successful record for the required stage label."""


class PredecessorFieldError(LedgerError):
    """Predecessor record found but a required field is missing or null."""

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class StepFailed(HarnessError):
    """An orchestrated step's check did not hold."""
