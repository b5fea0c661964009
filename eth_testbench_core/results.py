# eth_testbench_core/results.py
"""
Outcome records: per-case outcomes produced by the case executor, per-test
results, and the run report with its JSON and tabular views.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .errors import AssertionFailure, TestOutcomeError, UnmetExpectation
from .types import Log


class TestStatus(enum.Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


TestStatus.__test__ = False  # not a pytest test class


class FailureKind(enum.Enum):
    ASSERTION = "assertion"
    UNEXPECTED_REVERT = "unexpected_revert"
    CHEAT_VIOLATION = "cheat_violation"
    OUT_OF_GAS = "out_of_gas"
    SETUP_FAILED = "setup_failed"
    TOO_MANY_REJECTS = "too_many_rejects"
    CANCELLED = "cancelled"


class CaseSource(enum.Enum):
    CORPUS = "corpus"
    BOUNDARY = "boundary"
    RANDOM = "random"
    SHRINK = "shrink"


@dataclass(frozen=True)
class FuzzCase:
    values: Tuple[Any, ...]
    source: CaseSource
    seed: int
    index: int


@dataclass(frozen=True)
class CaseOutcome:
    """Classified result of executing one test call."""
    status: TestStatus
    failure_kind: Optional[FailureKind] = None
    reason: Optional[str] = None
    gas_used: int = 0
    logs: Tuple[Log, ...] = ()
    rejected: bool = False

    @property
    def failed(self) -> bool:
        return not self.rejected and self.status != TestStatus.PASSED


@dataclass
class TestResult:
    __test__ = False

    name: str
    signature: str
    status: TestStatus
    failure_kind: Optional[FailureKind] = None
    reason: Optional[str] = None
    gas_used: int = 0
    runs: int = 0
    rejects: int = 0
    seed: Optional[int] = None
    counterexample: Optional[Tuple[Any, ...]] = None
    original_case: Optional[Tuple[Any, ...]] = None
    shrink_steps: int = 0
    logs: Tuple[Log, ...] = ()
    duration: float = 0.0
    group: str = ""

    @property
    def passed(self) -> bool:
        return self.status == TestStatus.PASSED

    def raise_for_status(self) -> None:
        """
        Raises the failure as a TestOutcomeError: UnmetExpectation for cheat
        violations, AssertionFailure for other failures and the base class
        for errored tests. Does nothing for a passing test.
        """
        if self.passed:
            return
        reason = self.reason or self.status.value
        if self.counterexample is not None:
            reason = f"{reason} (counterexample {self.counterexample!r}, seed {self.seed})"
        if self.status == TestStatus.ERRORED:
            raise TestOutcomeError(reason, self.signature)
        if self.failure_kind == FailureKind.CHEAT_VIOLATION:
            raise UnmetExpectation(reason, self.signature)
        raise AssertionFailure(reason, self.signature)

    @classmethod
    def from_outcome(cls, name: str, signature: str, outcome: CaseOutcome, **kwargs: Any) -> "TestResult":
        return cls(name=name, signature=signature, status=outcome.status, failure_kind=outcome.failure_kind,
                   reason=outcome.reason, gas_used=outcome.gas_used, logs=outcome.logs, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.group,
            "name": self.name,
            "signature": self.signature,
            "status": self.status.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "reason": self.reason,
            "gas_used": self.gas_used,
            "runs": self.runs,
            "rejects": self.rejects,
            "seed": self.seed,
            "counterexample": _jsonable(self.counterexample),
            "original_case": _jsonable(self.original_case),
            "shrink_steps": self.shrink_steps,
            "logs": [log.to_dict() for log in self.logs],
            "duration": round(self.duration, 6),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= 2**53:
        return str(value)
    return value


@dataclass
class RunReport:
    results: List[TestResult] = field(default_factory=list)
    duration: float = 0.0

    def count(self, status: TestStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def passed(self) -> int:
        return self.count(TestStatus.PASSED)

    @property
    def failed(self) -> int:
        return self.count(TestStatus.FAILED)

    @property
    def errored(self) -> int:
        return self.count(TestStatus.ERRORED)

    @property
    def ok(self) -> bool:
        return self.passed == len(self.results)

    def result_for(self, name: str) -> TestResult:
        for result in self.results:
            if name in (result.name, result.signature):
                return result
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "total": len(self.results),
                "passed": self.passed,
                "failed": self.failed,
                "errored": self.errored,
                "duration": round(self.duration, 6),
            },
            "results": [r.to_dict() for r in self.results],
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Gas table: one row per test."""
        columns = ["group", "name", "status", "failure_kind", "gas_used", "runs", "rejects", "duration"]
        rows = [
            {
                "group": r.group,
                "name": r.name,
                "status": r.status.value,
                "failure_kind": r.failure_kind.value if r.failure_kind else None,
                "gas_used": r.gas_used,
                "runs": r.runs,
                "rejects": r.rejects,
                "duration": r.duration,
            }
            for r in self.results
        ]
        return pd.DataFrame(rows, columns=columns)
