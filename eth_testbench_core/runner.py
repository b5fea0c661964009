# eth_testbench_core/runner.py
"""
Test Orchestrator.

Discovers tests in compiled test contracts, prepares one post-setup baseline
per contract, and runs every test on its own fork of that baseline so no test
can observe another's effects. Parameterised tests go through the FuzzEngine.
"""

import enum
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from . import config as core_config
from .abi import PANIC_ASSERTION, ContractArtifact, FunctionSignature, decode_panic_code
from .cheats import CheatInterceptor
from .errors import DiscoveryError, UnmetExpectation
from .fuzz_engine import CancellationToken, FuzzCorpus, FuzzEngine
from .interpreter import Interpreter
from .results import CaseOutcome, FailureKind, FuzzCase, RunReport, TestResult, TestStatus
from .state import StateStore
from .strategies import strategy_for
from .types import CallFrame, ExecutionResult, canonical_address, checksum

logger = logging.getLogger(__name__)

# ds-test style failure flag: store(CHEAT_ADDRESS, "failed", 1)
DS_TEST_FAILED_SLOT = int.from_bytes(b"failed".ljust(32, b"\x00"), "big")


@dataclass(frozen=True)
class TestEntry:
    __test__ = False

    name: str
    function: FunctionSignature
    expect_fail: bool = False
    group: str = ""

    @property
    def signature(self) -> str:
        return self.function.signature

    @property
    def is_fuzz(self) -> bool:
        return bool(self.function.inputs)


@dataclass
class TestGroup:
    __test__ = False

    artifact: ContractArtifact
    entries: List[TestEntry] = field(default_factory=list)
    setup: Optional[FunctionSignature] = None

    @property
    def name(self) -> str:
        return self.artifact.name


def discover(artifact: ContractArtifact,
             test_prefix: str = core_config.TEST_PREFIX,
             expect_fail_prefix: str = core_config.EXPECT_FAIL_PREFIX,
             fixture_name: str = core_config.FIXTURE_NAME,
             max_dynamic_length: int = core_config.DEFAULT_MAX_DYNAMIC_LENGTH) -> TestGroup:
    """
    Finds the tests and the fixture of a test contract.
    Raises DiscoveryError for missing bytecode, an overloaded or
    parameterised fixture, or an unsupported parameter type.
    """
    if not artifact.bytecode:
        raise DiscoveryError(f"{artifact.name} has no creation bytecode")
    functions = artifact.functions

    fixtures = [f for f in functions if f.name == fixture_name]
    if len(fixtures) > 1:
        raise DiscoveryError(f"{artifact.name} declares an overloaded {fixture_name}()")
    if fixtures and fixtures[0].inputs:
        raise DiscoveryError(f"{artifact.name}.{fixture_name} must not take parameters")

    entries: List[TestEntry] = []
    for function in functions:
        if not function.name.startswith(test_prefix):
            continue
        for abi_type in function.inputs:
            strategy_for(abi_type, max_dynamic_length)  # raises DiscoveryError when unsupported
        entries.append(TestEntry(name=function.name, function=function,
                                 expect_fail=function.name.startswith(expect_fail_prefix),
                                 group=artifact.name))
    logger.debug("Discovered %d tests in %s", len(entries), artifact.name)
    return TestGroup(artifact=artifact, entries=entries, setup=fixtures[0] if fixtures else None)


class TestState(enum.Enum):
    DISCOVERED = "discovered"
    SETUP_RUNNING = "setup_running"
    READY = "ready"
    EXECUTING = "executing"
    FUZZING = "fuzzing"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


TestState.__test__ = False

_TRANSITIONS: Dict[TestState, Tuple[TestState, ...]] = {
    TestState.DISCOVERED: (TestState.SETUP_RUNNING, TestState.ERRORED),
    TestState.SETUP_RUNNING: (TestState.READY, TestState.ERRORED),
    TestState.READY: (TestState.EXECUTING, TestState.FUZZING, TestState.ERRORED),
    TestState.EXECUTING: (TestState.PASSED, TestState.FAILED, TestState.ERRORED),
    TestState.FUZZING: (TestState.PASSED, TestState.FAILED, TestState.ERRORED),
}

_FINAL_STATE = {
    TestStatus.PASSED: TestState.PASSED,
    TestStatus.FAILED: TestState.FAILED,
    TestStatus.ERRORED: TestState.ERRORED,
}


class TestRecord:
    """Tracks one test through its lifecycle; illegal transitions raise ValueError."""
    __test__ = False

    def __init__(self, entry: TestEntry):
        self.entry: TestEntry = entry
        self.state: TestState = TestState.DISCOVERED
        self.history: List[TestState] = [TestState.DISCOVERED]

    def transition(self, new_state: TestState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, ()):
            raise ValueError(f"{self.entry.signature}: illegal transition {self.state.name} -> {new_state.name}")
        self.state = new_state
        self.history.append(new_state)

    def __repr__(self) -> str:
        return f"TestRecord({self.entry.signature}, state={self.state.name})"


@dataclass
class Baseline:
    """Post-setup state of one test contract, shared read-only by its tests."""
    group: TestGroup
    store: StateStore
    snapshot_id: int
    address: bytes
    setup_gas: int = 0
    labels: Dict[bytes, str] = field(default_factory=dict)


class SetupFailure(Exception):
    """Deployment or setUp of a test contract failed."""


def classify(entry: TestEntry, result: ExecutionResult, interceptor: CheatInterceptor,
             failed_flag: bool = False) -> CaseOutcome:
    """
    Maps one test call to an outcome. Cheat errors and out-of-gas are errors;
    unmet expectations, assertions and other reverts are failures; a
    ``testFail`` test inverts assertion and revert outcomes.
    """
    logs = result.logs
    if interceptor.assumption_rejected:
        return CaseOutcome(status=TestStatus.PASSED, reason="assumption rejected", rejected=True)
    if interceptor.cheat_errors:
        return CaseOutcome(TestStatus.ERRORED, FailureKind.CHEAT_VIOLATION, interceptor.cheat_errors[0],
                           result.gas_used, logs)
    if interceptor.violations:
        return CaseOutcome(TestStatus.FAILED, FailureKind.CHEAT_VIOLATION, interceptor.violations[0],
                           result.gas_used, logs)
    if result.is_out_of_gas:
        return CaseOutcome(TestStatus.ERRORED, FailureKind.OUT_OF_GAS, result.revert_reason or "out of gas",
                           result.gas_used, logs)

    if result.success and not failed_flag:
        if entry.expect_fail:
            return CaseOutcome(TestStatus.FAILED, FailureKind.ASSERTION, "test was expected to fail but passed",
                               result.gas_used, logs)
        return CaseOutcome(TestStatus.PASSED, gas_used=result.gas_used, logs=logs)

    if result.success:
        kind, reason = FailureKind.ASSERTION, "assertion failed (failure flag set)"
    else:
        reason = result.revert_reason or result.error or "reverted"
        if decode_panic_code(result.output) == PANIC_ASSERTION or reason.startswith("assertion failed"):
            kind = FailureKind.ASSERTION
        else:
            kind = FailureKind.UNEXPECTED_REVERT
    if entry.expect_fail:
        return CaseOutcome(TestStatus.PASSED, gas_used=result.gas_used, logs=logs)
    return CaseOutcome(TestStatus.FAILED, kind, reason, result.gas_used, logs)


class TestRunner:
    """
    Runs the tests of one or more compiled test contracts.

    :param state: Optional genesis state; each contract is set up on a fork of it.
    :param workers: Threads executing the tests of one contract.
    :param fuzz_runs: Accepted cases per fuzz test.
    :param fuzz_seed: Run seed for every fuzz test.
    :param fuzz_workers: Threads executing cases of one fuzz test.
    :param shrink_budget: Executions spent shrinking one failure.
    :param max_rejects: ``assume`` rejections tolerated per fuzz test.
    :param corpus: Failure corpus; in-memory when None.
    :param gas_limit: Gas limit of each test call.
    :param sender: Caller of setUp and of every test.
    :param test_address: Address the test contract is deployed at.
    :param timeout_seconds: Run-wide timeout; None disables it.
    :param match_test: Optional regex; only matching test names run.
    """
    __test__ = False

    def __init__(self,
                 state: Optional[StateStore] = None,
                 workers: int = core_config.DEFAULT_TEST_WORKERS,
                 fuzz_runs: int = core_config.DEFAULT_FUZZ_RUNS,
                 fuzz_seed: int = core_config.DEFAULT_FUZZ_SEED,
                 fuzz_workers: int = core_config.DEFAULT_FUZZ_WORKERS,
                 shrink_budget: int = core_config.DEFAULT_SHRINK_STEP_BUDGET,
                 max_rejects: int = core_config.DEFAULT_MAX_REJECTS,
                 corpus: Optional[FuzzCorpus] = None,
                 gas_limit: int = core_config.DEFAULT_CALL_GAS_LIMIT,
                 sender: str = core_config.DEFAULT_SENDER,
                 test_address: str = core_config.DEFAULT_TEST_CONTRACT_ADDRESS,
                 timeout_seconds: Optional[float] = core_config.DEFAULT_GLOBAL_TIMEOUT_SECONDS,
                 match_test: Optional[str] = None
                ):
        self.state = state
        self.workers = max(1, workers)
        self.fuzz_runs = fuzz_runs
        self.fuzz_seed = fuzz_seed
        self.gas_limit = gas_limit
        self.sender = canonical_address(sender)
        self.test_address = canonical_address(test_address)
        self.timeout_seconds = timeout_seconds
        self.match_test = re.compile(match_test) if match_test else None
        self.fuzz_engine = FuzzEngine(
            case_executor=self._execute_fuzz_case,
            workers=fuzz_workers,
            shrink_budget=shrink_budget,
            max_rejects=max_rejects,
            corpus=corpus if corpus is not None else FuzzCorpus(directory=None),
        )
        self._baselines: Dict[str, Baseline] = {}

    # --- Run ---

    def run(self, artifacts: Iterable[ContractArtifact], cancel: Optional[CancellationToken] = None) -> RunReport:
        """
        Runs every test of every artifact. Discovery errors abort the run
        before anything executes; every other problem becomes a test result.
        """
        start_time = time.monotonic()
        cancel = cancel or CancellationToken(self.timeout_seconds)
        groups = [discover(artifact, max_dynamic_length=self.fuzz_engine.max_dynamic_length)
                  for artifact in artifacts]
        report = RunReport()
        for group in groups:
            report.results.extend(self.run_group(group, cancel))
        report.duration = time.monotonic() - start_time
        logger.info("Ran %d tests: %d passed, %d failed, %d errored in %.2fs",
                    len(report.results), report.passed, report.failed, report.errored, report.duration)
        return report

    def run_group(self, group: TestGroup, cancel: Optional[CancellationToken] = None) -> List[TestResult]:
        cancel = cancel or CancellationToken(self.timeout_seconds)
        entries = [e for e in group.entries if self.match_test is None or self.match_test.search(e.name)]
        records = [TestRecord(entry) for entry in entries]
        if not records:
            return []
        logger.info("Running %d tests of %s", len(records), group.name)

        if cancel.is_cancelled:
            return [self._cancelled(group, record) for record in records]

        for record in records:
            record.transition(TestState.SETUP_RUNNING)
        try:
            baseline = self.prepare_baseline(group)
        except SetupFailure as e:
            logger.warning("Setup of %s failed: %s", group.name, e)
            results = []
            for record in records:
                record.transition(TestState.ERRORED)
                results.append(TestResult(name=record.entry.name, signature=record.entry.signature,
                                          status=TestStatus.ERRORED, failure_kind=FailureKind.SETUP_FAILED,
                                          reason=str(e), group=group.name))
            return results
        for record in records:
            record.transition(TestState.READY)

        def run_one(record: TestRecord) -> TestResult:
            if cancel.is_cancelled:
                return self._cancelled(group, record)
            return self.run_test(baseline, record, cancel)

        if self.workers == 1:
            return [run_one(record) for record in records]
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            return list(pool.map(run_one, records))

    @staticmethod
    def _cancelled(group: TestGroup, record: TestRecord) -> TestResult:
        record.transition(TestState.ERRORED)
        return TestResult(name=record.entry.name, signature=record.entry.signature, status=TestStatus.ERRORED,
                          failure_kind=FailureKind.CANCELLED, reason="run cancelled before dispatch",
                          group=group.name)

    # --- Setup ---

    def prepare_baseline(self, group: TestGroup) -> Baseline:
        """
        Deploys the test contract at the fixed test address, funds it, runs
        the fixture once and snapshots the result. Raises SetupFailure.
        """
        store = self.state.fork() if self.state is not None else StateStore()
        store.set_balance(self.sender, max(store.get_balance(self.sender), core_config.DEFAULT_SENDER_BALANCE))
        store.set_balance(self.test_address, core_config.DEFAULT_TEST_CONTRACT_BALANCE)

        interceptor = CheatInterceptor(test_id=f"{group.name}.{core_config.FIXTURE_NAME}")
        interpreter = Interpreter(store, cheats=interceptor)
        deployed = interpreter.deploy(self.sender, group.artifact.bytecode, address=self.test_address,
                                      gas_limit=self.gas_limit)
        if not deployed.success:
            raise SetupFailure(f"deployment failed: {deployed.revert_reason or deployed.error}")

        setup_gas = 0
        if group.setup is not None:
            frame = CallFrame.call(self.sender, self.test_address, group.setup.selector,
                                   gas_limit=self.gas_limit, origin=self.sender)
            result = interpreter.execute(frame)
            try:
                interceptor.finalize()
            except UnmetExpectation as e:
                raise SetupFailure(f"{core_config.FIXTURE_NAME}() failed: {e}") from e
            setup_gas = result.gas_used
            if not result.success:
                raise SetupFailure(f"{core_config.FIXTURE_NAME}() failed: {result.revert_reason or result.error}")
            problems = interceptor.cheat_errors + interceptor.violations
            if problems:
                raise SetupFailure(f"{core_config.FIXTURE_NAME}() failed: {problems[0]}")

        baseline = Baseline(group=group, store=store, snapshot_id=store.snapshot(),
                            address=self.test_address, setup_gas=setup_gas, labels=dict(interceptor.labels))
        self._baselines[group.name] = baseline
        logger.debug("Baseline of %s ready at %s (setUp gas %d)", group.name, checksum(self.test_address), setup_gas)
        return baseline

    # --- Execution ---

    def run_test(self, baseline: Baseline, record: TestRecord,
                 cancel: Optional[CancellationToken] = None) -> TestResult:
        entry = record.entry
        start_time = time.monotonic()
        if entry.is_fuzz:
            record.transition(TestState.FUZZING)
            result = self.fuzz_engine.run(entry, self.fuzz_runs, self.fuzz_seed, cancel)
            result.group = baseline.group.name
        else:
            record.transition(TestState.EXECUTING)
            outcome = self.execute_case(baseline, entry, ())
            result = TestResult.from_outcome(entry.name, entry.signature, outcome, runs=1,
                                             duration=time.monotonic() - start_time, group=baseline.group.name)
        record.transition(_FINAL_STATE[result.status])
        logger.debug("%s.%s: %s", baseline.group.name, entry.signature, result.status.value,
                     extra={"test_name": entry.signature, "group": baseline.group.name})
        return result

    def execute_case(self, baseline: Baseline, entry: TestEntry, arguments: Tuple) -> CaseOutcome:
        """Runs one test call with ``arguments`` on a fresh fork of the baseline."""
        store = baseline.store.fork(baseline.snapshot_id)
        interceptor = CheatInterceptor(test_id=entry.signature, default_broadcaster=checksum(self.sender))
        interceptor.labels.update(baseline.labels)
        interpreter = Interpreter(store, cheats=interceptor)
        frame = CallFrame.call(self.sender, baseline.address, entry.function.encode_call(*arguments),
                               gas_limit=self.gas_limit, origin=self.sender)
        result = interpreter.execute(frame)
        try:
            interceptor.finalize()
        except UnmetExpectation as e:
            # already in interceptor.violations; classify turns it into a failure
            logger.debug("%s", e, extra={"test_name": entry.signature})
        failed_flag = store.read(core_config.CHEAT_ADDRESS, DS_TEST_FAILED_SLOT) != 0
        return classify(entry, result, interceptor, failed_flag)

    def _execute_fuzz_case(self, entry: TestEntry, case: FuzzCase) -> CaseOutcome:
        baseline = self._baseline_for(entry)
        return self.execute_case(baseline, entry, case.values)

    def _baseline_for(self, entry: TestEntry) -> Baseline:
        baseline = self._baselines.get(entry.group)
        if baseline is None:
            raise KeyError(f"No baseline prepared for {entry.group}.{entry.signature}")
        return baseline

    def replay(self, artifact: ContractArtifact, test_name: str, arguments: Tuple = ()) -> CaseOutcome:
        """Sets up ``artifact`` and re-executes one test with fixed arguments."""
        group = discover(artifact)
        matches = [e for e in group.entries if test_name in (e.name, e.signature)]
        if len(matches) != 1:
            raise DiscoveryError(f"{artifact.name} has {len(matches)} tests matching {test_name!r}")
        baseline = self._baselines.get(group.name) or self.prepare_baseline(group)
        return self.execute_case(baseline, matches[0], tuple(arguments))
