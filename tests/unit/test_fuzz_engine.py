import pytest
from unittest.mock import Mock
from hypothesis import given, settings, strategies as st

from eth_testbench_core.abi import function_abi
from eth_testbench_core.fuzz_engine import CancellationToken, FuzzCorpus, FuzzEngine, case_seed
from eth_testbench_core.results import CaseOutcome, CaseSource, FailureKind, TestStatus
from eth_testbench_core.runner import TestEntry

LIMIT = 1001


def below_limit(entry, case):
    """Stand-in for a test that requires its argument to stay below LIMIT."""
    if case.values[0] >= LIMIT:
        return CaseOutcome(TestStatus.FAILED, FailureKind.UNEXPECTED_REVERT, "value too large", gas_used=30)
    return CaseOutcome(TestStatus.PASSED, gas_used=20)


@pytest.fixture
def entry():
    return TestEntry(name="testValue", function=function_abi("testValue(uint256)"), group="ValueTest")


@pytest.fixture
def executor():
    """Fixture for a case executor mock with the below-limit behaviour."""
    return Mock(side_effect=below_limit)


@pytest.fixture
def corpus():
    return FuzzCorpus(directory=None)


@pytest.fixture
def fuzz_engine(executor, corpus):
    return FuzzEngine(case_executor=executor, corpus=corpus)


def drawn_values(executor):
    return [c.args[1].values for c in executor.call_args_list]


class TestFuzzEngine:
    def test_passing_run_executes_every_iteration(self, entry):
        executor = Mock(return_value=CaseOutcome(TestStatus.PASSED, gas_used=100))
        engine = FuzzEngine(case_executor=executor, corpus=FuzzCorpus(directory=None))

        result = engine.run(entry, iterations=40, seed=7)

        assert result.status == TestStatus.PASSED
        assert result.runs == 40
        assert result.gas_used == 100
        assert result.counterexample is None
        assert executor.call_count == 40

    def test_boundary_cases_come_before_random_draws(self, fuzz_engine, executor, entry):
        executor.side_effect = None
        executor.return_value = CaseOutcome(TestStatus.PASSED)
        fuzz_engine.run(entry, iterations=6, seed=1)

        sources = [c.args[1].source for c in executor.call_args_list]
        assert sources[:4] == [CaseSource.BOUNDARY] * 4
        assert sources[4:] == [CaseSource.RANDOM] * 2
        assert drawn_values(executor)[:2] == [(0,), (1,)]

    def test_failure_is_shrunk_to_the_minimal_counterexample(self, fuzz_engine, entry):
        """
        The maximum uint256 boundary value fails first; greedy descent over
        the magnitude candidates must land exactly on the limit.
        """
        result = fuzz_engine.run(entry, iterations=256, seed=3)

        assert result.status == TestStatus.FAILED
        assert result.failure_kind == FailureKind.UNEXPECTED_REVERT
        assert result.reason == "value too large"
        assert result.counterexample == (LIMIT,)
        assert result.original_case == (2**256 - 1,)
        assert result.shrink_steps > 0
        assert result.runs == 3

    def test_same_seed_draws_the_same_cases(self, entry):
        passing = CaseOutcome(TestStatus.PASSED)
        first, second, other = (Mock(return_value=passing) for _ in range(3))
        FuzzEngine(case_executor=first, corpus=FuzzCorpus(directory=None)).run(entry, iterations=30, seed=11)
        FuzzEngine(case_executor=second, corpus=FuzzCorpus(directory=None)).run(entry, iterations=30, seed=11)
        FuzzEngine(case_executor=other, corpus=FuzzCorpus(directory=None)).run(entry, iterations=30, seed=12)

        assert drawn_values(first) == drawn_values(second)
        assert drawn_values(first) != drawn_values(other)

    def test_too_many_rejects_errors_the_test(self, entry):
        executor = Mock(return_value=CaseOutcome(TestStatus.PASSED, reason="assumption rejected", rejected=True))
        engine = FuzzEngine(case_executor=executor, max_rejects=5, corpus=FuzzCorpus(directory=None))

        result = engine.run(entry, iterations=100)

        assert result.status == TestStatus.ERRORED
        assert result.failure_kind == FailureKind.TOO_MANY_REJECTS
        assert result.rejects == 6
        assert result.runs == 0

    def test_rejected_cases_do_not_count_as_runs(self, entry):
        outcomes = [CaseOutcome(TestStatus.PASSED, rejected=True), CaseOutcome(TestStatus.PASSED)] * 10
        engine = FuzzEngine(case_executor=Mock(side_effect=outcomes), corpus=FuzzCorpus(directory=None))

        result = engine.run(entry, iterations=10)

        assert result.passed
        assert result.runs == 10
        assert result.rejects == 10

    def test_cancelled_run_reports_cancelled(self, fuzz_engine, executor, entry):
        cancel = CancellationToken()
        cancel.cancel()

        result = fuzz_engine.run(entry, iterations=10, cancel=cancel)

        assert result.status == TestStatus.ERRORED
        assert result.failure_kind == FailureKind.CANCELLED
        executor.assert_not_called()

    def test_expired_deadline_cancels(self):
        assert CancellationToken(timeout_seconds=0).is_cancelled
        assert not CancellationToken(timeout_seconds=60).is_cancelled

    def test_failure_is_recorded_and_replayed_first(self, fuzz_engine, executor, corpus, entry):
        fuzz_engine.run(entry, iterations=256, seed=3)
        assert corpus.load(entry.signature) == [[LIMIT]]

        executor.reset_mock()
        result = fuzz_engine.run(entry, iterations=256, seed=99)

        first_case = executor.call_args_list[0].args[1]
        assert first_case.source == CaseSource.CORPUS
        assert first_case.values == (LIMIT,)
        assert result.original_case == (LIMIT,)
        assert result.runs == 1

    def test_parallel_workers_find_the_same_counterexample(self, entry, executor):
        sequential = FuzzEngine(case_executor=executor, corpus=FuzzCorpus(directory=None))
        parallel = FuzzEngine(case_executor=Mock(side_effect=below_limit), workers=4,
                              corpus=FuzzCorpus(directory=None))

        expected = sequential.run(entry, iterations=256, seed=5)
        actual = parallel.run(entry, iterations=256, seed=5)

        assert actual.counterexample == expected.counterexample == (LIMIT,)
        assert actual.original_case == expected.original_case

    def test_replay_runs_one_case(self, fuzz_engine, executor, entry):
        case = next(iter(fuzz_engine.generate_cases(entry, fuzz_engine.strategies_for(entry), seed=1)))
        outcome = fuzz_engine.replay(entry, case)
        assert outcome.status == TestStatus.PASSED
        executor.assert_called_once_with(entry, case)


class TestFuzzCorpus:
    def test_failures_persist_across_instances(self, tmp_path):
        FuzzCorpus(directory=str(tmp_path)).record("testValue(uint256)", [7])
        assert FuzzCorpus(directory=str(tmp_path)).load("testValue(uint256)") == [[7]]
        assert (tmp_path / "testValue_uint256_.json").exists()

    def test_duplicates_are_not_recorded(self):
        corpus = FuzzCorpus(directory=None)
        corpus.record("testValue(uint256)", [7])
        corpus.record("testValue(uint256)", [7])
        assert corpus.load("testValue(uint256)") == [[7]]

    def test_unreadable_file_is_ignored(self, tmp_path):
        (tmp_path / "testValue_uint256_.json").write_text("{not json")
        assert FuzzCorpus(directory=str(tmp_path)).load("testValue(uint256)") == []

    def test_clear_removes_the_file(self, tmp_path):
        corpus = FuzzCorpus(directory=str(tmp_path))
        corpus.record("testValue(uint256)", [7])
        corpus.clear("testValue(uint256)")
        assert corpus.load("testValue(uint256)") == []
        assert not list(tmp_path.iterdir())


class TestCaseSeed:
    @given(seed=st.integers(min_value=0, max_value=2**64 - 1), index=st.integers(min_value=0, max_value=10**6))
    @settings(max_examples=100)
    def test_case_seed_is_deterministic_and_bounded(self, seed, index):
        assert case_seed(seed, index) == case_seed(seed, index)
        assert 0 <= case_seed(seed, index) < 2**64

    def test_neighbouring_cases_get_different_seeds(self):
        assert len({case_seed(0x5EED, i) for i in range(1000)}) == 1000
