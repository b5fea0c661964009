import pytest

from eth_testbench_core import config as core_config
from eth_testbench_core.abi import function_abi
from eth_testbench_core.assembler import build_artifact, call, cheat, require
from eth_testbench_core.errors import AssertionFailure, DiscoveryError, TestOutcomeError, UnmetExpectation
from eth_testbench_core.fuzz_engine import CancellationToken
from eth_testbench_core.results import FailureKind, TestStatus
from eth_testbench_core.runner import TestEntry, TestRecord, TestRunner, TestState, discover


@pytest.fixture
def runner(genesis):
    return TestRunner(state=genesis, fuzz_runs=64)


@pytest.fixture
def report(runner, example_test_artifact):
    return runner.run([example_test_artifact])


class TestDiscovery:
    def test_finds_tests_and_fixture(self, example_test_artifact):
        group = discover(example_test_artifact)
        names = [entry.name for entry in group.entries]

        assert group.setup.name == "setUp"
        assert "setUp" not in names
        assert "testFuzzBelowLimit" in names
        assert all(entry.group == "ExampleTest" for entry in group.entries)

    def test_fail_prefix_marks_expected_failures(self, example_test_artifact):
        entries = {entry.name: entry for entry in discover(example_test_artifact).entries}
        assert entries["testFailWhenReverting"].expect_fail
        assert not entries["testAssertion"].expect_fail
        assert entries["testFuzzAnything"].is_fuzz

    def test_parameterised_fixture_is_rejected(self, runner):
        artifact = build_artifact("BadFixture", [("setUp(uint256)", ""), ("testA()", "")])
        with pytest.raises(DiscoveryError):
            runner.run([artifact])

    def test_unsupported_parameter_type_aborts_the_run(self, runner, example_test_artifact):
        """Discovery of every artifact happens before any test executes."""
        artifact = build_artifact("FixedPoint", [("testA()", "")], extra_functions=["testFixed(fixed128x18)"])
        with pytest.raises(DiscoveryError):
            runner.run([example_test_artifact, artifact])

    def test_missing_bytecode_is_rejected(self, example_test_artifact):
        example_test_artifact.bytecode = b""
        with pytest.raises(DiscoveryError):
            discover(example_test_artifact)


class TestOutcomes:
    @pytest.mark.parametrize("name", [
        "testSetUpRan",
        "testWritesSeven",
        "testStillFortyTwo",
        "testFailWhenReverting",
        "testExpectRevertMatches",
        "testWarp",
        "testFuzzAnything",
    ])
    def test_passing_tests(self, report, name):
        assert report.result_for(name).status == TestStatus.PASSED

    @pytest.mark.parametrize("name, kind", [
        ("testAssertion", FailureKind.ASSERTION),
        ("testRevertsUnexpectedly", FailureKind.UNEXPECTED_REVERT),
        ("testFailButPasses", FailureKind.ASSERTION),
        ("testExpectRevertNotTriggered", FailureKind.CHEAT_VIOLATION),
        ("testFlagged", FailureKind.ASSERTION),
        ("testFuzzBelowLimit", FailureKind.UNEXPECTED_REVERT),
    ])
    def test_failing_tests(self, report, name, kind):
        result = report.result_for(name)
        assert result.status == TestStatus.FAILED
        assert result.failure_kind == kind

    def test_unexpected_revert_keeps_the_reason(self, report):
        assert report.result_for("testRevertsUnexpectedly").reason == "nope"

    def test_fuzz_failure_is_shrunk(self, report):
        result = report.result_for("testFuzzBelowLimit")
        assert result.counterexample == (1001,)
        assert result.reason == "value too large"
        assert result.group == "ExampleTest"

    def test_fuzz_pass_reports_runs(self, report):
        result = report.result_for("testFuzzAnything(uint8)")
        assert result.runs == 64
        assert result.gas_used > 0

    def test_summary_counts(self, report):
        assert report.passed == 7
        assert report.failed == 6
        assert report.errored == 0
        assert not report.ok

    def test_tests_do_not_see_each_others_writes(self, genesis, example_test_artifact):
        """testWritesSeven overwrites slot 0; testStillFortyTwo still sees setUp's value in any order."""
        runner = TestRunner(state=genesis, workers=4, fuzz_runs=8, match_test="Seven|FortyTwo|SetUpRan")
        report = runner.run([example_test_artifact])
        assert [r.status for r in report.results] == [TestStatus.PASSED] * 3

    def test_genesis_state_is_not_modified(self, runner, genesis, counter_address, report):
        assert genesis.read(counter_address, 0) == 0


class TestRunControl:
    def test_setup_failure_errors_every_test(self, runner, broken_setup_artifact):
        report = runner.run([broken_setup_artifact])
        result = report.result_for("testNeverRuns")
        assert result.status == TestStatus.ERRORED
        assert result.failure_kind == FailureKind.SETUP_FAILED
        assert "setup exploded" in result.reason

    def test_match_test_filters_by_name(self, genesis, example_test_artifact):
        report = TestRunner(state=genesis, match_test="^testWarp$").run([example_test_artifact])
        assert [r.name for r in report.results] == ["testWarp"]

    def test_cancelled_run_dispatches_nothing(self, runner, example_test_artifact):
        cancel = CancellationToken()
        cancel.cancel()
        report = runner.run([example_test_artifact], cancel=cancel)
        assert report.results
        assert all(r.failure_kind == FailureKind.CANCELLED for r in report.results)

    def test_illegal_transition_raises(self):
        record = TestRecord(TestEntry(name="testA", function=function_abi("testA()")))
        with pytest.raises(ValueError):
            record.transition(TestState.PASSED)
        record.transition(TestState.SETUP_RUNNING)
        record.transition(TestState.READY)
        record.transition(TestState.EXECUTING)
        record.transition(TestState.PASSED)
        assert record.history[-1] == TestState.PASSED

    def test_replay_with_fixed_arguments(self, runner, example_test_artifact):
        assert runner.replay(example_test_artifact, "testFuzzBelowLimit", (1001,)).status == TestStatus.FAILED
        assert runner.replay(example_test_artifact, "testFuzzBelowLimit", (1000,)).status == TestStatus.PASSED

    def test_replay_of_unknown_test(self, runner, example_test_artifact):
        with pytest.raises(DiscoveryError):
            runner.replay(example_test_artifact, "testMissing")


class TestReport:
    def test_dataframe_has_one_row_per_test(self, report):
        frame = report.to_dataframe()
        assert list(frame.columns) == ["group", "name", "status", "failure_kind", "gas_used", "runs", "rejects",
                                       "duration"]
        assert len(frame) == len(report.results)
        assert set(frame["group"]) == {"ExampleTest"}

    def test_dict_form(self, report):
        data = report.to_dict()
        assert data["summary"]["total"] == 13
        fuzz = next(r for r in data["results"] if r["name"] == "testFuzzBelowLimit")
        assert fuzz["counterexample"] == [1001]
        assert fuzz["status"] == "failed"

    def test_passing_result_does_not_raise(self, report):
        report.result_for("testWarp").raise_for_status()

    def test_failed_result_raises_with_counterexample(self, report):
        with pytest.raises(AssertionFailure) as excinfo:
            report.result_for("testFuzzBelowLimit").raise_for_status()
        assert excinfo.value.test_name == "testFuzzBelowLimit(uint256)"
        assert "counterexample (1001,)" in str(excinfo.value)

    def test_cheat_violation_raises_unmet_expectation(self, report):
        with pytest.raises(UnmetExpectation):
            report.result_for("testExpectRevertNotTriggered").raise_for_status()

    def test_errored_result_raises_outcome_error(self, runner, broken_setup_artifact):
        result = runner.run([broken_setup_artifact]).result_for("testNeverRuns")
        with pytest.raises(TestOutcomeError) as excinfo:
            result.raise_for_status()
        assert not isinstance(excinfo.value, AssertionFailure)
        assert "setup exploded" in str(excinfo.value)


RICH = "0x00000000000000000000000000000000000001c4"


def build_limits_test():
    deal_max = cheat("deal(address,uint256)", RICH, 2**256 - 1)
    exhaust_nonce = cheat("setNonce(address,uint64)", core_config.DEFAULT_TEST_CONTRACT_ADDRESS, 2**64 - 1)
    return build_artifact("LimitsTest", [
        ("testCreditPastMaxBalanceFails()",
         f"{deal_max}\n{call(RICH, value=1, bubble=False)} ISZERO {require('value was credited')}"),
        ("testCreditPastMaxBalanceBubbles()", f"{deal_max}\n{call(RICH, value=1)}"),
        ("testCreateWithExhaustedNonce()",
         f"{exhaust_nonce}\nPUSH0 PUSH0 PUSH0 CREATE ISZERO {require('create succeeded')}"),
        ("testUnaffected()", ""),
    ])


class TestStateLimits:
    @pytest.fixture
    def limits_report(self, runner):
        return runner.run([build_limits_test()])

    def test_every_test_gets_a_verdict(self, limits_report):
        assert len(limits_report.results) == 4
        assert limits_report.errored == 0

    def test_balance_overflow_fails_only_the_call(self, limits_report):
        assert limits_report.result_for("testCreditPastMaxBalanceFails").status == TestStatus.PASSED
        assert limits_report.result_for("testCreditPastMaxBalanceBubbles").status == TestStatus.FAILED
        assert limits_report.result_for("testUnaffected").status == TestStatus.PASSED

    def test_create_with_exhausted_nonce_pushes_zero(self, limits_report):
        assert limits_report.result_for("testCreateWithExhaustedNonce").status == TestStatus.PASSED
