# eth_testbench_core/fuzz_engine.py
"""
Core fuzzing engine components: CancellationToken, FuzzCorpus, and the main
FuzzEngine class. The engine generates argument tuples for one parameterised
test, executes them through a case executor supplied by the orchestrator,
and shrinks the first failure to a minimal counterexample.
"""

import itertools
import json
import logging
import random
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from . import config as core_config
from .results import CaseOutcome, CaseSource, FailureKind, FuzzCase, TestResult, TestStatus
from .strategies import Strategy, strategy_for

logger = logging.getLogger(__name__)

CaseExecutor = Callable[[Any, FuzzCase], CaseOutcome]

_SEED_MULTIPLIER = 1_000_003
_SEED_MASK = 2**64 - 1


def case_seed(seed: int, index: int) -> int:
    """Seed of the ``index``-th draw of a run seeded with ``seed``. Each case replays on its own."""
    return (seed * _SEED_MULTIPLIER + index) & _SEED_MASK


class CancellationToken:
    """
    Cooperative cancellation shared by the orchestrator and the fuzz engine:
    set explicitly with ``cancel()`` or implicitly once the deadline passes.
    """
    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline: Optional[float] = time.monotonic() + timeout_seconds if timeout_seconds is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
        return self._event.is_set()


class FuzzCorpus:
    """
    Persists failing inputs per test signature as JSON so later runs replay
    them first. With no directory the corpus lives in memory only.
    """
    def __init__(self, directory: Optional[str] = core_config.DEFAULT_CORPUS_DIR):
        self.directory: Optional[Path] = Path(directory) if directory else None
        self._entries: Dict[str, List[list]] = {}
        self._lock = threading.Lock()

    def _path_for(self, signature: str) -> Path:
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", signature)
        return self.directory / f"{safe_name}.json"

    def load(self, signature: str) -> List[list]:
        """Returns the stored failures of ``signature`` as JSON argument lists."""
        with self._lock:
            if signature in self._entries:
                return list(self._entries[signature])
            failures: List[list] = []
            if self.directory is not None:
                path = self._path_for(signature)
                if path.exists():
                    try:
                        failures = json.loads(path.read_text()).get("failures", [])
                    except (OSError, ValueError) as e:
                        logger.warning("Ignoring unreadable corpus file %s: %s", path, e)
            self._entries[signature] = failures
            return list(failures)

    def record(self, signature: str, arguments: list) -> None:
        """Stores one failing argument list (JSON form) unless already known."""
        self.load(signature)
        with self._lock:
            failures = self._entries[signature]
            if arguments in failures:
                return
            failures.append(arguments)
            if self.directory is not None:
                self.directory.mkdir(parents=True, exist_ok=True)
                self._path_for(signature).write_text(
                    json.dumps({"signature": signature, "failures": failures}, indent=2))
        logger.info("Recorded failing input for %s in the corpus", signature)

    def clear(self, signature: Optional[str] = None) -> None:
        with self._lock:
            signatures = [signature] if signature is not None else list(self._entries)
            for sig in signatures:
                self._entries.pop(sig, None)
                if self.directory is not None and self._path_for(sig).exists():
                    self._path_for(sig).unlink()


class FuzzEngine:
    """
    Drives fuzzing of one test at a time.

    :param case_executor: ``(entry, case) -> CaseOutcome``; must run each case
                          against a fresh copy of the post-setup state.
    :param workers: Threads executing cases concurrently. 1 runs inline.
    :param shrink_budget: Maximum executions spent shrinking one failure.
    :param max_rejects: Rejected cases tolerated before the test errors.
    :param corpus: Failure corpus replayed first and updated on failure.
    """
    def __init__(self,
                 case_executor: CaseExecutor,
                 workers: int = core_config.DEFAULT_FUZZ_WORKERS,
                 shrink_budget: int = core_config.DEFAULT_SHRINK_STEP_BUDGET,
                 max_rejects: int = core_config.DEFAULT_MAX_REJECTS,
                 corpus: Optional[FuzzCorpus] = None,
                 max_dynamic_length: int = core_config.DEFAULT_MAX_DYNAMIC_LENGTH
                ):
        self.case_executor = case_executor
        self.workers = max(1, workers)
        self.shrink_budget = shrink_budget
        self.max_rejects = max_rejects
        self.corpus = corpus
        self.max_dynamic_length = max_dynamic_length

    def strategies_for(self, entry) -> List[Strategy]:
        return [strategy_for(t, self.max_dynamic_length) for t in entry.function.inputs]

    def generate_cases(self, entry, strategies: Sequence[Strategy], seed: int) -> Iterator[FuzzCase]:
        """
        Corpus failures first, then boundary combinations, then an endless
        stream of seeded random draws.
        """
        index = 0
        if self.corpus is not None:
            for arguments in self.corpus.load(entry.signature):
                try:
                    values = tuple(s.from_json(a) for s, a in zip(strategies, arguments))
                except (TypeError, ValueError) as e:
                    logger.warning("Skipping malformed corpus entry for %s: %s", entry.signature, e)
                    continue
                if len(values) == len(strategies):
                    yield FuzzCase(values, CaseSource.CORPUS, case_seed(seed, index), index)
                    index += 1

        per_parameter = [s.boundary_values() for s in strategies]
        rounds = max((len(v) for v in per_parameter), default=0)
        for k in range(rounds):
            values = tuple(v[k % len(v)] for v in per_parameter)
            yield FuzzCase(values, CaseSource.BOUNDARY, case_seed(seed, index), index)
            index += 1

        while True:
            per_case_seed = case_seed(seed, index)
            rng = random.Random(per_case_seed)
            yield FuzzCase(tuple(s.draw(rng) for s in strategies), CaseSource.RANDOM, per_case_seed, index)
            index += 1

    def _execute_batch(self, pool: Optional[ThreadPoolExecutor], entry,
                       batch: List[FuzzCase]) -> List[CaseOutcome]:
        if pool is None:
            return [self.case_executor(entry, case) for case in batch]
        return list(pool.map(lambda case: self.case_executor(entry, case), batch))

    def run(self, entry, iterations: int = core_config.DEFAULT_FUZZ_RUNS,
            seed: int = core_config.DEFAULT_FUZZ_SEED,
            cancel: Optional[CancellationToken] = None) -> TestResult:
        """
        Fuzzes ``entry`` for ``iterations`` accepted cases or until the first
        failure, which is then shrunk.

        :param entry: The test entry (needs ``name``, ``signature`` and ``function.inputs``).
        :param iterations: Number of non-rejected cases to execute.
        :param seed: Run seed; the same seed reproduces the same cases.
        :param cancel: Optional token polled between batches.
        """
        start_time = time.monotonic()
        strategies = self.strategies_for(entry)
        cases = self.generate_cases(entry, strategies, seed)
        logger.info("Fuzzing %s for %d runs (seed %#x)", entry.signature, iterations, seed)

        runs = 0
        rejects = 0
        total_gas = 0
        failure: Optional[Tuple[FuzzCase, CaseOutcome]] = None
        batch_size = 1 if self.workers == 1 else self.workers * 2
        pool = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 else None

        def finish(**kwargs: Any) -> TestResult:
            return TestResult(name=entry.name, signature=entry.signature, runs=runs, rejects=rejects, seed=seed,
                              gas_used=total_gas // runs if runs else 0,
                              duration=time.monotonic() - start_time, **kwargs)

        try:
            while failure is None and runs < iterations:
                if cancel is not None and cancel.is_cancelled:
                    logger.warning("Fuzzing of %s cancelled after %d runs", entry.signature, runs)
                    return finish(status=TestStatus.ERRORED, failure_kind=FailureKind.CANCELLED,
                                  reason=f"cancelled after {runs} runs")
                batch = list(itertools.islice(cases, min(batch_size, iterations - runs)))
                outcomes = self._execute_batch(pool, entry, batch)
                # first failure in draw order wins regardless of completion order
                for case, outcome in zip(batch, outcomes):
                    if outcome.rejected:
                        rejects += 1
                        if rejects > self.max_rejects:
                            logger.warning("%s rejected more than %d inputs", entry.signature, self.max_rejects)
                            return finish(status=TestStatus.ERRORED, failure_kind=FailureKind.TOO_MANY_REJECTS,
                                          reason=f"too many rejected inputs ({rejects})")
                        continue
                    runs += 1
                    total_gas += outcome.gas_used
                    logger.debug("Case %d of %s (%s): %s", case.index, entry.signature, case.source.value,
                                 outcome.status.value, extra={"seed": case.seed, "case_index": case.index})
                    if outcome.failed:
                        failure = (case, outcome)
                        break
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        if failure is None:
            logger.info("%s passed %d runs (%d rejected)", entry.signature, runs, rejects)
            return finish(status=TestStatus.PASSED)

        failing_case, failing_outcome = failure
        minimal, minimal_outcome, steps = self.shrink(entry, strategies, failing_case, failing_outcome)
        if self.corpus is not None:
            self.corpus.record(entry.signature, [s.to_json(v) for s, v in zip(strategies, minimal)])
        logger.info("%s failed after %d runs; shrunk in %d steps to %r",
                    entry.signature, runs, steps, minimal)
        return finish(status=minimal_outcome.status, failure_kind=minimal_outcome.failure_kind,
                      reason=minimal_outcome.reason, counterexample=tuple(minimal),
                      original_case=failing_case.values, shrink_steps=steps, logs=minimal_outcome.logs)

    def shrink(self, entry, strategies: Sequence[Strategy], case: FuzzCase,
               outcome: CaseOutcome) -> Tuple[Tuple[Any, ...], CaseOutcome, int]:
        """
        Greedy per-parameter descent: tries each strategy's candidates in
        order and restarts from the first parameter whenever a candidate
        still fails. Any non-rejected failure counts as reproducing.

        :return: (minimal values, outcome of the minimal values, accepted shrink steps)
        """
        current = list(case.values)
        current_outcome = outcome
        cache: Dict[str, Optional[CaseOutcome]] = {}
        executions = 0
        steps = 0

        def key_of(values: Sequence[Any]) -> str:
            return json.dumps([s.to_json(v) for s, v in zip(strategies, values)], sort_keys=True, default=str)

        cache[key_of(current)] = current_outcome
        improved = True
        while improved and executions < self.shrink_budget:
            improved = False
            for position, strategy in enumerate(strategies):
                for candidate in strategy.shrink(current[position]):
                    trial = current[:position] + [candidate] + current[position + 1:]
                    key = key_of(trial)
                    if key in cache:
                        trial_outcome = cache[key]
                    else:
                        if executions >= self.shrink_budget:
                            break
                        executions += 1
                        result = self.case_executor(entry, FuzzCase(tuple(trial), CaseSource.SHRINK,
                                                                    case.seed, case.index))
                        trial_outcome = result if result.failed else None
                        cache[key] = trial_outcome
                    if trial_outcome is not None:
                        current = trial
                        current_outcome = trial_outcome
                        steps += 1
                        improved = True
                        break
                if improved:
                    break
        logger.debug("Shrinking %s used %d executions", entry.signature, executions)
        return tuple(current), current_outcome, steps

    def replay(self, entry, case: FuzzCase) -> CaseOutcome:
        """Re-executes one case with no fuzzing or shrinking."""
        return self.case_executor(entry, case)
