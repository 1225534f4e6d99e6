# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Run test functions across every worker and matrix combination.

Every (test, worker, matrix value) triple is a leaf. A leaf gets its own
sandbox and its own reference on the shared registry mirror, and is
reported independently as passed, failed or skipped:

    tests = [case(test_build), case(test_push)]
    options = RunOptions().with_matrix("driver", {"overlay": "overlayfs", "native": "native"})
    report = run(tests, workers=[DockerWorker()], options=options)

Leaf names look like "Build/worker=docker/driver=overlay".
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pytest

from boxmatrix.errors import DuplicateLeafError, MirrorError, RequirementsError
from boxmatrix.matrix import MatrixValue, expand
from boxmatrix.mirror import MirrorManager
from boxmatrix.sandbox import ReleaseFunc, Sandbox, SandboxConfig, Worker, with_matrix_value, with_mirror
from boxmatrix.utils.logging import get_logger

logger = get_logger(__name__)

TestFunc = Callable[[Sandbox], None]


@dataclass(frozen=True)
class TestCase:
    """A named test function."""

    __test__ = False  # not a pytest class

    name: str
    func: TestFunc


def case(func: TestFunc, name: Optional[str] = None) -> TestCase:
    """Wrap a function as a TestCase.

    The name defaults to the function name without a leading "test_".
    """
    if name is None:
        name = func.__name__
        if name.startswith("test_"):
            name = name[len("test_"):]
    return TestCase(name=name, func=func)


@dataclass(frozen=True)
class RunOptions:
    """Options for a run. Builders return updated copies."""

    matrix: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    parallel: int = 1
    short: bool = False

    def with_matrix(self, feature: str, choices: Mapping[str, Any]) -> "RunOptions":
        """Add (or replace) one feature dimension."""
        matrix = {k: dict(v) for k, v in self.matrix.items()}
        matrix[feature] = dict(choices)
        return replace(self, matrix=matrix)

    def with_parallel(self, parallel: int) -> "RunOptions":
        return replace(self, parallel=max(1, parallel))

    def with_short(self, short: bool = True) -> "RunOptions":
        return replace(self, short=short)


class LeafStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Leaf:
    name: str
    case: TestCase
    worker: Worker
    matrix: MatrixValue


@dataclass
class LeafResult:
    name: str
    status: LeafStatus
    message: str = ""
    duration: float = 0.0
    worker: str = ""
    matrix: Dict[str, str] = field(default_factory=dict)


@dataclass
class RunReport:
    """Outcome of a run.

    skipped_reason is set when the whole run was skipped. teardown_error is
    set when the final mirror teardown failed.
    """

    results: List[LeafResult] = field(default_factory=list)
    skipped_reason: Optional[str] = None
    teardown_error: Optional[str] = None

    def _with_status(self, status: LeafStatus) -> List[LeafResult]:
        return [r for r in self.results if r.status is status]

    @property
    def passed(self) -> List[LeafResult]:
        return self._with_status(LeafStatus.PASSED)

    @property
    def failed(self) -> List[LeafResult]:
        return self._with_status(LeafStatus.FAILED)

    @property
    def skipped(self) -> List[LeafResult]:
        return self._with_status(LeafStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and self.teardown_error is None

    def result(self, name: str) -> LeafResult:
        for r in self.results:
            if r.name == name:
                return r
        raise KeyError(name)


@dataclass
class Suite:
    """What the CLI runs: tests, options and optionally its own workers."""

    tests: Sequence[Union[TestCase, TestFunc]]
    options: RunOptions = field(default_factory=RunOptions)
    workers: Optional[Sequence[Worker]] = None


def leaf_name(test: TestCase, worker: Worker, value: MatrixValue) -> str:
    title = test.name[:1].upper() + test.name[1:]
    return f"{title}/worker={worker.name}{value.function_suffix()}"


def _as_cases(tests: Iterable[Union[TestCase, TestFunc]]) -> List[TestCase]:
    return [t if isinstance(t, TestCase) else case(t) for t in tests]


def plan_leaves(
    tests: Iterable[Union[TestCase, TestFunc]],
    workers: Sequence[Worker],
    matrix: Mapping[str, Mapping[str, Any]],
) -> List[Leaf]:
    """List every leaf of a run in execution order.

    Raises:
        DuplicateLeafError: If two leaves derive the same name
    """
    values = expand(matrix)
    cases = _as_cases(tests)
    leaves: List[Leaf] = []
    seen = set()
    for worker in workers:
        for test in cases:
            for value in values:
                name = leaf_name(test, worker, value)
                if name in seen:
                    raise DuplicateLeafError(name)
                seen.add(name)
                leaves.append(Leaf(name=name, case=test, worker=worker, matrix=value))
    return leaves


class Runner:
    """Executes leaves against a shared mirror.

    The run itself holds one mirror reference from setup until every leaf
    has finished; each leaf holds another while it runs.
    """

    def __init__(
        self,
        mirror: MirrorManager,
        workers: Sequence[Worker],
        options: Optional[RunOptions] = None,
    ):
        self.mirror = mirror
        self.workers = list(workers)
        self.options = options or RunOptions()

    def run(self, tests: Iterable[Union[TestCase, TestFunc]]) -> RunReport:
        """Run all leaves.

        Raises:
            DuplicateLeafError: Before anything starts, on name clashes
            MirrorError: If the mirror cannot be provisioned
        """
        if self.options.short:
            logger.info("Skipping integration run in short mode")
            return RunReport(skipped_reason="short mode")

        # Snapshot so later changes to the caller's dicts cannot leak in
        matrix = MappingProxyType({k: dict(v) for k, v in self.options.matrix.items()})
        leaves = plan_leaves(tests, self.workers, matrix)
        if not self.workers:
            logger.warning("No workers registered, nothing to run")

        handle = self.mirror.acquire()
        report = RunReport()
        try:
            report.results = self._execute(leaves)
        finally:
            try:
                handle.release()
            except MirrorError as e:
                report.teardown_error = str(e)

        logger.info(
            f"{len(report.passed)} passed, {len(report.failed)} failed, "
            f"{len(report.skipped)} skipped"
        )
        return report

    def _execute(self, leaves: List[Leaf]) -> List[LeafResult]:
        parallel = max(1, self.options.parallel)
        if parallel == 1 or len(leaves) <= 1:
            return [self.run_leaf(leaf) for leaf in leaves]
        with ThreadPoolExecutor(max_workers=parallel, thread_name_prefix="leaf") as pool:
            futures = [pool.submit(self.run_leaf, leaf) for leaf in leaves]
            return [f.result() for f in futures]

    def run_leaf(self, leaf: Leaf) -> LeafResult:
        """Run one leaf, releasing its mirror reference on every exit path."""
        started = time.monotonic()
        logger.debug(f"=== RUN {leaf.name} ({threading.current_thread().name})")

        status, message = LeafStatus.FAILED, ""
        ref = self.mirror.acquire()
        try:
            status, message = self._run_in_sandbox(leaf, ref.address)
        finally:
            try:
                ref.release()
            except MirrorError as e:
                status = LeafStatus.FAILED
                message = _join(message, str(e))

        result = LeafResult(
            name=leaf.name,
            status=status,
            message=message,
            duration=time.monotonic() - started,
            worker=leaf.worker.name,
            matrix=leaf.matrix.as_dict(),
        )
        _log_result(result)
        return result

    def _run_in_sandbox(self, leaf: Leaf, mirror_address: str) -> Tuple[LeafStatus, str]:
        config = with_matrix_value(with_mirror(SandboxConfig(), mirror_address), leaf.matrix)
        try:
            sandbox, close = leaf.worker.new(config)
        except (RequirementsError, pytest.skip.Exception) as e:
            return LeafStatus.SKIPPED, str(e)
        except Exception as e:
            logger.debug(f"{leaf.name}: sandbox creation failed: {e!r}")
            return LeafStatus.FAILED, f"sandbox creation failed: {e}"

        status, message = LeafStatus.FAILED, "interrupted"
        try:
            leaf.case.func(sandbox)
            status, message = LeafStatus.PASSED, ""
        except (RequirementsError, pytest.skip.Exception) as e:
            status, message = LeafStatus.SKIPPED, str(e)
        except (Exception, pytest.fail.Exception) as e:
            logger.logger.debug(f"{leaf.name} raised", exc_info=e)
            status, message = LeafStatus.FAILED, f"{type(e).__name__}: {e}"
        finally:
            if status is LeafStatus.FAILED:
                _print_logs(sandbox, leaf)
            release_error = _close(close, leaf)

        if release_error is not None:
            status = LeafStatus.FAILED
            message = _join(message, f"sandbox release failed: {release_error}")
        return status, message


def _print_logs(sandbox: Sandbox, leaf: Leaf) -> None:
    try:
        sandbox.print_logs(get_logger(f"boxmatrix.leaf.{leaf.worker.name}"))
    except Exception as e:
        logger.warning(f"{leaf.name}: could not collect sandbox logs: {e}")


def _close(close: ReleaseFunc, leaf: Leaf) -> Optional[Exception]:
    try:
        close()
    except Exception as e:
        logger.error(f"{leaf.name}: sandbox release failed", exc=e)
        return e
    return None


def _join(first: str, second: str) -> str:
    return f"{first}; {second}" if first else second


def _log_result(result: LeafResult) -> None:
    if result.status is LeafStatus.PASSED:
        logger.success(f"{result.name} ({result.duration:.2f}s)")
    elif result.status is LeafStatus.SKIPPED:
        logger.warning(f"SKIP {result.name}: {result.message}")
    else:
        logger.error(f"FAIL {result.name}: {result.message}")


def run(
    tests: Iterable[Union[TestCase, TestFunc]],
    workers: Optional[Sequence[Worker]] = None,
    options: Optional[RunOptions] = None,
    mirror: Optional[MirrorManager] = None,
    config=None,
) -> RunReport:
    """Run tests against workers using host configuration for defaults.

    Args:
        tests: Test cases or plain functions
        workers: Workers to run on (defaults to the registered workers)
        options: Run options (defaults to parallel/short from config)
        mirror: Mirror manager (defaults to one built from config)
        config: MatrixConfig (defaults to get_config())
    """
    from boxmatrix.config import get_config
    from boxmatrix.workers import list_workers

    config = config or get_config()
    if options is None:
        options = RunOptions(parallel=config.parallel, short=config.short)
    elif config.short:
        options = options.with_short()
    if workers is None:
        workers = list_workers()
    if mirror is None:
        mirror = MirrorManager.from_config(config)
    return Runner(mirror, workers, options).run(tests)
