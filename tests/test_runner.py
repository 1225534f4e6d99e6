"""Tests for boxmatrix/runner.py"""

import threading
from unittest.mock import patch

import pytest

from boxmatrix.errors import DuplicateLeafError, MirrorError, RequirementsError
from boxmatrix.mirror import MirrorManager
from boxmatrix.runner import (
    LeafStatus,
    RunOptions,
    Runner,
    TestCase,
    case,
    leaf_name,
    plan_leaves,
    run,
)

from fakes import FakeWorker, MirrorRecorder


def foo(sb):
    pass


def bar(sb):
    pass


def failing(sb):
    raise AssertionError("expected 1, got 2")


class TestCaseNaming:
    """Test leaf naming"""

    def test_case_strips_test_prefix(self):
        def test_build_image(sb):
            pass

        assert case(test_build_image).name == "build_image"

    def test_case_explicit_name(self):
        assert case(foo, name="custom").name == "custom"

    def test_two_feature_leaf_names(self, worker):
        options = RunOptions().with_matrix("driver", {"a": 1, "b": 2}).with_matrix("mode", {"x": 10})

        leaves = plan_leaves([case(foo)], [worker], options.matrix)

        assert sorted(leaf.name for leaf in leaves) == [
            "Foo/worker=W/driver=a/mode=x",
            "Foo/worker=W/driver=b/mode=x",
        ]

    def test_empty_matrix_single_leaf(self, worker):
        leaves = plan_leaves([case(foo)], [worker], {})

        assert [leaf.name for leaf in leaves] == ["Foo/worker=W"]

    def test_only_first_letter_capitalized(self, worker):
        test = TestCase(name="buildWithCache", func=foo)

        assert leaf_name(test, worker, plan_leaves([test], [worker], {})[0].matrix) == (
            "BuildWithCache/worker=W"
        )

    def test_plain_functions_accepted(self, worker):
        leaves = plan_leaves([foo, bar], [worker], {})

        assert [leaf.name for leaf in leaves] == ["Foo/worker=W", "Bar/worker=W"]

    def test_leaf_order_worker_then_test_then_matrix(self):
        workers = [FakeWorker("one"), FakeWorker("two")]

        leaves = plan_leaves([case(foo), case(bar)], workers, {"m": {"x": 1}})

        assert [leaf.name for leaf in leaves] == [
            "Foo/worker=one/m=x",
            "Bar/worker=one/m=x",
            "Foo/worker=two/m=x",
            "Bar/worker=two/m=x",
        ]

    def test_duplicate_names_rejected(self, worker):
        with pytest.raises(DuplicateLeafError, match="Foo/worker=W"):
            plan_leaves([case(foo), case(bar, name="foo")], [worker], {})


class TestRunOptions:
    """Test option builders"""

    def test_with_matrix_returns_copy(self):
        base = RunOptions()

        updated = base.with_matrix("driver", {"a": 1})

        assert base.matrix == {}
        assert updated.matrix == {"driver": {"a": 1}}

    def test_with_matrix_repeatable(self):
        options = RunOptions().with_matrix("a", {"x": 1}).with_matrix("b", {"y": 2})

        assert set(options.matrix) == {"a", "b"}

    def test_with_matrix_same_feature_replaces(self):
        options = RunOptions().with_matrix("a", {"x": 1}).with_matrix("a", {"y": 2})

        assert options.matrix == {"a": {"y": 2}}

    def test_with_parallel_at_least_one(self):
        assert RunOptions().with_parallel(0).parallel == 1


class TestRunner:
    """Test running leaves against a shared mirror"""

    def test_all_leaves_pass(self, mirror, recorder, worker):
        options = RunOptions().with_matrix("driver", {"a": 1, "b": 2})

        report = Runner(mirror, [worker], options).run([case(foo), case(bar)])

        assert report.ok
        assert len(report.passed) == 4
        assert recorder.provisions == 1
        assert recorder.teardowns == 1
        assert mirror.refcount == 0
        assert all(sb.closed for sb in worker.sandboxes)

    def test_sandbox_gets_mirror_and_matrix_value(self, mirror, worker):
        seen = {}

        def check(sb):
            seen[sb.value("driver")] = sb.config.mirror

        options = RunOptions().with_matrix("driver", {"a": 1, "b": 2})
        Runner(mirror, [worker], options).run([case(check)])

        assert set(seen) == {1, 2}
        assert set(seen.values()) == {"127.0.0.1:5001"}

    def test_leaf_holds_extra_reference(self, mirror, worker):
        refs = []

        def check(sb):
            refs.append(mirror.refcount)

        Runner(mirror, [worker]).run([case(check)])

        assert refs == [2]

    def test_unsupported_combination_skipped(self, mirror):
        picky = FakeWorker("picky", unsupported=lambda mv: mv.value("driver") == 2)
        easy = FakeWorker("easy")
        options = RunOptions().with_matrix("driver", {"a": 1, "b": 2})

        report = Runner(mirror, [picky, easy], options).run([case(foo)])

        skipped = report.result("Foo/worker=picky/driver=b")
        assert skipped.status is LeafStatus.SKIPPED
        assert "picky cannot run" in skipped.message
        assert report.result("Foo/worker=picky/driver=a").status is LeafStatus.PASSED
        assert report.result("Foo/worker=easy/driver=b").status is LeafStatus.PASSED
        assert report.ok

    def test_skip_from_test_body(self, mirror, worker):
        def needs_rootless(sb):
            raise RequirementsError("rootless only")

        report = Runner(mirror, [worker]).run([case(needs_rootless)])

        assert report.results[0].status is LeafStatus.SKIPPED
        assert report.results[0].message == "rootless only"
        assert worker.sandboxes[0].logs_printed == 0
        assert worker.sandboxes[0].closed

    def test_pytest_skip_from_test_body(self, mirror, worker):
        def not_here(sb):
            pytest.skip("not here")

        report = Runner(mirror, [worker]).run([case(not_here), case(foo)])

        skipped = report.result("Not_here/worker=W")
        assert skipped.status is LeafStatus.SKIPPED
        assert skipped.message == "not here"
        assert report.result("Foo/worker=W").status is LeafStatus.PASSED
        assert worker.sandboxes[0].logs_printed == 0
        assert all(sb.closed for sb in worker.sandboxes)
        assert mirror.refcount == 0

    def test_pytest_fail_from_test_body(self, mirror, recorder, worker):
        def boom(sb):
            pytest.fail("boom")

        report = Runner(mirror, [worker]).run([case(boom), case(foo)])

        failed = report.result("Boom/worker=W")
        assert failed.status is LeafStatus.FAILED
        assert failed.message == "Failed: boom"
        assert report.result("Foo/worker=W").status is LeafStatus.PASSED

        boom_sb, foo_sb = worker.sandboxes
        assert boom_sb.logs_printed == 1
        assert foo_sb.logs_printed == 0
        assert boom_sb.closed and foo_sb.closed
        assert recorder.teardowns == 1

    def test_pytest_outcomes_do_not_stop_parallel_siblings(self, mirror, recorder, worker):
        def boom(sb):
            pytest.fail("boom")

        def not_here(sb):
            pytest.skip("not here")

        options = RunOptions().with_matrix("n", {str(i): i for i in range(3)}).with_parallel(4)

        report = Runner(mirror, [worker], options).run([case(boom), case(not_here), case(foo)])

        assert len(report.results) == 9
        assert len(report.failed) == 3
        assert len(report.skipped) == 3
        assert len(report.passed) == 3
        assert sum(sb.logs_printed for sb in worker.sandboxes) == 3
        assert all(sb.closed for sb in worker.sandboxes)
        assert mirror.refcount == 0
        assert recorder.teardowns == 1

    def test_failure_prints_logs_and_releases(self, mirror, recorder, worker):
        report = Runner(mirror, [worker]).run([case(failing), case(foo)])

        failed = report.result("Failing/worker=W")
        assert failed.status is LeafStatus.FAILED
        assert failed.message == "AssertionError: expected 1, got 2"
        assert report.result("Foo/worker=W").status is LeafStatus.PASSED
        assert not report.ok

        failing_sb, passing_sb = worker.sandboxes
        assert failing_sb.logs_printed == 1
        assert passing_sb.logs_printed == 0
        assert failing_sb.closed and passing_sb.closed
        assert recorder.teardowns == 1
        assert mirror.refcount == 0

    def test_sandbox_creation_error_fails_leaf(self, mirror, recorder):
        broken = FakeWorker("broken", new_error=RuntimeError("no daemon"))

        report = Runner(mirror, [broken]).run([case(foo)])

        assert report.results[0].status is LeafStatus.FAILED
        assert "no daemon" in report.results[0].message
        assert mirror.refcount == 0
        assert recorder.teardowns == 1

    def test_sandbox_release_error_fails_leaf(self, mirror):
        leaky = FakeWorker("leaky", close_error=RuntimeError("container busy"))
        healthy = FakeWorker("healthy")

        report = Runner(mirror, [leaky, healthy]).run([case(foo)])

        result = report.result("Foo/worker=leaky")
        assert result.status is LeafStatus.FAILED
        assert "sandbox release failed: container busy" in result.message
        assert report.result("Foo/worker=healthy").status is LeafStatus.PASSED

    def test_interrupt_still_releases(self, mirror, recorder, worker):
        def interrupted(sb):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            Runner(mirror, [worker]).run([case(interrupted)])

        assert worker.sandboxes[0].closed
        assert worker.sandboxes[0].logs_printed == 1
        assert mirror.refcount == 0
        assert recorder.teardowns == 1

    def test_duplicate_names_fail_before_provisioning(self, mirror, recorder, worker):
        with pytest.raises(DuplicateLeafError):
            Runner(mirror, [worker]).run([case(foo), case(bar, name="foo")])

        assert recorder.provisions == 0
        assert worker.configs == []

    def test_mirror_failure_stops_run(self, worker):
        recorder = MirrorRecorder(provision_error=MirrorError("registry down"))
        mirror = MirrorManager(provision=recorder.provision, populate=recorder.populate)

        with pytest.raises(MirrorError, match="registry down"):
            Runner(mirror, [worker]).run([case(foo)])

        assert worker.configs == []

    def test_short_mode_skips_everything(self, mirror, recorder, worker):
        report = Runner(mirror, [worker], RunOptions(short=True)).run([case(foo)])

        assert report.skipped_reason == "short mode"
        assert report.results == []
        assert recorder.provisions == 0

    def test_teardown_error_reported(self, worker):
        recorder = MirrorRecorder(cleanup_error=RuntimeError("stuck"))
        mirror = MirrorManager(provision=recorder.provision, populate=recorder.populate)

        report = Runner(mirror, [worker]).run([case(foo)])

        assert report.results[0].status is LeafStatus.PASSED
        assert "stuck" in report.teardown_error
        assert not report.ok

    def test_no_workers_runs_nothing(self, mirror, recorder):
        report = Runner(mirror, []).run([case(foo)])

        assert report.results == []
        assert recorder.provisions == 1
        assert recorder.teardowns == 1

    def test_parallel_leaves_share_one_mirror(self, recorder):
        mirror = MirrorManager(provision=recorder.provision, populate=recorder.populate)
        workers = [FakeWorker("one"), FakeWorker("two")]
        options = (
            RunOptions()
            .with_matrix("driver", {"a": 1, "b": 2, "c": 3})
            .with_matrix("mode", {"x": 1, "y": 2})
            .with_parallel(4)
        )
        threads = set()
        threads_lock = threading.Lock()

        def check(sb):
            with threads_lock:
                threads.add(threading.current_thread().name)
            assert mirror.refcount >= 2

        report = Runner(mirror, workers, options).run([case(check), case(failing)])

        assert len(report.results) == 24
        assert len(report.passed) == 12
        assert len(report.failed) == 12
        assert recorder.provisions == 1
        assert recorder.teardowns == 1
        assert mirror.refcount == 0
        assert all(name.startswith("leaf") for name in threads)

    def test_results_keep_plan_order_in_parallel(self, mirror, worker):
        options = RunOptions().with_matrix("n", {str(i): i for i in range(8)}).with_parallel(4)

        report = Runner(mirror, [worker], options).run([case(foo)])

        assert [r.name for r in report.results] == [
            leaf.name for leaf in plan_leaves([case(foo)], [worker], options.matrix)
        ]

    def test_caller_matrix_changes_do_not_leak(self, mirror, worker):
        choices = {"a": 1}
        options = RunOptions().with_matrix("driver", choices)
        choices["b"] = 2

        report = Runner(mirror, [worker], options).run([case(foo)])

        assert len(report.results) == 1


class TestRunFunction:
    """Test the config-driven run() entry point"""

    def test_defaults_from_config(self, mirror, worker, monkeypatch):
        monkeypatch.setenv("BOXMATRIX_PARALLEL", "3")

        with patch("boxmatrix.runner.Runner") as mock_runner:
            run([foo], workers=[worker], mirror=mirror)

        options = mock_runner.call_args[0][2]
        assert options.parallel == 3
        assert options.short is False

    def test_short_env_forces_skip(self, mirror, recorder, worker, monkeypatch):
        monkeypatch.setenv("BOXMATRIX_SHORT", "1")

        report = run([foo], workers=[worker], options=RunOptions(), mirror=mirror)

        assert report.skipped_reason == "short mode"
        assert recorder.provisions == 0

    def test_registered_workers_used(self, mirror):
        registered = FakeWorker("registered")

        with patch("boxmatrix.workers.default_registry") as mock_registry:
            mock_registry.list.return_value = [registered]
            report = run([foo], mirror=mirror)

        assert [r.name for r in report.results] == ["Foo/worker=registered"]
