"""Tests for the build state machine."""

import re
import threading
from unittest.mock import patch

import pytest

from cli_agent_loop.errors import WorkerTimeout
from cli_agent_loop.models.build_state import (
    BuildContext,
    Continue,
    Done,
    DoneReason,
    Failed,
    Finished,
    Starting,
)
from cli_agent_loop.models.task_document import TaskListDocument
from cli_agent_loop.services.build_service import (
    completion_message,
    dry_run_report,
    format_duration,
    log_iteration,
    run_build,
)

RUN_ITERATION = "cli_agent_loop.services.build_service.run_single_iteration"


@pytest.fixture
def three_task_plan(tmp_path, document_factory):
    path = tmp_path / "progress.md"
    document_factory(completed=(True, False, False)).write(path)
    return path


class TestScenarios:
    def test_max_iterations_reached(self, plan_path, fake_worker_config, monkeypatch):
        """One of two tasks done, max_iterations=1, worker makes no progress."""
        monkeypatch.setenv("FAKE_WORKER_MODE", "echo")
        config = fake_worker_config.model_copy(update={"max_iterations": 1})

        outcome = run_build(plan_path, config)

        assert outcome.state == Done(DoneReason.MAX_ITERATIONS_REACHED)
        log = TaskListDocument.load(plan_path).iteration_log
        assert len(log) == 1
        assert log[0].iteration == 1
        assert log[0].tasks_completed == 0
        assert log[0].notes == "No tasks completed"

    def test_runs_until_all_tasks_complete(self, three_task_plan, fake_worker_config):
        calls = []
        outcome = run_build(
            three_task_plan,
            fake_worker_config,
            progress_callback=lambda n, total: calls.append((n, total)),
        )

        assert outcome.state == Done(DoneReason.ALL_TASKS_COMPLETE)
        assert calls == [(1, 20), (2, 20)]
        doc = TaskListDocument.load(three_task_plan)
        assert doc.completed_tasks() == 3
        assert [entry.notes for entry in doc.iteration_log] == ["1 task(s) completed"]
        assert outcome.tokens.input_tokens == 200

    def test_once(self, three_task_plan, fake_worker_config):
        outcome = run_build(three_task_plan, fake_worker_config, once=True)
        assert outcome.state == Done(DoneReason.SINGLE_ITERATION_COMPLETE)
        assert TaskListDocument.load(three_task_plan).completed_tasks() == 2

    @patch("cli_agent_loop.services.iteration_service.WorkerProcess.spawn")
    def test_done_marker_never_spawns(self, mock_spawn, tmp_path, document_factory, fake_worker_config):
        path = tmp_path / "progress.md"
        document_factory(status="RALPH_DONE").write(path)

        outcome = run_build(path, fake_worker_config)

        assert outcome.state == Done(DoneReason.DONE_MARKER)
        mock_spawn.assert_not_called()

    def test_spawn_failure_fails_build(self, plan_path, fake_worker_config, tmp_path):
        config = fake_worker_config.model_copy(update={"worker_path": str(tmp_path / "missing")})

        outcome = run_build(plan_path, config)

        assert outcome.failed
        assert "Failed to spawn" in outcome.state.error
        attempt = TaskListDocument.load(plan_path).recent_attempts[-1]
        assert attempt.next

    def test_cancel_during_worker_is_clean_stop(self, plan_path, fake_worker_config, monkeypatch):
        monkeypatch.setenv("FAKE_WORKER_SLEEP", "30")
        cancel_event = threading.Event()
        threading.Timer(0.05, cancel_event.set).start()

        outcome = run_build(plan_path, fake_worker_config, cancel_event=cancel_event)

        assert outcome.state == Done(DoneReason.USER_CANCELLED)
        assert not outcome.failed


class TestTransitions:
    def test_cancelled_before_first_iteration(self, plan_path, fake_worker_config):
        cancel_event = threading.Event()
        cancel_event.set()
        with patch(RUN_ITERATION) as mock_run:
            outcome = run_build(plan_path, fake_worker_config, cancel_event=cancel_event)
        assert outcome.state == Done(DoneReason.USER_CANCELLED)
        mock_run.assert_not_called()

    def test_once_takes_precedence_over_max_iterations(self, plan_path, fake_worker_config):
        config = fake_worker_config.model_copy(update={"max_iterations": 1})
        with patch(RUN_ITERATION, return_value=Continue(0)):
            outcome = run_build(plan_path, config, once=True)
        assert outcome.state == Done(DoneReason.SINGLE_ITERATION_COMPLETE)

    def test_max_iterations_takes_precedence_over_cancel(self, plan_path, fake_worker_config):
        """Cancellation arriving while the iteration is logged loses to the limit."""
        cancel_event = threading.Event()
        config = fake_worker_config.model_copy(update={"max_iterations": 1})

        with patch(RUN_ITERATION, return_value=Continue(1)), patch(
            "cli_agent_loop.services.build_service.log_iteration",
            side_effect=lambda *args: cancel_event.set(),
        ):
            outcome = run_build(plan_path, config, cancel_event=cancel_event)
        assert outcome.state == Done(DoneReason.MAX_ITERATIONS_REACHED)

    def test_cancel_between_iterations(self, plan_path, fake_worker_config):
        cancel_event = threading.Event()

        def iteration(ctx):
            cancel_event.set()
            return Continue(1)

        with patch(RUN_ITERATION, side_effect=iteration) as mock_run:
            outcome = run_build(plan_path, fake_worker_config, cancel_event=cancel_event)
        assert outcome.state == Done(DoneReason.USER_CANCELLED)
        assert mock_run.call_count == 1

    def test_finished_result_ends_build(self, plan_path, fake_worker_config):
        with patch(RUN_ITERATION, return_value=Finished(DoneReason.ALL_TASKS_COMPLETE)):
            outcome = run_build(plan_path, fake_worker_config)
        assert outcome.state == Done(DoneReason.ALL_TASKS_COMPLETE)
        assert TaskListDocument.load(plan_path).iteration_log == []

    def test_iteration_counter_advances(self, plan_path, fake_worker_config):
        seen = []

        def iteration(ctx):
            seen.append(ctx.current_iteration)
            return Continue(0)

        config = fake_worker_config.model_copy(update={"max_iterations": 3})
        with patch(RUN_ITERATION, side_effect=iteration):
            run_build(plan_path, config)
        assert seen == [1, 2, 3]
        assert [e.iteration for e in TaskListDocument.load(plan_path).iteration_log] == [1, 2, 3]


class TestTimeoutRetry:
    def test_default_fails_on_first_timeout(self, plan_path, fake_worker_config):
        with patch(RUN_ITERATION, side_effect=WorkerTimeout(600)) as mock_run:
            outcome = run_build(plan_path, fake_worker_config)
        assert isinstance(outcome.state, Failed)
        assert "timeout" in outcome.state.error
        assert mock_run.call_count == 1

    def test_retries_same_iteration_up_to_bound(self, plan_path, fake_worker_config):
        config = fake_worker_config.model_copy(update={"timeout_retries": 2, "max_iterations": 1})
        seen = []

        def iteration(ctx):
            seen.append(ctx.current_iteration)
            if len(seen) <= 2:
                raise WorkerTimeout(1)
            return Continue(1)

        with patch(RUN_ITERATION, side_effect=iteration):
            outcome = run_build(plan_path, config)
        assert outcome.state == Done(DoneReason.MAX_ITERATIONS_REACHED)
        assert seen == [1, 1, 1]

    def test_fails_once_bound_exceeded(self, plan_path, fake_worker_config):
        config = fake_worker_config.model_copy(update={"timeout_retries": 1})
        with patch(RUN_ITERATION, side_effect=WorkerTimeout(1)) as mock_run:
            outcome = run_build(plan_path, config)
        assert isinstance(outcome.state, Failed)
        assert mock_run.call_count == 2

    def test_success_resets_retry_count(self, plan_path, fake_worker_config):
        config = fake_worker_config.model_copy(update={"timeout_retries": 1, "max_iterations": 2})
        results = [WorkerTimeout(1), Continue(0), WorkerTimeout(1), Continue(0)]
        with patch(RUN_ITERATION, side_effect=results) as mock_run:
            outcome = run_build(plan_path, config)
        assert outcome.state == Done(DoneReason.MAX_ITERATIONS_REACHED)
        assert mock_run.call_count == 4


class TestDryRun:
    @patch("cli_agent_loop.services.iteration_service.WorkerProcess.spawn")
    def test_never_writes_or_spawns(self, mock_spawn, plan_path, fake_worker_config, capsys):
        before = plan_path.read_bytes()
        outcome = run_build(plan_path, fake_worker_config, dry_run=True)

        assert plan_path.read_bytes() == before
        assert outcome.state == Starting()
        mock_spawn.assert_not_called()
        out = capsys.readouterr().out
        assert "=== DRY RUN MODE ===" in out
        assert "=== END DRY RUN ===" in out

    def test_byte_identical_for_hand_written_file(self, tmp_path, fake_worker_config):
        path = tmp_path / "progress.md"
        path.write_bytes(b"Some notes first\n# Progress: Raw\n\n## Tasks\n- [ ] one\n")
        before = path.read_bytes()
        run_build(path, fake_worker_config, dry_run=True)
        assert path.read_bytes() == before

    def _context(self, path, config):
        return BuildContext(document_path=path, document=TaskListDocument.load(path), config=config)

    def test_report_contents(self, tmp_path, document_factory, fake_worker_config):
        path = tmp_path / "progress.md"
        doc = document_factory()
        for i in range(1, 6):
            doc.add_attempt(i, f"try {i}", f"result {i}")
        doc.write(path)

        report = "\n".join(dry_run_report(self._context(path, fake_worker_config)))

        assert "Project: Test Plan" in report
        assert "Tasks: 1/2 complete (1 remaining)" in report
        assert "  Phase: Phase 1" in report
        assert "  Task:  Task 2" in report
        assert "  Max iterations: 20" in report
        assert "Build prompt: default" in report
        assert "Recent attempts (5):" in report
        shown = re.findall(r"Iteration (\d+): try", report)
        assert shown == ["5", "4", "3"]

    def test_report_notes_finished_document(self, tmp_path, document_factory, fake_worker_config):
        path = tmp_path / "progress.md"
        document_factory(completed=(True, True), status="RALPH_DONE").write(path)
        report = "\n".join(dry_run_report(self._context(path, fake_worker_config)))
        assert "RALPH_DONE detected" in report
        assert "All tasks complete, build would exit immediately" in report
        assert "No pending tasks found." in report

    def test_prompt_failure_is_a_warning(self, plan_path, fake_worker_config, tmp_path):
        config = fake_worker_config.model_copy(update={"build_prompt": tmp_path / "missing.md"})
        report = "\n".join(dry_run_report(self._context(plan_path, config)))
        assert "WARNING: Failed to load prompt" in report
        assert "=== END DRY RUN ===" in report


class TestReporting:
    def test_format_duration(self):
        assert format_duration(0) == "0m 0s"
        assert format_duration(65.9) == "1m 5s"
        assert format_duration(3600) == "60m 0s"

    def test_log_iteration_format(self, plan_path, fake_worker_config):
        ctx = BuildContext(
            document_path=plan_path, document=TaskListDocument.load(plan_path), config=fake_worker_config
        )
        ctx.start_iteration(4)
        log_iteration(ctx, 4, 2)

        entry = TaskListDocument.load(plan_path).iteration_log[-1]
        assert entry.iteration == 4
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}", entry.started)
        assert re.fullmatch(r"\d+m \d+s", entry.duration)
        assert entry.notes == "2 task(s) completed"

    @pytest.mark.parametrize(
        "reason, expected",
        [
            (DoneReason.ALL_TASKS_COMPLETE, "All tasks completed successfully!"),
            (DoneReason.DONE_MARKER, "All tasks completed successfully!"),
            (DoneReason.MAX_ITERATIONS_REACHED, "Stopped after 20 iterations. 1 task(s) remaining."),
            (DoneReason.USER_CANCELLED, "Build cancelled by user."),
            (DoneReason.SINGLE_ITERATION_COMPLETE, "Single iteration completed (--once mode)."),
        ],
    )
    def test_completion_message(self, plan_path, fake_worker_config, reason, expected):
        ctx = BuildContext(
            document_path=plan_path, document=TaskListDocument.load(plan_path), config=fake_worker_config
        )
        lines = completion_message(reason, ctx)
        assert "=== BUILD COMPLETE ===" in lines
        assert f"Reason: {reason.describe()}" in lines
        assert "Final progress: 1/2 tasks" in lines
        assert expected in lines
