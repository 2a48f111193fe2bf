"""Shared fixtures for the CAL test suite."""

import sys
from pathlib import Path

import pytest

from cli_agent_loop.config import BuildConfig
from cli_agent_loop.models.task_document import Task, TaskListDocument, TaskPhase

FAKE_WORKER = Path(__file__).resolve().parent / "fixtures" / "fake_worker.py"


def make_document(completed=(True, False), status="In Progress"):
    return TaskListDocument(
        name="Test Plan",
        status=status,
        analysis="Build a small tool.",
        phases=[
            TaskPhase(
                name="Phase 1",
                tasks=[
                    Task(description=f"Task {i + 1}", completed=done)
                    for i, done in enumerate(completed)
                ],
            )
        ],
        testing_strategy="Unit tests",
    )


@pytest.fixture
def document():
    return make_document()


@pytest.fixture
def plan_path(tmp_path, document):
    path = tmp_path / "progress.md"
    document.write(path)
    return path


@pytest.fixture
def fake_worker_config():
    """Config that runs the scripted fake worker through the current interpreter."""
    return BuildConfig(
        worker_path=sys.executable,
        worker_base_args=[str(FAKE_WORKER)],
        iteration_timeout=30,
        auto_commit=False,
    )


@pytest.fixture(autouse=True)
def clean_worker_env(monkeypatch):
    for name in (
        "FAKE_WORKER_MODE",
        "FAKE_WORKER_SLEEP",
        "FAKE_WORKER_EXIT_CODE",
        "FAKE_WORKER_STDERR",
        "FAKE_WORKER_ARGS_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def document_factory():
    return make_document
