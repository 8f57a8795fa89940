"""Shared pytest fixtures for infraflow tests."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

# Add the project root to Python path to enable 'infraflow' imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from infraflow.services.checkpoint_store import CheckpointStore
from infraflow.services.retry_executor import RetryExecutor
from infraflow.services.workflow_engine import WorkflowEngine
from tests.mock_backends import MockOperationBackend, MockStateBackend


@pytest.fixture
def operation_backend():
    """Operation backend that succeeds unless failures are queued."""
    return MockOperationBackend()


@pytest.fixture
def state_backend():
    """In-memory state backend."""
    return MockStateBackend()


@pytest.fixture
def no_sleep():
    """Sleep replacement so retries and recovery delays do not wait."""
    return AsyncMock()


@pytest.fixture
def retry_executor(no_sleep):
    return RetryExecutor(sleep=no_sleep)


@pytest.fixture
def checkpoint_store(tmp_path):
    """Checkpoint store writing under the test's temporary directory."""
    return CheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def engine(operation_backend, state_backend, checkpoint_store, no_sleep, tmp_path):
    """Workflow engine wired to mock backends."""
    return WorkflowEngine(
        operation_backend=operation_backend,
        state_backend=state_backend,
        checkpoint_store=checkpoint_store,
        working_dir=str(tmp_path),
        sleep=no_sleep,
    )
