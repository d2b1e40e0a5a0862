"""Pytest configuration and fixtures."""

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from plugins.base import (
    Cluster,
    ClusterParameters,
    CommandInvocation,
    ExecutionContext,
)
from plugins.executors.base import CommandExecutor
from plugins.reconcilers.pcluster.workspace import CLUSTER_CONFIG_FILE_NAME

RESOURCES_DIR = Path(__file__).parent / "resources"

CLUSTER_CONFIGURATION = """Region: eu-west-1
Image:
  Os: alinux2
HeadNode:
  InstanceType: t2.micro
Scheduling:
  Scheduler: slurm
"""


def load_resource(name: str) -> bytes:
    """Read a captured pcluster response from tests/resources."""
    return (RESOURCES_DIR / name).read_bytes()


def error_payload(message: str) -> bytes:
    return json.dumps({"message": message}).encode()


Response = Union[Tuple[int, bytes], CommandInvocation, BaseException]


class FakeExecutor(CommandExecutor):
    """
    Scripted executor.

    Responses are queued per verb as (exit_code, output) pairs, a complete
    CommandInvocation, or an exception to raise. Every call is recorded
    together with the working directory and the config file found there.
    """

    def __init__(self):
        self.responses: Dict[str, List[Response]] = {}
        self.calls: List[Dict[str, Any]] = []

    def script(self, verb: str, exit_code: int, output: bytes) -> "FakeExecutor":
        self.responses.setdefault(verb, []).append((exit_code, output))
        return self

    def script_raw(self, verb: str, response: Response) -> "FakeExecutor":
        self.responses.setdefault(verb, []).append(response)
        return self

    def verbs(self) -> List[str]:
        return [call["verb"] for call in self.calls]

    def calls_for(self, verb: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["verb"] == verb]

    async def run(
        self, ctx: ExecutionContext, verb: str, args: List[str]
    ) -> CommandInvocation:
        config_contents: Optional[bytes] = None
        if ctx.working_directory:
            config_path = os.path.join(ctx.working_directory, CLUSTER_CONFIG_FILE_NAME)
            if os.path.exists(config_path):
                with open(config_path, "rb") as f:
                    config_contents = f.read()

        self.calls.append(
            {
                "verb": verb,
                "args": list(args),
                "ctx": ctx,
                "working_directory": ctx.working_directory,
                "config": config_contents,
            }
        )

        queue = self.responses.get(verb)
        if not queue:
            raise AssertionError(f"unexpected pcluster call: {verb} {args}")
        response = queue.pop(0)

        if isinstance(response, BaseException):
            raise response
        if isinstance(response, CommandInvocation):
            return response
        exit_code, output = response
        return CommandInvocation(
            verb=verb,
            arguments=list(args),
            combined_output=output,
            exit_code=exit_code,
        )


@pytest.fixture
def fake_executor():
    """A FakeExecutor with nothing scripted."""
    return FakeExecutor()


@pytest.fixture
def execution_context():
    """A context that never touches the real environment."""
    return ExecutionContext(
        executable_path="pcluster",
        environment=["PATH=/usr/bin:/bin", "HOME=/tmp"],
    )


@pytest.fixture
def cluster():
    """A managed cluster with no observed status yet."""
    return Cluster(
        parameters=ClusterParameters(
            name="test-cluster",
            region="eu-west-1",
            cluster_configuration=CLUSTER_CONFIGURATION,
        )
    )


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def db_with_connection(mock_connection):
    """A DatabaseManager whose pool always yields mock_connection."""
    from db import DatabaseManager

    db = DatabaseManager(
        host="localhost",
        port=5432,
        database="test",
        user="test",
        password="test",
    )
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield mock_connection

    pool.acquire = mock_acquire
    db.pool = pool
    return db


@pytest.fixture
def sample_cluster_record():
    """Cluster row as returned by DatabaseManager."""
    return {
        "id": 1,
        "name": "test-cluster",
        "region": "eu-west-1",
        "cluster_configuration": CLUSTER_CONFIGURATION,
        "spec_hash": "abc123",
        "cluster_name": None,
        "cloudformation_stack_arn": None,
        "cluster_status": None,
        "scheduler_type": None,
        "last_updated_time": None,
        "up_to_date": False,
        "status": "pending",
        "status_message": None,
        "generation": 1,
        "observed_generation": 0,
        "retry_count": 0,
        "last_reconcile_time": None,
        "next_reconcile_time": None,
        "finalizers": ["pcluster"],
        "deleted_at": None,
    }
