import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tenant_scheduler.db.session import init_db
from tenant_scheduler.services.scheduling import (
    CronPlanner,
    ExecutionEngine,
    JobRegistry,
    ScheduledJobService,
    SchedulingRepository,
    TargetFunctionRegistry,
)
from tenant_scheduler.services.scheduling.core.models import JobSpec


# Fixture for an in-memory SQLite database shared by every session of a test
@pytest.fixture(scope="function")
def db_engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def repository(session_factory) -> SchedulingRepository:
    return SchedulingRepository(session_factory)


@pytest.fixture
def planner() -> CronPlanner:
    return CronPlanner()


@pytest.fixture
def target_state() -> Dict[str, Any]:
    """Shared state the test targets read and record into"""
    return {"fail": False, "calls": [], "cancelled": [], "active": 0, "max_active": 0}


@pytest.fixture
def targets(target_state) -> TargetFunctionRegistry:
    registry = TargetFunctionRegistry()

    @registry.target("noop")
    async def noop(params, context):
        target_state["calls"].append((params, context))
        return {"ok": True}

    @registry.target("echo")
    async def echo(params, context):
        target_state["calls"].append((params, context))
        return {key: value for key, value in params.items() if key != "_execution"}

    @registry.target("fail")
    async def fail(params, context):
        target_state["calls"].append((params, context))
        raise RuntimeError("boom")

    @registry.target("flaky")
    async def flaky(params, context):
        target_state["calls"].append((params, context))
        if target_state["fail"]:
            raise RuntimeError("flaky failure")
        return "recovered"

    @registry.target("sleep")
    async def sleep(params, context):
        target_state["calls"].append((params, context))
        target_state["active"] += 1
        target_state["max_active"] = max(
            target_state["max_active"], target_state["active"]
        )
        try:
            await asyncio.sleep(params.get("seconds", 10))
        except asyncio.CancelledError:
            target_state["cancelled"].append(context.execution_id)
            raise
        finally:
            target_state["active"] -= 1
        return "slept"

    @registry.target("selfcancel")
    async def selfcancel(params, context):
        target_state["calls"].append((params, context))
        raise asyncio.CancelledError()

    return registry


@pytest.fixture
def execution_engine(repository, targets, planner) -> ExecutionEngine:
    return ExecutionEngine(repository, targets=targets, planner=planner)


@pytest.fixture
def registry(repository, execution_engine, planner) -> JobRegistry:
    return JobRegistry(repository, execution_engine, planner)


@pytest.fixture
def service(repository, registry) -> ScheduledJobService:
    return ScheduledJobService(repository=repository, registry=registry)


@pytest.fixture
def job_spec():
    """Factory for job spec payloads"""

    def _make(**overrides) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "name": "Nightly sync",
            "cron_expression": "*/5 * * * *",
            "timezone": "UTC",
            "target_function": "noop",
            "params": {"batch": 10},
            "enabled": True,
            "timeout_seconds": 5,
            "max_consecutive_failures": 3,
        }
        spec.update(overrides)
        return spec

    return _make


@pytest.fixture
def make_job(repository, job_spec):
    """Factory storing a job directly through the repository"""

    def _make(job_key: str = "nightly", tenant_id: str = "tenant-a", **overrides):
        job, _ = repository.upsert(
            tenant_id,
            job_key,
            JobSpec.parse(job_spec(**overrides)),
            "user-1",
            datetime.now(timezone.utc) + timedelta(minutes=5),
        )
        return job

    return _make
