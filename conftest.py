"""Shared fixtures for the jobctl test suite."""

import random
import sqlite3
from datetime import datetime

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from jobctl.engine import JobEngine
from jobctl.registry import HandlerRegistry
from jobctl.storage import JobStorage
from jobctl.telemetry import JobMetrics
from jobctl.utils import to_db


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def storage(db_path):
    return JobStorage(db_path)


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def engine(storage, registry):
    # Seeded so jittered retry times are reproducible
    return JobEngine(storage, registry, rng=random.Random(1234))


@pytest.fixture
def set_columns(db_path):
    """Overwrite raw job columns, e.g. to age a job or make a retry due now."""

    def _set(job_id, **columns):
        values = [to_db(v) if isinstance(v, datetime) else v for v in columns.values()]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        conn = sqlite3.connect(db_path)
        try:
            with conn:
                conn.execute(f"UPDATE jobs SET {assignments} WHERE id = ?", [*values, job_id])
        finally:
            conn.close()

    return _set


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def job_metrics(metric_reader, span_exporter):
    """JobMetrics backed by SDK providers that keep everything in memory."""
    meter_provider = MeterProvider(metric_readers=[metric_reader])
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))

    yield JobMetrics(
        meter=meter_provider.get_meter("jobctl"),
        tracer=tracer_provider.get_tracer("jobctl"),
    )

    tracer_provider.shutdown()
    meter_provider.shutdown()


@pytest.fixture
def instrumented_engine(storage, registry, job_metrics):
    return JobEngine(storage, registry, rng=random.Random(1234), metrics=job_metrics)
