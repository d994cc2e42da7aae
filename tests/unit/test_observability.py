"""
Unit tests for logging, metrics and tracing setup.
"""

import json
import logging

import pytest
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry

from leasequeue.config import Settings
from leasequeue.observability import tracing
from leasequeue.observability.logging import bind_context, clear_context, setup_logging
from leasequeue.observability.metrics import MetricsCollector


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    clear_context()


class TestLogging:
    def test_json_records_carry_extra_and_context(self, capsys, restore_root_logger):
        """Test stdlib records are rendered as JSON with extra fields and bound context."""
        setup_logging(Settings(_env_file=None, log_format="json", log_level="INFO"))
        bind_context(worker_id="emails-worker-0")

        logging.getLogger("leasequeue.test").info("Claimed job", extra={"job_id": 7})

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["event"] == "Claimed job"
        assert record["job_id"] == 7
        assert record["worker_id"] == "emails-worker-0"
        assert record["level"] == "info"
        assert record["service"] == "leasequeue"
        assert "timestamp" in record

    def test_level_filters_records(self, capsys, restore_root_logger):
        setup_logging(Settings(_env_file=None, log_format="json", log_level="WARNING"))

        logging.getLogger("leasequeue.test").info("hidden")

        assert capsys.readouterr().out == ""


class TestMetricsCollector:
    def test_exposition(self):
        metrics = MetricsCollector(CollectorRegistry())

        metrics.record_job_finished("emails", "completed", 0.25)
        metrics.record_lease_expired("emails", count=3)
        metrics.record_storage_error("claim")
        metrics.update_queue_depth("emails", {"pending": 2, "processing": 1})

        sample = metrics.registry.get_sample_value
        assert sample("jobs_finished_total", {"queue": "emails", "outcome": "completed"}) == 1.0
        assert sample("job_duration_seconds_count", {"queue": "emails", "outcome": "completed"}) == 1.0
        assert sample("leases_expired_total", {"queue": "emails"}) == 3.0
        assert sample("storage_errors_total", {"operation": "claim"}) == 1.0
        assert sample("queue_depth", {"queue": "emails", "status": "pending"}) == 2.0
        assert b"jobs_finished_total" in metrics.get_metrics()
        assert metrics.get_content_type().startswith("text/plain")


class TestTracing:
    def test_setup_uses_given_settings(self, monkeypatch: pytest.MonkeyPatch):
        """Test the provider takes its service name and exporter from the settings passed in."""
        exporters = []

        def recording_processor(exporter):
            exporters.append(exporter)
            return SimpleSpanProcessor(InMemorySpanExporter())

        monkeypatch.setattr(tracing, "BatchSpanProcessor", recording_processor)
        settings = Settings(
            _env_file=None,
            otel_service_name="billing-workers",
            otel_exporter_otlp_endpoint="http://collector:4317",
        )

        provider = tracing.setup_tracing(settings, install=False)

        assert provider.resource.attributes["service.name"] == "billing-workers"
        assert len(exporters) == 1
        assert isinstance(exporters[0], OTLPSpanExporter)
        provider.shutdown()

    def test_no_exporter_without_endpoint(self, monkeypatch: pytest.MonkeyPatch):
        exporters = []
        monkeypatch.setattr(tracing, "BatchSpanProcessor", exporters.append)

        tracing.setup_tracing(Settings(_env_file=None), install=False)

        assert exporters == []

    def test_get_tracer_leaves_global_provider_alone(self):
        """Test creating spans does not install an SDK provider."""
        with tracing.get_tracer().start_as_current_span("enqueue_job"):
            pass

        assert not isinstance(trace.get_tracer_provider(), TracerProvider)
