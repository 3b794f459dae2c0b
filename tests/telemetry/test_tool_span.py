"""Tests for OTel initialization and the tool_span wrapper."""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from fastmail_calendar.core import telemetry
from fastmail_calendar.core.telemetry import init_telemetry, tool_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_provider():
    """Set up an in-memory TracerProvider for every test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calendar-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class TestToolSpanContextManager:
    def test_span_name_and_attributes(self, otel_provider):
        with tool_span("get_events", protocol="caldav"):
            pass
        (span,) = otel_provider.get_finished_spans()
        assert span.name == "calendar.tool.get_events"
        assert span.attributes["calendar.protocol"] == "caldav"
        assert span.attributes["calendar.tool"] == "get_events"

    def test_span_is_current_inside_block(self, otel_provider):
        with tool_span("list_calendars", protocol="jmap") as span:
            assert trace.get_current_span() is span
        assert trace.get_current_span() is not span

    def test_records_exception_on_error(self, otel_provider):
        with pytest.raises(ValueError, match="boom"):
            with tool_span("create_event", protocol="caldav"):
                raise ValueError("boom")
        (span,) = otel_provider.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert any(event.name == "exception" for event in span.events)


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        monkeypatch.setattr(telemetry, "_tracer_provider_installed", False)
        tracer = init_telemetry("fastmail-calendar")
        assert tracer is not None
        assert telemetry._tracer_provider_installed is False
