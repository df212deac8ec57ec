"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Histogram, generate_latest, CollectorRegistry
import structlog

from .config import settings

SERVICE_NAME = "ridepool-booking-api"
SERVICE_VERSION = "1.0.0"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Business metrics
BOOKINGS_REQUESTED = Counter(
    'bookings_requested_total',
    'Total booking requests created by riders',
    registry=REGISTRY
)

BOOKING_TRANSITIONS = Counter(
    'booking_transitions_total',
    'Booking status transitions applied',
    ['transition'],
    registry=REGISTRY
)

SEAT_RESERVATIONS_FAILED = Counter(
    'seat_reservations_failed_total',
    'Seat reservations rejected for insufficient seats',
    registry=REGISTRY
)

PICKUPS_VERIFIED = Counter(
    'pickups_verified_total',
    'Pickups verified with a correct PIN',
    registry=REGISTRY
)

PICKUP_PIN_FAILURES = Counter(
    'pickup_pin_failures_total',
    'Pickup PIN verifications rejected',
    ['reason'],
    registry=REGISTRY
)

PICKUP_PIN_LOCKOUTS = Counter(
    'pickup_pin_lockouts_total',
    'Bookings locked after too many failed PIN attempts',
    registry=REGISTRY
)

NOTIFICATION_FAILURES = Counter(
    'notification_failures_total',
    'Notifications that could not be delivered',
    ['event'],
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_request_id(logger, method_name, event_dict):
        """Add request ID to log events."""
        # This will be set by middleware
        request_id = getattr(logger, '_request_id', None)
        if request_id:
            event_dict['request_id'] = request_id
        return event_dict

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_id,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _service_resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    trace.set_tracer_provider(TracerProvider(resource=_service_resource()))

    # Setup OTLP exporter (if OTLP endpoint is configured)
    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        span_processor = BatchSpanProcessor(otlp_exporter)
        trace.get_tracer_provider().add_span_processor(span_processor)

    return trace.get_tracer(__name__)


def setup_metrics():
    """Setup OpenTelemetry metrics."""
    # Setup OTLP metric exporter (if configured)
    if settings.otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=otlp_exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_service_resource(), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy():
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_request(method: str, endpoint: str, status_code: int, duration_seconds: float):
        """Record a completed HTTP request."""
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration_seconds)

    @staticmethod
    def record_booking_requested():
        """Record a new booking request."""
        BOOKINGS_REQUESTED.inc()

    @staticmethod
    def record_booking_transition(transition: str):
        """Record an applied booking transition (accept, reject, cancel, complete)."""
        BOOKING_TRANSITIONS.labels(transition=transition).inc()

    @staticmethod
    def record_seat_reservation_failed():
        """Record a reservation that lost to insufficient seats."""
        SEAT_RESERVATIONS_FAILED.inc()

    @staticmethod
    def record_pickup_verified():
        """Record a successful pickup verification."""
        PICKUPS_VERIFIED.inc()

    @staticmethod
    def record_pickup_pin_failure(reason: str):
        """Record a rejected PIN verification."""
        PICKUP_PIN_FAILURES.labels(reason=reason).inc()

    @staticmethod
    def record_pickup_pin_lockout():
        """Record a booking entering lockout."""
        PICKUP_PIN_LOCKOUTS.inc()

    @staticmethod
    def record_notification_failure(event: str):
        """Record a notification delivery failure."""
        NOTIFICATION_FAILURES.labels(event=event).inc()


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()
