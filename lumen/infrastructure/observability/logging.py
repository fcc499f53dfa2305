import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "lumen-relay"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    bound = structlog.contextvars.get_contextvars()

    # Identity of the conversation endpoint being served
    identity = bound.get("identity")
    if identity and "identity" not in event_dict:
        event_dict["identity"] = identity

    run_id = bound.get("run_id")
    if run_id and "run_id" not in event_dict:
        event_dict["run_id"] = run_id

    return event_dict


class AgentLogger:
    """Specialized logger for relay operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_stage_transition(
        self,
        identity: str,
        from_stage: str,
        to_stage: str,
        iteration: int,
        condition: Optional[str] = None
    ):
        """Log state machine transitions"""

        self.logger.info(
            "stage_transition",
            identity=identity,
            from_stage=from_stage,
            to_stage=to_stage,
            iteration=iteration,
            condition=condition
        )

    def log_capability_execution(
        self,
        capability_id: str,
        identity: str,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log capability (tool) execution"""

        self.logger.info(
            "capability_execution",
            capability_id=capability_id,
            identity=identity,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_command_execution(
        self,
        identity: str,
        status: str,
        exit_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
        message: Optional[str] = None
    ):
        """Log sandboxed command outcomes. The command text itself is never logged."""

        self.logger.info(
            "command_execution",
            identity=identity,
            status=status,
            exit_code=exit_code,
            duration_ms=duration_ms,
            message=message
        )

    def log_buffer_event(
        self,
        identity: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log coalescing buffer activity"""

        self.logger.debug(
            "buffer_event",
            identity=identity,
            action=action,
            details=details or {}
        )


# Global logger instance
agent_logger = AgentLogger("lumen")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0,
                "min": float('inf'),
                "max": 0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        if name not in self.metrics:
            self.metrics[name] = 0
        self.metrics[name] += value

        agent_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric"""

        self.metrics[name] = value

        agent_logger.logger.debug(
            "metric",
            metric_type="gauge",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                # Latency metric
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                # Counter or gauge
                summary[key] = value

        return summary


# Global metrics collector
metrics = MetricsCollector()
