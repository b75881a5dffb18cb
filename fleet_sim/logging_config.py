"""
Structured logging for the fleet simulator.

Every event carries the service name and the topic namespace of the fleet.
Failure injection runs inside ``scenario_context`` so the logs of every
device touched by a scenario can be correlated by ``scenario_id``.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

# paho logs every packet at DEBUG
NOISY_LOGGERS = ("paho", "paho.mqtt.client")


def configure_logging(
    service_name: str = "fleet-sim",
    log_level: str = "INFO",
    json_logs: bool = True,
    namespace: Optional[str] = None
) -> None:
    """Install the structlog pipeline.

    ``json_logs=False`` switches to the console renderer for local runs.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            fleet_context(service_name, namespace),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def fleet_context(service_name: str, namespace: Optional[str] = None):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", service_name)
        if namespace:
            event_dict.setdefault("namespace", namespace)
        return event_dict
    return processor


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def scenario_context(scenario_id: str, failure_kind: str) -> Iterator[None]:
    """Tag every log event emitted inside the block with the scenario."""
    with structlog.contextvars.bound_contextvars(scenario_id=scenario_id, failure_kind=failure_kind):
        yield
