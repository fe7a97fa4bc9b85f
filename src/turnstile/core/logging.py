import logging
import sys
import structlog

def setup_logging(level: str = "INFO") -> None:
    """
    Configures the logging for the application using structlog to produce JSON formatted logs.
    """

    # Common processors for all logs (timestamp, level, etc)
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    log_level = logging.getLevelName(level.upper())

    structlog.configure(
        processors=shared_processors + [
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level
    )
