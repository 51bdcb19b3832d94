"""Logging setup for a Mail Fetch run using structlog."""

import logging
import os
import sys

import structlog

LOG_CONTEXTS = ("collection", "result")


def _context_prefix(_, __, event_dict):
    """Move bound collection/result context in front of the event text"""
    parts = [event_dict.pop(key) for key in LOG_CONTEXTS if event_dict.get(key)]
    if parts:
        event_dict["event"] = f"[{'/'.join(str(p) for p in parts)}] {event_dict.get('event', '')}"
    return event_dict


def _summarize_exception(_, __, event_dict):
    """Replace exc_info with a one-line 'TypeName: message' summary"""
    exc_info = event_dict.pop("exc_info", None)
    if not exc_info:
        return event_dict

    if isinstance(exc_info, BaseException):
        error = exc_info
    elif isinstance(exc_info, tuple):
        error = exc_info[1]
    else:
        error = sys.exc_info()[1]

    if error is not None:
        event_dict["error"] = f"{type(error).__name__}: {error}"
    return event_dict


class LogConfig:
    """
    Process-wide logging for one run.

    Entering the context attaches a DEBUG file handler (with tracebacks) and an
    INFO console handler (without) to the root logger; exiting removes and
    closes them again.
    """

    def __init__(self, log_file: str, console_stream=None):
        """
        Args:
            log_file: Path of the run's log file, parent directories are created
            console_stream: Stream for console output, defaults to stderr
        """
        self.log_file = log_file
        self.console_stream = console_stream or sys.stderr
        self.handlers = []
        self._previous_level = None

    def __enter__(self):
        self.configure()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def configure(self) -> None:
        shared_processors = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                ]
            ),
            _context_prefix,
        ]

        structlog.configure(
            processors=[
                *shared_processors,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        os.makedirs(os.path.dirname(self.log_file) or ".", exist_ok=True)

        file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=shared_processors,
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    structlog.dev.ConsoleRenderer(colors=False, exception_formatter=structlog.dev.plain_traceback),
                ],
            )
        )

        console_handler = logging.StreamHandler(self.console_stream)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=shared_processors,
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _summarize_exception,
                    structlog.dev.ConsoleRenderer(colors=False),
                ],
            )
        )

        root = logging.getLogger()
        self._previous_level = root.level
        for handler in (file_handler, console_handler):
            root.addHandler(handler)
            self.handlers.append(handler)
        root.setLevel(logging.DEBUG)

    def shutdown(self) -> None:
        root = logging.getLogger()
        for handler in self.handlers:
            handler.flush()
            root.removeHandler(handler)
            handler.close()
        self.handlers = []
        if self._previous_level is not None:
            root.setLevel(self._previous_level)
            self._previous_level = None

    def get_logger(self, name: str):
        return structlog.get_logger(name)
