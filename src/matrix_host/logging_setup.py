"""
Logging setup for hosts embedding matrix-host.

The library itself only creates loggers; applications call
``configure_logging`` once at startup.
"""

import logging
import multiprocessing
from logging.handlers import QueueListener
from typing import Optional, Union

from .core.sandbox import set_log_queue

LOG_FORMAT = "%(asctime)s : %(levelname)-8s : (%(name)s) %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Install the console format on the root logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT, force=True)


def forward_child_logs() -> QueueListener:
    """
    Route records from PROCESS-mode plugins to the root logger's handlers.

    Call after ``configure_logging``; stop the returned listener on shutdown.
    """
    root_logger = logging.getLogger()

    # Set up multiprocessing queue for child process logs
    log_queue: "multiprocessing.Queue[logging.LogRecord]" = multiprocessing.Queue()
    set_log_queue(log_queue)

    queue_listener = QueueListener(log_queue, *root_logger.handlers, respect_handler_level=True)
    queue_listener.start()
    return queue_listener


def stop_forwarding(listener: Optional[QueueListener]) -> None:
    """Stop a listener from ``forward_child_logs`` and detach its queue."""
    set_log_queue(None)
    if listener is not None:
        listener.stop()
