# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Logger setup for zautosnap runs.

A run logs to stdout, and optionally also to a file and to local or remote syslog. Every run gets a fresh Logger that is
not registered with the logging.Logger.manager, so that several runs (e.g. from tests) can coexist in one process without
leaking loggers; whoever creates a logger closes it again via ``reset_logger()``.

The lines that the 'list' and 'policy' commands print go through the same logger at the custom STDOUT level. They are
emitted without timestamp or level tag so that they remain machine readable.
"""

from __future__ import (
    annotations,
)
import contextlib
import logging
import socket
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from zautosnap_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
    PROG_NAME,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zautosnap_main.configuration import (
        LogParams,
    )

LOGGER_NAME: Final[str] = "zautosnap_main.zautosnap"
MSG_COLUMN: Final[int] = 54  # messages of the form "Label: %s" are padded so that their values line up
LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}


def get_logger(log_params: LogParams, log: Logger | None = None) -> Logger:
    """Returns ``log`` unchanged if the caller provides one, else a new logger configured from ``log_params``."""
    _add_custom_loglevels()
    if log is not None:
        return log
    log = Logger(LOGGER_NAME)  # noqa: LOG001 do not register logger with Logger.manager to avoid memory leak
    log.setLevel(log_params.log_level)
    log.propagate = False  # the root logger would emit every message a second time
    _attach(log, logging.StreamHandler(stream=sys.stdout), log_params.log_level)
    if log_params.log_file:
        _attach(log, logging.FileHandler(log_params.log_file, encoding="utf-8"), log_params.log_level)
    if log_params.syslog_address:
        _attach_syslog(log, log_params)

    # perf: tell logging framework not to gather unnecessary expensive info for each log record
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    return log


def reset_logger(log: Logger) -> None:
    """Detaches and closes all handlers of ``log`` (which closes its log file, if any), and drops its filters."""
    for handler in list(log.handlers):
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for log_filter in list(log.filters):
        log.removeFilter(log_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def get_simple_logger(program: str) -> Logger:
    """Returns a minimal stderr logger for reporting failures that happen before the real logger is configured."""
    _add_custom_loglevels()
    log = Logger(program)  # noqa: LOG001 do not register logger with Logger.manager to avoid memory leak
    log.setLevel(logging.INFO)
    log.propagate = False
    _attach(log, logging.StreamHandler(stream=sys.stderr), logging.INFO, prefix=f"[{program}] ")
    return log


def _attach(log: Logger, handler: logging.Handler, level: int, prefix: str = "") -> None:
    handler.setFormatter(get_default_log_formatter(prefix=prefix))
    handler.setLevel(level)
    log.addHandler(handler)


def _attach_syslog(log: Logger, log_params: LogParams) -> None:
    """Also sends messages at or above the syslog level to the configured syslog socket."""
    from logging import handlers  # lazy import for startup perf

    assert log_params.syslog_address is not None
    address, socktype = _get_syslog_address(log_params.syslog_address, log_params.syslog_socktype)
    handler = handlers.SysLogHandler(address=address, facility=log_params.syslog_facility, socktype=socktype)
    _attach(log, handler, log_params.syslog_level, prefix=PROG_NAME + " ")
    if log_params.syslog_level < log_params.log_level:
        level_name: str = logging.getLevelName(log_params.log_level)
        log.warning(
            "%s",
            f"Syslog receives no messages below {level_name} even though --log-syslog-level is "
            f"{logging.getLevelName(log_params.syslog_level)}, because {level_name} is the overall log level.",
        )


#############################################################################
class RunLogFormatter(logging.Formatter):
    """Prepends a timestamp and a level tag such as '[I]' to each message; STDOUT and STDERR records pass through as-is."""

    def __init__(self, prefix: str = "") -> None:
        super().__init__()
        self.prefix: str = prefix

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno == LOG_STDOUT or record.levelno == LOG_STDERR:
            return self.prefix + super().format(record)
        head: str = f"{datetime.now().isoformat(sep=' ', timespec='seconds')} {LOG_LEVEL_PREFIXES.get(record.levelno, '')} "
        msg: str = str(record.msg)
        i: int = msg.find("%s")
        template: str = head + msg
        if i >= 1:  # pad the label, unless the message is all value
            i += len(head)
            template = template[0:i].ljust(MSG_COLUMN) + template[i:]
        if record.exc_info or record.exc_text or record.stack_info:
            record = logging.makeLogRecord(record.__dict__)  # other handlers must still see the original msg
            record.msg = template
            return self.prefix + super().format(record)
        return self.prefix + (template % record.args if record.args else template)


def get_default_log_formatter(prefix: str = "") -> logging.Formatter:
    """Returns the formatter that all handlers of a zautosnap logger share; syslog handlers pass the program name as
    ``prefix``."""
    return RunLogFormatter(prefix)


def _add_custom_loglevels() -> None:
    """Registers the custom TRACE, STDOUT and STDERR logging levels with the standard python logging framework."""
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDERR, "STDERR")
    logging.addLevelName(LOG_STDOUT, "STDOUT")


def _get_syslog_address(address: str, socktype_name: str) -> tuple[str | tuple[str, int], socket.SocketKind | None]:
    """Returns a local socket path such as '/dev/log' as-is, with the socket type left to auto-detection; splits
    'host:port' into a (host, port) tuple and maps ``socktype_name`` ('UDP' or 'TCP') onto the socket type."""
    address = address.strip()
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, None
    socktype: socket.SocketKind = socket.SOCK_DGRAM if socktype_name == "UDP" else socket.SOCK_STREAM
    return (host.strip(), int(port)), socktype
