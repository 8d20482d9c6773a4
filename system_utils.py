"""
System utilities for logging and process management

This module provides the logging formatter and setup used by the diagnostics
engine, and process-tree termination for language servers that were started
through a package runner (npx, uvx, ...) and therefore have children.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

import psutil


class MicrosecondFormatter(logging.Formatter):
    """Custom formatter that provides microsecond precision timestamps"""
    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created)
        return dt.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]  # Keep 3 decimal places (milliseconds)


def setup_logging(
    level: int | str = logging.WARNING, log_file_path: Path | None = None
) -> logging.Logger:
    """Configure the root logger with console and optional file handlers."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Prevent duplicate handlers
    if root_logger.handlers:
        root_logger.handlers.clear()

    console_formatter = MicrosecondFormatter("%(asctime)s [%(levelname)s] %(message)s")
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    if log_file_path is not None:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        detailed_formatter = MicrosecondFormatter(
            "%(asctime)s [%(levelname)8s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
        )
        file_handler = logging.FileHandler(log_file_path, mode="a")
        file_handler.setLevel(level)
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)
        root_logger.debug(f"Log file: {log_file_path}")

    return root_logger


def kill_process_tree(pid: int, logger: logging.Logger, timeout: float = 2.0) -> None:
    """Kill a process and all of its descendants.

    Processes that have already exited are ignored.
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} already exited")
        return
    except psutil.AccessDenied as e:
        logger.warning(f"Cannot inspect process {pid}: {e}")
        return

    processes = [*children, parent]
    for proc in processes:
        try:
            logger.debug(f"Killing PID {proc.pid}")
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(processes, timeout=timeout)
    for proc in alive:
        logger.warning(f"Process {proc.pid} still alive after kill")
