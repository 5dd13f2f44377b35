"""
Resource usage of the supervised server.

Collects CPU, memory and thread statistics for the server process and the
worker processes it spawns.
"""

import logging
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


def get_process_metrics(pid: Optional[int]) -> Optional[dict]:
    """Get current resource usage for a process tree, or None if it is gone."""
    if pid is None:
        return None

    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / 1024 / 1024
        threads = proc.num_threads()
    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} no longer exists")
        return None
    except psutil.AccessDenied:
        logger.warning(f"Access denied reading metrics for PID {pid}")
        return None

    # Include children
    child_count = 0
    try:
        children = proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    for child in children:
        try:
            cpu_percent += child.cpu_percent(interval=0.1)
            memory_mb += child.memory_info().rss / 1024 / 1024
            threads += child.num_threads()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        child_count += 1

    return {
        "pid": pid,
        "cpu_percent": round(cpu_percent, 1),
        "memory_mb": round(memory_mb, 1),
        "child_processes": child_count,
        "threads": threads,
    }
