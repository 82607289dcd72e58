"""sysupdate reporting modules."""

from .logfile import append_run_log, render_run_log, status_line

__all__ = [
    "append_run_log",
    "render_run_log",
    "status_line",
]
