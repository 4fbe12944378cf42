"""Shared utilities and helpers."""
from shared.diagnostics import (
    ensure_writable_dir,
    log_comprehensive_diagnostics,
    log_memory_usage,
    log_thread_status,
)

__all__ = [
    'ensure_writable_dir',
    'log_comprehensive_diagnostics',
    'log_memory_usage',
    'log_thread_status',
]
