"""
Diagnostic utilities.

This module logs process resources (memory, threads, descriptors) and the
size of the storage directories. Failures to collect a metric are reported
in the returned dict instead of raised.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any

import psutil

logger = logging.getLogger(__name__)


def get_memory_info() -> dict[str, Any]:
    """Get process and system memory usage."""
    try:
        process = psutil.Process()
        memory_info = process.memory_info()
        system_memory = psutil.virtual_memory()

        return {
            'process_rss_mb': round(memory_info.rss / 1024 / 1024, 2),
            'process_vms_mb': round(memory_info.vms / 1024 / 1024, 2),
            'system_total_mb': round(system_memory.total / 1024 / 1024, 2),
            'system_available_mb': round(
                system_memory.available / 1024 / 1024,
                2,
            ),
            'system_used_percent': system_memory.percent,
            'process_memory_percent': round(process.memory_percent(), 2),
        }
    except Exception as e:
        return {'error': f'Failed to get memory info: {e}'}


def get_thread_info() -> dict[str, Any]:
    """Get information about active threads."""
    info: dict[str, Any] = {
        'active_count': threading.active_count(),
        'thread_names': [t.name for t in threading.enumerate()],
        'main_thread_alive': threading.main_thread().is_alive(),
    }
    try:
        info['system_threads'] = psutil.Process().num_threads()
    except psutil.Error as e:
        logger.debug('Failed to get system thread count: %s', e)
    return info


def get_file_descriptor_info() -> dict[str, Any]:
    """Get open file and connection counts."""
    try:
        process = psutil.Process()
        open_files = len(process.open_files())
        connections = len(process.net_connections())
    except Exception as e:
        return {'error': f'Failed to get file descriptor info: {e}'}
    else:
        return {
            'open_files': open_files,
            'network_connections': connections,
            'pid': process.pid,
        }


def get_storage_info(db_path: str | Path | None, blob_root: str | Path | None) -> dict[str, Any]:
    """Size of the metadata database file and the blob directory."""
    info: dict[str, Any] = {}
    try:
        if db_path is not None and Path(db_path).is_file():
            info['db_size_mb'] = round(Path(db_path).stat().st_size / 1024 / 1024, 2)
        if blob_root is not None and Path(blob_root).is_dir():
            total = 0
            count = 0
            for f in Path(blob_root).rglob('*'):
                if f.is_file():
                    total += f.stat().st_size
                    count += 1
            info['blob_count'] = count
            info['blob_size_mb'] = round(total / 1024 / 1024, 2)
    except Exception as e:
        return {'error': f'Failed to get storage info: {e}'}
    return info


def get_system_load() -> dict[str, Any]:
    """Get system load and CPU information."""
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        load_avg = os.getloadavg() if hasattr(os, 'getloadavg') else None

        info = {
            'cpu_percent': cpu_percent,
            'cpu_count': psutil.cpu_count(),
        }

        if load_avg:
            info['load_avg_1min'] = load_avg[0]
            info['load_avg_5min'] = load_avg[1]
            info['load_avg_15min'] = load_avg[2]
    except Exception as e:
        return {'error': f'Failed to get system load: {e}'}
    else:
        return info


def log_comprehensive_diagnostics(
    operation: str = 'general',
    level: int = logging.INFO,
    db_path: str | Path | None = None,
    blob_root: str | Path | None = None,
) -> None:
    """Log comprehensive diagnostic information."""
    logger.log(level, '=== DIAGNOSTIC INFO: %s ===', operation.upper())

    memory_info = get_memory_info()
    logger.log(
        level,
        'Memory - RSS: %sMB, VMS: %sMB, System Available: %sMB (%s%% used)',
        memory_info.get('process_rss_mb', 'N/A'),
        memory_info.get('process_vms_mb', 'N/A'),
        memory_info.get('system_available_mb', 'N/A'),
        memory_info.get('system_used_percent', 'N/A'),
    )

    thread_info = get_thread_info()
    logger.log(
        level,
        'Threads - Active: %s, System: %s, Main alive: %s',
        thread_info.get('active_count', 'N/A'),
        thread_info.get('system_threads', 'N/A'),
        thread_info.get('main_thread_alive', 'N/A'),
    )

    fd_info = get_file_descriptor_info()
    logger.log(
        level,
        'Resources - Open files: %s, Network connections: %s',
        fd_info.get('open_files', 'N/A'),
        fd_info.get('network_connections', 'N/A'),
    )

    load_info = get_system_load()
    logger.log(
        level,
        'System - CPU: %s%%, Load avg: %s',
        load_info.get('cpu_percent', 'N/A'),
        load_info.get('load_avg_1min', 'N/A'),
    )

    storage_info = get_storage_info(db_path, blob_root)
    logger.log(
        level,
        'Storage - DB: %sMB, Blobs: %s files, %sMB',
        storage_info.get('db_size_mb', 'N/A'),
        storage_info.get('blob_count', 'N/A'),
        storage_info.get('blob_size_mb', 'N/A'),
    )

    logger.log(level, '=== END DIAGNOSTIC INFO: %s ===', operation.upper())


def log_memory_usage(context: str = '') -> None:
    """Quick memory usage logging."""
    memory_info = get_memory_info()
    context_label = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB',
        context_label,
        memory_info.get('process_rss_mb', 'N/A'),
        memory_info.get('system_available_mb', 'N/A'),
    )


def log_thread_status(context: str = '') -> None:
    """Quick thread status logging."""
    thread_info = get_thread_info()
    context_label = f' ({context})' if context else ''
    logger.info(
        'Thread status%s: Active=%s, System=%s',
        context_label,
        thread_info.get('active_count', 'N/A'),
        thread_info.get('system_threads', 'N/A'),
    )


def ensure_writable_dir(path: Path) -> None:
    """Create path if needed and check a file can be written into it."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / '.write_test.tmp'
        test_file.write_text('ok', encoding='utf-8')
        test_file.unlink(missing_ok=True)
    except Exception as e:
        raise RuntimeError('Каталог недоступен для записи: ' + str(path)) from e
