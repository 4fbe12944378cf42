"""Scheduled garbage collection of abandoned canvases.

One run walks through the states
idle -> locked -> scanning-canvases -> scanning-orphans -> recording -> unlocked.
At most one run is active system-wide thanks to the single-row
`cleanup_lock` table. Every completed run leaves one permanent
`deletion_record` row.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import socket
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from domain.errors import LockAcquisitionError, StorageError
from domain.models import CleanupResult, CleanupStats, DeletionRecord
from domain.validation import generate_id
from shared.constants import CLEANUP_LOCK_ID, OGP_KEY_PREFIX, CleanupState
from shared.diagnostics import log_memory_usage
from storage.database import from_db_time, to_db_time, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from settings import ServiceEnv
    from storage.blobs import BlobStore
    from storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class CanvasDeletion:
    """What was removed together with one canvas."""

    tiles_deleted: int = 0
    layers_deleted: int = 0
    ogp_deleted: bool = False
    storage_reclaimed: int = 0


@dataclass
class CleanupRun:
    """Mutable state of a single run."""

    stats: CleanupStats = field(default_factory=CleanupStats)
    errors: list[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _worker_id() -> str:
    return f'{socket.gethostname()}-{os.getpid()}-{generate_id(6)}'


def _record_id(now: datetime) -> str:
    return f'dr_{now.strftime("%Y%m%d_%H%M%S")}_{generate_id(6)}'


class CleanupService:
    """
    Deletes canvases that are empty or unshared and older than the retention
    period, then orphaned tiles and OGP images.

    Usage:
        service = CleanupService(env)
        try:
            result = service.execute_cleanup()
        except LockAcquisitionError:
            ...  # another run is active
    """

    def __init__(
        self,
        env: ServiceEnv,
        clock: Callable[[], datetime] = utc_now,
        worker_id: str | None = None,
    ) -> None:
        self.db: Database = env.db
        self.blobs: BlobStore = env.blobs
        self.config = env.config.cleanup
        self._clock = clock
        self.worker_id = worker_id or _worker_id()
        self.state = CleanupState.IDLE

    def _set_state(self, state: CleanupState) -> None:
        logger.debug('Cleanup %s: %s -> %s', self.worker_id, self.state.value, state.value)
        self.state = state

    def execute_cleanup(self) -> CleanupResult:
        """
        Run one full cleanup pass.

        Returns:
            CleanupResult; success=False if an unexpected error aborted the
            run (a partial deletion record is still attempted).

        Raises:
            LockAcquisitionError: Another run holds a fresh lock.
        """
        self.acquire_lock()
        run = CleanupRun()
        record_id: str | None = None
        log_memory_usage('before cleanup')
        try:
            run.stats.total_tiles_before = self._total_tiles()

            self._set_state(CleanupState.SCANNING_CANVASES)
            self.cleanup_unused_canvases(run)

            self._set_state(CleanupState.SCANNING_ORPHANS)
            self.cleanup_orphaned_data(run)

            run.stats.total_tiles_after = self._total_tiles()
            self._set_state(CleanupState.RECORDING)
            record_id = self.record_execution(run)
        except Exception as e:
            logger.exception('Cleanup run %s failed', self.worker_id)
            run.errors.append(f'Cleanup aborted: {e}')
            with contextlib.suppress(Exception):
                run.stats.total_tiles_after = self._total_tiles()
            try:
                record_id = self.record_execution(run)
            except Exception:
                logger.exception('Failed to write partial deletion record')
            return CleanupResult(
                success=False,
                deletion_record_id=record_id,
                canvases_processed=run.stats.canvases_deleted,
                errors=run.errors,
            )
        finally:
            self.release_lock()
            log_memory_usage('after cleanup')

        logger.info(
            'Cleanup finished in %d ms: %d canvases, %d tiles, %d orphaned tiles, '
            '%d orphaned OGP, %d bytes reclaimed, %d errors',
            run.duration_ms,
            run.stats.canvases_deleted,
            run.stats.tiles_deleted,
            run.stats.orphaned_tiles_deleted,
            run.stats.orphaned_ogp_deleted,
            run.stats.storage_reclaimed_bytes,
            len(run.errors),
        )
        return CleanupResult(
            success=True,
            deletion_record_id=record_id,
            canvases_processed=run.stats.canvases_deleted,
            errors=run.errors,
        )

    # Lock

    def acquire_lock(self) -> None:
        """
        Take the advisory lock, overriding it once if the holder is stale.

        Raises:
            LockAcquisitionError: The lock is held and younger than the threshold.
        """
        for attempt in range(2):
            now = self._clock()
            try:
                with self.db.transaction() as conn:
                    conn.execute(
                        'INSERT INTO cleanup_lock (id, locked_at, locked_by) VALUES (?, ?, ?)',
                        (CLEANUP_LOCK_ID, to_db_time(now), self.worker_id),
                    )
            except sqlite3.IntegrityError:
                row = self.db.query_one(
                    'SELECT locked_at, locked_by FROM cleanup_lock WHERE id = ?',
                    (CLEANUP_LOCK_ID,),
                )
                if row is None:
                    # Released between our insert and select
                    continue
                locked_at = from_db_time(row['locked_at'])
                age = now - locked_at
                stale = age > timedelta(minutes=self.config.stale_lock_minutes)
                if attempt == 0 and stale:
                    logger.warning(
                        'Force releasing stale cleanup lock held by %s (age: %d minutes)',
                        row['locked_by'],
                        int(age.total_seconds() // 60),
                    )
                    self.db.execute(
                        'DELETE FROM cleanup_lock WHERE id = ? AND locked_by = ?',
                        (CLEANUP_LOCK_ID, row['locked_by']),
                    )
                    continue
                raise LockAcquisitionError(row['locked_by'], row['locked_at']) from None
            else:
                self._set_state(CleanupState.LOCKED)
                logger.info('Cleanup lock acquired by %s', self.worker_id)
                return
        raise LockAcquisitionError('unknown', to_db_time(self._clock()))

    def release_lock(self) -> None:
        """Release the lock if this worker holds it."""
        try:
            self.db.execute(
                'DELETE FROM cleanup_lock WHERE id = ? AND locked_by = ?',
                (CLEANUP_LOCK_ID, self.worker_id),
            )
        except sqlite3.Error:
            logger.exception('Failed to release cleanup lock')
        self._set_state(CleanupState.UNLOCKED)

    # Canvases

    def cleanup_unused_canvases(self, run: CleanupRun) -> None:
        """Delete eligible canvases in keyset-paginated batches up to the safety limit."""
        cutoff = to_db_time(self._clock() - timedelta(days=self.config.retention_days))
        last_id = ''
        processed = 0
        while processed < self.config.safety_limit:
            rows = self.db.query_all(
                '''SELECT id FROM canvas
                   WHERE (tile_count = 0
                          OR (share_lat IS NULL AND share_lng IS NULL AND share_zoom IS NULL))
                     AND created_at <= ?
                     AND id > ?
                   ORDER BY id
                   LIMIT ?''',
                (cutoff, last_id, self.config.batch_size),
            )
            if not rows:
                break
            logger.debug('Cleanup batch of %d canvases after %r', len(rows), last_id)
            for row in rows:
                if processed >= self.config.safety_limit:
                    logger.warning(
                        'Cleanup safety limit of %d canvases reached', self.config.safety_limit
                    )
                    break
                canvas_id = row['id']
                last_id = canvas_id
                processed += 1
                try:
                    deletion = self.delete_canvas_data(canvas_id, run.errors)
                except sqlite3.Error as e:
                    msg = f'Failed to delete canvas {canvas_id}: {e}'
                    logger.error(msg)
                    run.errors.append(msg)
                    continue
                run.stats.canvases_deleted += 1
                run.stats.tiles_deleted += deletion.tiles_deleted
                run.stats.layers_deleted += deletion.layers_deleted
                run.stats.storage_reclaimed_bytes += deletion.storage_reclaimed
                if deletion.ogp_deleted:
                    run.stats.ogp_images_deleted += 1

    def delete_canvas_data(self, canvas_id: str, errors: list[str]) -> CanvasDeletion:
        """
        Remove one canvas: tile rows, tile blobs, OGP blob, layer rows, canvas row.

        Rows referencing a blob are committed away before the blob is deleted,
        so a failure at any step leaves at worst an unreferenced blob. Blob
        failures (after one retry) are appended to errors and skipped.
        """
        result = CanvasDeletion()
        with self.db.transaction() as conn:
            tiles = conn.execute(
                'SELECT storage_key FROM drawing_tile WHERE canvas_id = ?', (canvas_id,)
            ).fetchall()
            conn.execute('DELETE FROM drawing_tile WHERE canvas_id = ?', (canvas_id,))
            canvas = conn.execute(
                'SELECT ogp_image_key FROM canvas WHERE id = ?', (canvas_id,)
            ).fetchone()
            ogp_image_key = canvas['ogp_image_key'] if canvas is not None else None
            conn.execute(
                'UPDATE canvas SET tile_count = 0, ogp_image_key = NULL WHERE id = ?',
                (canvas_id,),
            )

        for tile in tiles:
            key = tile['storage_key']
            size = self._blob_size(key)
            if self.delete_with_retry(key, errors):
                result.tiles_deleted += 1
                result.storage_reclaimed += size

        if ogp_image_key:
            size = self._blob_size(ogp_image_key)
            if self.delete_with_retry(ogp_image_key, errors):
                result.ogp_deleted = True
                result.storage_reclaimed += size

        with self.db.transaction() as conn:
            result.layers_deleted = conn.execute(
                'DELETE FROM layer WHERE canvas_id = ?', (canvas_id,)
            ).rowcount
            conn.execute('DELETE FROM canvas WHERE id = ?', (canvas_id,))

        logger.debug(
            'Deleted canvas %s: %d tiles, %d layers, ogp=%s',
            canvas_id,
            result.tiles_deleted,
            result.layers_deleted,
            result.ogp_deleted,
        )
        return result

    # Orphans

    def cleanup_orphaned_data(self, run: CleanupRun) -> None:
        """Delete tile rows/blobs without a canvas and OGP blobs no canvas references."""
        with self.db.transaction() as conn:
            orphans = conn.execute(
                '''SELECT dt.id, dt.storage_key
                   FROM drawing_tile dt
                   LEFT JOIN canvas c ON dt.canvas_id = c.id
                   WHERE c.id IS NULL'''
            ).fetchall()
            for row in orphans:
                conn.execute('DELETE FROM drawing_tile WHERE id = ?', (row['id'],))
        for row in orphans:
            if self.delete_with_retry(row['storage_key'], run.errors):
                run.stats.orphaned_tiles_deleted += 1

        referenced = {
            r['ogp_image_key']
            for r in self.db.query_all(
                'SELECT ogp_image_key FROM canvas WHERE ogp_image_key IS NOT NULL'
            )
        }
        for key in list(self.blobs.list(OGP_KEY_PREFIX)):
            if key in referenced:
                continue
            if self.delete_with_retry(key, run.errors):
                run.stats.orphaned_ogp_deleted += 1

        if orphans or run.stats.orphaned_ogp_deleted:
            logger.info(
                'Removed %d orphaned tiles and %d orphaned OGP images',
                run.stats.orphaned_tiles_deleted,
                run.stats.orphaned_ogp_deleted,
            )

    # Record

    def record_execution(self, run: CleanupRun) -> str:
        """Insert the permanent deletion_record row for this run."""
        now = self._clock()
        record_id = _record_id(now)
        stats = run.stats
        self.db.execute(
            '''INSERT INTO deletion_record (
                   id, executed_at, canvases_deleted, tiles_deleted, layers_deleted,
                   ogp_images_deleted, total_tiles_before, total_tiles_after,
                   storage_reclaimed_bytes, orphaned_tiles_deleted, orphaned_ogp_deleted,
                   errors_encountered, duration_ms
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
            (
                record_id,
                to_db_time(now),
                stats.canvases_deleted,
                stats.tiles_deleted,
                stats.layers_deleted,
                stats.ogp_images_deleted,
                stats.total_tiles_before,
                stats.total_tiles_after,
                stats.storage_reclaimed_bytes,
                stats.orphaned_tiles_deleted,
                stats.orphaned_ogp_deleted,
                json.dumps(run.errors) if run.errors else None,
                run.duration_ms,
            ),
        )
        return record_id

    # Helpers

    def delete_with_retry(self, key: str, errors: list[str]) -> bool:
        """Delete a blob, retrying once immediately. Never raises StorageError."""
        for attempt in (1, 2):
            try:
                self.blobs.delete(key)
            except StorageError as e:
                if attempt == 2:
                    msg = f'Failed to delete blob {key}: {e}'
                    logger.error(msg)
                    errors.append(msg)
                    return False
                logger.debug('Retrying delete of blob %s: %s', key, e)
            else:
                return True
        return False

    def _blob_size(self, key: str) -> int:
        try:
            info = self.blobs.head(key)
        except StorageError as e:
            logger.debug('Cannot stat blob %s: %s', key, e)
            return 0
        return info.size if info is not None else 0

    def _total_tiles(self) -> int:
        return self.db.scalar('SELECT COUNT(*) FROM drawing_tile') or 0


def list_deletion_records(db: Database, limit: int = 20) -> list[DeletionRecord]:
    """Most recent deletion records first."""
    rows = db.query_all(
        'SELECT * FROM deletion_record ORDER BY executed_at DESC LIMIT ?', (limit,)
    )
    records = []
    for row in rows:
        data = dict(row)
        raw_errors = data.pop('errors_encountered')
        records.append(
            DeletionRecord.model_validate(
                {**data, 'errors_encountered': json.loads(raw_errors) if raw_errors else None}
            )
        )
    return records


class CleanupScheduler:
    """
    Runs CleanupService on a fixed interval inside an asyncio loop.

    The blocking cleanup runs in a worker thread. Lock contention is logged
    and the tick skipped; any other exception is logged and the loop goes on.
    """

    def __init__(
        self,
        service_factory: Callable[[], CleanupService],
        interval_s: float,
        run_on_start: bool = False,
    ) -> None:
        self._service_factory = service_factory
        self.interval_s = interval_s
        self.run_on_start = run_on_start
        self._task: asyncio.Task | None = None
        self.last_result: CleanupResult | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> CleanupResult | None:
        service = self._service_factory()
        try:
            result = await asyncio.to_thread(service.execute_cleanup)
        except LockAcquisitionError as e:
            logger.info('Scheduled cleanup skipped: %s', e)
            return None
        except Exception:
            logger.exception('Scheduled cleanup crashed')
            return None
        finally:
            self.runs += 1
        self.last_result = result
        return result

    async def _loop(self) -> None:
        if self.run_on_start:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval_s)
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name='cleanup-scheduler')
        logger.info('Cleanup scheduler started (interval %.0f s)', self.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info('Cleanup scheduler stopped')
