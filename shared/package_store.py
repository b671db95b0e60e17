"""
TenantSync package storage

Packages are opaque base64 text. Small packages are stored inline on the
ts_sync_queue row; larger ones arrive as indexed parts in ts_package_chunks
and are counted when the client signals completion.

Queue entry lifecycle:
    pending     manifest received, no package data yet
    processing  at least one chunk stored
    completed   inline package stored, or client signalled upload-complete
"""

import logging
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from config.settings import TransferSettings

logger = logging.getLogger(__name__)

STATUS_PENDING = 'pending'
STATUS_PROCESSING = 'processing'
STATUS_COMPLETED = 'completed'

TRANSFER_INLINE = 'inline'
TRANSFER_CHUNKED = 'chunked'
TRANSFER_MANIFEST_ONLY = 'manifest_only'


class PackageTransferError(Exception):
    """Base class for relay protocol violations"""
    status_code = 400


class InvalidChunkError(PackageTransferError):
    status_code = 400


class PackageTooLargeError(PackageTransferError):
    status_code = 413


class ChunkConflictError(PackageTransferError):
    status_code = 409


def transfer_mode(entry) -> str:
    """How a completed queue entry's package must be fetched"""
    if entry.get('package_data'):
        return TRANSFER_INLINE
    if (entry.get('total_chunks') or 0) > 0:
        return TRANSFER_CHUNKED
    return TRANSFER_MANIFEST_ONLY


def parse_chunk_index(value, name='chunk_index') -> int:
    """Chunk indices are non-negative integers, sent as numbers or numeric strings"""
    error = f'{name} must be a non-negative integer'
    if isinstance(value, bool):
        raise InvalidChunkError(error)
    try:
        index = int(value)
    except (TypeError, ValueError):
        raise InvalidChunkError(error)
    if index < 0 or (isinstance(value, float) and value != index):
        raise InvalidChunkError(error)
    return index


def split_package(package_base64: str, chunk_size: int) -> List[str]:
    """Split encoded package text into parts of at most chunk_size characters"""
    if chunk_size <= 0:
        raise ValueError('chunk_size must be positive')
    return [package_base64[i:i + chunk_size] for i in range(0, len(package_base64), chunk_size)]


def reassemble_package(chunks: Dict[int, str], total_chunks: int) -> str:
    """
    Join downloaded parts in index order

    Raises:
        ValueError: if any index below total_chunks is missing
    """
    missing = [i for i in range(total_chunks) if i not in chunks]
    if missing:
        raise ValueError(f"Missing chunks: {missing}")
    return ''.join(chunks[i] for i in range(total_chunks))


class PackageStore:
    """
    Queue entries and chunk rows for one database connection.
    The caller owns the connection and commits.
    """

    def __init__(self, conn, settings: Optional[TransferSettings] = None):
        self.conn = conn
        self.settings = settings or TransferSettings()

    def create_entry(self, customer_id, sync_pair_id, manifest, package_base64=None,
                     direction='inbound') -> Dict[str, Any]:
        """
        Queue a package upload

        With package data the entry is completed immediately; without it the
        entry waits for chunks.
        """
        if direction not in self.settings.directions:
            raise PackageTransferError(f'direction must be one of {self.settings.directions}')
        if not isinstance(manifest, dict):
            raise InvalidChunkError('manifest must be an object')
        if package_base64 is not None and not isinstance(package_base64, str):
            raise InvalidChunkError('package_base64 must be a string')

        package_size = len(package_base64) if package_base64 else 0
        if package_size > self.settings.max_inline_size:
            raise PackageTooLargeError(
                f'Package exceeds inline limit of {self.settings.max_inline_size} bytes; '
                'use upload-chunk for large packages'
            )

        status = STATUS_COMPLETED if package_base64 else STATUS_PENDING

        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO ts_sync_queue (
                customer_id, sync_pair_id, direction, manifest, status,
                package_data, package_size_bytes, processing_completed_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s,
                      CASE WHEN %s THEN NOW() ELSE NULL END)
            RETURNING id
        """, (
            customer_id, sync_pair_id, direction, Json(manifest), status,
            package_base64 or None, package_size, bool(package_base64)
        ))
        queue_id = cursor.fetchone()['id']

        logger.info(f"Queued {direction} package {queue_id} for pair {sync_pair_id} ({package_size} bytes inline)")
        return {
            'queue_id': queue_id,
            'status': status,
            'has_package': bool(package_base64),
            'package_size': package_size
        }

    def get_entry(self, customer_id, queue_id):
        """Queue entry owned by the customer, or None"""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT id, customer_id, sync_pair_id, direction, status,
                   package_data IS NOT NULL AS has_inline_data,
                   package_size_bytes, total_chunks, chunks_received
            FROM ts_sync_queue
            WHERE id = %s AND customer_id = %s
        """, (queue_id, customer_id))
        return cursor.fetchone()

    def store_chunk(self, entry, chunk_index, chunk_data, total_chunks=None) -> Dict[str, Any]:
        """
        Store one part of a chunked upload

        Re-sending an index overwrites the earlier data for that index.
        """
        index = parse_chunk_index(chunk_index)
        if not isinstance(chunk_data, str) or not chunk_data:
            raise InvalidChunkError('chunk_data must be a non-empty string')
        if len(chunk_data) > self.settings.max_inline_size:
            raise PackageTooLargeError(
                f'Chunk exceeds {self.settings.max_inline_size} bytes; '
                f'split packages into {self.settings.chunk_size}-byte parts'
            )

        declared_total = None
        if total_chunks is not None:
            declared_total = parse_chunk_index(total_chunks, name='total_chunks')
            if declared_total == 0:
                raise InvalidChunkError('total_chunks must be positive')
            if index >= declared_total:
                raise InvalidChunkError(f'chunk_index {index} outside declared total {declared_total}')

        if entry['has_inline_data']:
            raise ChunkConflictError('Queue entry already holds an inline package')
        if entry['status'] == STATUS_COMPLETED:
            raise ChunkConflictError('Queue entry already completed')

        queue_id = entry['id']
        cursor = self.conn.cursor()

        if declared_total is not None:
            cursor.execute("""
                UPDATE ts_sync_queue
                SET total_chunks = %s, status = %s
                WHERE id = %s
            """, (declared_total, STATUS_PROCESSING, queue_id))
        elif entry['status'] == STATUS_PENDING:
            cursor.execute("""
                UPDATE ts_sync_queue
                SET status = %s
                WHERE id = %s
            """, (STATUS_PROCESSING, queue_id))

        cursor.execute("""
            INSERT INTO ts_package_chunks (queue_id, chunk_index, chunk_data)
            VALUES (%s, %s, %s)
            ON CONFLICT (queue_id, chunk_index) DO UPDATE SET chunk_data = EXCLUDED.chunk_data
        """, (queue_id, index, chunk_data))

        cursor.execute("""
            SELECT COUNT(*) AS count FROM ts_package_chunks WHERE queue_id = %s
        """, (queue_id,))
        chunks_received = int(cursor.fetchone()['count'])

        cursor.execute("""
            UPDATE ts_sync_queue
            SET chunks_received = %s
            WHERE id = %s
        """, (chunks_received, queue_id))

        return {
            'chunk_index': index,
            'chunks_received': chunks_received,
            'total_chunks': declared_total if declared_total is not None else (entry.get('total_chunks') or None)
        }

    def complete_upload(self, entry) -> Dict[str, Any]:
        """
        Close a chunked upload: count the stored parts, record the aggregate
        size and mark the entry completed
        """
        if entry['has_inline_data']:
            raise ChunkConflictError('Queue entry holds an inline package; nothing to complete')

        queue_id = entry['id']
        declared_total = entry.get('total_chunks') or 0

        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT chunk_index, LENGTH(chunk_data) AS size
            FROM ts_package_chunks
            WHERE queue_id = %s
            ORDER BY chunk_index
        """, (queue_id,))
        rows = cursor.fetchall()

        total_chunks = len(rows)
        total_size = sum(int(row['size'] or 0) for row in rows)
        received = {row['chunk_index'] for row in rows}
        missing_indices = [i for i in range(declared_total) if i not in received]

        cursor.execute("""
            UPDATE ts_sync_queue
            SET status = %s,
                total_chunks = %s,
                chunks_received = %s,
                package_size_bytes = %s,
                processing_completed_at = NOW()
            WHERE id = %s
        """, (STATUS_COMPLETED, total_chunks, total_chunks, total_size, queue_id))

        if missing_indices:
            logger.warning(f"Queue entry {queue_id} completed with {len(missing_indices)} of {declared_total} declared chunks missing")

        return {
            'queue_id': queue_id,
            'total_chunks': total_chunks,
            'total_size_bytes': total_size,
            'declared_chunks': declared_total or None,
            'missing_indices': missing_indices,
            'status': STATUS_COMPLETED
        }

    def latest_package(self, customer_id, sync_pair_id):
        """Most recent completed inbound entry for a sync pair, or None"""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT id, manifest, package_data, package_size_bytes, total_chunks, created_at
            FROM ts_sync_queue
            WHERE customer_id = %s
            AND sync_pair_id = %s
            AND direction = 'inbound'
            AND status = %s
            ORDER BY created_at DESC
            LIMIT 1
        """, (customer_id, sync_pair_id, STATUS_COMPLETED))
        return cursor.fetchone()

    def get_chunk(self, queue_id, chunk_index):
        """Data of one stored part, or None"""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT chunk_data FROM ts_package_chunks
            WHERE queue_id = %s AND chunk_index = %s
        """, (queue_id, parse_chunk_index(chunk_index)))
        row = cursor.fetchone()
        return row['chunk_data'] if row else None

    @staticmethod
    def describe_package(entry) -> Dict[str, Any]:
        """Download response body for a completed entry"""
        mode = transfer_mode(entry)
        package = {
            'queue_id': entry['id'],
            'manifest': entry['manifest'],
            'created_at': entry['created_at'].isoformat() if entry.get('created_at') else None
        }
        if mode == TRANSFER_INLINE:
            package['package_base64'] = entry['package_data']
            package['size_bytes'] = entry['package_size_bytes']
        elif mode == TRANSFER_CHUNKED:
            package['total_chunks'] = entry['total_chunks']
            package['size_bytes'] = entry['package_size_bytes']

        return {
            'available': True,
            'transfer_mode': mode,
            'package': package
        }
