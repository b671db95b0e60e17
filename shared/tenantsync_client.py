"""
TenantSync API Client
Uploads and downloads sync packages through the relay, switching to
chunked transfer for packages above the inline limit
"""

import os
import logging
from typing import Any, Dict, Optional

import requests

from config.settings import TransferSettings
from shared.package_store import (
    TRANSFER_CHUNKED,
    TRANSFER_INLINE,
    split_package,
    reassemble_package,
)

logger = logging.getLogger(__name__)


class TenantSyncClientError(Exception):
    """Relay returned an error response or could not be reached"""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class TenantSyncClient:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 settings: Optional[TransferSettings] = None, timeout: int = 60):
        self.api_key = api_key or os.getenv('TENANTSYNC_API_KEY', '')
        self.base_url = (base_url or os.getenv('TENANTSYNC_API_URL', 'http://localhost:5000')).rstrip('/')
        self.settings = settings or TransferSettings()
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'X-API-Key': self.api_key
        })

    def _request(self, method: str, action: str, params: Optional[Dict[str, Any]] = None,
                 payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {'action': action}
        query.update(params or {})

        try:
            response = self.session.request(
                method,
                f"{self.base_url}/api/tenantsync",
                params=query,
                json=payload,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TenantSyncClientError(f"{action} request failed: {e}")

        if not response.ok:
            try:
                error = response.json().get('error', response.text)
            except ValueError:
                error = response.text
            logger.error(f"TenantSync {action} failed ({response.status_code}): {error}")
            raise TenantSyncClientError(error, status_code=response.status_code)

        return response.json()

    def upload_package(self, sync_pair_id: str, manifest: Dict[str, Any],
                       package_base64: str) -> Dict[str, Any]:
        """
        Upload a package for a sync pair

        Packages within the inline limit go up in one request. Larger ones are
        queued manifest-first, sent in CHUNK_SIZE parts and then completed.

        Returns:
            dict: queue_id, transfer mode and, for chunked uploads, the completion summary
        """
        if len(package_base64) <= self.settings.max_inline_size:
            result = self._request('POST', 'upload', payload={
                'sync_pair_id': sync_pair_id,
                'manifest': manifest,
                'package_base64': package_base64
            })
            return {'queue_id': result['queue_id'], 'transfer_mode': TRANSFER_INLINE}

        chunks = split_package(package_base64, self.settings.chunk_size)
        queued = self._request('POST', 'upload', payload={
            'sync_pair_id': sync_pair_id,
            'manifest': manifest
        })
        queue_id = queued['queue_id']

        logger.info(f"Uploading package {queue_id} in {len(chunks)} chunks")
        for index, chunk in enumerate(chunks):
            self._request('POST', 'upload-chunk', payload={
                'queue_id': queue_id,
                'chunk_index': index,
                'chunk_data': chunk,
                'total_chunks': len(chunks)
            })

        completed = self._request('POST', 'upload-complete', payload={'queue_id': queue_id})
        if completed.get('missing_indices'):
            raise TenantSyncClientError(f"Upload {queue_id} incomplete: missing {completed['missing_indices']}")

        return {'queue_id': queue_id, 'transfer_mode': TRANSFER_CHUNKED, 'completion': completed}

    def download_package(self, sync_pair_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the latest completed package for a sync pair

        Returns:
            dict: queue_id, manifest, transfer_mode and package_base64 (None for
            manifest-only entries), or None when nothing is ready
        """
        result = self._request('GET', 'download', params={'sync_pair_id': sync_pair_id})
        if not result.get('available'):
            return None

        package = result['package']
        mode = result['transfer_mode']
        package_base64 = None

        if mode == TRANSFER_INLINE:
            package_base64 = package['package_base64']
        elif mode == TRANSFER_CHUNKED:
            total = package['total_chunks']
            chunks = {}
            for index in range(total):
                part = self._request('GET', 'download-chunk', params={
                    'queue_id': package['queue_id'],
                    'chunk_index': index
                })
                chunks[part['chunk_index']] = part['chunk_data']
            package_base64 = reassemble_package(chunks, total)

        return {
            'queue_id': package['queue_id'],
            'manifest': package['manifest'],
            'transfer_mode': mode,
            'package_base64': package_base64
        }
