"""
Delivery file blob storage on the local filesystem with signed, expiring download URLs
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from itsdangerous import BadSignature, URLSafeTimedSerializer
from werkzeug.utils import secure_filename


class StorageError(Exception):
    """Raised when a blob cannot be written, read or removed"""


class LocalBlobStore:
    """
    Stores uploaded delivery files under a root folder.

    Locators are paths relative to the root. Download URLs carry a signed token
    naming the locator, the download name and a TTL; the token is checked by
    resolve() when the file is served.
    """

    def __init__(self, root, secret_key, url_prefix='/api/files', default_ttl=3600, folder='deliveries'):
        self.root = os.path.abspath(root)
        self.folder = folder
        self.url_prefix = url_prefix.rstrip('/')
        self.default_ttl = default_ttl
        self.serializer = URLSafeTimedSerializer(secret_key, salt='delivery-file-download')
        os.makedirs(os.path.join(self.root, self.folder), exist_ok=True)

    def _absolute(self, locator):
        path = os.path.abspath(os.path.join(self.root, locator))
        if os.path.commonpath([path, self.root]) != self.root:
            raise StorageError(f'Locator outside storage root: {locator}')
        return path

    def put(self, data: bytes, filename: str) -> str:
        """Write bytes and return the new blob's locator"""
        safe_name = secure_filename(filename or '') or 'file'
        extension = safe_name.rsplit('.', 1)[1].lower() if '.' in safe_name else ''
        unique_name = f"{uuid.uuid4().hex}.{extension}" if extension else uuid.uuid4().hex
        locator = f"{self.folder}/{unique_name}"

        try:
            with open(self._absolute(locator), 'wb') as handle:
                handle.write(data)
        except OSError as e:
            raise StorageError(f'Failed to store {safe_name}: {e}') from e
        return locator

    def delete(self, locator):
        path = self._absolute(locator)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            raise StorageError(f'Failed to delete {locator}: {e}') from e

    def exists(self, locator):
        return os.path.exists(self._absolute(locator))

    def signed_url(self, locator, ttl=None, download_name=None) -> str:
        token = self.serializer.dumps({
            'path': locator,
            'name': download_name,
            'ttl': int(ttl or self.default_ttl)
        })
        return f"{self.url_prefix}/{token}"

    def resolve(self, token) -> Optional[Tuple[str, Optional[str]]]:
        """Absolute path and download name for a valid, unexpired token; None otherwise"""
        try:
            payload, issued_at = self.serializer.loads(token, return_timestamp=True)
        except BadSignature:
            return None

        if datetime.now(timezone.utc) - issued_at > timedelta(seconds=payload.get('ttl', self.default_ttl)):
            return None

        try:
            path = self._absolute(payload['path'])
        except (KeyError, StorageError):
            return None
        if not os.path.exists(path):
            return None
        return path, payload.get('name')
