"""
Google Cloud Storage helpers.

GCSBucketManager wraps one bucket with lazy client initialisation.
All methods are blocking; async callers run them via asyncio.to_thread.
Reads return None for missing blobs, writes raise on failure so the
caller can decide how to surface it.
"""

import asyncio
import json
import logging
import os

from google.api_core.exceptions import GoogleAPIError
from google.api_core.exceptions import NotFound as ApiNotFound
from google.cloud import storage
from google.cloud.exceptions import NotFound

from mamaguard.gateway.channels import AudioAssetStore
from mamaguard.gateway.errors import ProviderError

logger = logging.getLogger("gcs-manager")


class GCSBucketManager:
    def __init__(self, bucket_name, service_account_json_path=None, client=None):
        """
        :param bucket_name: The name of the GCS bucket.
        :param service_account_json_path: Path to service account JSON key.
                                          If None, uses GOOGLE_APPLICATION_CREDENTIALS
                                          or default environment auth.
        :param client: Pre-built storage.Client (tests inject a fake).
        """
        self.bucket_name = bucket_name
        self.service_account_json_path = service_account_json_path
        self._client = client
        self._bucket = None

    def _ensure_initialized(self):
        """Lazy initialization of GCS client and bucket"""
        if self._client is None:
            project_id = os.getenv("PROJECT_ID")
            try:
                if self.service_account_json_path:
                    self._client = storage.Client.from_service_account_json(
                        self.service_account_json_path,
                        project=project_id,
                    )
                else:
                    self._client = storage.Client(project=project_id)
            except Exception as e:
                logger.error("Error initializing GCS client: %s", e)
                raise
        if self._bucket is None:
            self._bucket = self._client.bucket(self.bucket_name)

    @property
    def client(self):
        self._ensure_initialized()
        return self._client

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    # CREATE / UPDATE
    def write_json(self, blob_name, data, timeout=None, if_generation_match=None):
        """Write a JSON document. ``if_generation_match=0`` means create-only."""
        blob = self.bucket.blob(blob_name)
        blob.upload_from_string(
            data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str),
            content_type="application/json",
            timeout=timeout,
            if_generation_match=if_generation_match,
        )
        logger.debug("Saved: gs://%s/%s", self.bucket_name, blob_name)

    def upload_bytes(self, data, blob_name, content_type, timeout=None):
        """Upload raw bytes and return the blob's public URL."""
        blob = self.bucket.blob(blob_name)
        blob.upload_from_string(data, content_type=content_type, timeout=timeout)
        logger.info("Uploaded %d bytes to gs://%s/%s", len(data), self.bucket_name, blob_name)
        return blob.public_url

    # READ
    def read_json(self, blob_name, timeout=None):
        blob = self.bucket.blob(blob_name)
        try:
            content = blob.download_as_text(timeout=timeout)
        except (NotFound, ApiNotFound):
            return None
        return json.loads(content)

    def read_json_versioned(self, blob_name, timeout=None):
        """Return ``(data, generation)``, or ``(None, None)`` for a missing blob."""
        blob = self.bucket.get_blob(blob_name, timeout=timeout)
        if blob is None:
            return None, None
        try:
            content = blob.download_as_text(timeout=timeout, if_generation_match=blob.generation)
        except (NotFound, ApiNotFound):
            return None, None
        return json.loads(content), blob.generation

    def exists(self, blob_name, timeout=None):
        return self.bucket.blob(blob_name).exists(timeout=timeout)

    # UTILITIES
    def list_names(self, prefix, timeout=None):
        blobs = self.client.list_blobs(self.bucket_name, prefix=prefix, timeout=timeout)
        return sorted(blob.name for blob in blobs)


class GCSAudioStore(AudioAssetStore):
    """Hosts synthesized replies in a (publicly readable) bucket."""

    def __init__(self, manager: GCSBucketManager, timeout: float = 30.0) -> None:
        self._manager = manager
        self._timeout = timeout

    async def upload(self, data: bytes, name: str, content_type: str = "audio/mpeg") -> str:
        try:
            return await asyncio.to_thread(
                self._manager.upload_bytes, data, name, content_type, self._timeout
            )
        except (GoogleAPIError, OSError) as exc:
            raise ProviderError(f"audio upload failed: {exc}", provider="gcs", stage="audio_upload") from exc
