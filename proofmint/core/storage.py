import os
import time
import structlog
from datetime import timedelta
from typing import Any, Dict, Optional

import requests
from google.cloud import storage
from google.cloud.exceptions import GoogleCloudError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from proofmint import config
from proofmint.core.errors import StorageError
from proofmint.core.utils import format_file_size

logger = structlog.get_logger()

class StorageClient:
    """Private object store holding original media files (Google Cloud Storage)."""

    def __init__(self, bucket_name: str = config.GCS_PRIVATE_BUCKET, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self.gcs_client = client

        if self.gcs_client is None:
            try:
                self._initialize_gcs()
            except Exception as e:
                logger.error("Failed to initialize GCS client", error=str(e))
                logger.warning("GCS initialization failed, signed download URLs are unavailable")

        logger.info("Storage client initialized",
                    bucket_name=bucket_name, gcs_enabled=self.gcs_client is not None)

    def _initialize_gcs(self):
        """Initialize Google Cloud Storage client."""
        credentials_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if credentials_path and not os.path.exists(credentials_path):
            logger.warning("GCS credentials file not found", path=credentials_path)

        self.gcs_client = storage.Client()

    def generate_download_url(self, key: str, ttl_seconds: int = config.SIGNED_URL_TTL_SECONDS) -> str:
        """
        Short-lived V4 signed GET URL for a private object.

        Args:
            key: Object key, e.g. media/{original_hash}/original.jpg
            ttl_seconds: Lifetime of the URL

        Returns:
            Signed URL
        """
        if self.gcs_client is None:
            raise StorageError("Private storage is not configured")

        try:
            blob = self.gcs_client.bucket(self.bucket_name).blob(key)
            url = blob.generate_signed_url(
                version="v4",
                expiration=timedelta(seconds=ttl_seconds),
                method="GET",
            )
            logger.info("Signed download URL generated", key=key, ttl_seconds=ttl_seconds)
            return url

        except GoogleCloudError as e:
            logger.error("GCS API error while signing URL", key=key, error=str(e))
            raise StorageError(f"Failed to sign download URL: {e}")
        except Exception as e:
            logger.error("Unexpected error while signing URL", key=key, error=str(e))
            raise StorageError(f"Failed to sign download URL: {e}")

    def health_check(self) -> Dict[str, Any]:
        health = {"available": False, "error": None}
        if self.gcs_client is None:
            health["error"] = "not_initialized"
            return health
        try:
            self.gcs_client.bucket(self.bucket_name).exists()
            health["available"] = True
        except Exception as e:
            health["error"] = str(e)
        return health

class DurableStorageClient:
    """Immutable, permanent publication target for proof metadata documents."""

    def __init__(self, endpoint: str = config.DURABLE_STORAGE_ENDPOINT,
                 gateway_url: str = config.DURABLE_GATEWAY_URL,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self.session = session or self._initialize_session()
        logger.info("Durable storage client initialized", endpoint=self.endpoint)

    def _initialize_session(self) -> requests.Session:
        """HTTP session with retry logic."""
        session = requests.Session()

        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def upload(self, data: bytes, content_type: str = "application/json",
               tags: Optional[Dict[str, str]] = None) -> str:
        """
        Upload bytes and return their permanent URI.

        Args:
            data: Document bytes
            content_type: MIME type stored with the document
            tags: Searchable tags attached to the upload

        Returns:
            Permanent gateway URI of the uploaded document
        """
        headers = {"Content-Type": content_type, "X-Content-Size": str(len(data))}
        for name, value in (tags or {}).items():
            headers[f"X-Tag-{name}"] = value

        logger.info("Starting durable upload", size_human=format_file_size(len(data)), tags=tags)
        start_time = time.time()

        try:
            response = self.session.post(f"{self.endpoint}/upload", data=data, headers=headers, timeout=120)
            response.raise_for_status()
            response_data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Durable storage HTTP error during upload",
                         error=str(e), status_code=getattr(getattr(e, "response", None), "status_code", None))
            raise StorageError(f"Durable upload failed: {e}")
        except ValueError:
            raise StorageError("Durable upload returned a non-JSON response")

        upload_id = response_data.get("id")
        if not upload_id:
            raise StorageError("Durable upload succeeded but no id returned")

        uri = f"{self.gateway_url}/{upload_id}"
        logger.info("Durable upload completed",
                    uri=uri, upload_time_seconds=round(time.time() - start_time, 2))
        return uri
