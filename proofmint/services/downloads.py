"""
Download token redemption.

Each successful redemption spends one unit of the token's download budget,
whether or not the caller ends up fetching the signed URL.
"""

import structlog
from typing import Callable

from proofmint import config
from proofmint.core.database import PurchaseStore
from proofmint.core.errors import DownloadLimitError, TokenExpiredError, TokenNotFoundError
from proofmint.core.storage import StorageClient
from proofmint.core.utils import media_storage_key, utcnow

logger = structlog.get_logger()

class DownloadService:
    """Sole mutator of purchases.download_count."""

    def __init__(self, purchases: PurchaseStore, storage: StorageClient,
                 max_downloads: int = config.MAX_DOWNLOADS,
                 url_ttl_seconds: int = config.SIGNED_URL_TTL_SECONDS,
                 clock: Callable = utcnow):
        self.purchases = purchases
        self.storage = storage
        self.max_downloads = max_downloads
        self.url_ttl_seconds = url_ttl_seconds
        self.clock = clock

    def redeem(self, token: str) -> str:
        """Spend one download and return a short-lived signed URL to the original file."""
        if not token:
            raise TokenNotFoundError()

        now = self.clock()
        grant = self.purchases.consume_download(token, now, self.max_downloads)
        if grant is None:
            raise self._rejection(token, now)

        key = media_storage_key(grant["original_hash"], grant["file_extension"])
        url = self.storage.generate_download_url(key, ttl_seconds=self.url_ttl_seconds)
        logger.info("Download token redeemed",
                    purchase_id=str(grant["id"]), download_count=grant["download_count"], key=key)
        return url

    def _rejection(self, token: str, now) -> Exception:
        """Work out why the conditional increment matched nothing."""
        purchase = self.purchases.get_by_token(token)
        if purchase is None:
            return TokenNotFoundError()
        if now > purchase.download_expires_at:
            logger.info("Expired download token", purchase_id=purchase.id)
            return TokenExpiredError()
        if purchase.download_count >= self.max_downloads:
            logger.info("Download limit reached", purchase_id=purchase.id, download_count=purchase.download_count)
            return DownloadLimitError()
        # Purchase exists but its proof record is gone.
        logger.warning("Download token has no proof record", purchase_id=purchase.id)
        return TokenNotFoundError()
