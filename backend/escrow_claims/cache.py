"""
Advisory on-disk cache of reconciled escrow records.

Records are keyed by normalized escrow id and carry their own ``fetched_at``
timestamp; callers pass the staleness they can tolerate. The write path never
reads from here.
"""
import logging
import time

from diskcache import Cache

from escrow_claims.config import CACHE_DIR
from escrow_claims.models import escrow_id_hex

logger = logging.getLogger(__name__)


class ReconciledCache:

    def __init__(self, directory=CACHE_DIR, cache=None):
        self.cache = cache if cache is not None else Cache(directory)

    def _key(self, escrow_id):
        return f"escrow:{escrow_id_hex(escrow_id)}"

    def get(self, escrow_id, max_age):
        """Return the cached record if it is younger than ``max_age`` seconds."""
        try:
            record = self.cache.get(self._key(escrow_id))
        except Exception as e:
            logger.warning("Cache lookup failed for %s: %s", escrow_id, e)
            return None
        if record is None:
            return None
        if time.time() - record.fetched_at > max_age:
            logger.debug("Cached record for %s is stale", escrow_id)
            return None
        return record

    def put(self, record):
        try:
            self.cache.set(self._key(record.room.escrow_id), record)
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", record.room.escrow_id, e)

    def invalidate(self, escrow_id):
        self.cache.delete(self._key(escrow_id))

    def clear(self):
        self.cache.clear()

    def close(self):
        self.cache.close()
