"""
Periodic eviction of unobserved cache entries
"""

import logging

logger = logging.getLogger(__name__)


async def cache_gc_job():
    from reservation_engine.services.reservation_cache import reservation_cache

    try:
        evicted = reservation_cache.gc()
    except Exception as e:
        logger.error(f"❌ Cache gc failed: {e}", exc_info=True)
        return

    if evicted:
        logger.info(f"🧹 Cache gc evicted {evicted} entries, {len(reservation_cache)} left")
    else:
        logger.debug("Cache gc: nothing to evict")
