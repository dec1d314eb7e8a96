"""Write-behind match counter for routing rules.

Redirects only bump an in-memory counter; a scheduled job folds the
accumulated counts into ``routing_rules.match_count`` in one transaction.
Counts are per process and best-effort: a batch that keeps failing is
eventually dropped, and whatever is buffered when the process dies is lost.
"""

import logging
from types import MappingProxyType
from typing import AsyncContextManager, Callable, Dict, Mapping, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import SessionManager
from app.repositories.base import RepositoryError
from app.repositories.routing_repository import RoutingRuleRepository

logger = logging.getLogger(__name__)

FLUSH_JOB_ID = "flush_routing_match_counts"

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class MatchCountBatcher:
    """
    Buffers rule match counts and flushes them periodically.

    Args:
        rule_repository: Repository issuing the counter UPDATEs
        session_factory: Returns a transactional session context manager
            that commits on exit
        flush_interval: Seconds between scheduled flushes
        max_retries: Consecutive failed flushes after which a rule's
            buffered count is dropped
    """

    def __init__(
        self,
        rule_repository: RoutingRuleRepository,
        session_factory: Optional[SessionFactory] = None,
        flush_interval: int = settings.ROUTING_MATCH_COUNT_FLUSH_INTERVAL,
        max_retries: int = settings.ROUTING_MATCH_COUNT_MAX_RETRIES,
    ):
        self.rule_repository = rule_repository
        self.session_factory = session_factory or SessionManager.transaction_context
        self.flush_interval = flush_interval
        self.max_retries = max_retries
        self._buffer: Dict[int, int] = {}
        self._retries: Dict[int, int] = {}
        self._scheduler: Optional[BaseScheduler] = None

    @property
    def pending(self) -> Mapping[int, int]:
        """Read-only snapshot of the unflushed counts."""
        return MappingProxyType(dict(self._buffer))

    def increment(self, rule_id: int, amount: int = 1) -> None:
        """Count ``amount`` matches for a rule. No I/O."""
        self._buffer[rule_id] = self._buffer.get(rule_id, 0) + amount

    async def flush(self) -> int:
        """
        Write buffered counts to the database.

        The buffer is swapped out before any I/O, so increments arriving
        during the flush land in the fresh buffer. On failure each rule's
        count is merged back for the next attempt until it has failed
        ``max_retries`` times, then it is dropped.

        Returns:
            Number of rules whose counts were written
        """
        if not self._buffer:
            return 0

        updates, self._buffer = self._buffer, {}
        logger.debug(f"Flushing {len(updates)} match count updates")

        try:
            async with self.session_factory() as db:
                await self.rule_repository.increment_match_counts(db, updates)
        except (RepositoryError, SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to flush match counts: {e}")
            self._requeue(updates)
            return 0
        except Exception as e:  # Driver timeouts and other unexpected errors
            logger.exception(f"Unexpected error flushing match counts: {e}")
            self._requeue(updates)
            return 0

        for rule_id in updates:
            self._retries.pop(rule_id, None)
        logger.debug(f"Successfully flushed {len(updates)} match count updates")
        return len(updates)

    def _requeue(self, updates: Dict[int, int]) -> None:
        dropped = 0
        for rule_id, count in updates.items():
            retries = self._retries.get(rule_id, 0) + 1
            if retries >= self.max_retries:
                self._retries.pop(rule_id, None)
                dropped += 1
                logger.warning(f"Dropping {count} match count(s) for rule {rule_id} after {retries} failed flushes")
                continue
            self._buffer[rule_id] = self._buffer.get(rule_id, 0) + count
            self._retries[rule_id] = retries

        if dropped:
            logger.warning(f"Dropped {dropped} match count updates after {self.max_retries} failed attempts")

    def start(self, scheduler: BaseScheduler) -> None:
        """Register the periodic flush job on ``scheduler``."""
        scheduler.add_job(
            self.flush,
            trigger=IntervalTrigger(seconds=self.flush_interval, timezone="UTC"),
            id=FLUSH_JOB_ID,
            name="Flush routing rule match counts",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler = scheduler
        logger.info(f"Match count batch updater started (interval: {self.flush_interval}s)")

    async def shutdown(self) -> None:
        """
        Stop the periodic job and make a last flush attempt.

        Counts that still cannot be written are logged as lost. Never raises.
        """
        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(FLUSH_JOB_ID)
            except JobLookupError:
                pass
            except Exception as e:
                logger.warning(f"Could not remove match count flush job: {e}")
            self._scheduler = None

        try:
            if self._buffer:
                logger.info(f"Flushing {len(self._buffer)} pending match count updates before shutdown...")
                await self.flush()
        except Exception as e:
            logger.error(f"Final match count flush failed: {e}", exc_info=True)

        if self._buffer:
            lost = list(self._buffer.items())
            suffix = "..." if len(lost) > 10 else ""
            logger.warning(f"Lost match count updates: {lost[:10]}{suffix}")
            self._buffer = {}
        else:
            logger.info("Match count batch updater stopped successfully")
