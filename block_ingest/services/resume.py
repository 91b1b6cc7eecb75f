from typing import Callable, Optional

import structlog

from block_ingest.models import ChainId


class ResumeResolver:
    """
    Resolve where an interrupted backfill should continue.

    A missing dataset and an unreadable one both yield no cursor, so the
    caller starts from its computed default. Read failures are still logged
    at warning level so they are visible.
    """

    def __init__(self, storage):
        self.storage = storage
        self.logger = structlog.get_logger()

    def resolve(self, chain: ChainId) -> Optional[int]:
        return self._cursor(
            lambda: self.storage.max_persisted_block_number(chain),
            dataset="block_times",
            chain=chain.value,
        )

    def resolve_offline(self) -> Optional[int]:
        return self._cursor(
            self.storage.max_persisted_offline_block_number,
            dataset="offline_operators",
        )

    def _cursor(self, lookup: Callable[[], Optional[int]], **context) -> Optional[int]:
        try:
            max_block = lookup()
        except Exception as e:
            self.logger.warning("Resume lookup failed, starting fresh", error=str(e), **context)
            return None

        if max_block is None:
            self.logger.debug("No persisted rows, starting fresh", **context)
            return None

        resume_from = int(max_block) + 1
        self.logger.info("Resuming backfill", resume_from=resume_from, **context)
        return resume_from
