"""
History backfill.

Walks each channel's history backward from the newest message, one page
at a time, and feeds every message through the same insert path as live
events. Already stored messages count as success, so a scan can be re-run
over the same range.
"""

import logging
from typing import Iterable, Optional, Protocol

from pydantic import BaseModel
from tqdm import tqdm

from discord_stats.config import TrackedChannel, format_channel_specifier
from discord_stats.errors import ScanFetchError, StoreError
from discord_stats.metrics import record_scan_message
from discord_stats.schemas import StoreMessage
from discord_stats.storage import InsertResult, StatsStore

logger = logging.getLogger(__name__)

# Largest page the gateway returns for one history request
MAX_PAGE_SIZE = 100


class HistorySource(Protocol):
    """Where history pages come from (the gateway in production)."""

    async def fetch_page(
        self,
        target: TrackedChannel,
        limit: int,
        before: Optional[int],
    ) -> list[StoreMessage]:
        """
        Up to `limit` messages older than `before` (newest first when
        `before` is None). Raises ScanFetchError on transport failure.
        """
        ...

    async def channel_name(self, target: TrackedChannel) -> str:
        ...


class ChannelScanResult(BaseModel):
    """Counters for one scanned channel."""
    target: TrackedChannel
    name: str
    pages: int = 0
    fetched: int = 0
    created: int = 0
    duplicates: int = 0
    errors: int = 0
    aborted: bool = False


class MessageScanner:
    """
    Paginates channel history into the store.

    The only pagination state is the cursor: the oldest message id of the
    previous page, used as the exclusive "before" bound of the next one.
    """

    def __init__(
        self,
        store: StatsStore,
        source: HistorySource,
        page_size: int = MAX_PAGE_SIZE,
        progress: bool = True,
    ):
        self.store = store
        self.source = source
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.progress = progress

    async def scan_messages(
        self,
        targets: Iterable[TrackedChannel],
        max_count: int,
    ) -> list[ChannelScanResult]:
        """Scan every target in turn; a failing channel does not stop the run."""
        results = []
        for target in targets:
            try:
                name = await self.source.channel_name(target)
            except ScanFetchError as e:
                logger.warning(f"Could not resolve name of {format_channel_specifier(target)}: {e}")
                name = str(target.channel_id)
            results.append(await self.scan_channel(target, max_count, name))
        return results

    async def scan_channel(
        self,
        target: TrackedChannel,
        max_count: int,
        name: Optional[str] = None,
    ) -> ChannelScanResult:
        """
        Backfill one channel, newest message first.

        Stops after `max_count` messages, on an empty page, or on a page
        shorter than requested. A history of N messages (N below
        `max_count`) takes N // page_size + 1 requests: ceil(N / page_size)
        in general, plus one empty page when N is an exact multiple of the
        page size, since a full page cannot show that it was the last.
        """
        result = ChannelScanResult(target=target, name=name or str(target.channel_id))
        per_call = min(self.page_size, max_count)
        before: Optional[int] = None

        bar = tqdm(
            total=max_count,
            desc=result.name,
            unit="msg",
            disable=not self.progress,
            leave=True,
        )
        try:
            while result.fetched < max_count:
                limit = min(per_call, max_count - result.fetched)
                try:
                    page = await self.source.fetch_page(target, limit, before)
                except ScanFetchError as e:
                    bar.write(f"Error fetching messages for {result.name}: {e}")
                    logger.error(f"Aborting scan of {result.name}: {e}")
                    result.aborted = True
                    break

                result.pages += 1
                if not page:
                    break

                result.fetched += len(page)
                for msg in page:
                    self._store(msg, target, result, bar)
                bar.update(len(page))

                before = min(msg.message_id for msg in page)
                if len(page) < limit:
                    # Short page: reached the start of the channel
                    break
        finally:
            bar.total = result.fetched
            bar.refresh()
            bar.close()

        logger.info(
            f"Scanned {result.name}: {result.fetched} fetched, {result.created} new, "
            f"{result.duplicates} already stored, {result.errors} failed"
        )
        return result

    def _store(self, msg: StoreMessage, target: TrackedChannel, result: ChannelScanResult, bar: tqdm) -> None:
        # History pages do not carry the guild; take it from the target
        msg = msg.model_copy(update={"guild_id": target.guild_id})
        try:
            outcome = self.store.insert_message(msg)
        except StoreError as e:
            bar.write(f"Unable to insert message {msg.message_id}: {e}")
            result.errors += 1
            record_scan_message("error")
            return
        if outcome is InsertResult.DUPLICATE:
            result.duplicates += 1
        else:
            result.created += 1
        record_scan_message(outcome.value)
