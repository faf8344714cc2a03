"""
Deduplication of coverage items.

Two independent mechanisms:
1. Exact URL deduplication before insert, using an in-memory index of recent
   normalized URLs. The store's unique URL index is the authoritative guard.
2. Syndication clustering, run separately from scanning, which groups
   republications of the same story across outlets by title and date proximity.
"""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from ..config import Settings, get_settings
from ..logging import PerformanceLogger, get_logger, log_processing_stage
from ..records import CoverageItem
from ..store import CoverageStore
from ..utils import normalize_url, utc_now
from .text_utils import normalize_title, title_similarity

logger = get_logger(__name__)

# Very short titles ("Review", "Trailer") match everything.
MIN_TITLE_LENGTH = 10

_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


class ExistingUrlIndex:
    """Append-only set of normalized URLs seen in this run."""

    def __init__(self, urls: Iterable[str] = ()):
        self._urls: set[str] = {normalize_url(u) for u in urls}

    @classmethod
    async def load(cls, store: CoverageStore, limit: int) -> "ExistingUrlIndex":
        urls = await store.recent_item_urls(limit)
        index = cls(urls)
        logger.debug("Existing URL index loaded", urls=len(index))
        return index

    def __contains__(self, url: str) -> bool:
        return normalize_url(url) in self._urls

    def __len__(self) -> int:
        return len(self._urls)

    def add(self, url: str) -> bool:
        """Claim a URL. Returns False when it was already present."""
        key = normalize_url(url)
        if key in self._urls:
            return False
        self._urls.add(key)
        return True


def _chronological(item: CoverageItem) -> tuple:
    """Sort key: earliest published first, undated last, then by discovery."""
    return (
        item.publish_date is None,
        item.publish_date or _FAR_FUTURE,
        item.discovered_at or _FAR_FUTURE,
        item.id,
    )


@dataclass
class ClusteringResult:
    examined: int = 0
    groups_touched: int = 0
    items_grouped: int = 0
    singletons: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "examined": self.examined,
            "groups_touched": self.groups_touched,
            "items_grouped": self.items_grouped,
            "singletons": self.singletons,
            "errors": self.errors,
        }


class SyndicationClusterer:
    """Group near-identical stories published across different outlets."""

    def __init__(self, store: CoverageStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()
        self.threshold = self.settings.syndication_title_threshold
        self.window = timedelta(days=self.settings.syndication_window_days)

    def is_syndicated(self, a: CoverageItem, b: CoverageItem) -> float | None:
        """Return the title similarity when a and b look like the same story."""
        if a.id == b.id or a.client_id != b.client_id:
            return None
        if a.outlet_id and b.outlet_id and a.outlet_id == b.outlet_id:
            return None
        if a.publish_date and b.publish_date and abs(a.publish_date - b.publish_date) > self.window:
            return None
        similarity = title_similarity(a.title, b.title)
        return similarity if similarity >= self.threshold else None

    def _best_match(self, item: CoverageItem, pool: list[CoverageItem]) -> CoverageItem | None:
        best, best_score = None, 0.0
        for other in pool:
            score = self.is_syndicated(item, other)
            if score is not None and score > best_score:
                best, best_score = other, score
        return best

    def _match_window(self, items: list[CoverageItem]) -> tuple[datetime, datetime]:
        dates = [i.publish_date or i.discovered_at or utc_now() for i in items]
        return min(dates) - self.window, max(dates) + self.window

    async def run(self) -> ClusteringResult:
        """Cluster recently discovered ungrouped items.

        Every examined item leaves with a group: either it joins a matching
        story or it becomes the original of its own single-member group, so
        it is never re-examined and later copies can still find it.

        Approval status is never read or written here. A failure while
        writing one group is logged and the remaining groups still run.
        """
        result = ClusteringResult()

        with PerformanceLogger("syndication_clustering", logger):
            ungrouped = await self.store.list_ungrouped_items(self.settings.syndication_batch_size)
            result.examined = len(ungrouped)
            batch_ids = {i.id for i in ungrouped}
            nearby: list[CoverageItem] = []
            if ungrouped:
                since, until = self._match_window(ungrouped)
                nearby = [
                    i for i in await self.store.list_items_in_window(
                        since, until, self.settings.syndication_group_window
                    )
                    if i.id not in batch_ids
                ]

            pool = [i for i in nearby if len(normalize_title(i.title)) > MIN_TITLE_LENGTH]
            assignment: dict[str, str] = {
                i.id: i.duplicate_group_id for i in nearby if i.duplicate_group_id
            }
            new_members: dict[str, dict[str, CoverageItem]] = defaultdict(dict)

            for item in sorted(ungrouped, key=_chronological):
                match = None
                if len(normalize_title(item.title)) > MIN_TITLE_LENGTH:
                    match = self._best_match(item, pool)
                    pool.append(item)

                if match is None:
                    group_id = item.id
                elif match.id in assignment:
                    group_id = assignment[match.id]
                else:
                    # An older ungrouped item outside this batch becomes the original
                    group_id = match.id
                    assignment[match.id] = group_id
                    new_members[group_id][match.id] = match
                assignment[item.id] = group_id
                new_members[group_id][item.id] = item

            now = utc_now()
            for group_id, additions in new_members.items():
                try:
                    members = {m.id: m for m in await self.store.get_group_members(group_id)}
                    members.update(additions)
                    original = min(members.values(), key=_chronological)
                    await self.store.write_group(group_id, original.id, list(members), now)
                except Exception as e:
                    logger.error("Failed to write syndication group", group_id=group_id, error=str(e))
                    result.errors.append(f"{group_id}: {e}")
                    continue
                if len(members) == 1:
                    result.singletons += 1
                else:
                    result.groups_touched += 1
                    result.items_grouped += len(additions)

        logger.info(
            **log_processing_stage(
                stage="syndication_clustering",
                input_count=result.examined,
                output_count=result.items_grouped,
                groups=result.groups_touched,
                singletons=result.singletons,
            )
        )
        return result
