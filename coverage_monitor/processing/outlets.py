"""Resolve candidates to known outlets."""

from ..logging import get_logger
from ..records import Candidate, Outlet
from ..store import CoverageStore
from ..utils import extract_domain

logger = get_logger(__name__)


class OutletResolver:
    """Domain to outlet lookup with a per-run cache.

    Binding is opportunistic: an unknown domain resolves to ``None`` and the
    item is stored without an outlet. Outlets are never created here.
    """

    def __init__(self, store: CoverageStore):
        self.store = store
        self._cache: dict[str, Outlet | None] = {}

    async def by_id(self, outlet_id: str | None) -> Outlet | None:
        if not outlet_id:
            return None
        key = f"id:{outlet_id}"
        if key not in self._cache:
            self._cache[key] = await self.store.get_outlet(outlet_id)
        return self._cache[key]

    async def by_domain(self, domain: str) -> Outlet | None:
        domain = domain.strip().lower()
        if domain.startswith("www."):
            domain = domain[4:]
        if not domain:
            return None
        if domain not in self._cache:
            self._cache[domain] = await self.store.find_outlet_by_domain(domain)
        return self._cache[domain]

    async def resolve(self, candidate: Candidate, bound_outlet_id: str | None = None) -> Outlet | None:
        """Source-bound outlet first, then the connector's creator domain, then the URL host."""
        if bound_outlet_id:
            outlet = await self.by_id(bound_outlet_id)
            if outlet is not None:
                return outlet

        if candidate.outlet_domain:
            outlet = await self.by_domain(candidate.outlet_domain)
            if outlet is not None:
                return outlet

        return await self.by_domain(extract_domain(candidate.url))
