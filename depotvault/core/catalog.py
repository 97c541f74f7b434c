"""Client for the remote content catalog.

The catalog reports, per product, its branches (each with a current build
ID) and its depots (each with a manifest ID per branch). Lookups of the
branch -> build ID map go through a :class:`CatalogCache`; depot
resolution always asks the connection for fresh product info.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from depotvault.core.cache import CacheSnapshot, CatalogCache
from depotvault.core.config import CatalogConfig
from depotvault.core.errors import CatalogConnectionError, CatalogUnresolved
from depotvault.core.store import ConfigStore, clamp_recent_builds
from depotvault.core.types import DepotRef, RecentBuild, RecentBuildsResult, select_primary_depot

logger = structlog.get_logger()


class CatalogBranch(BaseModel):
    """A branch as reported by the catalog."""
    key: str
    build_id: str
    time_updated: datetime | None = None
    description: str | None = None
    password_required: bool = False


class DepotManifest(BaseModel):
    """Manifest of one depot on one branch."""
    gid: str
    size: int | None = None


class CatalogDepot(BaseModel):
    """A depot and its manifest per branch key."""
    depot_id: str
    name: str | None = None
    manifests: dict[str, DepotManifest] = Field(default_factory=dict)


class ProductInfo(BaseModel):
    """Catalog snapshot for one product.

    ``history`` holds older builds per branch when the catalog exposes
    them; most catalogs only know the current build.
    """
    app_id: str
    changenumber: int = 0
    branches: dict[str, CatalogBranch] = Field(default_factory=dict)
    depots: dict[str, CatalogDepot] = Field(default_factory=dict)
    history: dict[str, list[RecentBuild]] = Field(default_factory=dict)

    def branch_key_for_build(self, build_id: str) -> str | None:
        """Find the branch whose current build is ``build_id``."""
        for key, branch in self.branches.items():
            if branch.build_id == build_id:
                return key
        return None

    def depots_for_branch(self, branch_key: str) -> list[DepotRef]:
        """Depot/manifest pairs published on a branch, in depot order."""
        refs = []
        for depot_id, depot in self.depots.items():
            manifest = depot.manifests.get(branch_key)
            if manifest is not None and manifest.gid:
                refs.append(DepotRef(depot_id=depot_id, manifest_id=manifest.gid, size=manifest.size))
        return refs

    @classmethod
    def from_pics(cls, app_id: str, payload: dict[str, Any]) -> ProductInfo:
        """Parse a PICS-style product info response.

        Expected shape::

            {"data": {"<app>": {"_change_number": 1,
                                "depots": {"branches": {"public": {"buildid": "1", "timeupdated": "..."}},
                                           "<depot>": {"manifests": {"public": {"gid": "...", "size": "..."}}}}}}}

        Raises:
            CatalogUnresolved: If the payload has no entry for the app
        """
        app = (payload.get("data") or {}).get(app_id)
        if not isinstance(app, dict):
            raise CatalogUnresolved(f"Catalog has no product info for app {app_id}")

        depots_section = app.get("depots") or {}
        branches: dict[str, CatalogBranch] = {}
        for key, raw in (depots_section.get("branches") or {}).items():
            if not isinstance(raw, dict) or "buildid" not in raw:
                continue
            updated = raw.get("timeupdated")
            branches[key] = CatalogBranch(
                key=key,
                build_id=str(raw["buildid"]),
                time_updated=datetime.fromtimestamp(int(updated), tz=UTC) if updated else None,
                description=raw.get("description"),
                password_required=str(raw.get("pwdrequired", "0")) == "1",
            )

        depots: dict[str, CatalogDepot] = {}
        for depot_id, raw in depots_section.items():
            if not depot_id.isdigit() or not isinstance(raw, dict):
                continue
            manifests: dict[str, DepotManifest] = {}
            for branch_key, manifest in (raw.get("manifests") or {}).items():
                if isinstance(manifest, dict) and manifest.get("gid"):
                    size = manifest.get("size")
                    manifests[branch_key] = DepotManifest(
                        gid=str(manifest["gid"]),
                        size=int(size) if size is not None else None,
                    )
                elif isinstance(manifest, str | int):
                    manifests[branch_key] = DepotManifest(gid=str(manifest))
            depots[depot_id] = CatalogDepot(depot_id=depot_id, name=raw.get("name"), manifests=manifests)

        return cls(
            app_id=app_id,
            changenumber=int(app.get("_change_number") or app.get("changenumber") or 0),
            branches=branches,
            depots=depots,
        )


class UpdateCheck(BaseModel):
    """Result of comparing the catalog changenumber to the last known one."""
    app_id: str
    changenumber: int
    last_known: int | None = None
    update_available: bool = False
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CatalogConnection(ABC):
    """Long-lived connection to the catalog service."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection.

        Raises:
            CatalogConnectionError: If it cannot be established in time
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def fetch_product_info(self) -> ProductInfo:
        """Fetch a fresh product snapshot."""
        ...


class HttpCatalogConnection(CatalogConnection):
    """Catalog connection over a JSON product-info endpoint.

    Args:
        config: Catalog configuration
        transport: Optional httpx transport, used by tests
    """

    def __init__(self, config: CatalogConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._connected = False

    @property
    def url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/info/{self.config.app_id}"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def connect(self) -> None:
        """Probe the endpoint, retrying with exponential backoff."""
        last_error: Exception | None = None
        attempts = self.config.max_reconnect_attempts

        for attempt in range(attempts):
            try:
                response = await asyncio.wait_for(self.client.get(self.url), timeout=self.config.timeout)
                response.raise_for_status()
                self._connected = True
                logger.info("catalog_connected", url=self.url, attempt=attempt + 1)
                return
            except (httpx.HTTPError, TimeoutError) as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = min(
                        self.config.reconnect_base_delay * 2 ** attempt,
                        self.config.reconnect_max_delay,
                    )
                    logger.debug(
                        "catalog_reconnect",
                        url=self.url,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e) or type(e).__name__,
                    )
                    await asyncio.sleep(delay)

        self._connected = False
        raise CatalogConnectionError(
            f"Could not connect to catalog at {self.url} after {attempts} attempts: {last_error}",
            attempts=attempts,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._connected = False

    async def fetch_product_info(self) -> ProductInfo:
        if not self._connected:
            await self.connect()
        try:
            response = await asyncio.wait_for(self.client.get(self.url), timeout=self.config.timeout)
            response.raise_for_status()
        except (httpx.HTTPError, TimeoutError) as e:
            # Reconnect on the next call
            self._connected = False
            raise CatalogConnectionError(f"Catalog request failed: {str(e) or type(e).__name__}") from e

        info = ProductInfo.from_pics(self.config.app_id, response.json())
        logger.debug(
            "catalog_product_info",
            app_id=info.app_id,
            changenumber=info.changenumber,
            branches=len(info.branches),
            depots=len(info.depots),
        )
        return info


class CatalogClient:
    """Resolves builds, branches and depots against the catalog.

    Args:
        connection: Catalog connection
        cache: Cache for the branch -> build ID map. Its fetcher must be
            bound to :meth:`fetch_all_branch_build_ids` after construction
            (see :func:`create_catalog_client`).
        store: Optional store for the last known changenumber
        primary_depot_ids: Depots preferred when picking a primary manifest
    """

    def __init__(
        self,
        connection: CatalogConnection,
        cache: CatalogCache[dict[str, str]],
        store: ConfigStore | None = None,
        primary_depot_ids: list[str] | None = None,
        app_id: str = "",
    ) -> None:
        self.connection = connection
        self.app_id = app_id
        self.cache = cache
        self.store = store
        self.primary_depot_ids = primary_depot_ids or []
        self._connect_lock = asyncio.Lock()

    async def ensure_connected(self) -> None:
        """Establish the connection once; concurrent callers share it."""
        if self.connection.is_connected:
            return
        async with self._connect_lock:
            if not self.connection.is_connected:
                await self.connection.connect()

    async def product_info(self) -> ProductInfo:
        """Fetch a fresh product snapshot."""
        await self.ensure_connected()
        return await self.connection.fetch_product_info()

    async def fetch_all_branch_build_ids(self) -> dict[str, str]:
        """Uncached branch -> build ID lookup; the cache's fetch primitive."""
        info = await self.product_info()
        return {key: branch.build_id for key, branch in info.branches.items()}

    async def all_branch_build_ids(self, force_refresh: bool = False) -> CacheSnapshot[dict[str, str]]:
        """Branch -> build ID map, served from the cache.

        Returns:
            Snapshot holding a copy of the map; ``stale`` is set when the
            catalog could not be reached and the last good map was served
        """
        snapshot = await self.cache.get(force_refresh=force_refresh)
        if snapshot.stale:
            logger.warning("catalog_build_ids_stale")
        return replace(snapshot, value=dict(snapshot.value))

    async def current_build_id(self, branch_key: str) -> str:
        """Current build ID of a branch.

        Raises:
            CatalogUnresolved: If the catalog does not know the branch
        """
        build_ids = (await self.all_branch_build_ids()).value
        if branch_key not in build_ids:
            raise CatalogUnresolved(f"Branch {branch_key} not found in catalog", branch=branch_key)
        return build_ids[branch_key]

    async def resolve_depots_for_build(self, build_id: str) -> list[DepotRef]:
        """Depot/manifest pairs of a build.

        Raises:
            CatalogUnresolved: If no branch currently carries the build
        """
        info = await self.product_info()
        branch_key = info.branch_key_for_build(build_id)
        if branch_key is None:
            for key, builds in info.history.items():
                for build in builds:
                    if build.build_id == build_id and build.depots:
                        logger.debug("catalog_build_from_history", build_id=build_id, branch=key)
                        return list(build.depots)
            raise CatalogUnresolved(f"Build {build_id} not found in any branch", build_id=build_id)

        depots = info.depots_for_branch(branch_key)
        if not depots:
            logger.warning("catalog_no_depot_manifests", build_id=build_id, branch=branch_key)
        return depots

    async def resolve_depots_for_branch(self, branch_key: str, build_id: str | None = None) -> list[DepotRef]:
        """Depot/manifest pairs of a branch build.

        Args:
            branch_key: Catalog branch key
            build_id: Build to resolve; the branch's current build if None

        Raises:
            CatalogUnresolved: If the branch is unknown or the build is not
                one the catalog can resolve for it
        """
        info = await self.product_info()
        branch = info.branches.get(branch_key)
        if branch is None:
            raise CatalogUnresolved(f"Branch {branch_key} not found in catalog", branch=branch_key)

        if build_id is None or build_id == branch.build_id:
            depots = info.depots_for_branch(branch_key)
            if not depots:
                logger.warning("catalog_no_depot_manifests", build_id=branch.build_id, branch=branch_key)
            return depots

        for build in info.history.get(branch_key, []):
            if build.build_id == build_id and build.depots:
                return list(build.depots)

        raise CatalogUnresolved(
            f"Build {build_id} is not resolvable on branch {branch_key} (current build {branch.build_id})",
            branch=branch_key,
            build_id=build_id,
        )

    async def primary_manifest_for_build(self, build_id: str) -> DepotRef | None:
        """Manifest of the primary depot of a build."""
        return select_primary_depot(await self.resolve_depots_for_build(build_id), self.primary_depot_ids)

    async def recent_builds_for_branch(self, branch_key: str, max_count: int = 10) -> RecentBuildsResult:
        """Recent builds of a branch, current build first.

        Only builds the catalog actually reports are returned. When it
        exposes no history the result holds the current build alone and
        ``history_available`` is False.

        Raises:
            CatalogUnresolved: If the catalog does not know the branch
        """
        max_count = clamp_recent_builds(max_count)
        info = await self.product_info()
        branch = info.branches.get(branch_key)
        if branch is None:
            raise CatalogUnresolved(f"Branch {branch_key} not found in catalog", branch=branch_key)

        depots = info.depots_for_branch(branch_key)
        primary = select_primary_depot(depots, self.primary_depot_ids)
        current = RecentBuild(
            build_id=branch.build_id,
            manifest_id=primary.manifest_id if primary else None,
            time_updated=branch.time_updated,
            changenumber=info.changenumber,
            is_current=True,
            depots=depots,
        )

        builds = [current]
        for build in info.history.get(branch_key, []):
            if build.build_id != current.build_id:
                builds.append(build.model_copy(update={"is_current": False}))
        history_available = len(builds) > 1

        logger.debug(
            "catalog_recent_builds",
            branch=branch_key,
            count=len(builds[:max_count]),
            history_available=history_available,
        )
        return RecentBuildsResult(
            branch=branch_key,
            builds=builds[:max_count],
            history_available=history_available,
            max_count=max_count,
        )

    def notify_catalog_changed(self, changenumber: int | None = None) -> None:
        """Handle an external "catalog changed" signal.

        Invalidates the build ID cache immediately and records the new
        changenumber when given.
        """
        self.cache.invalidate()
        if changenumber is not None and self.store is not None:
            self.store.set_last_known_changenumber(self.app_id, changenumber)
        logger.info("catalog_changed", changenumber=changenumber)

    async def check_for_updates(self) -> UpdateCheck:
        """Compare the catalog changenumber with the last known one.

        A newer changenumber counts as a "catalog changed" signal.
        """
        info = await self.product_info()
        last_known = self.store.get_last_known_changenumber(info.app_id) if self.store else None
        update_available = last_known is None or info.changenumber > last_known
        if update_available:
            self.notify_catalog_changed(info.changenumber)
        return UpdateCheck(
            app_id=info.app_id,
            changenumber=info.changenumber,
            last_known=last_known,
            update_available=update_available,
        )

    async def close(self) -> None:
        await self.connection.close()


def create_catalog_client(
    config: CatalogConfig,
    store: ConfigStore | None = None,
    connection: CatalogConnection | None = None,
) -> CatalogClient:
    """Wire a catalog client and its cache.

    The cache is built first with no back-reference; the client's uncached
    fetch primitive is bound to it once both objects exist.
    """
    cache: CatalogCache[dict[str, str]] = CatalogCache(
        ttl=config.cache_ttl,
        refresh_threshold=config.refresh_threshold,
    )
    client = CatalogClient(
        connection or HttpCatalogConnection(config),
        cache,
        store=store,
        primary_depot_ids=list(config.primary_depot_ids),
        app_id=config.app_id,
    )
    cache.bind(client.fetch_all_branch_build_ids)
    return client
