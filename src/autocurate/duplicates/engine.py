"""Duplicate discovery: server-side phash groups and a local screenshot scan."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import httpx
from PIL import UnidentifiedImageError

from ..cancellation import CancellationToken
from ..config import ACCURACY_TIERS, DuplicateSettings, StashSettings
from ..errors import ConfigError
from ..persistence.state_store import HASHES_KEY, IGNORED_GROUPS_KEY, IGNORED_PAIRS_KEY, StateStore
from ..stash.client import StashClient
from ..stash.models import Scene
from .hashing import average_hash, hamming_distance, similarity_score

LOGGER = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 15.0


def id_sort_key(value: str) -> tuple[int, int | str]:
    return (0, int(value)) if value.isdigit() else (1, value)


def sorted_ids(ids: Iterable[str]) -> list[str]:
    return sorted({str(item) for item in ids}, key=id_sort_key)


def ignore_key(ids: Iterable[str]) -> str:
    return "|".join(sorted_ids(ids))


@dataclass(frozen=True)
class DuplicatePair:
    entity_ids: tuple[str, str]
    hashes: Mapping[str, str]
    hamming_distance: int
    similarity_score: int
    ignored: bool = False

    @property
    def key(self) -> str:
        return ignore_key(self.entity_ids)


@dataclass
class DuplicateGroup:
    scenes: list[Scene]
    ignored: bool = False
    hamming_distance: int | None = None

    @property
    def entity_ids(self) -> list[str]:
        return [scene.id for scene in self.scenes]

    @property
    def key(self) -> str:
        return ignore_key(self.entity_ids)

    @property
    def similarity_score(self) -> int | None:
        return similarity_score(self.hamming_distance) if self.hamming_distance is not None else None


def find_candidates(
    hash_map: Mapping[str, str],
    threshold: int = 10,
    ignored: Iterable[str] = (),
) -> list[DuplicatePair]:
    """Every pair whose hashes are within ``threshold`` bits, closest first.

    Pairs whose ignore key appears in ``ignored`` are left out.
    """
    ignored_keys = set(ignored)
    pairs: list[DuplicatePair] = []
    for first, second in itertools.combinations(sorted_ids(hash_map), 2):
        key = ignore_key((first, second))
        if key in ignored_keys:
            continue
        distance = hamming_distance(hash_map[first], hash_map[second])
        if distance > threshold:
            continue
        pairs.append(
            DuplicatePair(
                entity_ids=(first, second),
                hashes={first: hash_map[first], second: hash_map[second]},
                hamming_distance=distance,
                similarity_score=similarity_score(distance),
            )
        )
    pairs.sort(key=lambda pair: (pair.hamming_distance, [id_sort_key(item) for item in pair.entity_ids]))
    return pairs


class DuplicateEngine:
    """Finds duplicate scenes and remembers which candidates the user dismissed.

    Screenshot hashes are computed lazily and persisted by scene id, so a
    rescan only downloads screenshots it has not seen.
    """

    def __init__(
        self,
        client: StashClient,
        state: StateStore,
        settings: DuplicateSettings | None = None,
        *,
        stash: StashSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client = client
        self.state = state
        self.settings = settings or DuplicateSettings()
        stash = stash or client.settings
        headers = {"ApiKey": stash.api_key} if stash.api_key else {}
        self._http = httpx.AsyncClient(
            base_url=stash.url,
            headers=headers,
            timeout=DOWNLOAD_TIMEOUT,
            transport=transport,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # Hash cache

    @property
    def hashes(self) -> dict[str, str]:
        raw = self.state.get(HASHES_KEY, {})
        if not isinstance(raw, dict):
            LOGGER.warning("Stored duplicate hashes are not a mapping; discarding them")
            return {}
        return {str(key): value for key, value in raw.items() if isinstance(value, str)}

    def _store_hash(self, scene_id: str, value: str) -> None:
        hashes = self.hashes
        hashes[str(scene_id)] = value
        self.state.set(HASHES_KEY, hashes)

    def clear_hashes(self) -> None:
        self.state.delete(HASHES_KEY)
        self.state.save()

    async def compute_hash(self, scene_id: str, url: str | None) -> str | None:
        """Download the screenshot at ``url`` and cache its hash; None when unavailable."""
        if not url:
            return None
        try:
            response = await self._http.get(url)
            response.raise_for_status()
            value = average_hash(response.content)
        except (httpx.HTTPError, UnidentifiedImageError, OSError) as exc:
            LOGGER.warning("Could not hash screenshot for scene %s: %s", scene_id, exc)
            return None
        self._store_hash(scene_id, value)
        return value

    # Ignore lists

    def _ignored(self, key: str) -> set[str]:
        raw = self.state.get(key, [])
        return {str(item) for item in raw} if isinstance(raw, list) else set()

    def _save_ignored(self, key: str, values: set[str]) -> None:
        self.state.set(key, sorted(values))
        self.state.save()

    def ignore_pair(self, first: str, second: str) -> str:
        key = ignore_key((first, second))
        pairs = self._ignored(IGNORED_PAIRS_KEY)
        pairs.add(key)
        self._save_ignored(IGNORED_PAIRS_KEY, pairs)
        return key

    def ignore_group(self, ids: Iterable[str]) -> str:
        key = ignore_key(ids)
        groups = self._ignored(IGNORED_GROUPS_KEY)
        groups.add(key)
        self._save_ignored(IGNORED_GROUPS_KEY, groups)
        return key

    def is_ignored(self, ids: Iterable[str]) -> bool:
        ids = sorted_ids(ids)
        key = ignore_key(ids)
        if len(ids) == 2 and key in self._ignored(IGNORED_PAIRS_KEY):
            return True
        return key in self._ignored(IGNORED_GROUPS_KEY)

    def clear_ignored(self) -> None:
        self.state.delete(IGNORED_PAIRS_KEY)
        self.state.delete(IGNORED_GROUPS_KEY)
        self.state.save()

    # Discovery

    def find_candidates(self, hash_map: Mapping[str, str] | None = None, threshold: int | None = None) -> list[DuplicatePair]:
        return find_candidates(
            self.hashes if hash_map is None else hash_map,
            self.settings.threshold if threshold is None else threshold,
            self._ignored(IGNORED_PAIRS_KEY),
        )

    async def find_server_groups(
        self,
        accuracy: str | None = None,
        duration_diff: float | None = None,
    ) -> list[DuplicateGroup]:
        """Groups from the server's phash index, minus ignored groups."""
        accuracy = accuracy or self.settings.accuracy
        if accuracy not in ACCURACY_TIERS:
            raise ConfigError(f"Unknown duplicate accuracy '{accuracy}' (expected one of {', '.join(ACCURACY_TIERS)})")
        distance = ACCURACY_TIERS[accuracy]
        duration_diff = self.settings.duration_diff if duration_diff is None else duration_diff

        groups = await self.client.find_duplicate_scenes(distance=distance, duration_diff=duration_diff)
        ignored = self._ignored(IGNORED_GROUPS_KEY)
        results = [
            DuplicateGroup(scenes=scenes, hamming_distance=distance)
            for scenes in groups
            if len(scenes) > 1 and ignore_key(scene.id for scene in scenes) not in ignored
        ]
        LOGGER.info("Server reported %d duplicate groups (%d ignored)", len(results), len(groups) - len(results))
        return results

    async def local_scan(
        self,
        limit: int | None = None,
        threshold: int | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> list[DuplicatePair]:
        """Hash up to ``limit`` scenes' screenshots and compare every pair."""
        limit = self.settings.scan_limit if limit is None else limit
        per_page = self.settings.per_page
        scenes: list[Scene] = []
        page = 1
        while len(scenes) < limit:
            if token is not None:
                token.check(allow_skip=False)
            batch = await self.client.find_scenes(page=page, per_page=per_page)
            scenes.extend(batch.scenes)
            if len(batch.scenes) < per_page or len(scenes) >= batch.count:
                break
            page += 1
        scenes = scenes[:limit]

        cached = self.hashes
        hash_map: dict[str, str] = {}
        computed = 0
        for scene in scenes:
            if scene.id in cached:
                hash_map[scene.id] = cached[scene.id]
                continue
            if token is not None:
                token.check(allow_skip=False)
            value = await self.compute_hash(scene.id, scene.screenshot_url)
            if value is not None:
                hash_map[scene.id] = value
                computed += 1
        if computed:
            self.state.save()

        candidates = self.find_candidates(hash_map, threshold)
        LOGGER.info(
            "Local scan hashed %d of %d scenes (%d new); %d candidate pairs",
            len(hash_map),
            len(scenes),
            computed,
            len(candidates),
        )
        return candidates
