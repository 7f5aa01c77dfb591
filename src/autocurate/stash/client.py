"""Async GraphQL client for the Stash server."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..config import StashSettings
from ..errors import ProtocolError, QueryTimeoutError, TransportError
from ..signals import RequestEvent, RequestSignals
from ..utils import canonical_json
from . import queries
from .cache import Clock, TTLCache
from .models import Scene, SceneList

LOGGER = logging.getLogger(__name__)

_MUTATION_PATTERN = re.compile(r"^\s*mutation\b")
_OPERATION_PATTERN = re.compile(r"(?:query|mutation)\s+(\w+)")


def is_mutation(text: str) -> bool:
    return bool(_MUTATION_PATTERN.match(text))


def operation_name(text: str) -> str:
    match = _OPERATION_PATTERN.search(text)
    return match.group(1) if match else "anonymous"


def api_key_hook(settings: StashSettings) -> Callable[[httpx.Request], Awaitable[None]]:
    """Request hook that adds the ApiKey header to requests for the Stash host only.

    Scraped images live on third-party hosts which must never see the key.
    """
    base = httpx.URL(settings.url)

    async def add_api_key(request: httpx.Request) -> None:
        url = request.url
        if settings.api_key and (url.scheme, url.host, url.port) == (base.scheme, base.host, base.port):
            request.headers["ApiKey"] = settings.api_key

    return add_api_key


class StashClient:
    """GraphQL client with response caching, request coalescing and timeouts.

    Reads are cached for ``query_cache_ttl`` seconds keyed by the query text
    and the canonical JSON of its variables. Scene lookups through
    :meth:`get_scene_cached` additionally share a single in-flight request
    between concurrent callers. Every request, successful or not, emits a
    ``read`` or ``mutation`` event on :attr:`signals`; the client subscribes
    its own :meth:`clear` to mutation events.

    The client never retries. Callers decide what to do with
    :class:`QueryTimeoutError`, :class:`TransportError` and
    :class:`ProtocolError`.
    """

    def __init__(
        self,
        settings: StashSettings,
        *,
        signals: RequestSignals | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.settings = settings
        self.endpoint = settings.graphql_url
        self.timeout = settings.timeout
        self.signals = signals or RequestSignals()
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if settings.api_key:
            headers["ApiKey"] = settings.api_key
        self._client = httpx.AsyncClient(headers=headers, transport=transport)
        self.query_cache = TTLCache(settings.query_cache_ttl, clock=clock)
        self.scene_cache = TTLCache(settings.scene_cache_ttl, clock=clock)
        self._inflight: dict[str, asyncio.Future[Scene | None]] = {}
        self._generation = 0
        self.signals.subscribe("mutation", self._on_mutation)

    async def __aenter__(self) -> StashClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.signals.unsubscribe("mutation", self._on_mutation)
        await self._client.aclose()

    def _on_mutation(self, _event: RequestEvent) -> None:
        self.clear()

    def clear(self) -> None:
        """Drop cached responses and forget in-flight scene lookups."""
        self.query_cache.clear()
        self.scene_cache.clear()
        self._inflight.clear()
        self._generation += 1

    async def query(
        self,
        text: str,
        variables: dict[str, Any] | None = None,
        *,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        """Execute a GraphQL document and return its ``data`` mapping.

        Raises:
            QueryTimeoutError: The request exceeded the configured timeout.
            TransportError: The server could not be reached.
            ProtocolError: HTTP error status, malformed body, or an ``errors`` array.
        """
        variables = variables or {}
        mutation = is_mutation(text)
        name = operation_name(text)
        cache_key = (text, canonical_json(variables))

        if use_cache and not mutation:
            cached = self.query_cache.get(cache_key)
            if cached is not None:
                LOGGER.debug("GraphQL %s served from cache", name)
                return cached

        started = time.monotonic()
        ok = False
        try:
            data = await self._execute(text, variables, name)
            ok = True
        finally:
            duration = time.monotonic() - started
            LOGGER.debug("GraphQL %s %s in %.0fms", name, "completed" if ok else "failed", duration * 1000)
            self.signals.emit(
                RequestEvent(kind="mutation" if mutation else "read", operation=name, ok=ok, duration=duration)
            )

        if not mutation:
            self.query_cache.set(cache_key, data)
        return data

    async def _execute(self, text: str, variables: dict[str, Any], name: str) -> dict[str, Any]:
        payload = {"query": text, "variables": variables}
        try:
            async with asyncio.timeout(self.timeout):
                response = await self._client.post(self.endpoint, json=payload)
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise QueryTimeoutError(
                f"GraphQL {name} timed out after {self.timeout:g}s", timeout=self.timeout
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(f"GraphQL {name} request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            messages = [str(item.get("message", item)) if isinstance(item, dict) else str(item) for item in errors]
            raise ProtocolError(", ".join(messages), messages=messages, status_code=response.status_code)

        if response.status_code >= 400:
            raise ProtocolError(
                f"GraphQL {name} returned HTTP {response.status_code}", status_code=response.status_code
            )
        if not isinstance(body, dict):
            raise ProtocolError(f"GraphQL {name} returned a malformed response body")

        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def get_scene_cached(self, scene_id: str, ttl: float | None = None) -> Scene | None:
        """Fetch a scene, sharing one request between concurrent callers."""
        scene_id = str(scene_id)
        cached = self.scene_cache.get(scene_id)
        if cached is not None:
            return cached

        pending = self._inflight.get(scene_id)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_scene(scene_id, ttl, self._generation))
            self._inflight[scene_id] = pending
            pending.add_done_callback(lambda done, key=scene_id: self._forget_inflight(key, done))
        return await asyncio.shield(pending)

    def _forget_inflight(self, scene_id: str, future: asyncio.Future[Scene | None]) -> None:
        if self._inflight.get(scene_id) is future:
            del self._inflight[scene_id]
        if not future.cancelled():
            # Mark the exception retrieved; callers awaiting the shield still see it.
            future.exception()

    async def _fetch_scene(self, scene_id: str, ttl: float | None, generation: int) -> Scene | None:
        scene = await self.find_scene(scene_id, use_cache=False)
        if scene is not None and generation == self._generation:
            self.scene_cache.set(scene_id, scene, ttl)
        return scene

    async def find_scene(self, scene_id: str, *, use_cache: bool = True) -> Scene | None:
        data = await self.query(queries.FIND_SCENE, {"id": str(scene_id)}, use_cache=use_cache)
        raw = data.get("findScene")
        return Scene.model_validate(raw) if raw else None

    async def find_scenes(
        self,
        *,
        page: int = 1,
        per_page: int = 100,
        scene_filter: dict[str, Any] | None = None,
        sort: str = "created_at",
        direction: str = "DESC",
    ) -> SceneList:
        variables = {
            "filter": {"page": page, "per_page": per_page, "sort": sort, "direction": direction},
            "scene_filter": scene_filter or {},
        }
        data = await self.query(queries.FIND_SCENES, variables)
        return SceneList.model_validate(data.get("findScenes") or {})

    async def find_scenes_by_stash_id(self, stash_id: str) -> list[Scene]:
        data = await self.query(queries.FIND_SCENES_BY_STASH_ID, {"id": stash_id})
        return SceneList.model_validate(data.get("findScenes") or {}).scenes

    async def find_duplicate_scenes(self, *, distance: int = 0, duration_diff: float = -1.0) -> list[list[Scene]]:
        data = await self.query(
            queries.FIND_DUPLICATE_SCENES,
            {"distance": distance, "duration_diff": duration_diff},
        )
        groups = data.get("findDuplicateScenes") or []
        return [[Scene.model_validate(item) for item in group] for group in groups if group]

    async def find_scene_for_merge(self, scene_id: str) -> Scene | None:
        data = await self.query(queries.FIND_SCENE_FOR_MERGE, {"id": str(scene_id)}, use_cache=False)
        raw = data.get("findScene")
        return Scene.model_validate(raw) if raw else None

    async def scene_merge(
        self,
        destination: str,
        sources: list[str],
        *,
        values: dict[str, Any] | None = None,
        play_history: bool = True,
        o_history: bool = True,
    ) -> str | None:
        merge_input: dict[str, Any] = {
            "destination": str(destination),
            "source": [str(source) for source in sources],
            "play_history": play_history,
            "o_history": o_history,
        }
        if values:
            merge_input["values"] = {"id": str(destination), **values}
        data = await self.query(queries.SCENE_MERGE, {"input": merge_input})
        merged = data.get("sceneMerge") or {}
        return merged.get("id")

    async def scenes_destroy(
        self,
        scene_ids: list[str],
        *,
        delete_file: bool = False,
        delete_generated: bool = True,
    ) -> bool:
        data = await self.query(
            queries.SCENES_DESTROY,
            {
                "input": {
                    "ids": [str(scene_id) for scene_id in scene_ids],
                    "delete_file": delete_file,
                    "delete_generated": delete_generated,
                }
            },
        )
        return bool(data.get("scenesDestroy"))

    async def scene_update(self, update: dict[str, Any]) -> dict[str, Any]:
        data = await self.query(queries.SCENE_UPDATE, {"input": update})
        return data.get("sceneUpdate") or {}

    async def version(self) -> dict[str, Any]:
        data = await self.query(queries.VERSION, use_cache=False)
        return data.get("version") or {}
