from __future__ import annotations

import io
import json
from collections.abc import Callable, Sequence
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from PIL import Image

from autocurate.config import AutomationSettings, ProviderSettings, StashSettings, default_providers
from autocurate.errors import OperationTimeoutError
from autocurate.persistence import HistoryStore, StateStore
from autocurate.scraped_data import ScrapedData
from autocurate.signals import RequestSignals
from autocurate.stash.client import StashClient, operation_name
from autocurate.ui_adapter import DEFAULT_VOCABULARY, OrganizeToggle, PollingOutcomeMixin

STASH_URL = "http://stash.test"
STASHDB_ENDPOINT = "https://stashdb.org/graphql"
TPDB_ENDPOINT = "https://theporndb.net/graphql"
FOUND = "found"


def make_scene(
    scene_id: str = "1",
    *,
    title: Optional[str] = "Test Scene",
    organized: bool = False,
    endpoints: Sequence[str] = (),
    size: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    scene: Dict[str, Any] = {
        "id": scene_id,
        "title": title,
        "organized": organized,
        "stash_ids": [{"endpoint": endpoint, "stash_id": f"{scene_id}-{index}"} for index, endpoint in enumerate(endpoints)],
        "paths": {"screenshot": f"{STASH_URL}/scene/{scene_id}/screenshot"},
    }
    if size is not None:
        scene["files"] = [{"id": f"f{scene_id}", "size": size}]
    scene.update(extra)
    return scene


def png_bytes(width: int, height: int, color: Any = (128, 128, 128)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


Handler = Callable[[Dict[str, Any]], Any]


class GraphQLServer:
    """Scripted Stash server behind an ``httpx.MockTransport``.

    ``FindScene`` and ``FindSceneForMerge`` answer from :attr:`scenes`; other
    operations answer from :attr:`handlers` (returning a ``data`` mapping or
    a full ``httpx.Response``) or with empty data. Non-GraphQL paths serve
    :attr:`images`.
    """

    def __init__(self) -> None:
        self.scenes: Dict[str, Dict[str, Any]] = {}
        self.handlers: Dict[str, Handler] = {}
        self.images: Dict[str, bytes] = {}
        self.requests: List[Dict[str, Any]] = []
        self.headers: List[httpx.Headers] = []

    def add_scene(self, scene: Dict[str, Any]) -> Dict[str, Any]:
        self.scenes[scene["id"]] = scene
        return scene

    def count(self, operation: str) -> int:
        return sum(1 for request in self.requests if request["operation"] == operation)

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path != "/graphql":
            content = self.images.get(request.url.path)
            if content is None:
                return httpx.Response(404)
            return httpx.Response(200, content=content, headers={"Content-Type": "image/png"})

        payload = json.loads(request.content)
        name = operation_name(payload["query"])
        variables = payload.get("variables") or {}
        self.requests.append({"operation": name, "variables": variables})
        self.headers.append(request.headers)

        handler = self.handlers.get(name)
        if handler is not None:
            result = handler(variables)
            if isinstance(result, httpx.Response):
                return result
            return httpx.Response(200, json={"data": result})
        if name in ("FindScene", "FindSceneForMerge"):
            return httpx.Response(200, json={"data": {"findScene": self.scenes.get(str(variables["id"]))}})
        return httpx.Response(200, json={"data": {}})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


class FakeUIAdapter(PollingOutcomeMixin):
    """In-memory stand-in for the host page.

    ``outcomes`` maps a provider id to :data:`FOUND`, a visible message, or
    None (nothing ever appears). Elements are plain strings.
    """

    poll_interval = 0.01

    def __init__(
        self,
        scene_id: Optional[str] = "1",
        *,
        outcomes: Optional[Dict[str, Optional[str]]] = None,
        scraped: Optional[Dict[str, ScrapedData]] = None,
    ) -> None:
        self.scene_id = scene_id
        self.location = f"{STASH_URL}/scenes/{scene_id}" if scene_id else None
        self.outcomes = dict(outcomes or {})
        self.scraped = dict(scraped or {})
        self.elements: Dict[str, Any] = {}
        self.active: set[Any] = set()
        self.text = ""
        self.messages: List[str] = []
        self.edit_open = False
        self.can_open_edit = True
        self.create_affordances: List[Any] = []
        self.apply_button: Optional[str] = "apply-button"
        self.save_button: Optional[str] = "save-button"
        self.organize_checked = False
        self.organize_available = True
        self.thumbnail_url: Optional[str] = None
        self.current_provider: Optional[str] = None
        self.scrapes: List[str] = []
        self.clicks: List[Any] = []
        self.restored = 0
        self.kept_thumbnails = 0
        self.organize_toggles = 0
        self.on_click: Optional[Callable[[Any], None]] = None
        self.on_scrape: Optional[Callable[[ProviderSettings], None]] = None
        self.on_organize: Optional[Callable[[], None]] = None

    def current_entity_id(self) -> Optional[str]:
        return self.scene_id

    def current_location(self) -> Optional[str]:
        return self.location

    def navigate(self, scene_id: str) -> None:
        self.scene_id = scene_id
        self.location = f"{STASH_URL}/scenes/{scene_id}"

    def query_selector(self, selector: str) -> Any:
        return self.elements.get(selector)

    def is_element_active(self, element: Any) -> bool:
        return element in self.active

    def page_text(self) -> str:
        return self.text

    def visible_messages(self, selectors: Sequence[str]) -> List[str]:
        return list(self.messages)

    async def wait_for_element(self, selectors: Sequence[str], timeout: float) -> Any:
        for selector in selectors:
            element = self.elements.get(selector)
            if element is not None:
                return element
        raise OperationTimeoutError(f"None of {list(selectors)} appeared", timeout=timeout)

    async def click_element(self, element: Any) -> None:
        self.clicks.append(element)
        if self.on_click is not None:
            self.on_click(element)

    def is_edit_context_open(self) -> bool:
        return self.edit_open

    async def open_edit_context(self) -> bool:
        self.edit_open = self.can_open_edit
        return self.edit_open

    async def trigger_scrape(self, provider: ProviderSettings) -> None:
        self.scrapes.append(provider.id)
        self.current_provider = provider.id
        self.messages = []
        self.elements.pop(DEFAULT_VOCABULARY.positive_selectors[0], None)
        if self.on_scrape is not None:
            self.on_scrape(provider)
        outcome = self.outcomes.get(provider.id)
        if outcome == FOUND:
            self.elements[DEFAULT_VOCABULARY.positive_selectors[0]] = "scrape-dialog"
        elif outcome:
            self.messages = [outcome]

    def find_create_affordances(self) -> List[Any]:
        return list(self.create_affordances)

    def find_apply_affordance(self) -> Any:
        return self.apply_button

    def find_save_affordance(self) -> Any:
        return self.save_button

    def find_organize_toggle(self) -> Optional[OrganizeToggle]:
        if not self.organize_available:
            return None
        return OrganizeToggle(checked=self.organize_checked, toggle=self._toggle_organized)

    async def _toggle_organized(self) -> None:
        self.organize_toggles += 1
        self.organize_checked = not self.organize_checked
        if self.on_organize is not None:
            self.on_organize()

    async def collect_scraped_data(self) -> ScrapedData:
        return self.scraped.get(self.current_provider or "", ScrapedData(title="Scraped Title"))

    def current_thumbnail_url(self) -> Optional[str]:
        return self.thumbnail_url

    async def keep_current_thumbnail(self) -> None:
        self.kept_thumbnails += 1

    def restore_controls(self) -> None:
        self.restored += 1


@pytest.fixture
def server() -> GraphQLServer:
    return GraphQLServer()


@pytest.fixture
def stash_settings() -> StashSettings:
    return StashSettings(url=STASH_URL, api_key="secret-key", timeout=2.0)


@pytest.fixture
def signals() -> RequestSignals:
    return RequestSignals()


@pytest_asyncio.fixture
async def client(server: GraphQLServer, stash_settings: StashSettings, signals: RequestSignals):
    stash = StashClient(stash_settings, signals=signals, transport=server.transport)
    yield stash
    await stash.aclose()


@pytest.fixture
def providers() -> List[ProviderSettings]:
    return default_providers()


@pytest.fixture
def state(tmp_path) -> StateStore:
    return StateStore(tmp_path)


@pytest.fixture
def history(state: StateStore) -> HistoryStore:
    return HistoryStore(state)


@pytest.fixture
def fast_settings() -> AutomationSettings:
    return AutomationSettings(
        auto_apply=True,
        min_auto_apply_score=0,
        prefer_higher_res_thumbnails=False,
        outcome_timeout=0.3,
        settle_delay=0.0,
        create_settle_delay=0.0,
        save_fallback_timeout=0.05,
        refresh_delay=0.0,
    )


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch) -> None:
    for name in ("STASH_URL", "STASH_API_KEY", "AUTOCURATE_AUTO_APPLY", "AUTOCURATE_DEBUG"):
        monkeypatch.delenv(name, raising=False)
