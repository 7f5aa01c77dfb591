"""Pydantic models for Stash GraphQL responses."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class StashId(BaseModel):
    """A provider-tagged identifier attached to a scene."""

    model_config = ConfigDict(extra="ignore")

    endpoint: str = ""
    stash_id: str = ""

    def matches(self, markers: list[str]) -> bool:
        endpoint = self.endpoint.lower()
        return any(marker in endpoint for marker in markers)


class NamedRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str | None = None


class SceneFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    path: str | None = None
    size: int | None = None
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    bit_rate: int | None = None
    video_codec: str | None = None


class ScenePaths(BaseModel):
    model_config = ConfigDict(extra="ignore")

    screenshot: str | None = None
    sprite: str | None = None


class GroupRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    group: NamedRef | None = None
    scene_index: int | None = None


class Scene(BaseModel):
    """Scene record as returned by ``findScene`` / ``findScenes``.

    Every field except ``id`` is optional so the same model serves the slim
    list queries and the full detail queries.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str | None = None
    code: str | None = None
    details: str | None = None
    director: str | None = None
    date: str | None = None
    urls: list[str] = Field(default_factory=list)
    rating100: int | None = None
    organized: bool = False
    stash_ids: list[StashId] = Field(default_factory=list)
    performers: list[NamedRef] = Field(default_factory=list)
    tags: list[NamedRef] = Field(default_factory=list)
    studio: NamedRef | None = None
    galleries: list[NamedRef] = Field(default_factory=list)
    groups: list[GroupRef] = Field(default_factory=list)
    files: list[SceneFile] = Field(default_factory=list)
    paths: ScenePaths | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_name(self) -> str:
        return self.title or f"Scene {self.id}"

    @property
    def primary_file(self) -> SceneFile | None:
        return self.files[0] if self.files else None

    @property
    def primary_file_size(self) -> int:
        primary = self.primary_file
        return (primary.size or 0) if primary else 0

    @property
    def screenshot_url(self) -> str | None:
        return self.paths.screenshot if self.paths else None

    def stash_ids_for(self, markers: list[str]) -> list[StashId]:
        return [item for item in self.stash_ids if item.matches(markers)]

    def has_descriptive_metadata(self) -> bool:
        return bool(
            (self.title and self.title.strip())
            or (self.details and self.details.strip())
            or self.date
            or self.studio
            or self.tags
            or self.performers
        )


class SceneList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    count: int = 0
    scenes: list[Scene] = Field(default_factory=list)
