"""Merging a group of duplicate scenes into one."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import AutocurateError
from ..prompts import Prompter, confirm_twice
from ..stash.client import StashClient
from ..stash.models import Scene
from .engine import id_sort_key

LOGGER = logging.getLogger(__name__)


@dataclass
class MergePlan:
    destination: Scene
    sources: list[Scene]
    values: dict[str, Any] = field(default_factory=dict)
    donor_id: str | None = None

    @property
    def source_ids(self) -> list[str]:
        return [scene.id for scene in self.sources]


def choose_destination(scenes: Sequence[Scene]) -> Scene:
    """Largest primary file wins; ties go to the lowest id."""
    return min(scenes, key=lambda scene: (-scene.primary_file_size, id_sort_key(scene.id)))


def donated_values(destination: Scene, donor: Scene) -> dict[str, Any]:
    """Fields ``donor`` can fill on ``destination``; present destination values are never replaced."""
    values: dict[str, Any] = {}
    for name in ("title", "code", "details", "director", "date"):
        donor_value = getattr(donor, name)
        if donor_value and not getattr(destination, name):
            values[name] = donor_value
    if donor.urls and not destination.urls:
        values["urls"] = list(donor.urls)
    if donor.rating100 is not None and destination.rating100 is None:
        values["rating100"] = donor.rating100
    if donor.studio and donor.studio.id and not destination.studio:
        values["studio_id"] = donor.studio.id
    if donor.performers and not destination.performers:
        values["performer_ids"] = [item.id for item in donor.performers if item.id]
    if donor.tags and not destination.tags:
        values["tag_ids"] = [item.id for item in donor.tags if item.id]
    if donor.galleries and not destination.galleries:
        values["gallery_ids"] = [item.id for item in donor.galleries if item.id]
    if donor.groups and not destination.groups:
        values["groups"] = [
            {"group_id": item.group.id, "scene_index": item.scene_index}
            for item in donor.groups
            if item.group and item.group.id
        ]
    return values


def plan_merge(scenes: Sequence[Scene]) -> MergePlan:
    """Pick the destination and, when it has no descriptive metadata, a donor.

    The donor is the first source in the given order that carries any
    descriptive metadata.

    Raises:
        AutocurateError: Fewer than two distinct scenes.
    """
    unique = list({scene.id: scene for scene in scenes}.values())
    if len(unique) < 2:
        raise AutocurateError("A merge needs at least two distinct scenes")

    destination = choose_destination(unique)
    sources = [scene for scene in unique if scene.id != destination.id]
    plan = MergePlan(destination=destination, sources=sources)
    if not destination.has_descriptive_metadata():
        donor = next((scene for scene in sources if scene.has_descriptive_metadata()), None)
        if donor is not None:
            plan.values = donated_values(destination, donor)
            plan.donor_id = donor.id
    return plan


class SceneMerger:
    def __init__(self, client: StashClient) -> None:
        self.client = client

    async def prepare(self, scene_ids: Sequence[str]) -> MergePlan:
        """Fetch full records for ``scene_ids`` and plan the merge."""
        scenes: list[Scene] = []
        for scene_id in scene_ids:
            scene = await self.client.find_scene_for_merge(scene_id)
            if scene is None:
                raise AutocurateError(f"Scene {scene_id} not found")
            scenes.append(scene)
        return plan_merge(scenes)

    async def merge(self, plan: MergePlan, *, play_history: bool = True, o_history: bool = True) -> str | None:
        merged_id = await self.client.scene_merge(
            plan.destination.id,
            plan.source_ids,
            values=plan.values or None,
            play_history=play_history,
            o_history=o_history,
        )
        LOGGER.info(
            "Merged scenes %s into %s%s",
            ", ".join(plan.source_ids),
            plan.destination.id,
            f" (metadata from {plan.donor_id})" if plan.donor_id else "",
        )
        return merged_id

    async def offer_source_deletion(
        self,
        plan: MergePlan,
        prompter: Prompter,
        *,
        delete_file: bool = False,
    ) -> bool:
        """Destroy the merged-away scenes after two confirmations; both default to no."""
        if not plan.sources:
            return False
        ids = ", ".join(plan.source_ids)
        confirmed = await confirm_twice(
            prompter,
            f"Delete source scenes {ids}?",
            f"Really delete {len(plan.sources)} scene(s){' and their files' if delete_file else ''}? This cannot be undone.",
        )
        if not confirmed:
            LOGGER.info("Kept source scenes %s", ids)
            return False
        deleted = await self.client.scenes_destroy(plan.source_ids, delete_file=delete_file)
        LOGGER.info("Deleted source scenes %s", ids)
        return deleted
