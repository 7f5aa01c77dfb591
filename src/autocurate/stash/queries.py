"""GraphQL documents used against the Stash ``/graphql`` endpoint."""

from __future__ import annotations

FIND_SCENE = """
query FindScene($id: ID!) {
  findScene(id: $id) {
    id
    title
    details
    date
    urls
    organized
    stash_ids { endpoint stash_id }
    performers { id name }
    studio { id name }
    tags { id name }
    paths { screenshot }
    created_at
    updated_at
  }
}
"""

FIND_SCENES = """
query FindScenes($filter: FindFilterType, $scene_filter: SceneFilterType) {
  findScenes(filter: $filter, scene_filter: $scene_filter) {
    count
    scenes {
      id
      title
      organized
      stash_ids { endpoint stash_id }
      performers { id name }
      studio { id name }
      paths { screenshot }
      files { id size width height duration }
    }
  }
}
"""

FIND_SCENES_BY_STASH_ID = """
query FindScenesByStashId($id: String!) {
  findScenes(scene_filter: {stash_id: {value: $id, modifier: EQUALS}}) {
    count
    scenes {
      id
      title
      organized
      stash_ids { endpoint stash_id }
      created_at
      updated_at
    }
  }
}
"""

FIND_DUPLICATE_SCENES = """
query FindDuplicateScenes($distance: Int, $duration_diff: Float) {
  findDuplicateScenes(distance: $distance, duration_diff: $duration_diff) {
    id
    title
    organized
    paths { sprite screenshot }
    studio { id name }
    tags { id name }
    performers { id name }
    files { id size width height bit_rate video_codec duration path }
  }
}
"""

FIND_SCENE_FOR_MERGE = """
query FindSceneForMerge($id: ID!) {
  findScene(id: $id) {
    id
    title
    code
    details
    director
    urls
    date
    rating100
    organized
    studio { id name }
    performers { id name }
    tags { id name }
    groups { group { id } scene_index }
    galleries { id }
    files { id size width height duration path }
  }
}
"""

SCENE_MERGE = """
mutation SceneMerge($input: SceneMergeInput!) {
  sceneMerge(input: $input) { id }
}
"""

SCENES_DESTROY = """
mutation ScenesDestroy($input: ScenesDestroyInput!) {
  scenesDestroy(input: $input)
}
"""

SCENE_UPDATE = """
mutation SceneUpdate($input: SceneUpdateInput!) {
  sceneUpdate(input: $input) { id organized }
}
"""

VERSION = """
query Version {
  version { version hash build_time }
}
"""
