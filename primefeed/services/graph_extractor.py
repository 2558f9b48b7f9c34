from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, cast

DEFAULT_NODE_BUDGET = 5_000
DEFAULT_RESULT_CAP = 100
# Bare `token` strings shorter than this are ids or nonces, not continuations.
HEURISTIC_TOKEN_MIN_LENGTH = 51


@dataclass(frozen=True)
class VideoShape:
    renderer: dict[str, Any]


@dataclass(frozen=True)
class PlaylistVideoShape:
    renderer: dict[str, Any]


@dataclass(frozen=True)
class GridVideoShape:
    renderer: dict[str, Any]


@dataclass(frozen=True)
class ContinuationShape:
    token: str
    explicit: bool


VideoPayloadShape = VideoShape | PlaylistVideoShape | GridVideoShape
Shape = VideoPayloadShape | ContinuationShape


@dataclass
class ExtractionResult:
    videos: list[VideoPayloadShape] = field(default_factory=list)
    continuations: list[ContinuationShape] = field(default_factory=list)
    nodes_visited: int = 0
    budget_exhausted: bool = False
    cap_reached: bool = False

    @property
    def continuation_token(self) -> str | None:
        explicit = self.explicit_continuation_token
        if explicit is not None:
            return explicit
        for shape in self.continuations:
            return shape.token
        return None

    @property
    def explicit_continuation_token(self) -> str | None:
        explicit = [shape.token for shape in self.continuations if shape.explicit]
        return explicit[-1] if explicit else None


def extract_shapes(
    root: object,
    *,
    node_budget: int = DEFAULT_NODE_BUDGET,
    result_cap: int = DEFAULT_RESULT_CAP,
) -> ExtractionResult:
    """Walk an untyped tree and collect every recognised renderer payload.

    The walk is a LIFO stack over dicts and lists. Containers are tracked by
    identity, so shared or cyclic references are visited once. Both
    `node_budget` and `result_cap` are hard stops; whatever was found before a
    stop is returned.
    """
    result = ExtractionResult()
    budget = max(0, node_budget)
    cap = max(0, result_cap)
    if cap == 0:
        result.cap_reached = True
        return result

    stack: list[object] = [root]
    seen: set[int] = set()

    while stack:
        if result.nodes_visited >= budget:
            result.budget_exhausted = True
            break
        node = stack.pop()
        result.nodes_visited += 1

        if not isinstance(node, dict | list):
            continue
        node_id = id(node)
        if node_id in seen:
            continue
        seen.add(node_id)

        if isinstance(node, list):
            children = cast(list[object], node)
        else:
            mapping = cast(dict[str, object], node)
            _match_shapes(mapping, result)
            if len(result.videos) >= cap:
                del result.videos[cap:]
                result.cap_reached = True
                break
            children = list(mapping.values())

        for child in reversed(children):
            if isinstance(child, dict | list):
                stack.append(child)

    return result


def _match_shapes(node: dict[str, object], result: ExtractionResult) -> None:
    # Tests are independent: one node may carry several renderers at once.
    video = node.get("videoRenderer")
    if isinstance(video, dict):
        result.videos.append(VideoShape(renderer=cast(dict[str, Any], video)))

    playlist_video = node.get("playlistVideoRenderer")
    if isinstance(playlist_video, dict):
        result.videos.append(PlaylistVideoShape(renderer=cast(dict[str, Any], playlist_video)))

    grid_video = node.get("gridVideoRenderer")
    if isinstance(grid_video, dict):
        result.videos.append(GridVideoShape(renderer=cast(dict[str, Any], grid_video)))

    command_token = _dig(
        node,
        "continuationItemRenderer",
        "continuationEndpoint",
        "continuationCommand",
        "token",
    )
    if isinstance(command_token, str) and command_token:
        result.continuations.append(ContinuationShape(token=command_token, explicit=True))

    bare_token = node.get("token")
    if isinstance(bare_token, str) and len(bare_token) >= HEURISTIC_TOKEN_MIN_LENGTH:
        result.continuations.append(ContinuationShape(token=bare_token, explicit=False))


def _dig(node: object, *path: str) -> object:
    current = node
    for key in path:
        if not isinstance(current, dict):
            return None
        current = cast(dict[str, object], current).get(key)
    return current
