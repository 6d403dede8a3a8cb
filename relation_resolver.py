"""
Replaces story references (uuids) inside story content with the referenced stories.

Two strategies behind one RelationResolver:
- DECLARED_FIELD (production) -- only fields declared per component type in RELATIONS_TO_RESOLVE
  are resolved, under `content.body`, repeated until nothing changes (bounded by MAX_RESOLVE_ITERATIONS).
- WHOLE_TREE -- every string anywhere in `content` that matches a known uuid is replaced,
  with chains expanded inside each inserted story's `content`; every uuid is expanded at most once per root story.

The dictionary is never modified: substitutions insert copies of dictionary entries.
"""

from __future__ import annotations

import copy
import enum
import logging
from collections.abc import Iterable, Iterator
from typing import Any

log = logging.getLogger(__name__)

## constants --------------------------------------------------------
RELATIONS_TO_RESOLVE: list[str] = [
    'Target.modelLabel',
    'Target.modalTemplate',
    'List.label',
    'Template.story',
    'destination.tagLabel',
    'DestinationList.label',
    'DestinationList.fromLabel',
    'DestinationList.funnelingLabels',
    'DestinationCarousel.staticCards',
    'DestinationCarousel.fromLabel',
    'DestinationCarousel.seeAllLabel',
    'DestinationCarousel.funnelingLabels',
    'ProductCarousel.products',
    'Stories.openCloseLabels',
    'Stories.previousNextLabels',
    'Stories.muteUnmuteLabels',
    'Testimonial.labels',
    'Target.funnelingLabels',
    'gallery.moreLabel',
    'InfomeetingCard.showLabels',
    'InfomeetingCard.checkboxLabel',
    'PopUp.dialogTemplate',
]

RESERVED_KEYS: frozenset[str] = frozenset({'uuid', '_uid'})
DEFAULT_COMPONENTS_PATH: tuple[str, ...] = ('content', 'body')
MAX_RESOLVE_ITERATIONS: int = 10  # declared-field passes over the whole body
MAX_SUBSTITUTION_DEPTH: int = 20  # nested substitutions, whole-tree strategy


class ResolutionStrategy(enum.Enum):
    DECLARED_FIELD = 'declared-field'
    WHOLE_TREE = 'whole-tree'


## dictionary -------------------------------------------------------
def build_dictionary(stories: Iterable[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """
    Indexes stories by uuid; the last story with a given uuid wins.
    """
    dictionary: dict[str, dict[str, Any]] = {}
    for story in stories:
        uuid: object = story.get('uuid')
        if not isinstance(uuid, str):
            log.debug(f'skipping story without a uuid, ``{story.get("full_slug") or story.get("name")}``')
            continue
        dictionary[uuid] = story
    return dictionary


def parse_relations(relations: Iterable[str]) -> dict[str, frozenset[str]]:
    """
    Turns `Component.field` strings into {component: {field, ...}}.
    """
    table: dict[str, set[str]] = {}
    for relation in relations:
        component, sep, field_name = relation.partition('.')
        if not sep or not component or not field_name:
            raise ValueError(f'relation must look like `Component.field`, got ``{relation}``')
        table.setdefault(component, set()).add(field_name)
    return {component: frozenset(fields) for component, fields in table.items()}


## tree helpers -----------------------------------------------------
def flatten(value: Any, prefix: tuple[Any, ...] = ()) -> Iterator[tuple[tuple[Any, ...], Any]]:
    """
    Yields (path, leaf) pairs depth-first; a path is a tuple of dict keys and list indexes.
    Empty dicts and lists count as leaves.
    """
    if isinstance(value, dict) and value:
        for key, child in value.items():
            yield from flatten(child, prefix + (key,))
    elif isinstance(value, list) and value:
        for index, child in enumerate(value):
            yield from flatten(child, prefix + (index,))
    else:
        yield prefix, value


def get_path(value: Any, path: Iterable[Any]) -> Any:
    """
    Follows `path` through dicts and lists; returns None when any step is missing.
    """
    current: Any = value
    for step in path:
        if isinstance(current, dict):
            current = current.get(step)
        elif isinstance(current, list) and isinstance(step, int) and 0 <= step < len(current):
            current = current[step]
        else:
            return None
    return current


## resolver ---------------------------------------------------------
class RelationResolver:
    """
    Resolves story references against a read-only uuid dictionary.
    - Declared-field strategy: finds component instances by their component-type name, then resolves
      only the fields declared for that component; loops to a fixed point, capped at `max_iterations`.
    - Whole-tree strategy: resolves any matching string in the content, recursing into what it inserted;
      a uuid already expanded for the same root (and anything deeper than `max_depth`) stays a string;
      only `content` is walked, so metadata of inserted stories is never rewritten.
    - Missing uuids are left in place as the original string; nothing here raises for unknown references.
    - `resolve()` mutates the given story and returns it.
    """

    def __init__(
        self,
        dictionary: dict[str, dict[str, Any]],
        strategy: ResolutionStrategy = ResolutionStrategy.DECLARED_FIELD,
        *,
        relations: dict[str, frozenset[str]] | None = None,
        components_path: tuple[str, ...] = DEFAULT_COMPONENTS_PATH,
        max_iterations: int = MAX_RESOLVE_ITERATIONS,
        max_depth: int = MAX_SUBSTITUTION_DEPTH,
    ) -> None:
        self.dictionary: dict[str, dict[str, Any]] = dictionary
        self.strategy: ResolutionStrategy = strategy
        self.relations: dict[str, frozenset[str]] = (
            relations if relations is not None else parse_relations(RELATIONS_TO_RESOLVE)
        )
        self.components_path: tuple[str, ...] = components_path
        self.max_iterations: int = max_iterations
        self.max_depth: int = max_depth

    def resolve(self, story: dict[str, Any]) -> dict[str, Any]:
        if self.strategy is ResolutionStrategy.WHOLE_TREE:
            return self.resolve_whole_tree(story)
        return self.resolve_declared_fields(story)

    def _lookup(self, uuid: str) -> dict[str, Any] | None:
        referenced: dict[str, Any] | None = self.dictionary.get(uuid)
        if referenced is None:
            return None
        return copy.deepcopy(referenced)

    ## declared-field strategy ---------------------------------------
    def find_components(self, components: Any) -> list[tuple[tuple[Any, ...], str]]:
        """
        Returns (instance_path, component_name) for every leaf whose value names a component in `relations`.
        The instance is the leaf's parent.
        """
        found: list[tuple[tuple[Any, ...], str]] = []
        for path, leaf in flatten(components):
            if isinstance(leaf, str) and leaf in self.relations and path:
                found.append((path[:-1], leaf))
        return found

    def _resolve_field(self, instance: dict[str, Any], key: str) -> bool:
        value: Any = instance[key]
        if isinstance(value, str):
            referenced: dict[str, Any] | None = self._lookup(value)
            if referenced is None:
                return False
            instance[key] = referenced
            return True
        if isinstance(value, list):
            changed: bool = False
            for index, item in enumerate(value):
                if not isinstance(item, str):
                    continue
                referenced = self._lookup(item)
                if referenced is not None:
                    value[index] = referenced
                    changed = True
            return changed
        return False

    def resolve_declared_fields(self, story: dict[str, Any]) -> dict[str, Any]:
        components: Any = get_path(story, self.components_path)
        if not components:
            return story

        iteration: int = 0
        while iteration < self.max_iterations:
            iteration += 1
            changed: bool = False
            for instance_path, name in self.find_components(components):
                instance: Any = get_path(components, instance_path) if instance_path else components
                if not isinstance(instance, dict):
                    continue
                fields: frozenset[str] = self.relations[name]
                for key in list(instance.keys()):
                    if key in fields and self._resolve_field(instance, key):
                        changed = True
            if not changed:
                break
        else:
            log.debug(f'story ``{story.get("uuid")}``: stopped after {self.max_iterations} iterations')
        return story

    ## whole-tree strategy --------------------------------------------
    def resolve_whole_tree(self, story: dict[str, Any]) -> dict[str, Any]:
        content: Any = story.get('content')
        if not isinstance(content, (dict, list)):
            return story
        root_uuid: object = story.get('uuid')
        visited: set[str] = {root_uuid} if isinstance(root_uuid, str) else set()
        story['content'] = self._walk(content, visited, 0)
        return story

    def _substitute(self, value: Any, visited: set[str], depth: int) -> Any:
        # each uuid is expanded at most once per root; later occurrences stay strings
        if not isinstance(value, str) or value in visited or depth >= self.max_depth:
            return value
        referenced: dict[str, Any] | None = self._lookup(value)
        if referenced is None:
            return value
        visited.add(value)
        content: Any = referenced.get('content')
        if isinstance(content, (dict, list)):
            referenced['content'] = self._walk(content, visited, depth + 1)
        return referenced

    def _walk(self, node: Any, visited: set[str], depth: int) -> Any:
        if isinstance(node, dict):
            for key, child in node.items():
                if child is None:
                    continue
                if isinstance(child, (dict, list)):
                    node[key] = self._walk(child, visited, depth)
                elif key not in RESERVED_KEYS:
                    node[key] = self._substitute(child, visited, depth)
            return node
        if isinstance(node, list):
            for index, child in enumerate(node):
                if isinstance(child, (dict, list)):
                    node[index] = self._walk(child, visited, depth)
                else:
                    node[index] = self._substitute(child, visited, depth)
            return node
        return node


def resolve_relations(
    stories: list[dict[str, Any]],
    dictionary: dict[str, dict[str, Any]],
    strategy: ResolutionStrategy = ResolutionStrategy.DECLARED_FIELD,
    **resolver_kwargs: Any,
) -> list[dict[str, Any]]:
    """
    Resolves a copy of every story; `stories` and `dictionary` stay raw.
    """
    resolver = RelationResolver(dictionary, strategy, **resolver_kwargs)
    return [resolver.resolve(copy.deepcopy(story)) for story in stories]
