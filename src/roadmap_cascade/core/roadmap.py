"""
Roadmap file loading.

A roadmap is a YAML or JSON document with an ``items`` list:

    items:
      - id: auth
        title: Authentication
        priority: 2
        tags: [security]
      - id: profile
        dependencies: [auth]
        related: [settings]

Items that share a tag become related to each other.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any

import yaml

from .dependency_graph import DependencyGraph
from .errors import GraphError
from .models import WorkItem

logger = logging.getLogger(__name__)

DEFAULT_ROADMAP_FILES = ("roadmap.yaml", "roadmap.yml", "roadmap.json")


def find_roadmap(project_root: Path) -> Path | None:
    """Return the first default roadmap file present in the project root."""
    for name in DEFAULT_ROADMAP_FILES:
        candidate = Path(project_root) / name
        if candidate.exists():
            return candidate
    return None


def read_roadmap(path: Path) -> dict[str, Any]:
    """Read a roadmap document. Raises GraphError if it cannot be parsed."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except FileNotFoundError:
        raise GraphError(f"Roadmap file not found: {path}") from None
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise GraphError(f"Could not parse roadmap {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise GraphError(f"Roadmap {path} must contain an 'items' list")
    return data


def parse_items(data: dict[str, Any]) -> list[WorkItem]:
    """
    Build work items from a roadmap document.

    Raises:
        GraphError: Listing every invalid entry, duplicate id, self reference,
            unknown dependency and cycle
    """
    problems: list[str] = []
    items: list[WorkItem] = []
    seen: set[str] = set()

    for index, entry in enumerate(data["items"]):
        if not isinstance(entry, dict) or not entry.get("id"):
            problems.append(f"Entry {index}: missing 'id'")
            continue
        item_id = str(entry["id"])
        if item_id in seen:
            problems.append(f"Duplicate work item id: {item_id}")
            continue
        seen.add(item_id)

        dependencies = [str(d) for d in entry.get("dependencies", []) or []]
        if item_id in dependencies:
            problems.append(f"Work item '{item_id}' depends on itself")
            dependencies = [d for d in dependencies if d != item_id]

        try:
            items.append(WorkItem(
                id=item_id,
                title=str(entry.get("title", "")),
                description=str(entry.get("description", "")),
                priority=entry.get("priority", 0),
                dependencies=dependencies,
                related_items=[str(r) for r in entry.get("related", []) or []],
                tags=[str(t) for t in entry.get("tags", []) or []],
                sequence=index,
            ))
        except ValueError as e:
            problems.append(str(e))

    for item in items:
        for dep in item.dependencies:
            if dep not in seen:
                problems.append(f"Work item '{item.id}': unknown dependency '{dep}'")

    if problems:
        raise GraphError(problems[0], problems=problems)

    _link_tags(items)
    DependencyGraph.from_items(items)
    return items


def _link_tags(items: list[WorkItem]) -> None:
    by_tag: dict[str, list[str]] = defaultdict(list)
    for item in items:
        for tag in item.tags:
            by_tag[tag].append(item.id)
    for item in items:
        related = list(item.related_items)
        for tag in item.tags:
            related.extend(i for i in by_tag[tag] if i != item.id)
        item.related_items = list(dict.fromkeys(related))


def load_roadmap(path: Path) -> list[WorkItem]:
    """Read and validate a roadmap file."""
    items = parse_items(read_roadmap(path))
    logger.info("Loaded %d work item(s) from %s", len(items), path)
    return items
