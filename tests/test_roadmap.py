"""Tests for roadmap file loading."""

import pytest
import yaml

from roadmap_cascade.core.errors import GraphError
from roadmap_cascade.core.roadmap import find_roadmap, load_roadmap, parse_items, read_roadmap


def _write(path, data):
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)
    return path


class TestLoadRoadmap:
    """Tests for reading roadmap documents."""

    def test_yaml(self, roadmap_path):
        items = load_roadmap(roadmap_path)

        assert [i.id for i in items] == ["auth", "profile", "billing", "docs"]
        assert items[0].priority == 2
        assert items[1].dependencies == ["auth"]
        assert [i.sequence for i in items] == [0, 1, 2, 3]

    def test_json(self, roadmap_json_path):
        assert [i.id for i in load_roadmap(roadmap_json_path)] == ["auth", "profile", "billing", "docs"]

    def test_shared_tags_make_items_related(self, roadmap_path):
        items = {i.id: i for i in load_roadmap(roadmap_path)}
        assert items["auth"].related_items == ["profile"]
        assert items["profile"].related_items == ["auth"]
        assert items["docs"].related_items == []

    def test_explicit_related(self, tmp_path):
        path = _write(tmp_path / "roadmap.yaml", {"items": [
            {"id": "a", "related": ["b"]},
            {"id": "b"},
        ]})
        assert load_roadmap(path)[0].related_items == ["b"]

    def test_find_roadmap(self, tmp_path, roadmap_json_path):
        assert find_roadmap(tmp_path) == roadmap_json_path
        _write(tmp_path / "roadmap.yaml", {"items": []})
        assert find_roadmap(tmp_path).name == "roadmap.yaml"

    def test_find_roadmap_missing(self, tmp_path):
        assert find_roadmap(tmp_path) is None


class TestRoadmapValidation:
    """Tests for rejecting invalid roadmaps."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(GraphError):
            read_roadmap(tmp_path / "nope.yaml")

    def test_unparseable(self, tmp_path):
        path = tmp_path / "roadmap.yaml"
        path.write_text("items: [unclosed\n", encoding="utf-8")
        with pytest.raises(GraphError):
            read_roadmap(path)

    def test_items_list_required(self, tmp_path):
        with pytest.raises(GraphError):
            read_roadmap(_write(tmp_path / "roadmap.yaml", {"work": []}))

    def test_every_problem_reported(self):
        data = {"items": [
            {"title": "no id"},
            {"id": "a", "dependencies": ["a"]},
            {"id": "b", "dependencies": ["missing"]},
            {"id": "b"},
            {"id": "c", "priority": "high"},
        ]}

        with pytest.raises(GraphError) as exc_info:
            parse_items(data)

        problems = exc_info.value.problems
        assert len(problems) == 5
        assert any("missing 'id'" in p for p in problems)
        assert any("depends on itself" in p for p in problems)
        assert any("unknown dependency 'missing'" in p for p in problems)
        assert any("Duplicate" in p for p in problems)
        assert any("priority" in p for p in problems)

    def test_cycle(self):
        data = {"items": [
            {"id": "a", "dependencies": ["c"]},
            {"id": "b", "dependencies": ["a"]},
            {"id": "c", "dependencies": ["b"]},
        ]}
        with pytest.raises(GraphError) as exc_info:
            parse_items(data)
        assert set(exc_info.value.cycle) == {"a", "b", "c"}
