"""
Tests for the append-only discourse graph and its lane layout.
"""

import pytest
from hypothesis import given, strategies as st

from discourse_graph import DiscourseGraphModel, Segment, next_branch_level
from talk_parameters import LayoutConfig


def _model_from_decisions(decisions):
    model = DiscourseGraphModel()
    for i, on_track in enumerate(decisions):
        model.append_decision(f"chunk {i}", on_track)
    return model


class TestBranchRule:
    def test_rule(self):
        assert next_branch_level(None, True) == 0
        assert next_branch_level(None, False) == 1
        assert next_branch_level(0, False) == 1
        assert next_branch_level(1, False) == 1
        assert next_branch_level(3, False) == 3
        assert next_branch_level(2, True) == 0

    @given(st.lists(st.booleans(), max_size=40))
    def test_levels_stay_in_two_lanes(self, decisions):
        levels = [n.branch_level for n in _model_from_decisions(decisions).nodes]
        assert all(0 <= level <= 1 for level in levels)
        for on_track, level in zip(decisions, levels):
            assert level == (0 if on_track else 1)


class TestAppend:
    @given(st.lists(st.booleans(), min_size=1, max_size=40))
    def test_indices_and_positions(self, decisions):
        model = _model_from_decisions(decisions)
        assert [n.index for n in model.nodes] == list(range(len(decisions)))
        positions = [(p.x, p.y) for p in model.project()]
        assert len(set(positions)) == len(positions)

    def test_ids_are_unique(self):
        model = _model_from_decisions([True] * 50)
        assert len({n.id for n in model.nodes}) == 50

    def test_negative_level_rejected(self):
        with pytest.raises(ValueError):
            DiscourseGraphModel().append("x", -1)

    def test_last_accessors(self):
        model = DiscourseGraphModel()
        assert model.last is None
        assert model.last_label is None
        assert model.last_branch_level is None
        model.append("intro", 0)
        model.append("side", 1)
        assert model.last_label == "side"
        assert model.last_branch_level == 1
        assert model.labels() == ["intro", "side"]
        assert len(model) == 2

    def test_from_records_sorts_by_index(self):
        records = [
            {"id": "b", "label": "second", "branch_level": 1, "index": 1},
            {"id": "a", "label": "first", "branch_level": 0, "index": 0},
        ]
        model = DiscourseGraphModel.from_records(records)
        assert [n.id for n in model.nodes] == ["a", "b"]
        assert [n.index for n in model.nodes] == [0, 1]
        assert model.last_branch_level == 1


class TestLayout:
    def test_positions(self):
        model = DiscourseGraphModel()
        model.append("a", 0)
        model.append("b", 1)
        model.append("c", 0)
        assert [(p.x, p.y) for p in model.project()] == [(80, 60), (260, 150), (80, 240)]

    def test_same_lane_is_one_vertical_segment(self):
        model = DiscourseGraphModel()
        model.append("a", 0)
        model.append("b", 0)
        assert model.connectors() == [Segment(200, 84, 200, 174)]
        assert model.connectors()[0].is_vertical

    def test_lane_change_is_an_elbow(self):
        model = DiscourseGraphModel()
        model.append("a", 0)
        model.append("b", 1)
        down, across = model.connectors()
        assert down == Segment(200, 84, 200, 174)
        assert across == Segment(200, 174, 380, 174)
        assert down.is_vertical and across.is_horizontal

    def test_no_connectors_for_single_node(self):
        model = DiscourseGraphModel()
        model.append("a", 0)
        assert model.connectors() == []

    def test_canvas_size(self):
        model = DiscourseGraphModel()
        assert model.canvas_size() == (800, 500)
        for i in range(10):
            model.append(str(i), 0)
        assert model.canvas_size() == (800, 60 + 10 * 90 + 120)

    def test_custom_layout(self):
        layout = LayoutConfig(origin_x=0, origin_y=0, lane_pitch=10, row_pitch=20)
        model = DiscourseGraphModel(layout)
        model.append("a", 0)
        model.append("b", 2)
        assert model.position(model.nodes[1]) == (20, 20)
