# =============================================================================
# tests/unit/test_senso_aggregator.py
# Unit Tests for Hierarchical Senso Score Aggregation
# =============================================================================

import pandas as pd
import pytest

from audit_core.errors import DataValidationError
from audit_core.scoring.senso_aggregator import (
    UNTAGGED,
    SensoAggregator,
    SensoTally,
    audit_senso_scores,
    build_tree,
    rows_to_dataframe,
)


def make_items(audit_id, tag, conforming, total, prefix=None):
    """`total` answered items with `conforming` yes answers"""
    prefix = prefix or f"{audit_id}-{tag}"
    return [
        {
            "id": f"{prefix}-{n}",
            "audit_id": audit_id,
            "criterion_id": "crit",
            "answer": n < conforming,
            "senso_tags": [tag] if tag else [],
        }
        for n in range(total)
    ]


@pytest.fixture
def tree_nodes():
    return [
        {"id": "root", "name": "ACME", "parent_id": None},
        {"id": "area", "name": "Assembly", "parent_id": "root"},
        {"id": "line-b", "name": "Line B", "parent_id": "area"},
        {"id": "line-a", "name": "Line A", "parent_id": "area"},
        {"id": "store", "name": "Warehouse", "parent_id": "root"},
    ]


def row_for(rows, node_id):
    return next(row for row in rows if row.node_id == node_id)


class TestBuildTree:
    """Test tree indexing and level assignment"""

    def test_levels_from_root(self, tree_nodes):
        tree = build_tree(tree_nodes)
        levels = {node_id: node.level for node_id, node in tree.nodes.items()}
        assert levels == {"root": 0, "area": 1, "store": 1, "line-a": 2, "line-b": 2}

    def test_children_sorted_by_name(self, tree_nodes):
        tree = build_tree(tree_nodes)
        assert tree.children["area"] == ["line-a", "line-b"]

    def test_orphan_becomes_root(self):
        tree = build_tree([{"id": "x", "name": "X", "parent_id": "deleted"}])
        assert tree.roots == ["x"]
        assert tree.nodes["x"].level == 0

    def test_cycle_rejected(self):
        nodes = [
            {"id": "root", "name": "R", "parent_id": None},
            {"id": "a", "name": "A", "parent_id": "b"},
            {"id": "b", "name": "B", "parent_id": "a"},
        ]
        with pytest.raises(DataValidationError):
            build_tree(nodes)

    def test_duplicate_id_rejected(self):
        with pytest.raises(DataValidationError):
            build_tree([{"id": "a", "name": "A"}, {"id": "a", "name": "A again"}])

    def test_accepts_dataframe(self, tree_nodes):
        tree = build_tree(pd.DataFrame(tree_nodes))
        assert len(tree.order) == 5


class TestSensoTally:
    """Test tally arithmetic"""

    def test_addition_is_componentwise(self):
        left, right = SensoTally(), SensoTally()
        left.add("1S", 3, 4)
        right.add("1S", 1, 2)
        right.add("2S", 2, 2)

        combined = left + right

        assert combined.conforming["1S"] == 4
        assert combined.total["1S"] == 6
        assert combined.total["2S"] == 2

    def test_empty_category_scores_none(self):
        tally = SensoTally()
        assert tally.score("3S") is None
        assert tally.overall() is None

    def test_untagged_only_counts_when_asked(self):
        tally = SensoTally()
        tally.add("1S", 1, 1)
        tally.add(UNTAGGED, 0, 1)

        assert tally.overall() == 100
        assert tally.overall(include_untagged=True) == 50


class TestAggregate:
    """Test per-node aggregation"""

    def test_single_node_scores(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        items = make_items("a1", "1S", 3, 4) + make_items("a1", "2S", 2, 2)

        rows = SensoAggregator().aggregate(tree_nodes, audits, items)
        line_a = row_for(rows, "line-a")

        assert line_a.scores["1S"] == 75
        assert line_a.scores["2S"] == 100
        assert line_a.scores["3S"] is None
        assert line_a.overall_score == pytest.approx(83.333, abs=0.01)

    def test_parent_weighted_by_counts(self, tree_nodes):
        audits = [
            {"id": "a1", "location_id": "line-a"},
            {"id": "a2", "location_id": "line-b"},
        ]
        items = make_items("a1", "1S", 10, 10) + make_items("a2", "1S", 8, 10)

        rows = SensoAggregator(include_root=True).aggregate(tree_nodes, audits, items)

        assert row_for(rows, "area").scores["1S"] == 90
        assert row_for(rows, "root").scores["1S"] == 90
        assert row_for(rows, "root").total["1S"] == 20

    def test_node_without_audits_scores_none(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        rows = SensoAggregator().aggregate(tree_nodes, audits, make_items("a1", "1S", 1, 1))

        store = row_for(rows, "store")
        assert all(score is None for score in store.scores.values())
        assert store.overall_score is None

    def test_unanswered_items_ignored(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        items = make_items("a1", "1S", 1, 1)
        items.append({"id": "open", "audit_id": "a1", "answer": None, "senso_tags": ["1S"]})

        rows = SensoAggregator().aggregate(tree_nodes, audits, items)
        assert row_for(rows, "line-a").total["1S"] == 1

    def test_multi_tag_item_counts_in_each_category(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        items = [{"id": "i1", "audit_id": "a1", "answer": True, "senso_tags": ["1S", "3S"]}]

        line_a = row_for(SensoAggregator().aggregate(tree_nodes, audits, items), "line-a")
        assert line_a.total["1S"] == 1
        assert line_a.total["3S"] == 1

    def test_untagged_excluded_from_overall_by_default(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        items = make_items("a1", "1S", 1, 1) + make_items("a1", None, 0, 1)

        default = row_for(SensoAggregator().aggregate(tree_nodes, audits, items), "line-a")
        counted = row_for(
            SensoAggregator(untagged_counts_in_overall=True).aggregate(tree_nodes, audits, items),
            "line-a",
        )

        assert default.overall_score == 100
        assert counted.overall_score == 50

    def test_tags_from_criteria_when_item_has_none(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        items = [{"id": "i1", "audit_id": "a1", "criterion_id": "crit-9", "answer": True}]

        aggregator = SensoAggregator(criteria_senso={"crit-9": ["4S"]})
        line_a = row_for(aggregator.aggregate(tree_nodes, audits, items), "line-a")
        assert line_a.scores["4S"] == 100

    def test_rows_in_depth_first_order_without_root(self, tree_nodes):
        rows = SensoAggregator().aggregate(tree_nodes, [], [])
        assert [row.node_id for row in rows] == ["area", "line-a", "line-b", "store"]
        assert [row.level for row in rows] == [1, 2, 2, 1]

    def test_render_levels_filter(self, tree_nodes):
        rows = SensoAggregator(render_levels=(1,)).aggregate(tree_nodes, [], [])
        assert [row.node_id for row in rows] == ["area", "store"]

    def test_audits_outside_tree_ignored(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "elsewhere"}]
        rows = SensoAggregator(include_root=True).aggregate(tree_nodes, audits, make_items("a1", "1S", 1, 1))
        assert row_for(rows, "root").total["1S"] == 0


class TestOutputs:
    """Test exports"""

    def test_rows_to_dataframe_columns(self, tree_nodes):
        audits = [{"id": "a1", "location_id": "line-a"}]
        rows = SensoAggregator().aggregate(tree_nodes, audits, make_items("a1", "1S", 1, 2))

        df = rows_to_dataframe(rows)

        assert list(df["node_id"]) == ["area", "line-a", "line-b", "store"]
        for column in ("score_1S", "conforming_1S", "total_1S", "overall_score"):
            assert column in df.columns
        assert df.loc[df["node_id"] == "line-a", "score_1S"].iloc[0] == 50

    def test_audit_senso_scores(self):
        items = make_items("a1", "1S", 3, 4) + make_items("a1", "5S", 0, 1)

        breakdown = {entry["senso"]: entry for entry in audit_senso_scores(items)}

        assert breakdown["1S"]["score"] == 75
        assert breakdown["5S"]["score"] == 0
        assert breakdown["2S"]["score"] is None
        assert breakdown["1S"]["name"] == "Seiri (Sort)"
