# =============================================================================
# audit_core/scoring/senso_aggregator.py
# Hierarchical Senso (5S) Score Aggregation
# =============================================================================
"""
SensoAggregator - Conformity scores per 5S category over an environment tree.

Each node's tally is the answered items of audits located at that node plus
the tallies of all its descendants. Scores are percentages of conforming
answers; a category with no answered items scores None, never zero.

Usage:
    aggregator = SensoAggregator()
    rows = aggregator.aggregate(environments, audits, items)
    df = rows_to_dataframe(rows)
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import logging

import pandas as pd

from audit_core.errors import DataValidationError
from audit_core.logging import LogContext
from audit_core.models import SENSO_KEYS, SENSO_NAMES, EnvironmentNode, normalize_senso_tags

logger = logging.getLogger(__name__)

# Bucket for answered items without any senso tag
UNTAGGED = "untagged"


def _zero_counts() -> Dict[str, int]:
    return {key: 0 for key in SENSO_KEYS + (UNTAGGED,)}


def _percentage(conforming: int, total: int) -> Optional[float]:
    if total == 0:
        return None
    return conforming / total * 100


@dataclass
class SensoTally:
    """Conforming and total answered counts per senso category."""
    conforming: Dict[str, int] = field(default_factory=_zero_counts)
    total: Dict[str, int] = field(default_factory=_zero_counts)

    def __add__(self, other: SensoTally) -> SensoTally:
        return SensoTally(
            conforming={k: self.conforming[k] + other.conforming[k] for k in self.conforming},
            total={k: self.total[k] + other.total[k] for k in self.total},
        )

    def add(self, category: str, conforming: int, total: int) -> None:
        self.conforming[category] += int(conforming)
        self.total[category] += int(total)

    def score(self, category: str) -> Optional[float]:
        return _percentage(self.conforming[category], self.total[category])

    def overall(self, include_untagged: bool = False) -> Optional[float]:
        """Count-weighted overall score across categories."""
        keys = SENSO_KEYS + ((UNTAGGED,) if include_untagged else ())
        return _percentage(
            sum(self.conforming[k] for k in keys),
            sum(self.total[k] for k in keys),
        )


@dataclass
class SensoScoreRow:
    """One rendered row of the hierarchical score report."""
    node_id: str
    name: str
    level: int
    parent_id: Optional[str]
    scores: Dict[str, Optional[float]]
    overall_score: Optional[float]
    conforming: Dict[str, int]
    total: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "node_id": self.node_id,
            "name": self.name,
            "level": self.level,
            "parent_id": self.parent_id,
        }
        for key in SENSO_KEYS:
            row[f"score_{key}"] = self.scores[key]
            row[f"conforming_{key}"] = self.conforming[key]
            row[f"total_{key}"] = self.total[key]
        row["overall_score"] = self.overall_score
        return row


@dataclass
class EnvironmentTree:
    """Environment nodes indexed by id, with levels assigned."""
    nodes: Dict[str, EnvironmentNode]
    children: Dict[str, List[str]]
    roots: List[str]
    order: List[str]  # breadth-first, parents before children


def _as_dicts(records: Iterable[Any]) -> List[Dict[str, Any]]:
    if isinstance(records, pd.DataFrame):
        return records.to_dict(orient="records")
    return [r.to_dict() if hasattr(r, "to_dict") else dict(r) for r in records]


def build_tree(environments: Iterable[Any]) -> EnvironmentTree:
    """
    Index environment nodes and compute each node's level.

    Nodes whose parent is not in the set are treated as roots (level 0).

    Raises:
        DataValidationError: Duplicate ids or nodes unreachable from any root (cycles)
    """
    nodes: Dict[str, EnvironmentNode] = {}
    for data in _as_dicts(environments):
        node = EnvironmentNode.from_dict(data)
        if node.id in nodes:
            raise DataValidationError(f"Duplicate environment id: {node.id}", field="id")
        nodes[node.id] = node

    children: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
    roots: List[str] = []
    for node in nodes.values():
        if node.parent_id is None:
            roots.append(node.id)
        elif node.parent_id not in nodes:
            logger.warning(f"Environment {node.id} references missing parent {node.parent_id}; treating as root")
            roots.append(node.id)
        else:
            children[node.parent_id].append(node.id)

    def by_name(node_id: str):
        return (nodes[node_id].name or "", node_id)

    roots.sort(key=by_name)
    for child_ids in children.values():
        child_ids.sort(key=by_name)

    order: List[str] = []
    queue = deque((root, 0) for root in roots)
    while queue:
        node_id, level = queue.popleft()
        nodes[node_id].level = level
        order.append(node_id)
        queue.extend((child, level + 1) for child in children[node_id])

    if len(order) != len(nodes):
        unreachable = sorted(set(nodes) - set(order))
        raise DataValidationError(
            f"Environment tree contains a cycle through {unreachable}",
            field="parent_id",
            expected="acyclic parent references",
        )
    return EnvironmentTree(nodes=nodes, children=children, roots=roots, order=order)


class SensoAggregator:
    """
    Computes per-node, per-senso conformity for a company's environment tree.

    Args:
        render_levels: Levels emitted as rows (root is level 0)
        include_root: Also emit level-0 rows
        untagged_counts_in_overall: Count untagged items in the overall score
        criteria_senso: criterion_id -> senso tags, used when an item carries none
    """

    def __init__(
        self,
        render_levels: Sequence[int] = (1, 2, 3),
        include_root: bool = False,
        untagged_counts_in_overall: bool = False,
        criteria_senso: Optional[Mapping[str, Any]] = None,
    ):
        self.render_levels = set(render_levels)
        self.include_root = include_root
        self.untagged_counts_in_overall = untagged_counts_in_overall
        self.criteria_senso = dict(criteria_senso or {})

    # =========================================================================
    # TALLIES
    # =========================================================================

    def _item_tags(self, item: Dict[str, Any]) -> List[str]:
        tags = item.get("senso_tags")
        if tags is None:
            tags = item.get("senso")
        if not tags:
            tags = self.criteria_senso.get(item.get("criterion_id"))
        tags = normalize_senso_tags(tags)
        return tags or [UNTAGGED]

    def own_tallies(self, audits: Iterable[Any], items: Iterable[Any]) -> Dict[str, SensoTally]:
        """
        Tallies of answered items per audit location, before aggregation.

        Returns:
            location_id -> SensoTally
        """
        audit_rows = _as_dicts(audits)
        answered = [
            {
                "audit_id": item.get("audit_id"),
                "tag": self._item_tags(item),
                "conforming": int(bool(item["answer"])),
            }
            for item in _as_dicts(items)
            if item.get("answer") is not None
        ]
        if not audit_rows or not answered:
            return {}

        audits_df = pd.DataFrame(audit_rows)[["id", "location_id"]].rename(columns={"id": "audit_id"})
        items_df = pd.DataFrame(answered)

        merged = items_df.merge(audits_df, on="audit_id", how="inner")
        if merged.empty:
            return {}

        grouped = (
            merged.explode("tag")
            .groupby(["location_id", "tag"])["conforming"]
            .agg(conforming="sum", answered="count")
            .reset_index()
        )

        tallies: Dict[str, SensoTally] = {}
        for row in grouped.itertuples(index=False):
            tally = tallies.setdefault(row.location_id, SensoTally())
            tally.add(row.tag, row.conforming, row.answered)
        return tallies

    def aggregate_tallies(
        self,
        tree: EnvironmentTree,
        own: Mapping[str, SensoTally],
    ) -> Dict[str, SensoTally]:
        """Aggregate each node's tally with its descendants, leaves first."""
        unplaced = set(own) - set(tree.nodes)
        if unplaced:
            logger.debug(f"Ignoring audits at locations outside the tree: {sorted(unplaced)}")

        aggregated: Dict[str, SensoTally] = {}
        for node_id in reversed(tree.order):
            tally = own.get(node_id, SensoTally())
            for child_id in tree.children[node_id]:
                tally = tally + aggregated[child_id]
            aggregated[node_id] = tally
        return aggregated

    # =========================================================================
    # ROWS
    # =========================================================================

    def _should_render(self, level: int) -> bool:
        if level == 0:
            return self.include_root
        return level in self.render_levels

    def _row(self, node: EnvironmentNode, tally: SensoTally) -> SensoScoreRow:
        return SensoScoreRow(
            node_id=node.id,
            name=node.name,
            level=node.level,
            parent_id=node.parent_id,
            scores={key: tally.score(key) for key in SENSO_KEYS},
            overall_score=tally.overall(self.untagged_counts_in_overall),
            conforming={key: tally.conforming[key] for key in SENSO_KEYS},
            total={key: tally.total[key] for key in SENSO_KEYS},
        )

    def aggregate(
        self,
        environments: Iterable[Any],
        audits: Iterable[Any],
        items: Iterable[Any],
    ) -> List[SensoScoreRow]:
        """
        Compute the score rows for a company.

        Args:
            environments: All environment nodes of the company
            audits: Audit records (only id and location_id are used)
            items: Audit item records

        Returns:
            Rows in depth-first order, siblings sorted by name
        """
        with LogContext(logger, "Aggregating senso scores"):
            tree = build_tree(environments)
            aggregated = self.aggregate_tallies(tree, self.own_tallies(audits, items))

            rows: List[SensoScoreRow] = []
            stack = list(reversed(tree.roots))
            while stack:
                node_id = stack.pop()
                node = tree.nodes[node_id]
                if self._should_render(node.level):
                    rows.append(self._row(node, aggregated[node_id]))
                stack.extend(reversed(tree.children[node_id]))

        logger.debug(f"Aggregated {len(tree.nodes)} nodes into {len(rows)} rows")
        return rows


def rows_to_dataframe(rows: Iterable[SensoScoreRow]) -> pd.DataFrame:
    """Flatten score rows for export collaborators."""
    return pd.DataFrame([row.to_dict() for row in rows])


def audit_senso_scores(items: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    Senso breakdown of a single audit (or any item set).

    Returns:
        One entry per category with total, conforming and score (None when
        the category has no answered items)
    """
    tally = SensoTally()
    for item in _as_dicts(items):
        if item.get("answer") is None:
            continue
        tags = normalize_senso_tags(item.get("senso_tags", item.get("senso")))
        for tag in tags:
            tally.add(tag, 1 if item["answer"] else 0, 1)

    return [
        {
            "senso": key,
            "name": SENSO_NAMES[key],
            "total": tally.total[key],
            "conforming": tally.conforming[key],
            "score": tally.score(key),
        }
        for key in SENSO_KEYS
    ]
