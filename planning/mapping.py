"""
Catalog mapping: link budget partidas and conceptos to catalog entries.

Automatic matching runs an ordered chain of matchers over the candidate
catalog nodes; the first matcher that finds something wins:

    ExactCodeMatcher   case-insensitive code equality
    FuzzyNameMatcher   normalized names where either contains the other

"No match" is a normal outcome (``match_type = "none"`` with a reason),
never an exception.  Mapping records are stored one per partida; writing a
mapping for a partida that already has one replaces it.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from planning import catalog
from planning.budgets import (
    get_budget,
    get_partida,
    list_conceptos,
    list_partidas,
    require_editable,
)
from planning.errors import NotFoundError, ValidationError
from planning.models import CatalogNode, MappingRecord
from planning.reports import BatchReport
from utils.config import MATCH_TYPES
from utils.strings import normalize_code, normalize_for_comparison

logger = logging.getLogger("budget_control.mapping")


# ── Matching ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Candidate:
    """A catalog node offered to the matchers, with every code it answers to."""

    node: CatalogNode
    codes: tuple[str, ...]

    @classmethod
    def of(cls, node: CatalogNode, *extra_codes: str) -> "Candidate":
        codes = tuple(dict.fromkeys(normalize_code(c) for c in (node.code, *extra_codes) if c))
        return cls(node=node, codes=codes)


@dataclass
class MatchResult:
    mapped: bool
    match_type: str
    node_id: int | None = None
    code: str | None = None
    name: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ExactCodeMatcher:
    match_type = "exact_code"

    def match(self, code: str | None, name: str | None,
              candidates: Sequence[Candidate]) -> Candidate | None:
        wanted = normalize_code(code)
        if not wanted:
            return None
        for candidate in candidates:
            if wanted in candidate.codes:
                return candidate
        return None


class FuzzyNameMatcher:
    """Bidirectional substring match on normalized names.

    A candidate whose normalized name equals the input wins over one that
    merely contains it (or is contained by it).
    """

    match_type = "fuzzy_name"

    def match(self, code: str | None, name: str | None,
              candidates: Sequence[Candidate]) -> Candidate | None:
        wanted = normalize_for_comparison(name)
        if not wanted:
            return None
        partial = None
        for candidate in candidates:
            other = normalize_for_comparison(candidate.node.name)
            if not other:
                continue
            if other == wanted:
                return candidate
            if partial is None and (wanted in other or other in wanted):
                partial = candidate
        return partial


DEFAULT_MATCHERS = (ExactCodeMatcher(), FuzzyNameMatcher())


def run_matchers(code: str | None, name: str | None,
                 candidate_groups: Iterable[Sequence[Candidate]],
                 matchers=DEFAULT_MATCHERS, what: str = "catalog entry") -> MatchResult:
    """Try each matcher over each candidate group, in order.

    Groups express preference: every matcher scans the first group before
    the second, so a code hit anywhere still beats a name hit.
    """
    groups = [list(g) for g in candidate_groups]
    if not any(groups):
        return MatchResult(False, "none", reason=f"no active {what} candidates")
    for matcher in matchers:
        for group in groups:
            hit = matcher.match(code, name, group)
            if hit is not None:
                return MatchResult(True, matcher.match_type, hit.node.id,
                                   hit.node.code, hit.node.name)
    label = " / ".join(str(v) for v in (code, name) if v) or "(blank)"
    return MatchResult(False, "none",
                       reason=f"no {what} matches code or name {label!r}")


def _major_group_candidates(conn: sqlite3.Connection,
                            department: str) -> list[Candidate]:
    return [Candidate.of(n) for n in catalog.list_major_groups(conn, department)]


def _sub_item_candidates(conn: sqlite3.Connection,
                         major_group_id: int | None) -> tuple[list[Candidate], list[Candidate]]:
    """Sub-items under *major_group_id* first, then every other active sub-item.

    Sub-items also answer to their qualified ``line.sub`` code.
    """
    line_items = {n.id: n for n in catalog.list_line_items(conn)}
    preferred: list[Candidate] = []
    rest: list[Candidate] = []
    for node in catalog.list_sub_items(conn):
        parent = line_items.get(node.parent_id)
        qualified = f"{parent.code}.{node.code}" if parent else ""
        candidate = Candidate.of(node, qualified)
        if major_group_id is not None and parent is not None \
                and parent.parent_id == major_group_id:
            preferred.append(candidate)
        else:
            rest.append(candidate)
    return preferred, rest


def map_partida_to_major_group(conn: sqlite3.Connection, code: str | None,
                               name: str | None, department: str) -> MatchResult:
    """Match a partida to a major group of *department*."""
    if catalog.resolve_department(conn, department) is None:
        return MatchResult(False, "none", reason=f"unknown department {department!r}")
    return run_matchers(code, name, [_major_group_candidates(conn, department)],
                        what="major group")


def map_concepto_to_sub_item(conn: sqlite3.Connection, code: str | None,
                             description: str | None,
                             major_group_id: int | None = None) -> MatchResult:
    """Match a concepto to a sub-item, preferring those under *major_group_id*."""
    preferred, rest = _sub_item_candidates(conn, major_group_id)
    return run_matchers(code, description, [preferred, rest], what="sub-item")


# ── Template mapping ──────────────────────────────────────────────────────────


@dataclass
class ItemMatch:
    key: Any
    level: str
    code: str | None
    label: str | None
    result: MatchResult
    parent_key: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "level": self.level, "code": self.code,
                "label": self.label, "parent_key": self.parent_key,
                **self.result.to_dict()}


@dataclass
class TemplateMappingResult(BatchReport):
    operation: str = "template_mapping"
    partidas: list[ItemMatch] = field(default_factory=list)
    conceptos: list[ItemMatch] = field(default_factory=list)

    @staticmethod
    def _count(items: list[ItemMatch]) -> tuple[int, int]:
        mapped = sum(1 for i in items if i.result.mapped)
        return mapped, len(items) - mapped

    @property
    def mapped_partidas(self) -> int:
        return self._count(self.partidas)[0]

    @property
    def unmapped_partidas(self) -> int:
        return self._count(self.partidas)[1]

    @property
    def mapped_conceptos(self) -> int:
        return self._count(self.conceptos)[0]

    @property
    def unmapped_conceptos(self) -> int:
        return self._count(self.conceptos)[1]

    @property
    def unmapped(self) -> list[str]:
        return [
            f"{i.level} {i.code or ''} {i.label or ''}".strip()
            for i in self.partidas + self.conceptos if not i.result.mapped
        ]

    def overall_status(self) -> str:
        total = len(self.partidas) + len(self.conceptos)
        mapped = self.mapped_partidas + self.mapped_conceptos
        if total == 0:
            return "empty"
        if mapped == total:
            return "complete"
        if mapped == 0:
            return "none"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({
            "status": self.overall_status(),
            "partidas": [p.to_dict() for p in self.partidas],
            "conceptos": [c.to_dict() for c in self.conceptos],
            "mapped_partidas": self.mapped_partidas,
            "unmapped_partidas": self.unmapped_partidas,
            "mapped_conceptos": self.mapped_conceptos,
            "unmapped_conceptos": self.unmapped_conceptos,
            "unmapped": self.unmapped,
        })
        return d


def map_template_to_catalog(conn: sqlite3.Connection,
                            partidas: Sequence[dict[str, Any]],
                            conceptos: Sequence[dict[str, Any]],
                            department: str) -> TemplateMappingResult:
    """Match a whole template against the catalog.

    Args:
        partidas: dicts with ``key``, ``code``, ``name``
        conceptos: dicts with ``key``, ``partida_key``, ``code``, ``description``
        department: department code or name used for major groups

    Every item gets a result; nothing here raises for an unmatched item.
    """
    result = TemplateMappingResult()
    result.start()
    result.items_requested = len(partidas) + len(conceptos)

    known_department = catalog.resolve_department(conn, department) is not None
    major_groups = _major_group_candidates(conn, department)
    resolved: dict[Any, int | None] = {}
    for idx, p in enumerate(partidas):
        key = p.get("key", idx)
        if not known_department:
            match = MatchResult(False, "none", reason=f"unknown department {department!r}")
        else:
            match = run_matchers(p.get("code"), p.get("name"), [major_groups],
                                 what="major group")
        resolved[key] = match.node_id
        result.partidas.append(ItemMatch(key, "partida", p.get("code"), p.get("name"), match))
        if not match.mapped:
            result.add_issue("unmatched", match.reason, str(key))

    candidate_cache: dict[int | None, tuple[list[Candidate], list[Candidate]]] = {}
    for idx, c in enumerate(conceptos):
        key = c.get("key", idx)
        major_group_id = resolved.get(c.get("partida_key"))
        if major_group_id not in candidate_cache:
            candidate_cache[major_group_id] = _sub_item_candidates(conn, major_group_id)
        match = run_matchers(c.get("code"), c.get("description"),
                             candidate_cache[major_group_id], what="sub-item")
        result.conceptos.append(ItemMatch(key, "concepto", c.get("code"),
                                          c.get("description"), match,
                                          parent_key=c.get("partida_key")))
        if not match.mapped:
            result.add_issue("unmatched", match.reason, str(key))

    result.finish()
    logger.info(
        "Template mapping (%s): partidas %d/%d, conceptos %d/%d mapped",
        department, result.mapped_partidas, len(result.partidas),
        result.mapped_conceptos, len(result.conceptos),
    )
    return result


# ── Mapping records ───────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def store_mapping(conn: sqlite3.Connection, budget_id: int, partida_id: int,
                  department: str, major_group_id: int | None,
                  line_item_id: int | None, sub_item_id: int | None,
                  concepto_id: int | None, match_type: str,
                  notes: str | None) -> bool:
    """Insert or replace the partida's mapping.  Returns True when inserted."""
    existed = conn.execute(
        "SELECT 1 FROM catalog_mappings WHERE budget_id = ? AND partida_id = ?",
        (budget_id, partida_id),
    ).fetchone() is not None
    now = _now()
    conn.execute(
        "INSERT INTO catalog_mappings (budget_id, partida_id, concepto_id, department, "
        "major_group_id, line_item_id, sub_item_id, match_type, notes, created_at, "
        "updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(budget_id, partida_id) DO UPDATE SET "
        "concepto_id = excluded.concepto_id, department = excluded.department, "
        "major_group_id = excluded.major_group_id, line_item_id = excluded.line_item_id, "
        "sub_item_id = excluded.sub_item_id, match_type = excluded.match_type, "
        "notes = excluded.notes, updated_at = excluded.updated_at",
        (budget_id, partida_id, concepto_id, department, major_group_id,
         line_item_id, sub_item_id, match_type, notes, now, now),
    )
    return not existed


def upsert_mapping(
    conn: sqlite3.Connection,
    budget_id: int,
    partida_id: int,
    department: str,
    major_group_id: int | None,
    line_item_id: int | None = None,
    sub_item_id: int | None = None,
    concepto_id: int | None = None,
    match_type: str = "manual",
    notes: str | None = None,
) -> MappingRecord:
    """Create or replace the mapping of a partida.

    Raises:
        ValidationError: Unknown match type, or catalog ids at the wrong level.
        NotFoundError: Budget, partida, concepto or catalog node missing.
        PreconditionFailed: The budget is closed.
    """
    if match_type not in MATCH_TYPES:
        raise ValidationError("match_type", f"unknown match type {match_type!r}")
    if not department or not department.strip():
        raise ValidationError("department", "must not be empty")
    budget = get_budget(conn, budget_id)
    partida = get_partida(conn, partida_id)
    if partida.budget_id != budget_id:
        raise ValidationError("partida_id",
                              f"partida {partida_id} does not belong to budget {budget_id}")
    for field_name, node_id, level in (("major_group_id", major_group_id, "major_group"),
                                       ("line_item_id", line_item_id, "line_item"),
                                       ("sub_item_id", sub_item_id, "sub_item")):
        if node_id is not None:
            try:
                catalog.get_node(conn, node_id, level)
            except NotFoundError as exc:
                raise ValidationError(field_name, exc.reason) from exc
    if concepto_id is not None:
        concepto = conn.execute(
            "SELECT partida_id FROM conceptos WHERE id = ? AND deleted_at IS NULL",
            (concepto_id,),
        ).fetchone()
        if concepto is None:
            raise NotFoundError("concepto", concepto_id)
        if concepto["partida_id"] != partida_id:
            raise ValidationError("concepto_id",
                                  f"concepto {concepto_id} is not under partida {partida_id}")
    require_editable(budget)
    store_mapping(conn, budget_id, partida_id, department.strip(), major_group_id,
                  line_item_id, sub_item_id, concepto_id, match_type, notes)
    conn.commit()
    return get_mapping(conn, budget_id, partida_id)


def get_mapping(conn: sqlite3.Connection, budget_id: int,
                partida_id: int) -> MappingRecord:
    row = conn.execute(
        "SELECT * FROM catalog_mappings WHERE budget_id = ? AND partida_id = ?",
        (budget_id, partida_id),
    ).fetchone()
    if row is None:
        raise NotFoundError("mapping for partida", partida_id)
    return MappingRecord.from_row(row)


def list_mappings(conn: sqlite3.Connection, budget_id: int) -> list[MappingRecord]:
    """Mappings of a budget's live partidas, in partida order."""
    get_budget(conn, budget_id)
    rows = conn.execute(
        "SELECT m.* FROM catalog_mappings m JOIN partidas p ON p.id = m.partida_id "
        "WHERE m.budget_id = ? AND p.deleted_at IS NULL "
        "ORDER BY p.order_index, p.id",
        (budget_id,),
    ).fetchall()
    return [MappingRecord.from_row(r) for r in rows]


def delete_mapping(conn: sqlite3.Connection, budget_id: int, partida_id: int) -> None:
    budget = get_budget(conn, budget_id)
    get_mapping(conn, budget_id, partida_id)
    require_editable(budget)
    conn.execute("DELETE FROM catalog_mappings WHERE budget_id = ? AND partida_id = ?",
                 (budget_id, partida_id))
    conn.commit()


def apply_template_mapping(conn: sqlite3.Connection, budget_id: int,
                           department: str) -> TemplateMappingResult:
    """Auto-map a budget's own partidas and conceptos.

    Matched partidas get a mapping record with the match type; matched
    conceptos get their ``sub_item_id``/``line_item_id`` set.  Partidas
    whose name starts with a code ("01 - Cimentación") offer that code to
    the exact matcher.
    """
    budget = get_budget(conn, budget_id)
    require_editable(budget)
    partida_rows = []
    concepto_rows = []
    for partida in list_partidas(conn, budget_id):
        code, _, rest = partida.name.partition(" - ")
        partida_rows.append({"key": partida.id,
                             "code": code.strip() if rest else None,
                             "name": rest.strip() or partida.name})
        for concepto in list_conceptos(conn, partida.id):
            concepto_rows.append({"key": concepto.id, "partida_key": partida.id,
                                  "code": concepto.code,
                                  "description": concepto.description})

    result = map_template_to_catalog(conn, partida_rows, concepto_rows, department)

    first_concepto: dict[int, ItemMatch] = {}
    for item in result.conceptos:
        if not item.result.mapped:
            continue
        sub_item = catalog.get_node(conn, item.result.node_id)
        try:
            conn.execute(
                "UPDATE conceptos SET sub_item_id = ?, line_item_id = ? WHERE id = ?",
                (sub_item.id, sub_item.parent_id, item.key),
            )
        except sqlite3.Error as exc:
            logger.warning("Concepto %s: could not store sub-item: %s", item.key, exc)
            result.add_issue("write_failed", str(exc), str(item.key))
            continue
        first_concepto.setdefault(item.parent_key, item)

    for item in result.partidas:
        if not item.result.mapped:
            continue
        linked = first_concepto.get(item.key)
        sub_item = catalog.get_node(conn, linked.result.node_id) if linked else None
        try:
            store_mapping(conn, budget_id, item.key, department, item.result.node_id,
                          sub_item.parent_id if sub_item else None,
                          sub_item.id if sub_item else None,
                          linked.key if linked else None,
                          item.result.match_type, f"Auto-mapped: {item.result.name}")
        except sqlite3.Error as exc:
            logger.warning("Partida %s: could not store mapping: %s", item.key, exc)
            result.add_issue("write_failed", str(exc), str(item.key))
    conn.commit()
    result.finish()
    return result
