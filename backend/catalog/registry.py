"""
Canonical Registry — immutable table of canonical test definitions, indexed
by code and by normalized alias, plus the offline builder that derives it
from the raw price catalogs of several laboratories.

Rules:
  - Built once, frozen for the lifetime of the serving process
  - Every definition is reachable by its own code and by all of its aliases
  - On an index collision the first-seen definition wins (collision logged)
  - Matching is strictly cross-lab: within one catalog two codes are two tests
"""
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .config import RegistryBuildConfig
from .normalize import normalize_for_lookup, normalize_medical
from .report import BuildStats, CoverageReport, MatchCandidate, MatchConflict, UnresolvedRow
from .rules import SPECIMEN_LABELS, classify_category, extract_specimen, pair_score, synonym_groups

log = logging.getLogger(__name__)


class RegistryError(ValueError):
    """Structurally invalid registry input (offline tooling only)."""


class TestCategory(str, Enum):
    PROFILE = "Profile"
    INDIVIDUAL = "Individual"


@dataclass(frozen=True)
class RawCatalogRow:
    code: str
    raw_name: str
    price: Optional[float] = None
    category: Optional[str] = None
    turnaround: Optional[str] = None
    tube_type: Optional[str] = None
    test_type: Optional[str] = None  # "individual" | "profile"

    @property
    def is_profile(self) -> bool:
        if (self.test_type or "").strip().lower() == "profile":
            return True
        return normalize_for_lookup(self.raw_name).startswith("profil")


@dataclass(frozen=True)
class CanonicalTestDefinition:
    canonical_id: int
    canonical_name: str
    code: str
    category: TestCategory
    aliases: FrozenSet[str] = frozenset()
    medical_category: str = "General"
    specimen: str = "DEFAULT"

    def to_dict(self) -> Dict:
        return {
            "canonical_id": self.canonical_id,
            "canonical_name": self.canonical_name,
            "code": self.code,
            "category": self.category.value,
            "aliases": sorted(self.aliases),
            "medical_category": self.medical_category,
            "specimen": self.specimen,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "CanonicalTestDefinition":
        code = str(data.get("code") or "").strip()
        name = str(data.get("canonical_name") or "").strip()
        if not code or not name:
            raise RegistryError(f"definition without code or name: {dict(data)!r}")
        try:
            category = TestCategory(data.get("category") or TestCategory.INDIVIDUAL.value)
            canonical_id = int(data["canonical_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryError(f"invalid definition {code}: {e}") from e
        return cls(
            canonical_id=canonical_id,
            canonical_name=name,
            code=code,
            category=category,
            aliases=frozenset(normalize_for_lookup(a) for a in data.get("aliases") or () if a),
            medical_category=data.get("medical_category") or "General",
            specimen=data.get("specimen") or "DEFAULT",
        )


def code_key(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class CanonicalRegistry:
    """Read-only view over a set of definitions with code and alias indexes."""

    def __init__(self, definitions: Iterable[CanonicalTestDefinition]):
        defs = tuple(sorted(definitions, key=lambda d: d.canonical_id))
        by_code: Dict[str, CanonicalTestDefinition] = {}
        by_alias: Dict[str, CanonicalTestDefinition] = {}
        by_id: Dict[int, CanonicalTestDefinition] = {}

        for d in defs:
            by_id.setdefault(d.canonical_id, d)
            key = code_key(d.code)
            if key in by_code and by_code[key] is not d:
                log.warning("Code collision %s: keeping #%d, ignoring #%d",
                            key, by_code[key].canonical_id, d.canonical_id)
            else:
                by_code[key] = d

            for alias in sorted(d.aliases | {normalize_for_lookup(d.code), normalize_for_lookup(d.canonical_name)}):
                if not alias:
                    continue
                owner = by_alias.setdefault(alias, d)
                if owner is not d:
                    log.debug("Alias collision %r: keeping #%d, ignoring #%d",
                              alias, owner.canonical_id, d.canonical_id)

        self._definitions = defs
        self.by_id = MappingProxyType(by_id)
        self.by_code = MappingProxyType(by_code)
        self.by_alias = MappingProxyType(by_alias)

    @classmethod
    def from_definitions(cls, definitions: Iterable[CanonicalTestDefinition]) -> "CanonicalRegistry":
        return cls(definitions)

    @property
    def definitions(self) -> Tuple[CanonicalTestDefinition, ...]:
        return self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self) -> Iterator[CanonicalTestDefinition]:
        return iter(self._definitions)

    def get(self, canonical_id: int) -> Optional[CanonicalTestDefinition]:
        return self.by_id.get(canonical_id)

    def lookup(self, code: Optional[str], raw_name: Optional[str]) -> Optional[CanonicalTestDefinition]:
        """Code first, then the raw name as alias, then the code as alias."""
        key = code_key(code)
        if key and key in self.by_code:
            return self.by_code[key]
        name_key = normalize_for_lookup(raw_name or "")
        if name_key and name_key in self.by_alias:
            return self.by_alias[name_key]
        alt_key = normalize_for_lookup(code or "")
        if alt_key:
            return self.by_alias.get(alt_key)
        return None

    # ── Serialization ──

    def to_json(self) -> str:
        return json.dumps([d.to_dict() for d in self._definitions], ensure_ascii=False, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "CanonicalRegistry":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise RegistryError(f"registry is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise RegistryError("registry JSON must be a list of definitions")
        return cls(CanonicalTestDefinition.from_dict(item) for item in data)

    def dump(self, path: Union[str, Path]) -> None:
        Path(path).write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CanonicalRegistry":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


# ── Builder ──────────────────────────────────────────────────────

@dataclass
class _Offering:
    laboratory: str
    row: RawCatalogRow
    norm: str
    tokens: FrozenSet[str]
    synonyms: FrozenSet[int]


@dataclass
class _Concept:
    concept_id: int
    offerings: List[_Offering] = field(default_factory=list)

    @property
    def laboratories(self) -> set:
        return {o.laboratory for o in self.offerings}


@dataclass
class RegistryBuild:
    registry: CanonicalRegistry
    coverage: CoverageReport
    stats: BuildStats


def title_case(name: str) -> str:
    """'GLYCEMIE A JEUN' → 'Glycemie A Jeun'; short all-caps words ('ALT', 'CK') kept."""
    words = []
    for word in name.split(" "):
        if len(word) <= 3 and word == word.upper():
            words.append(word)
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return " ".join(words)


def disambiguate(definitions: Sequence[CanonicalTestDefinition]) -> Tuple[List[CanonicalTestDefinition], int]:
    """
    Make canonical names unique. Definitions are visited in canonical_id order;
    the first holder of a name keeps it, later ones get ' (CODE)' and then
    ' (CODE #n)' while still colliding. Returns (definitions, renamed_count).
    """
    taken: set = set()
    out: List[CanonicalTestDefinition] = []
    renamed = 0
    for d in sorted(definitions, key=lambda x: x.canonical_id):
        name = d.canonical_name
        if name.casefold() in taken:
            name = f"{d.canonical_name} ({d.code})"
            n = 2
            while name.casefold() in taken:
                name = f"{d.canonical_name} ({d.code} #{n})"
                n += 1
            renamed += 1
            log.debug("Renamed duplicate %r → %r", d.canonical_name, name)
        taken.add(name.casefold())
        out.append(d if name == d.canonical_name else CanonicalTestDefinition(
            canonical_id=d.canonical_id,
            canonical_name=name,
            code=d.code,
            category=d.category,
            aliases=d.aliases | {normalize_for_lookup(name)},
            medical_category=d.medical_category,
            specimen=d.specimen,
        ))
    return out, renamed


class RegistryBuilder:
    def __init__(self, config: Optional[RegistryBuildConfig] = None):
        self.config = config or RegistryBuildConfig()

    def build(self, raw_catalogs: Mapping[str, Sequence[RawCatalogRow]]) -> RegistryBuild:
        """
        Derive a registry from {laboratory_code: rows}. The first catalog seeds
        the concepts; each later catalog is matched against concepts that do
        not yet have an offering from that laboratory.
        """
        stats = BuildStats()
        concepts: List[_Concept] = []

        for lab, rows in raw_catalogs.items():
            offerings = [self._offering(lab, r) for r in self._dedupe(lab, rows)]
            if not concepts:
                for o in offerings:
                    concepts.append(_Concept(concept_id=len(concepts) + 1, offerings=[o]))
                log.info("Seeded %d concepts from %s", len(offerings), lab)
                continue
            self._match_catalog(lab, offerings, concepts, stats)

        definitions = [self._definition(c) for c in concepts]
        definitions, stats.renamed = disambiguate(definitions)
        registry = CanonicalRegistry(definitions)

        stats.definitions = len(registry)
        stats.multi_lab = sum(1 for c in concepts if len(c.laboratories) > 1)
        stats.single_lab = stats.definitions - stats.multi_lab

        coverage = self.coverage(registry, raw_catalogs)
        log.info(
            "Registry built: %d definitions (%d multi-lab), %d renamed, %d conflicts, coverage %.2f%%",
            stats.definitions, stats.multi_lab, stats.renamed, len(stats.conflicts), coverage.coverage * 100,
        )
        return RegistryBuild(registry=registry, coverage=coverage, stats=stats)

    # ── Steps ──

    def _dedupe(self, lab: str, rows: Sequence[RawCatalogRow]) -> List[RawCatalogRow]:
        by_code: Dict[str, RawCatalogRow] = {}
        for r in rows:
            code = (r.code or "").strip() or normalize_medical(r.raw_name)
            if not code:
                log.warning("Skipping %s row without code or name", lab)
                continue
            if code != r.code:
                r = RawCatalogRow(code=code, raw_name=r.raw_name, price=r.price, category=r.category,
                                  turnaround=r.turnaround, tube_type=r.tube_type, test_type=r.test_type)
            key = code_key(code)
            existing = by_code.get(key)
            if existing is None or (existing.category is None and r.category is not None):
                by_code[key] = r
        if len(by_code) != len(rows):
            log.debug("%s: %d rows → %d unique codes", lab, len(rows), len(by_code))
        return list(by_code.values())

    @staticmethod
    def _offering(lab: str, row: RawCatalogRow) -> _Offering:
        norm = normalize_medical(row.raw_name)
        return _Offering(
            laboratory=lab,
            row=row,
            norm=norm,
            tokens=frozenset(norm.split()),
            synonyms=synonym_groups(norm),
        )

    def _score(self, o: _Offering, concept: _Concept) -> float:
        best = 0.0
        for other in concept.offerings:
            s, _ = pair_score(o.row.code, o.row.raw_name, other.row.code, other.row.raw_name,
                              o.row.test_type, other.row.test_type)
            best = max(best, s)
        return best

    def _match_catalog(self, lab: str, offerings: List[_Offering], concepts: List[_Concept], stats: BuildStats) -> None:
        # Blocking: a pair can only reach the threshold through a shared code,
        # a shared token or a shared synonym group.
        by_code: Dict[str, set] = defaultdict(set)
        by_token: Dict[str, set] = defaultdict(set)
        by_group: Dict[int, set] = defaultdict(set)
        open_concepts = [c for c in concepts if lab not in c.laboratories]
        for idx, c in enumerate(open_concepts):
            for other in c.offerings:
                by_code[code_key(other.row.code)].add(idx)
                for t in other.tokens:
                    by_token[t].add(idx)
                for g in other.synonyms:
                    by_group[g].add(idx)

        pairs: List[Tuple[float, int, int]] = []
        for row_idx, o in enumerate(offerings):
            candidate_ids = set(by_code.get(code_key(o.row.code), ()))
            for t in o.tokens:
                candidate_ids |= by_token.get(t, set())
            for g in o.synonyms:
                candidate_ids |= by_group.get(g, set())

            scored = []
            for cidx in candidate_ids:
                s = self._score(o, open_concepts[cidx])
                if s >= self.config.match_threshold:
                    scored.append((s, cidx))
                    pairs.append((s, row_idx, cidx))

            scored.sort(key=lambda x: (-x[0], open_concepts[x[1]].concept_id))
            if len(scored) > 1 and scored[0][0] - scored[1][0] < self.config.conflict_margin:
                stats.conflicts.append(MatchConflict(
                    laboratory=lab,
                    code=o.row.code,
                    raw_name=o.row.raw_name,
                    candidates=[
                        MatchCandidate(
                            concept_id=open_concepts[cidx].concept_id,
                            canonical_code=open_concepts[cidx].offerings[0].row.code,
                            score=round(s, 4),
                        )
                        for s, cidx in scored[: self.config.max_conflict_candidates]
                    ],
                ))

        # Greedy 1:1, best pairs first
        pairs.sort(key=lambda p: (-p[0], p[1], open_concepts[p[2]].concept_id))
        used_rows: set = set()
        used_concepts: set = set()
        for s, row_idx, cidx in pairs:
            if row_idx in used_rows or cidx in used_concepts:
                continue
            used_rows.add(row_idx)
            used_concepts.add(cidx)
            open_concepts[cidx].offerings.append(offerings[row_idx])

        created = 0
        for row_idx, o in enumerate(offerings):
            if row_idx not in used_rows:
                concepts.append(_Concept(concept_id=len(concepts) + 1, offerings=[o]))
                created += 1
        log.info("%s: %d matched, %d new concepts", lab, len(used_rows), created)

    @staticmethod
    def _definition(concept: _Concept) -> CanonicalTestDefinition:
        offerings = concept.offerings
        codes = [o.row.code.strip() for o in offerings]
        primary_code = codes[0]

        aliases = set()
        for o in offerings:
            for value in (o.row.raw_name, o.row.code):
                key = normalize_for_lookup(value)
                if key:
                    aliases.add(key)

        shortest = min(offerings, key=lambda o: len(o.norm) or len(o.row.raw_name))
        name = title_case(shortest.norm or shortest.row.raw_name.strip())
        specimen = extract_specimen(shortest.row.raw_name)
        if specimen != "DEFAULT":
            name = f"{name} ({SPECIMEN_LABELS.get(specimen, specimen)})"

        return CanonicalTestDefinition(
            canonical_id=concept.concept_id,
            canonical_name=name,
            code=primary_code,
            category=TestCategory.PROFILE if any(o.row.is_profile for o in offerings) else TestCategory.INDIVIDUAL,
            aliases=frozenset(aliases),
            medical_category=classify_category(shortest.row.raw_name),
            specimen=specimen,
        )

    def coverage(self, registry: CanonicalRegistry, raw_catalogs: Mapping[str, Sequence[RawCatalogRow]]) -> CoverageReport:
        """Resolve every input row through *registry*; unresolved rows are listed, never dropped."""
        total = resolved = 0
        unresolved: List[UnresolvedRow] = []
        by_lab: Dict[str, Dict[str, int]] = {}
        for lab, rows in raw_catalogs.items():
            lab_total = lab_resolved = 0
            for r in rows:
                lab_total += 1
                if registry.lookup(r.code, r.raw_name) is not None:
                    lab_resolved += 1
                else:
                    unresolved.append(UnresolvedRow(laboratory=lab, code=r.code or "", raw_name=r.raw_name or "", price=r.price))
            by_lab[lab] = {"total": lab_total, "resolved": lab_resolved}
            total += lab_total
            resolved += lab_resolved

        ratio = resolved / total if total else 1.0
        report = CoverageReport(
            total_rows=total,
            resolved_rows=resolved,
            coverage=round(ratio, 6),
            min_coverage=self.config.min_coverage,
            meets_target=ratio >= self.config.min_coverage,
            unresolved=unresolved,
            by_laboratory=by_lab,
        )
        if not report.meets_target:
            log.warning("Coverage %.2f%% below target %.2f%% (%d unresolved)",
                        ratio * 100, self.config.min_coverage * 100, len(unresolved))
        for u in unresolved:
            log.warning("Unresolved %s row %s %r", u.laboratory, u.code, u.raw_name)
        return report
