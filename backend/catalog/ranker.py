"""
Search Ranker — interactive lookup over laboratory test rows.

Scoring (per search term, combined with max):
  exact name 1.00 > name prefix 0.95 > exact code 0.90
  > canonical-name substring 0.88 > name substring 0.85 > trigram similarity

Rules:
  - Queries shorter than min_query_length return nothing
  - Deterministic hits are kept regardless of the fuzzy threshold
  - Synonym alternates are scored like the query itself
  - Ordering: score desc, name (casefold) asc, row id asc
  - Read-only; rows are annotated, never modified
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Tuple

from .config import SearchConfig
from .normalize import normalize_for_lookup
from .resolver import MatchType, Resolver
from .rules import trigram_similarity
from .synonyms import DEFAULT_SYNONYM_TABLE, SynonymTable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabTestRow:
    id: str
    laboratory_id: str
    name: str
    code: str = ""
    price: Optional[float] = None
    category: Optional[str] = None
    turnaround: Optional[str] = None
    laboratory_name: Optional[str] = None
    # Persisted mapping, when one exists
    canonical_id: Optional[int] = None
    test_mapping_id: Optional[str] = None
    canonical_name: Optional[str] = None
    match_type: Optional[str] = None
    similarity: Optional[float] = None


@dataclass(frozen=True)
class SearchFilters:
    laboratory_id: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class AnnotatedRow:
    row: LabTestRow
    score: float
    match_type: MatchType
    canonical_id: Optional[int] = None     # registry id
    test_mapping_id: Optional[str] = None  # persisted id, accepted by comparison
    canonical_name: Optional[str] = None
    similarity: float = 0.0
    matched_terms: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        r = self.row
        return {
            "id": r.id,
            "laboratory_id": r.laboratory_id,
            "laboratory_name": r.laboratory_name,
            "name": r.name,
            "code": r.code,
            "price": r.price,
            "category": r.category,
            "turnaround": r.turnaround,
            "score": round(self.score, 4),
            "canonical_id": self.canonical_id,
            "test_mapping_id": self.test_mapping_id,
            "canonical_name": self.canonical_name,
            "match_type": self.match_type.value,
            "similarity": round(self.similarity, 4),
        }


class SearchRanker:
    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        config: Optional[SearchConfig] = None,
        synonyms: SynonymTable = DEFAULT_SYNONYM_TABLE,
        test_mapping_ids: Optional[Mapping[int, str]] = None,
    ):
        self.resolver = resolver
        self.config = config or SearchConfig()
        self.synonyms = synonyms
        # canonical_id → persisted TestMapping id, for rows only the resolver maps
        self.test_mapping_ids = test_mapping_ids or {}

    # ── Annotation ──

    def annotate(self, row: LabTestRow) -> Tuple[MatchType, Optional[int], Optional[str], float]:
        """Persisted mapping wins, else the resolver's exact hit, else NONE."""
        if row.canonical_id is not None:
            try:
                mt = MatchType(row.match_type or MatchType.MANUAL.value)
            except ValueError:
                mt = MatchType.MANUAL
            sim = row.similarity if row.similarity is not None else 1.0
            return mt, row.canonical_id, row.canonical_name, sim
        if self.resolver is not None:
            d = self.resolver.resolve(row.code, row.name)
            if d is not None:
                return MatchType.EXACT, d.canonical_id, d.canonical_name, 1.0
        return MatchType.NONE, None, None, 0.0

    # ── Scoring ──

    def score_term(self, term: str, name_key: str, code_key: str, canonical_key: str) -> Tuple[float, bool]:
        """(score, deterministic) for one normalized term against one row."""
        sim = trigram_similarity(term, name_key)
        tier = self._tier_score(term, name_key, code_key, canonical_key)
        if tier is None:
            return sim, False
        return max(tier, sim), True

    def _tier_score(self, term: str, name_key: str, code_key: str, canonical_key: str) -> Optional[float]:
        cfg = self.config
        if name_key == term:
            return cfg.exact_name_score
        if name_key.startswith(term):
            return cfg.prefix_score
        if code_key and code_key == term:
            return cfg.exact_code_score
        if canonical_key and term in canonical_key:
            return cfg.canonical_substring_score
        if term in name_key:
            return cfg.substring_score
        return None

    def terms(self, query: str) -> List[str]:
        key = normalize_for_lookup(query)
        return [key, *self.synonyms.expand(key)]

    def search(
        self,
        query: str,
        rows: Iterable[LabTestRow],
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        page: int = 1,
    ) -> List[AnnotatedRow]:
        q = (query or "").strip()
        if len(q) < self.config.min_query_length:
            return []

        filters = filters or SearchFilters()
        limit = self.config.default_limit if limit is None else max(1, min(int(limit), self.config.max_limit))
        page = max(1, int(page or 1))
        terms = self.terms(q)

        hits: List[AnnotatedRow] = []
        for row in rows:
            if filters.laboratory_id is not None and row.laboratory_id != filters.laboratory_id:
                continue
            match_type, cid, cname, sim = self.annotate(row)
            if filters.category and not self._category_matches(filters.category, row, cid):
                continue

            name_key = normalize_for_lookup(row.name)
            code_key = normalize_for_lookup(row.code)
            canonical_key = normalize_for_lookup(cname or "")

            best = 0.0
            deterministic = False
            matched: List[str] = []
            for term in terms:
                s, det = self.score_term(term, name_key, code_key, canonical_key)
                deterministic = deterministic or det
                if s > best:
                    best = s
                    matched = [term]
                elif s == best and s > 0:
                    matched.append(term)

            if deterministic or best >= self.config.threshold:
                hits.append(AnnotatedRow(
                    row=row, score=best, match_type=match_type,
                    canonical_id=cid, test_mapping_id=self._test_mapping_id(row, cid),
                    canonical_name=cname,
                    similarity=sim, matched_terms=tuple(matched),
                ))

        hits.sort(key=lambda h: (-h.score, h.row.name.casefold(), h.row.id))
        start = (page - 1) * limit
        log.debug("search %r: %d terms, %d hits", q, len(terms), len(hits))
        return hits[start:start + limit]

    def _test_mapping_id(self, row: LabTestRow, canonical_id: Optional[int]) -> Optional[str]:
        if row.test_mapping_id is not None:
            return row.test_mapping_id
        if canonical_id is None:
            return None
        return self.test_mapping_ids.get(canonical_id)

    def _category_matches(self, category: str, row: LabTestRow, canonical_id: Optional[int]) -> bool:
        wanted = category.strip().casefold()
        values = [row.category]
        if canonical_id is not None and self.resolver is not None:
            d = self.resolver.registry.get(canonical_id)
            if d is not None:
                values.extend([d.category.value, d.medical_category])
        return any(v and v.casefold() == wanted for v in values)
