"""
Resolver — maps a laboratory's (code, free-text name) to a canonical test.

Rules:
  - resolve() is exact only: code → name alias → code alias
  - match() adds a fuzzy fallback scored with the cross-lab pair rules
  - Never raises; no match is reported as MatchType.NONE
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .config import RegistryBuildConfig
from .normalize import normalize_medical
from .registry import CanonicalRegistry, CanonicalTestDefinition, code_key
from .rules import pair_score, synonym_groups

log = logging.getLogger(__name__)


class MatchType(str, Enum):
    EXACT = "EXACT"
    FUZZY = "FUZZY"
    MANUAL = "MANUAL"
    NONE = "NONE"


@dataclass(frozen=True)
class Resolution:
    definition: Optional[CanonicalTestDefinition]
    match_type: MatchType
    similarity: float

    @property
    def canonical_id(self) -> Optional[int]:
        return self.definition.canonical_id if self.definition else None


NO_MATCH = Resolution(definition=None, match_type=MatchType.NONE, similarity=0.0)


class Resolver:
    def __init__(self, registry: CanonicalRegistry, config: Optional[RegistryBuildConfig] = None):
        self.registry = registry
        self.config = config or RegistryBuildConfig()
        self._by_token: Dict[str, Set[int]] = defaultdict(set)
        self._by_group: Dict[int, Set[int]] = defaultdict(set)
        for d in registry:
            norm = normalize_medical(d.canonical_name)
            for t in norm.split():
                self._by_token[t].add(d.canonical_id)
            for g in synonym_groups(norm):
                self._by_group[g].add(d.canonical_id)

    def resolve(self, code: Optional[str], raw_name: Optional[str]) -> Optional[CanonicalTestDefinition]:
        return self.registry.lookup(code, raw_name)

    def match(
        self,
        code: Optional[str],
        raw_name: Optional[str],
        candidates: Optional[Iterable[CanonicalTestDefinition]] = None,
    ) -> Resolution:
        """
        EXACT when resolve() hits, else the best-scoring definition at or above
        fuzzy_threshold (FUZZY, similarity = score), else NONE.
        """
        hit = self.resolve(code, raw_name)
        if hit is not None:
            return Resolution(definition=hit, match_type=MatchType.EXACT, similarity=1.0)

        if not (raw_name or "").strip():
            return NO_MATCH

        pool = list(candidates) if candidates is not None else self._candidates(code, raw_name)
        best: Optional[CanonicalTestDefinition] = None
        best_score = 0.0
        for d in pool:
            score, _ = pair_score(code or "", raw_name, d.code, d.canonical_name)
            if score > best_score or (score == best_score and best is not None and d.canonical_id < best.canonical_id):
                best, best_score = d, score

        if best is not None and best_score >= self.config.fuzzy_threshold:
            log.debug("Fuzzy %r → #%d %r (%.2f)", raw_name, best.canonical_id, best.canonical_name, best_score)
            return Resolution(definition=best, match_type=MatchType.FUZZY, similarity=round(best_score, 4))
        return NO_MATCH

    def _candidates(self, code: Optional[str], raw_name: str) -> List[CanonicalTestDefinition]:
        norm = normalize_medical(raw_name)
        ids: Set[int] = set()
        for t in norm.split():
            ids |= self._by_token.get(t, set())
        for g in synonym_groups(norm):
            ids |= self._by_group.get(g, set())
        same_code = self.registry.by_code.get(code_key(code))
        if same_code is not None:
            ids.add(same_code.canonical_id)
        return [self.registry.by_id[i] for i in sorted(ids)]
