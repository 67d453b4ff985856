"""
Pydantic models for registry build and ingestion reports.
Logged by the CLI and returned by the ingestion service.
"""
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any


class UnresolvedRow(BaseModel):
    """A raw catalog row that did not resolve to any canonical test."""
    laboratory: str
    code: str
    raw_name: str
    price: Optional[float] = None


class MatchCandidate(BaseModel):
    concept_id: int
    canonical_code: str
    score: float


class MatchConflict(BaseModel):
    """A row whose best and runner-up concept scores were too close to call."""
    laboratory: str
    code: str
    raw_name: str
    candidates: List[MatchCandidate] = Field(default_factory=list)


class CoverageReport(BaseModel):
    total_rows: int = 0
    resolved_rows: int = 0
    coverage: float = 1.0  # 0..1
    min_coverage: float = 0.99
    meets_target: bool = True
    unresolved: List[UnresolvedRow] = Field(default_factory=list)
    by_laboratory: Dict[str, Dict[str, int]] = Field(default_factory=dict)


class BuildStats(BaseModel):
    definitions: int = 0
    multi_lab: int = 0
    single_lab: int = 0
    renamed: int = 0
    conflicts: List[MatchConflict] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)
