"""
Configuration knobs for the catalog engine (registry build, resolution, search).
"""
from pydantic import BaseModel, Field


class SearchConfig(BaseModel):
    # Fuzzy floor; deterministic matches bypass it
    threshold: float = Field(default=0.15, ge=0.0, le=1.0)
    min_query_length: int = 2
    default_limit: int = 20
    max_limit: int = 100

    # Deterministic scores (combined with max, never summed)
    exact_name_score: float = 1.00
    prefix_score: float = 0.95
    exact_code_score: float = 0.90
    canonical_substring_score: float = 0.88
    substring_score: float = 0.85


class RegistryBuildConfig(BaseModel):
    # Cross-lab pair scoring
    match_threshold: float = 0.35
    conflict_margin: float = 0.15     # runner-up closer than this → conflict
    max_conflict_candidates: int = 3

    # Coverage gate (reported, never raised)
    min_coverage: float = Field(default=0.99, ge=0.0, le=1.0)

    # Ingestion fallback when neither code nor alias resolves
    fuzzy_threshold: float = 0.5
