"""
Comparison schemas:
  - ComparisonRequest                          (POST /comparison body)
  - LabTestLine / LabComparison / LabSummary   (per-laboratory view)
  - MultiLabAssignment / MultiLabSelection     (per-test optimized mix)
  - ComparisonResult                           (handed to renderers)
"""
from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional

Objective = Literal["price", "turnaround"]
SelectionMode = Literal["CHEAPEST", "FASTEST", "CUSTOM"]


class ComparisonRequest(BaseModel):
    test_mapping_ids: List[str] = Field(default_factory=list)
    selections: Dict[str, str] = Field(default_factory=dict)       # test id → lab id
    custom_prices: Dict[str, float] = Field(default_factory=dict)  # "testId-labId" → price
    objective: Objective = "price"


# ── Per laboratory ───────────────────────────────────────────────

class LabTestLine(BaseModel):
    test_id: str
    canonical_name: str
    local_test_name: Optional[str] = None
    price: float
    formatted_price: str
    turnaround: Optional[str] = None
    turnaround_hours: Optional[float] = None
    similarity: float = 1.0
    match_type: str = "EXACT"
    is_custom_price: bool = False


class LabComparison(BaseModel):
    id: str
    name: str
    code: Optional[str] = None
    tests: List[LabTestLine] = Field(default_factory=list)
    total_price: float = 0.0
    formatted_total_price: str = ""
    test_count: int = 0
    missing_test_ids: List[str] = Field(default_factory=list)
    is_complete: bool = False
    is_cheapest: bool = False
    is_fastest: bool = False
    max_turnaround_hours: Optional[float] = None


class LabSummary(BaseModel):
    id: str
    name: str
    code: Optional[str] = None
    total_price: float
    formatted_total_price: str
    is_complete: bool
    max_turnaround_hours: Optional[float] = None


# ── Multi-lab ────────────────────────────────────────────────────

class MultiLabAssignment(BaseModel):
    test_id: str
    canonical_name: str
    laboratory_id: str
    laboratory_name: str
    price: float
    formatted_price: str
    turnaround_hours: Optional[float] = None
    is_override: bool = False


class MultiLabSelection(BaseModel):
    selection_mode: SelectionMode = "CHEAPEST"
    assignments: List[MultiLabAssignment] = Field(default_factory=list)
    total_price: float = 0.0
    formatted_total_price: str = ""
    laboratories: List[str] = Field(default_factory=list)
    missing_test_ids: List[str] = Field(default_factory=list)
    max_turnaround_hours: Optional[float] = None


class ComparisonResult(BaseModel):
    laboratories: List[LabComparison] = Field(default_factory=list)
    cheapest_laboratory: Optional[LabSummary] = None
    fastest_laboratory: Optional[LabSummary] = None
    multi_lab_selection: Optional[MultiLabSelection] = None
    price_matrix: Dict[str, Dict[str, Optional[float]]] = Field(default_factory=dict)
    turnaround_matrix: Dict[str, Dict[str, Optional[float]]] = Field(default_factory=dict)
    requested_test_ids: List[str] = Field(default_factory=list)
    unknown_test_ids: List[str] = Field(default_factory=list)
    currency: str = "MAD"
