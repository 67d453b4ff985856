from pydantic import BaseModel, Field
from typing import Dict, List, Optional


class DistributeRequest(BaseModel):
    custom_rate: float
    test_mapping_ids: List[str] = Field(default_factory=list)
    prices: Dict[str, Optional[float]] = Field(default_factory=dict)  # "testId-labId" → price


class DistributeResponse(BaseModel):
    prices: Dict[str, float] = Field(default_factory=dict)
