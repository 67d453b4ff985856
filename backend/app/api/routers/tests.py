from fastapi import APIRouter, Query
from typing import Optional

from app.api.deps import catalog_dependency, db_dependency
from app.core.config import settings
from app.services.catalog_store import load_lab_test_rows, load_test_mapping_ids
from catalog.ranker import SearchFilters, SearchRanker

router = APIRouter(prefix="/tests", tags=["tests"])


@router.get("/search")
def search_tests(
    db: db_dependency,
    catalog: catalog_dependency,
    q: str = Query(""),
    laboratory_id: Optional[str] = None,
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
):
    _, resolver = catalog
    if len(q.strip()) < settings.search_config().min_query_length:
        return {"query": q, "results": []}
    ranker = SearchRanker(
        resolver=resolver,
        config=settings.search_config(),
        test_mapping_ids=load_test_mapping_ids(db),
    )
    rows = load_lab_test_rows(db, laboratory_id=laboratory_id)
    hits = ranker.search(q, rows, SearchFilters(laboratory_id=laboratory_id, category=category), limit=limit, page=page)
    return {"query": q, "page": page, "results": [h.to_dict() for h in hits]}


@router.get("/resolve")
def resolve_test(db: db_dependency, catalog: catalog_dependency, code: Optional[str] = None, name: Optional[str] = None):
    _, resolver = catalog
    res = resolver.match(code, name)
    d = res.definition
    return {
        "code": code,
        "name": name,
        "match_type": res.match_type.value,
        "similarity": res.similarity,
        "definition": d.to_dict() if d is not None else None,
        "test_mapping_id": load_test_mapping_ids(db).get(d.canonical_id) if d is not None else None,
    }
