from typing import Annotated, Tuple
from fastapi import Depends
from sqlalchemy.orm import Session

from app.db.database import SessionLocal
from app.utils.cache import registry_cache
from catalog.registry import CanonicalRegistry
from catalog.resolver import Resolver


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

db_dependency = Annotated[Session, Depends(get_db)]


def get_catalog(db: db_dependency) -> Tuple[CanonicalRegistry, Resolver]:
    return registry_cache.get(db)

catalog_dependency = Annotated[Tuple[CanonicalRegistry, Resolver], Depends(get_catalog)]
