"""
Process-wide registry cache. The registry is rebuilt from TestMapping rows
only when their fingerprint changes; otherwise the frozen instance is reused.
"""
import hashlib, json
import logging
import threading
from typing import Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

import app.models.models as model
from app.core.config import settings
from app.services.catalog_store import load_registry
from catalog.registry import CanonicalRegistry
from catalog.resolver import Resolver

log = logging.getLogger(__name__)


def stable_hash(obj: dict) -> str:
    blob = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str).encode('utf-8')
    return hashlib.sha256(blob).hexdigest()


def registry_fingerprint(db: Session) -> str:
    count, max_id, last_update = db.query(
        func.count(model.TestMapping.id),
        func.max(model.TestMapping.canonical_id),
        func.max(model.TestMapping.updated_at),
    ).one()
    return stable_hash({"count": count, "max_id": max_id, "updated_at": last_update})


class RegistryCache:
    def __init__(self):
        self._lock = threading.Lock()
        self._fingerprint: Optional[str] = None
        self._registry: Optional[CanonicalRegistry] = None
        self._resolver: Optional[Resolver] = None

    def get(self, db: Session) -> Tuple[CanonicalRegistry, Resolver]:
        fp = registry_fingerprint(db)
        with self._lock:
            if fp != self._fingerprint or self._registry is None:
                self._registry = load_registry(db)
                self._resolver = Resolver(self._registry, settings.registry_config())
                self._fingerprint = fp
                log.info("Registry cache refreshed (%d definitions)", len(self._registry))
            return self._registry, self._resolver

    def clear(self) -> None:
        with self._lock:
            self._fingerprint = None
            self._registry = None
            self._resolver = None


registry_cache = RegistryCache()
