"""
Application settings read from the environment (.env loaded on import).
"""
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

from catalog.config import RegistryBuildConfig, SearchConfig
from app.services.comparison import ComparisonConfig

load_dotenv()


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./labprice.db"
    search_threshold: float = 0.15
    comparison_currency: str = "MAD"
    comparison_max_workers: int = 1
    registry_min_coverage: float = 0.99
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:5173",
        "http://localhost:3000",
    ])

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            search_threshold=float(os.getenv("SEARCH_THRESHOLD", defaults.search_threshold)),
            comparison_currency=os.getenv("COMPARISON_CURRENCY", defaults.comparison_currency),
            comparison_max_workers=int(os.getenv("COMPARISON_MAX_WORKERS", defaults.comparison_max_workers)),
            registry_min_coverage=float(os.getenv("REGISTRY_MIN_COVERAGE", defaults.registry_min_coverage)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            cors_origins=_csv(origins) if origins else defaults.cors_origins,
        )

    def search_config(self) -> SearchConfig:
        return SearchConfig(threshold=self.search_threshold)

    def registry_config(self) -> RegistryBuildConfig:
        return RegistryBuildConfig(min_coverage=self.registry_min_coverage)

    def comparison_config(self) -> ComparisonConfig:
        return ComparisonConfig(currency=self.comparison_currency, max_workers=self.comparison_max_workers)


settings = Settings.from_env()
