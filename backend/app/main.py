from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.db.database import engine
import app.models.models as model

from app.api.routers import bundles, comparison, health, tests

app = FastAPI(title="LabPrice")

app.add_middleware(CORSMiddleware,
                   allow_origins=settings.cors_origins,
                   allow_credentials=True,
                   allow_methods=["*"],
                   allow_headers=["*"]
                   )

model.Base.metadata.create_all(bind=engine)

app.include_router(health.router)
app.include_router(tests.router)
app.include_router(comparison.router)
app.include_router(bundles.router)
