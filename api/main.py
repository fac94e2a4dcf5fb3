from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import get_marker_store
from api.marker_router import router as marker_router
from api.ontology_router import router as ontology_router
from derivation.config import settings
from derivation.logger import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_marker_store.cache_info().currsize:
        get_marker_store().close()
        logger.info("Marker store closed.")


app = FastAPI(
    title="Marker Derivation API",
    description="Computes and materializes ontology-derived video markers.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"], # Allows all methods (GET, POST, PUT etc.)
    allow_headers=["*"], # Allows all headers
)

# --- Include all the Routers ---
app.include_router(ontology_router)
app.include_router(marker_router)

@app.get("/")
def read_root():
    return {"message": "Marker Derivation API is running."}
