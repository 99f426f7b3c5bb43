import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dojoflow.api.v1.router import api_v1_router
from dojoflow.core.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

logger.info("%s API mounted at %s", settings.PROJECT_NAME, settings.API_V1_PREFIX)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
