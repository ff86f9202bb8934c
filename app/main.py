import logging

from fastapi import FastAPI

from app.api.field_work import router as field_work_router
from app.errors import register_error_handlers
from app.logging import configure_logging

app = FastAPI(title="fieldcert API")
logger = logging.getLogger(__name__)
configure_logging()
register_error_handlers(app)

app.include_router(field_work_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}
