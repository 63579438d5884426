"""
Visa CRM - API Backend (enquiry → client conversion)

Start with:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging

from config import LOG_LEVEL, CORS_ORIGINS

# Logging configuration
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("visa_crm")

app = FastAPI(
    title="Visa CRM",
    description="Enquiry to client conversion",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== ERRORS ====================

from services.conversion_errors import ConversionError


@app.exception_handler(ConversionError)
async def conversion_error_handler(request: Request, exc: ConversionError):
    if exc.retryable:
        logger.warning(f"[API] {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"success": False, **exc.to_dict()})


# ==================== ROUTES ====================

from routes import conversions

app.include_router(conversions.router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": "Visa CRM API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


# ==================== STARTUP ====================

@app.on_event("startup")
async def startup():
    from config import db
    from services.conversion_service import ConversionService

    await ConversionService(db).ensure_indexes()
    logger.info("MongoDB indexes ready (clients.email_normalized unique)")


@app.on_event("shutdown")
async def shutdown_db_client():
    from config import client
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
