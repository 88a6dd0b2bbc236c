"""Main FastAPI application entry point."""
import logging

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from income_verification.api import api_router, override_router
from income_verification.config import settings
from income_verification.database import init_db
from income_verification.exceptions import IncomeVerificationError
from income_verification.services.document_pipeline import DocumentPipeline
from income_verification.services.extraction import AzureDocumentAnalyzer, ExtractionAdapter
from income_verification.services.task_queue import (
    AnalysisQueue,
    get_analysis_queue,
    set_analysis_queue,
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(message)s",
)
logger = structlog.get_logger()

# Create FastAPI app
app = FastAPI(
    title="Income Verification Engine",
    description="Resident income verification for affordable-housing leases",
    version="1.0.0",
    debug=settings.DEBUG
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(api_router)
app.include_router(override_router)


@app.exception_handler(IncomeVerificationError)
async def income_verification_error_handler(request: Request, exc: IncomeVerificationError):
    """Answer engine errors with their status code and explanation."""
    logger.info("request_failed", path=request.url.path, error=exc.error_code, detail=exc.explanation)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Initialize database and start the analysis workers."""
    logger.info("Starting Income Verification Engine")
    await init_db()
    logger.info("Database initialized")

    adapter = ExtractionAdapter(AzureDocumentAnalyzer())
    queue = AnalysisQueue(DocumentPipeline(adapter))
    set_analysis_queue(queue)
    await queue.start()
    recovered = await queue.recover()
    logger.info("Analysis queue started", workers=queue.worker_count, recovered=len(recovered))


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the analysis workers."""
    logger.info("Shutting down Income Verification Engine")
    await get_analysis_queue().stop()
    set_analysis_queue(None)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "income-verification",
        "analyzer_configured": bool(settings.ANALYZER_ENDPOINT),
        "debug": settings.DEBUG
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "income_verification.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
