import os
import uuid
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from riskmate import (
    audit_routes,
    executive_routes,
    export_routes,
    governance_routes,
    jobs_routes,
    system_routes,
    team_routes,
    verification_routes,
)
from riskmate.rbac import get_cors_origins
from riskmate.supabase_client import get_supabase

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Riskmate API",
    description="Governance backend: work records, compliance ledger, proof packs and exports",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Error-ID", "X-Idempotency-Replayed"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Echo (or mint) X-Request-ID on every response."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Dict details ({message, code, ...}) become the response body so every
    error has the same shape; string details are wrapped as {message}.
    """
    if isinstance(exc.detail, dict):
        body = dict(exc.detail)
    else:
        body = {"message": exc.detail}
    body.setdefault("detail", exc.detail)
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    port = os.environ.get("PORT", "8000")
    logger.info(f"Riskmate API starting on port {port}")
    logger.info(f"Supabase connected: {get_supabase() is not None}")
    logger.info(f"Ledger hash salt: {'custom' if os.environ.get('LEDGER_HASH_SALT') else 'default'}")


app.include_router(system_routes.router)
app.include_router(audit_routes.router)
app.include_router(verification_routes.router)
app.include_router(jobs_routes.router)
app.include_router(team_routes.router)
app.include_router(governance_routes.router)
app.include_router(export_routes.router)
app.include_router(executive_routes.router)
