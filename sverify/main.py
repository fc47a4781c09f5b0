import logging
import os
import platform
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .config import CHALLENGE_PAGE_PATH, PORT, is_debug, is_production
from .gate import AdmissionGate, AdmissionRejected, Reason, build_gate
from .logging_config import get_request_id, set_request_id
from .models import AddTempRequest, ServerIpResponse, VerifyRequest, VerifyResponse
from .util import is_ipv4, resolve_client_ip, utc_iso

logger = logging.getLogger(__name__)

app = FastAPI(title="SVerify")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

ENDPOINTS = ["/verify", "/addtemp", "/diagnostic", "/api/ip", "/api/data"]

GATE: Optional[AdmissionGate] = None


@app.on_event("startup")
def _startup():
    global GATE
    GATE = build_gate()


@app.on_event("shutdown")
def _shutdown():
    if GATE is not None:
        GATE.store.close()


def get_gate() -> AdmissionGate:
    if GATE is None:
        _startup()
    return GATE


@app.middleware("http")
async def _request_context(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def _invalid_body(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "reason": Reason.INVALID_INPUT.value},
    )


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s (request %s)",
                     request.method, request.url.path, get_request_id())
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "reason": Reason.SERVER_ERROR.value},
    )


@app.post("/verify", response_model=VerifyResponse)
def verify(req: VerifyRequest):
    if not req.ip or not isinstance(req.ip, str):
        return JSONResponse(status_code=400, content={"error": "IP address is required"})
    return {"valid": get_gate().verify(req.ip)}


@app.get("/addtemp")
def challenge_page():
    if not os.path.exists(CHALLENGE_PAGE_PATH):
        raise HTTPException(404, "Challenge page not found")
    return FileResponse(CHALLENGE_PAGE_PATH, media_type="text/html")


@app.post("/addtemp")
def addtemp(req: AddTempRequest, request: Request):
    user_agent = request.headers.get("user-agent") or "Unknown"
    try:
        result = get_gate().admit(req.ip, req.browserChecks, user_agent)
    except AdmissionRejected as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return result.to_dict()


@app.get("/api/ip", response_model=ServerIpResponse)
def server_ip(request: Request):
    transport_ip = request.client.host if request.client else None
    detected, method = resolve_client_ip(request.headers, transport_ip)
    if not is_ipv4(detected):
        return JSONResponse(
            status_code=400,
            content={"error": "Unable to determine valid IPv4 address", "detectedIP": detected},
        )
    return {"ip": detected, "source": "server", "method": method}


@app.get("/diagnostic")
def diagnostic():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "pythonVersion": platform.python_version(),
        "workingDirectory": os.getcwd(),
        "port": PORT,
        "endpoints": ENDPOINTS,
    }


@app.get("/api/data")
def data_view():
    if is_production() and not is_debug():
        raise HTTPException(404, "Not Found")
    tickets = get_gate().store.all()
    return {
        "totalEntries": len(tickets),
        "data": [t.to_record() for t in tickets],
        "lastUpdated": utc_iso(tickets[-1].issued_at) if tickets else None,
    }
