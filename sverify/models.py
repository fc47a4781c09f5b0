from typing import Any, Optional

from pydantic import BaseModel


# Fields accept any JSON; the gate maps missing or malformed values to a reason.
class VerifyRequest(BaseModel):
    ip: Optional[Any] = None


class AddTempRequest(BaseModel):
    ip: Optional[Any] = None
    browserChecks: Optional[Any] = None


class VerifyResponse(BaseModel):
    valid: bool


class ServerIpResponse(BaseModel):
    ip: str
    source: str = "server"
    method: str
