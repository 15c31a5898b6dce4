# keyfleet/schemas/base.py
"""
API envelope schemas shared by every router
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class ErrorResponse(BaseModel):
    """JSON body of every non-2xx answer"""
    success: bool = False
    error: str = Field(..., description="Human readable message")
    error_code: str = Field(..., description="Machine readable reason code")
    details: Optional[dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "error": "Host 42 does not exist",
                "error_code": "unknown_host",
                "details": {"host_id": 42},
                "timestamp": "2026-01-12T10:00:00Z"
            }
        }
    }


class HealthResponse(BaseModel):
    """Service liveness plus database reachability"""
    status: str = Field("healthy", examples=["healthy", "unhealthy"])
    service: str = "keyfleet"
    version: str
    engine_id: str = Field(..., description="Lease holder prefix of this engine instance")
    database: str = Field("connected", examples=["connected", "disconnected"])
    uptime_seconds: Optional[float] = None
    checked_at: datetime = Field(default_factory=datetime.utcnow)
