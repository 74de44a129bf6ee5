from pydantic import BaseModel, Field
from typing import List

class HealthStatus(BaseModel):
    status: str = "ok"
    timestamp: int

class PingResponse(BaseModel):
    timestamp: int
    serverTime: int

class UploadResult(BaseModel):
    received: int
    expected: int
    duration: float  # seconds
    timestamp: int  # epoch ms at end of body

class LatencyResult(BaseModel):
    latency_ms: float
    jitter_ms: float
    samples: List[float] = Field(default_factory=list)

class ThroughputResult(BaseModel):
    transferred_bytes: int
    expected_bytes: int
    duration: float
    mbps: float

    @property
    def complete(self) -> bool:
        return self.transferred_bytes == self.expected_bytes
