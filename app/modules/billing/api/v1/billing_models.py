from typing import Any, Dict, List, Literal

from pydantic import BaseModel


class WebhookAck(BaseModel):
    received: bool = True
    status: Literal["processed", "ignored"]


class JobProcessResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    errors: List[Dict[str, Any]]
