from pydantic import BaseModel


class ProcessQueueOut(BaseModel):
    processed: bool
    job_id: str | None = None
    reason: str | None = None
