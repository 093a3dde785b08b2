from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime

from app.models.product import Platform


class SyncRequest(BaseModel):
    """Body of a sync trigger. user_id is only honoured for the scheduler key."""
    platform: Optional[Platform] = None
    user_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class SyncResults(BaseModel):
    created: int = 0
    updated: int = 0
    processed: int = 0
    errors: List[str] = []
    details: List[str] = []


class SyncResponse(BaseModel):
    success: bool = True
    message: str
    start_date: datetime
    end_date: datetime
    results: SyncResults


class SweepResults(BaseModel):
    checked: int = 0
    removed: int = 0
    kept: int = 0
    skipped_admins: int = 0
    errors: List[str] = []
    details: List[str] = []


class SweepResponse(BaseModel):
    success: bool = True
    message: str
    results: SweepResults


class SyncRun(BaseModel):
    type: str
    status: str
    created_at: datetime
    summary: Dict = {}


class SyncStatusResponse(BaseModel):
    total_students: int = 0
    students: Dict[str, int]
    last_runs: List[SyncRun] = []
