import datetime as dt

from pydantic import BaseModel, ConfigDict


class UsageRecord(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    date: dt.date
    request_count: int = 0
    token_count: int = 0
    cost_accumulated: float = 0.0
