from datetime import datetime

from pydantic import BaseModel


class CrawlJobResponse(BaseModel):
    id: int
    root_path: str
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class LinkResponse(BaseModel):
    id: int
    path: str
    status: str
    level: int
    origin: str
    crawler_id: int

    model_config = {"from_attributes": True}


class JobStatusReport(BaseModel):
    job: CrawlJobResponse
    links: dict[str, int]
    total_links: int
    # Links left in processing; with an idle job these were orphaned by a crash.
    in_flight: list[LinkResponse] = []
