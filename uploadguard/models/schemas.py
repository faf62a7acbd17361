from typing import Dict

from pydantic import BaseModel

from uploadguard.models.reports import FileReport


class InspectionResponse(BaseModel):
    status: str
    report: FileReport


class HealthResponse(BaseModel):
    status: str
    service: str
    rules: int


class PolicyResponse(BaseModel):
    rules: Dict[str, dict]
    defaults: dict
    limits: dict
