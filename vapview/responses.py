from typing import Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    engine: str


class PolicySummary(BaseModel):
    name: str
    control: str = Field("", description="Value of the policy's controlId label")


class ParamKindInfo(BaseModel):
    api_version: str
    kind: str


class PolicyDetail(BaseModel):
    name: str
    messages: str = Field(..., description="Validation messages joined with ', '")
    param_kind: Optional[ParamKindInfo] = None
    policy: str = Field(..., description="Sanitized policy as YAML")


class DocumentView(BaseModel):
    text: str
    valid: bool
    dirty: bool
    error: Optional[str] = None


class ParamsView(BaseModel):
    state: str
    text: str = ""
    dirty: bool = False
    reason: Optional[str] = None
    param_kind: Optional[ParamKindInfo] = None


class ResultView(BaseModel):
    sequence: int
    verdict: Optional[str] = Field(None, description="Engine verdict rendered as YAML")
    error: Optional[str] = None


class SessionView(BaseModel):
    id: str
    policy_name: str
    state: str
    reason: Optional[str] = None
    sequence: int
    result: Optional[ResultView] = None
    policy: DocumentView
    resource: DocumentView
    params: ParamsView


class DocumentEdit(BaseModel):
    text: str
