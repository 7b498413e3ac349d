from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EngineState(str, Enum):
    NOT_LOADED = "NotLoaded"
    LOADING = "Loading"
    READY = "Ready"
    LOAD_FAILED = "LoadFailed"


class OrchestratorState(str, Enum):
    IDLE = "Idle"
    AWAITING_PREREQUISITES = "AwaitingPrerequisites"
    EVALUATING = "Evaluating"
    SETTLED = "Settled"
    BLOCKED = "Blocked"


class ParamsState(str, Enum):
    ABSENT = "absent"
    FETCHING = "fetching"
    RESOLVED = "resolved"
    FETCH_FAILED = "fetch-failed"


class DocumentKind(str, Enum):
    POLICY = "policy"
    RESOURCE = "resource"
    PARAMS = "params"


@dataclass(frozen=True)
class ParamKindReference:
    """A policy's ``spec.paramKind``: the type of its parameter object."""

    api_version: str
    kind: str

    @property
    def group(self) -> str:
        if "/" in self.api_version:
            return self.api_version.split("/", 1)[0]
        return ""

    @property
    def version(self) -> str:
        return self.api_version.rsplit("/", 1)[-1]

    @property
    def plural(self) -> str:
        return self.kind.lower() + "s"


@dataclass(frozen=True)
class Validation:
    expression: str
    message: Optional[str] = None


@dataclass(frozen=True)
class PolicySpec:
    """Structured form of a policy document."""

    name: Optional[str]
    validations: List[Validation] = field(default_factory=list)
    param_kind: Optional[ParamKindReference] = None

    @property
    def messages(self) -> str:
        return ", ".join(v.message for v in self.validations if v.message)


@dataclass(frozen=True)
class EvaluationRequest:
    sequence: int
    policy: str
    resource: str
    params: str


@dataclass(frozen=True)
class EvaluationResult:
    sequence: int
    verdict: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ParamsDocument:
    state: ParamsState = ParamsState.ABSENT
    text: str = ""
    reason: Optional[str] = None
    reference: Optional[ParamKindReference] = None
    item: Optional[Dict[str, Any]] = None
