"""Document Store: the policy, resource and params documents of one session."""

from typing import Any, Dict, Optional

import yaml
from loguru import logger

from vapview.exceptions import DocumentStateError
from vapview.models import (
    DocumentKind,
    EvaluationRequest,
    ParamKindReference,
    ParamsDocument,
    ParamsState,
    PolicySpec,
    Validation,
)
from vapview.samples import SAMPLE_DEPLOYMENT


class Document:
    """An editable YAML document and its parsed form."""

    def __init__(self, kind: DocumentKind, text: str):
        self.kind = kind
        self.original_text = text
        self.text = text
        self.data: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self._parse()

    @property
    def valid(self) -> bool:
        return self.error is None

    @property
    def dirty(self) -> bool:
        return self.text != self.original_text

    def update(self, text: str) -> bool:
        """Replace the text. Returns False when nothing changed."""
        if text == self.text:
            return False
        self.text = text
        self._parse()
        return True

    def _parse(self):
        try:
            data = yaml.safe_load(self.text)
        except yaml.YAMLError as e:
            self.data = None
            self.error = f"Invalid {self.kind.value} YAML: {e}"
            return

        if not isinstance(data, dict):
            self.data = None
            self.error = f"The {self.kind.value} document must be a YAML mapping"
            return

        self.data = data
        self.error = None


def parse_policy_spec(data: Dict[str, Any]) -> PolicySpec:
    """Derive the structured form of a parsed policy document."""
    metadata = data.get("metadata") or {}
    spec = data.get("spec") or {}
    if not isinstance(spec, dict):
        spec = {}

    validations = []
    for validation in spec.get("validations") or []:
        if isinstance(validation, dict):
            message = validation.get("message")
            validations.append(
                Validation(
                    expression=str(validation.get("expression", "")),
                    message=str(message) if message is not None else None,
                )
            )

    param_kind = None
    raw_param_kind = spec.get("paramKind")
    if isinstance(raw_param_kind, dict) and raw_param_kind:
        param_kind = ParamKindReference(
            api_version=str(raw_param_kind.get("apiVersion") or ""),
            kind=str(raw_param_kind.get("kind") or ""),
        )

    return PolicySpec(
        name=metadata.get("name") if isinstance(metadata, dict) else None,
        validations=validations,
        param_kind=param_kind,
    )


class DocumentStore:
    """Owns the three documents evaluated together."""

    def __init__(self, policy_text: str, resource_text: Optional[str] = None):
        self.policy = Document(DocumentKind.POLICY, policy_text)
        self.resource = Document(DocumentKind.RESOURCE, resource_text or SAMPLE_DEPLOYMENT)
        self.params = ParamsDocument()
        self.params_dirty = False

    @property
    def policy_spec(self) -> Optional[PolicySpec]:
        if not self.policy.valid:
            return None
        return parse_policy_spec(self.policy.data)

    @property
    def param_kind(self) -> Optional[ParamKindReference]:
        spec = self.policy_spec
        return spec.param_kind if spec else None

    def edit(self, kind: DocumentKind, text: str) -> bool:
        """
        Apply a user edit.

        Returns:
            True if the document text changed.

        Raises:
            DocumentStateError: If the params document is edited before it
                was resolved.
        """
        if kind == DocumentKind.POLICY:
            return self.policy.update(text)
        if kind == DocumentKind.RESOURCE:
            return self.resource.update(text)

        if self.params.state != ParamsState.RESOLVED:
            raise DocumentStateError(
                f"Params cannot be edited while in state '{self.params.state.value}'"
            )
        if text == self.params.text:
            return False
        self.params.text = text
        self.params_dirty = True
        return True

    def set_params_fetching(self, reference: ParamKindReference):
        self.params = ParamsDocument(state=ParamsState.FETCHING, reference=reference)
        self.params_dirty = False

    def set_params_resolved(self, reference: ParamKindReference, item: Dict[str, Any]):
        text = yaml.safe_dump(item, sort_keys=False, default_flow_style=False)
        self.params = ParamsDocument(
            state=ParamsState.RESOLVED, text=text, reference=reference, item=item
        )
        self.params_dirty = False

    def set_params_failed(self, reference: Optional[ParamKindReference], reason: str):
        self.params = ParamsDocument(
            state=ParamsState.FETCH_FAILED, reference=reference, reason=reason
        )
        self.params_dirty = False

    def clear_params(self):
        if self.params.state != ParamsState.ABSENT:
            logger.debug("Policy no longer declares paramKind, dropping params document")
        self.params = ParamsDocument()
        self.params_dirty = False

    def snapshot(self, sequence: int) -> EvaluationRequest:
        return EvaluationRequest(
            sequence=sequence,
            policy=self.policy.text,
            resource=self.resource.text,
            params=self.params.text if self.params.state == ParamsState.RESOLVED else "",
        )
