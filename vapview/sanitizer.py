import copy
from typing import Any, Dict

import yaml

from vapview.exceptions import MalformedSourceError


LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


def sanitize(raw_policy: Dict[str, Any]) -> Dict[str, Any]:
    """
    Strip server-managed fields from a policy fetched from the cluster.

    Removes, in order:
        - the ``status`` subtree
        - ``metadata.managedFields``
        - the last-applied-configuration annotation

    The input is left untouched; a new structure is returned.

    Raises:
        MalformedSourceError: If the object has no ``metadata`` mapping.
    """
    if not isinstance(raw_policy, dict) or not isinstance(raw_policy.get("metadata"), dict):
        raise MalformedSourceError("Policy object has no metadata")

    stripped = {key: copy.deepcopy(value) for key, value in raw_policy.items() if key != "status"}

    metadata = stripped["metadata"]
    metadata.pop("managedFields", None)

    annotations = metadata.get("annotations")
    if isinstance(annotations, dict):
        annotations.pop(LAST_APPLIED_ANNOTATION, None)

    return stripped


def sanitize_to_text(raw_policy: Dict[str, Any]) -> str:
    """Sanitize a policy and dump it as editable YAML."""
    return yaml.safe_dump(sanitize(raw_policy), sort_keys=False, default_flow_style=False)
