"""
Cluster validation - checks submitted cluster parameters before they are stored.

Parameters are validated against a JSON Schema; the configuration document
must additionally parse as a YAML mapping, since pcluster rejects anything
else only after a round trip to AWS.
"""

import logging
from typing import Any, Dict, Optional, Tuple

import yaml
from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

# ParallelCluster naming rule: starts with a letter, at most 60 characters
CLUSTER_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{0,59}$"

REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d+$"

CLUSTER_PARAMETERS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "region", "clusterConfiguration"],
    "properties": {
        "name": {"type": "string", "pattern": CLUSTER_NAME_PATTERN},
        "region": {"type": "string", "pattern": REGION_PATTERN},
        "clusterConfiguration": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

_validator = Draft7Validator(CLUSTER_PARAMETERS_SCHEMA)


def validate_configuration_document(document: str) -> Tuple[bool, Optional[str]]:
    """
    Check that a cluster configuration document is a YAML mapping.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        parsed = yaml.safe_load(document)
    except yaml.YAMLError as e:
        return False, f"clusterConfiguration is not valid YAML: {e}"

    if not isinstance(parsed, dict):
        return False, "clusterConfiguration must be a YAML mapping"
    return True, None


def validate_cluster_parameters(
    params: Dict[str, Any],
) -> Tuple[bool, Optional[str]]:
    """
    Validate cluster parameters.

    Args:
        params: Mapping with name, region and clusterConfiguration

    Returns:
        Tuple of (is_valid, error_message). All schema errors are reported
        together, joined by '; '.
    """
    errors = sorted(_validator.iter_errors(params), key=lambda e: list(e.path))
    if errors:
        messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            messages.append(f"{path}: {error.message}")
        return False, "; ".join(messages)

    return validate_configuration_document(params["clusterConfiguration"])
