"""Small helpers: agent naming, environment flags and file checks."""

import hashlib
import os
import string

EXCLUDED_MARK = "EXCLUDED"
RESERVED_MARK = "RESERVED"

AGENT_SUFFIX_NAME = "agent"
NODE_ARGS_ANNOTATION_KEY = "rke2.io/node-args"
SERVICE_CIDR_FLAG = "--service-cidr"
MANAGEMENT_NODE_LABEL_KEY = "node-role.kubernetes.io/control-plane"

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}
_NAME_SAFE_CHARS = set(string.ascii_lowercase + string.digits)


def _agent_concat_name(*names: str) -> str:
    return "-".join([*names, AGENT_SUFFIX_NAME])


def safe_agent_concat_name(*args: str) -> str:
    """Join names with dashes and an agent suffix, hashing names that are too long."""
    full_path = "-".join(args)
    if len(full_path) < 58:
        return _agent_concat_name(full_path)

    digest = hashlib.sha256(full_path.encode()).hexdigest()
    # The name is cut in the middle; drop a last character that is not name-safe.
    if full_path[50] in _NAME_SAFE_CHARS:
        return _agent_concat_name(full_path[:51], digest[:5])
    return _agent_concat_name(full_path[:50], digest[:6])


def env_get_bool(key: str, default_value: bool) -> bool:
    """Read a boolean environment variable, falling back to a default."""
    value = os.environ.get(key, "")
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default_value


def file_exists(filename) -> bool:
    """Return True if the path exists and is not a directory."""
    return os.path.exists(filename) and not os.path.isdir(filename)