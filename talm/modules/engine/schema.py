"""Machine configuration schemas selected by version contract."""
import copy
from typing import Any, Dict

from jsonschema import ValidationError as JSONSchemaError
from jsonschema import validate

from ...errors import SchemaMismatch
from ..version import VersionContract

STRING_LIST = {"type": "array", "items": {"type": "string"}}

INTERFACE_SCHEMA = {
    "type": "object",
    "properties": {
        "interface": {"type": "string"},
        "deviceSelector": {"type": "object"},
        "addresses": STRING_LIST,
        "routes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "network": {"type": "string"},
                    "gateway": {"type": "string"},
                    "metric": {"type": "integer"},
                },
            },
        },
        "vip": {
            "type": "object",
            "properties": {"ip": {"type": "string"}},
            "required": ["ip"],
        },
        "dhcp": {"type": "boolean"},
        "mtu": {"type": "integer"},
        "vlans": {"type": "array", "items": {"type": "object"}},
    },
}

MACHINE_SCHEMA = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": ["controlplane", "worker"]},
        "token": {"type": "string"},
        "ca": {"type": "object"},
        "certSANs": STRING_LIST,
        "kubelet": {"type": "object"},
        "install": {
            "type": "object",
            "properties": {
                "disk": {"type": "string"},
                "image": {"type": "string"},
                "wipe": {"type": "boolean"},
                "diskSelector": {"type": "object"},
            },
        },
        "network": {
            "type": "object",
            "properties": {
                "hostname": {"type": "string"},
                "nameservers": STRING_LIST,
                "interfaces": {"type": "array", "items": INTERFACE_SCHEMA},
            },
        },
        "features": {"type": "object"},
        "sysctls": {"type": "object"},
        "kernel": {"type": "object"},
        "files": {"type": "array"},
        "registries": {"type": "object"},
        "time": {"type": "object"},
    },
}

CLUSTER_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "secret": {"type": "string"},
        "clusterName": {"type": "string"},
        "controlPlane": {
            "type": "object",
            "properties": {"endpoint": {"type": "string", "pattern": "^https?://"}},
        },
        "network": {
            "type": "object",
            "properties": {
                "dnsDomain": {"type": "string"},
                "podSubnets": STRING_LIST,
                "serviceSubnets": STRING_LIST,
                "cni": {
                    "type": "object",
                    "properties": {"name": {"type": "string", "enum": ["flannel", "custom", "none"]}},
                },
            },
        },
        "token": {"type": "string"},
        "allowSchedulingOnControlPlanes": {"type": "boolean"},
    },
}

MACHINE_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "version": {"type": "string", "enum": ["v1alpha1"]},
        "debug": {"type": "boolean"},
        "persist": {"type": "boolean"},
        "machine": MACHINE_SCHEMA,
        "cluster": CLUSTER_SCHEMA,
    },
}

EXTRA_DOCUMENT_SCHEMA = {
    "type": "object",
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"type": "string"},
        "name": {"type": "string"},
    },
    "required": ["apiVersion", "kind"],
}

_FORBID = {"not": {}}


def machine_config_schema(contract: VersionContract, full: bool = False) -> Dict[str, Any]:
    """Schema variant for ``contract``; ``full`` documents must be complete."""
    schema = copy.deepcopy(MACHINE_CONFIG_SCHEMA)
    machine = schema["properties"]["machine"]
    features = machine["properties"]["features"]
    features["properties"] = {}
    if not contract.kubeprism_enabled:
        features["properties"]["kubePrism"] = _FORBID
    if not contract.host_dns_enabled:
        features["properties"]["hostDNS"] = _FORBID
    if not contract.disk_selector_by_transport:
        machine["properties"]["install"]["properties"]["diskSelector"] = {
            "type": "object",
            "properties": {"transport": _FORBID},
        }
    if full:
        schema["required"] = ["version", "machine", "cluster"]
        machine["required"] = ["type", "install"]
        schema["properties"]["cluster"]["required"] = ["controlPlane", "clusterName"]
    return schema


def validate_document(data: Dict[str, Any], contract: VersionContract, template: str, full: bool = False) -> None:
    """Validate a rendered document.

    Raises:
        SchemaMismatch: with the JSON path of the offending field
    """
    if "apiVersion" in data and "kind" in data:
        schema = EXTRA_DOCUMENT_SCHEMA
    else:
        schema = machine_config_schema(contract, full=full)
    try:
        validate(instance=data, schema=schema)
    except JSONSchemaError as ve:
        where = ".".join(str(p) for p in ve.absolute_path)
        raise SchemaMismatch(
            f"rendered document does not match the {contract} schema",
            details=ve.message,
            path=f"{template}:{where}" if where else template,
        ) from ve
