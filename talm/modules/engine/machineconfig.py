"""Base machine configuration and patch merging for ``--full`` output."""
import copy
import logging
from typing import Any, Dict, List, Optional

from ...errors import ValueTypeError
from ..secrets import SecretsBundle
from ..version import VersionContract

logger = logging.getLogger("talm.engine")

INSTALLER_IMAGE = "ghcr.io/siderolabs/installer"
KUBELET_IMAGE = "ghcr.io/siderolabs/kubelet"
K8S_IMAGE_REGISTRY = "registry.k8s.io"

DEFAULT_POD_SUBNETS = ["10.244.0.0/16"]
DEFAULT_SERVICE_SUBNETS = ["10.96.0.0/12"]
DEFAULT_DNS_DOMAIN = "cluster.local"

# Lists merged by a key field instead of being appended
KEYED_LISTS = {
    "machine.network.interfaces": "interface",
    "machine.network.interfaces.vlans": "vlanId",
    "machine.disks": "device",
}

# Lists replaced wholesale by a patch
REPLACED_LISTS = {
    "cluster.network.podSubnets",
    "cluster.network.serviceSubnets",
    "machine.network.nameservers",
    "machine.network.interfaces.addresses",
    "machine.network.interfaces.routes",
}


def _ver(version: str) -> str:
    return version if version.startswith("v") else f"v{version}"


def _cert(bundle: Optional[SecretsBundle], name: str, with_key: bool) -> Dict[str, str]:
    if bundle is None or name not in bundle.certs:
        return {}
    entry = bundle.certs[name]
    out = {"crt": entry.crt or ""}
    out["key"] = entry.key if with_key else ""
    return out


def base_config(
    machine_type: str,
    cluster_name: str,
    endpoint: str,
    contract: VersionContract,
    talos_version: str,
    kubernetes_version: str,
    bundle: Optional[SecretsBundle] = None,
) -> Dict[str, Any]:
    """Generate the default machine configuration a patch is merged onto.

    Without a bundle every secret field is left out.
    """
    controlplane = machine_type == "controlplane"
    k8s = _ver(kubernetes_version)

    features: Dict[str, Any] = {
        "rbac": True,
        "stableHostname": True,
        "apidCheckExtKeyUsage": True,
        "diskQuotaSupport": True,
    }
    if contract.kubeprism_enabled:
        features["kubePrism"] = {"enabled": True, "port": 7445}
    if contract.host_dns_enabled:
        features["hostDNS"] = {"enabled": True, "forwardKubeDNSToHost": True}

    machine: Dict[str, Any] = {
        "type": machine_type,
        "token": bundle.trustd_token if bundle else "",
        "ca": _cert(bundle, "os", with_key=controlplane),
        "certSANs": [],
        "kubelet": {
            "image": f"{KUBELET_IMAGE}:{k8s}",
            "defaultRuntimeSeccompProfileEnabled": True,
            "disableManifestsDirectory": True,
        },
        "network": {},
        "install": {
            "disk": "/dev/sda",
            "image": f"{INSTALLER_IMAGE}:{_ver(talos_version)}",
            "wipe": False,
        },
        "features": features,
    }
    if bundle is None:
        del machine["token"]
        del machine["ca"]

    cluster: Dict[str, Any] = {}
    if bundle is not None:
        cluster["id"] = bundle.cluster_id
        cluster["secret"] = bundle.cluster_secret
    cluster.update({
        "controlPlane": {"endpoint": endpoint},
        "clusterName": cluster_name,
        "network": {
            "dnsDomain": DEFAULT_DNS_DOMAIN,
            "podSubnets": list(DEFAULT_POD_SUBNETS),
            "serviceSubnets": list(DEFAULT_SERVICE_SUBNETS),
        },
    })
    if bundle is not None:
        cluster["token"] = bundle.bootstrap_token
        cluster["ca"] = _cert(bundle, "k8s", with_key=controlplane)
    if controlplane:
        if bundle is not None:
            if bundle.secretbox_encryption_secret:
                cluster["secretboxEncryptionSecret"] = bundle.secretbox_encryption_secret
            elif bundle.aescbc_encryption_secret:
                cluster["aescbcEncryptionSecret"] = bundle.aescbc_encryption_secret
            cluster["aggregatorCA"] = _cert(bundle, "k8saggregator", with_key=True)
            if "k8sserviceaccount" in bundle.certs:
                cluster["serviceAccount"] = {"key": bundle.certs["k8sserviceaccount"].key}
        cluster["apiServer"] = {
            "image": f"{K8S_IMAGE_REGISTRY}/kube-apiserver:{k8s}",
            "certSANs": [],
        }
        cluster["controllerManager"] = {"image": f"{K8S_IMAGE_REGISTRY}/kube-controller-manager:{k8s}"}
        cluster["scheduler"] = {"image": f"{K8S_IMAGE_REGISTRY}/kube-scheduler:{k8s}"}
        etcd_ca = _cert(bundle, "etcd", with_key=True)
        if etcd_ca:
            cluster["etcd"] = {"ca": etcd_ca}
    cluster["proxy"] = {"image": f"{K8S_IMAGE_REGISTRY}/kube-proxy:{k8s}"}
    cluster["discovery"] = {"enabled": True}

    return {
        "version": "v1alpha1",
        "debug": False,
        "persist": True,
        "machine": machine,
        "cluster": cluster,
    }


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_list(base: List[Any], patch: List[Any], path: str) -> List[Any]:
    if path in REPLACED_LISTS:
        return copy.deepcopy(patch)
    key = KEYED_LISTS.get(path)
    out = copy.deepcopy(base)
    for item in patch:
        if key and isinstance(item, dict) and key in item:
            for i, existing in enumerate(out):
                if isinstance(existing, dict) and existing.get(key) == item[key]:
                    out[i] = merge_patch(existing, item, path)
                    break
            else:
                out.append(copy.deepcopy(item))
        elif item not in out:
            out.append(copy.deepcopy(item))
    return out


def merge_patch(base: Dict[str, Any], patch: Dict[str, Any], path: str = "") -> Dict[str, Any]:
    """Strategic merge of a machine-config patch.

    Maps merge recursively and ``$patch: delete`` removes a key. Lists are
    appended without duplicates, merged by key for interfaces, VLANs and
    disks, and replaced for subnets, nameservers, addresses and routes.
    """
    out = copy.deepcopy(base)
    for key, value in patch.items():
        sub = _join(path, key)
        if isinstance(value, dict) and value.get("$patch") == "delete":
            out.pop(key, None)
            continue
        if key not in out or out[key] is None or value is None:
            out[key] = copy.deepcopy(value)
            continue
        current = out[key]
        if isinstance(current, dict) and isinstance(value, dict):
            out[key] = merge_patch(current, value, sub)
        elif isinstance(current, list) and isinstance(value, list):
            out[key] = _merge_list(current, value, sub)
        elif isinstance(current, (dict, list)) or isinstance(value, (dict, list)):
            raise ValueTypeError(
                "cannot merge machine config patch",
                details=f"{type(current).__name__} vs {type(value).__name__}",
                path=sub,
            )
        else:
            out[key] = value
    return out


def full_config(
    patch: Dict[str, Any],
    machine_type: str,
    contract: VersionContract,
    talos_version: str,
    kubernetes_version: str,
    bundle: Optional[SecretsBundle] = None,
) -> Dict[str, Any]:
    """Merge a rendered patch onto the base configuration for its machine type."""
    cluster = patch.get("cluster") or {}
    endpoint = (cluster.get("controlPlane") or {}).get("endpoint", "")
    base = base_config(
        machine_type=machine_type,
        cluster_name=cluster.get("clusterName", ""),
        endpoint=endpoint,
        contract=contract,
        talos_version=talos_version,
        kubernetes_version=kubernetes_version,
        bundle=bundle,
    )
    return merge_patch(base, patch)
