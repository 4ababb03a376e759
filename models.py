#!/usr/bin/env python3

"""
Views of the canary Route and Service consumed by the monitor.

Both are built from Kubernetes objects, either plain dicts as returned by
CustomObjectsApi or the typed models returned by CoreV1Api.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple, Union

# Backend port identifier: a port number or a named port.
# Compared by value, so 8080 and "8080" are different ports.
PortRef = Union[int, str]


def _get(obj: Any, key: str, attr: Optional[str] = None) -> Any:
    """Read a field from either a dict or a kubernetes client model"""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, attr or key, None)


def port_to_str(port: Optional[PortRef]) -> str:
    """String form of a port reference, empty when unset"""
    if port is None:
        return ""
    return str(port)


@dataclass(frozen=True)
class Route:
    """Current state of the canary route"""

    name: str
    namespace: str
    host: str = ""
    target_port: Optional[PortRef] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_routable(self) -> bool:
        return bool(self.host)

    @classmethod
    def from_k8s(cls, obj: Mapping[str, Any]) -> "Route":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        port = spec.get("port") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            host=spec.get("host") or "",
            target_port=port.get("targetPort"),
            raw=obj,
        )


@dataclass(frozen=True)
class Service:
    """Ports exposed by the canary service"""

    name: str
    namespace: str
    ports: Tuple[PortRef, ...] = ()

    @classmethod
    def from_k8s(cls, obj: Any) -> "Service":
        metadata = _get(obj, "metadata")
        spec = _get(obj, "spec")
        ports = []
        for port in _get(spec, "ports") or []:
            target = _get(port, "targetPort", "target_port")
            if target is None:
                # Kubernetes defaults targetPort to the service port
                target = _get(port, "port")
            ports.append(target)
        return cls(
            name=_get(metadata, "name") or "",
            namespace=_get(metadata, "namespace") or "",
            ports=tuple(ports),
        )
