#!/usr/bin/env python3

"""
Desired-state reconciliation for the canary resources.

DesiredStateReconciler implements fetch / diff / create / update once for any
resource kind. CanaryResources builds on it to give the monitor its view of the
canary Route and Service and to apply route target port changes.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from kubernetes.client.rest import ApiException

import config
from errors import ApplyError, ConfigurationError, TransientFetchError
from models import PortRef, Route, Service, port_to_str
from retry_utils import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)

ROUTE_GROUP = "route.openshift.io"
ROUTE_VERSION = "v1"
ROUTE_PLURAL = "routes"

# Label associating resources with the canary controller
OWNING_CANARY_LABEL = "ingress.openshift.io/canary"
CONTROLLER_NAME = "canary_controller"


def is_transient_api_error(exc: BaseException) -> bool:
    """Server side and throttling errors are worth retrying, client errors are not"""
    if isinstance(exc, ApiException):
        return exc.status is None or exc.status == 429 or exc.status >= 500
    return True


def strip_empty(value: Any) -> Any:
    """Drop None and empty containers so that unset and empty compare equal"""
    if isinstance(value, dict):
        stripped = {}
        for key, item in value.items():
            item = strip_empty(item)
            if item not in (None, {}, [], ""):
                stripped[key] = item
        return stripped
    if isinstance(value, list):
        return [strip_empty(item) for item in value]
    return value


def spec_changed(current: Dict[str, Any], desired: Dict[str, Any]) -> Tuple[bool, Optional[Dict[str, Any]]]:
    """
    Compare the spec of two resource bodies.

    Returns:
        Tuple of (changed, updated) where updated is a copy of current
        carrying the desired spec, or None when nothing changed
    """
    if strip_empty(current.get("spec") or {}) == strip_empty(desired.get("spec") or {}):
        return False, None
    updated = copy.deepcopy(current)
    updated["spec"] = copy.deepcopy(desired.get("spec") or {})
    return True, updated


@dataclass(frozen=True)
class ResourceKind:
    """
    Kubernetes API operations for one resource kind.

    Every callable works on plain dict bodies:
        read(name, namespace) -> body
        create(namespace, body) -> body
        replace(name, namespace, body) -> body
    """

    kind: str
    read: Callable[[str, str], Dict[str, Any]]
    create: Callable[[str, Dict[str, Any]], Any]
    replace: Callable[[str, str, Dict[str, Any]], Any]


def route_kind(custom_objects_api, request_timeout: float = config.API_REQUEST_TIMEOUT) -> ResourceKind:
    return ResourceKind(
        kind="Route",
        read=lambda name, namespace: custom_objects_api.get_namespaced_custom_object(
            group=ROUTE_GROUP,
            version=ROUTE_VERSION,
            namespace=namespace,
            plural=ROUTE_PLURAL,
            name=name,
            _request_timeout=request_timeout,
        ),
        create=lambda namespace, body: custom_objects_api.create_namespaced_custom_object(
            group=ROUTE_GROUP,
            version=ROUTE_VERSION,
            namespace=namespace,
            plural=ROUTE_PLURAL,
            body=body,
            _request_timeout=request_timeout,
        ),
        replace=lambda name, namespace, body: custom_objects_api.replace_namespaced_custom_object(
            group=ROUTE_GROUP,
            version=ROUTE_VERSION,
            namespace=namespace,
            plural=ROUTE_PLURAL,
            name=name,
            body=body,
            _request_timeout=request_timeout,
        ),
    )


def service_kind(core_v1_api, api_client, request_timeout: float = config.API_REQUEST_TIMEOUT) -> ResourceKind:
    def to_dict(obj):
        return api_client.sanitize_for_serialization(obj)

    return ResourceKind(
        kind="Service",
        read=lambda name, namespace: to_dict(
            core_v1_api.read_namespaced_service(name, namespace, _request_timeout=request_timeout)
        ),
        create=lambda namespace, body: core_v1_api.create_namespaced_service(
            namespace, body, _request_timeout=request_timeout
        ),
        replace=lambda name, namespace, body: core_v1_api.replace_namespaced_service(
            name, namespace, body, _request_timeout=request_timeout
        ),
    )


class DesiredStateReconciler:
    """Ensure-exists / diff / update for a single named resource"""

    def __init__(self, kind: ResourceKind, name: str, namespace: str):
        self.kind = kind
        self.name = name
        self.namespace = namespace

    @property
    def ref(self) -> str:
        return f"{self.kind.kind.lower()} {self.namespace}/{self.name}"

    async def fetch(self) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """
        Read the current resource.

        Returns:
            Tuple of (exists, body)

        Raises:
            TransientFetchError: If the resource could not be read
        """
        try:
            body = await retry_with_backoff(
                self.kind.read,
                self.name,
                self.namespace,
                operation=f"get_{self.kind.kind.lower()}",
                exceptions=(ApiException,),
                retry_if=is_transient_api_error,
            )
        except ApiException as e:
            if e.status == 404:
                return False, None
            raise TransientFetchError(f"failed to get {self.ref}: {e.reason}") from e
        except RetryExhaustedError as e:
            raise TransientFetchError(f"failed to get {self.ref}: {e.__cause__}") from e
        return True, body

    def diff_spec(self, current: Dict[str, Any], desired: Dict[str, Any]) -> Tuple[bool, Optional[Dict[str, Any]]]:
        return spec_changed(current, desired)

    async def create(self, desired: Dict[str, Any]) -> None:
        try:
            await retry_with_backoff(
                self.kind.create,
                self.namespace,
                desired,
                operation=f"create_{self.kind.kind.lower()}",
                exceptions=(ApiException,),
                retry_if=is_transient_api_error,
            )
        except (ApiException, RetryExhaustedError) as e:
            raise ApplyError(f"failed to create {self.ref}: {e}") from e
        logger.info(f"Created {self.ref}")

    async def update(self, current: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        """
        Write desired's spec onto current if they differ.

        Returns:
            True if an update was written, False if the spec already matched

        Raises:
            ApplyError: If the update could not be written
        """
        changed, updated = self.diff_spec(current, desired)
        if not changed:
            return False

        try:
            await retry_with_backoff(
                self.kind.replace,
                self.name,
                self.namespace,
                updated,
                operation=f"update_{self.kind.kind.lower()}",
                exceptions=(ApiException,),
                retry_if=is_transient_api_error,
            )
        except (ApiException, RetryExhaustedError) as e:
            raise ApplyError(f"failed to update {self.ref}: {e}") from e
        logger.info(f"Updated {self.ref}")
        return True

    async def ensure(self, desired: Dict[str, Any]) -> Tuple[bool, Dict[str, Any]]:
        """
        Create the resource if it does not exist yet.

        Returns:
            Tuple of (created, body)
        """
        exists, current = await self.fetch()
        if exists:
            return False, current
        await self.create(desired)
        return True, desired


def desired_canary_route(service: Service, name: str, namespace: str) -> Dict[str, Any]:
    """
    Canary route pointing at the service's first port.

    The monitor toggles the target port later on, so any port works as long as
    the service exposes more than one.
    """
    if not service.ports:
        raise ConfigurationError(f"Service {service.namespace}/{service.name} has no ports")
    return {
        "apiVersion": f"{ROUTE_GROUP}/{ROUTE_VERSION}",
        "kind": "Route",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {OWNING_CANARY_LABEL: CONTROLLER_NAME},
        },
        "spec": {
            "to": {"kind": "Service", "name": service.name},
            "port": {"targetPort": service.ports[0]},
        },
    }


def with_target_port(route_body: Dict[str, Any], port: PortRef) -> Dict[str, Any]:
    desired = copy.deepcopy(route_body)
    spec = desired.setdefault("spec", {})
    spec["port"] = dict(spec.get("port") or {}, targetPort=port)
    return desired


class CanaryResources:
    """The monitor's view of the canary Route and Service"""

    def __init__(
        self,
        route_reconciler: DesiredStateReconciler,
        service_reconciler: DesiredStateReconciler,
    ):
        self.routes = route_reconciler
        self.services = service_reconciler

    @classmethod
    def from_kubernetes(
        cls,
        core_v1_api,
        custom_objects_api,
        api_client,
        namespace: str = config.CANARY_NAMESPACE,
        route_name: str = config.CANARY_ROUTE_NAME,
        service_name: str = config.CANARY_SERVICE_NAME,
    ) -> "CanaryResources":
        return cls(
            DesiredStateReconciler(route_kind(custom_objects_api), route_name, namespace),
            DesiredStateReconciler(service_kind(core_v1_api, api_client), service_name, namespace),
        )

    async def get_current_route(self) -> Tuple[bool, Optional[Route]]:
        exists, body = await self.routes.fetch()
        if not exists:
            return False, None
        return True, Route.from_k8s(body)

    async def get_current_service(self) -> Tuple[bool, Optional[Service]]:
        exists, body = await self.services.fetch()
        if not exists:
            return False, None
        return True, Service.from_k8s(body)

    async def apply_route_target_port(self, route: Route, port: PortRef) -> bool:
        """
        Point the canary route at a new target port.

        The current route is re-read before diffing, so applying the same port
        twice writes nothing the second time.

        Returns:
            True if the route was updated, False if it already targeted port

        Raises:
            ApplyError: If the route is gone or the update failed
        """
        try:
            exists, current = await self.routes.fetch()
        except TransientFetchError as e:
            raise ApplyError(str(e)) from e
        if not exists:
            raise ApplyError(f"route {route.namespace}/{route.name} no longer exists")

        changed = await self.routes.update(current, with_target_port(current, port))
        if changed:
            logger.info(
                f"Canary route {route.namespace}/{route.name} now targets port {port_to_str(port)}"
            )
        return changed

    async def ensure_canary_route(self, service: Service) -> Tuple[bool, Route]:
        """Create the canary route for service if it does not exist"""
        desired = desired_canary_route(service, self.routes.name, self.routes.namespace)
        created, body = await self.routes.ensure(desired)
        return created, Route.from_k8s(body)
