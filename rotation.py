#!/usr/bin/env python3

"""
Route target port rotation.

Switching the port a route points to exercises a different path through the
router. If traffic keeps arriving on the old port after a rotation, the router
has wedged.
"""

import logging
import random
from typing import List, Optional, Sequence

from errors import NoPortsError, SinglePortOnlyError
from models import PortRef

logger = logging.getLogger(__name__)


def alternative_ports(service_ports: Sequence[PortRef], current_port: Optional[PortRef]) -> List[PortRef]:
    """Distinct service ports other than current_port, in service order"""
    available: List[PortRef] = []
    for port in service_ports:
        if port != current_port and port not in available:
            available.append(port)
    return available


def choose_random_port(
    service_ports: Sequence[PortRef],
    current_port: Optional[PortRef],
    rng: Optional[random.Random] = None,
) -> PortRef:
    """
    Pick a new target port for the canary route.

    Args:
        service_ports: Target ports exposed by the canary service
        current_port: Port the route currently targets
        rng: Random source; pass a seeded random.Random for reproducible picks

    Returns:
        A port from service_ports that differs from current_port

    Raises:
        NoPortsError: If service_ports is empty
        SinglePortOnlyError: If there is no port to switch to
    """
    if len(service_ports) == 0:
        raise NoPortsError("Service has no ports")
    if len(service_ports) == 1:
        raise SinglePortOnlyError("Service has only one port, no change possible")

    available = alternative_ports(service_ports, current_port)
    if not available:
        raise SinglePortOnlyError(
            f"All service ports equal the current port {current_port}, no change possible"
        )

    if rng is None:
        rng = random.Random()
    return rng.choice(available)
