#!/usr/bin/env python3

import kubernetes
import logging
import os
from pathlib import Path
from typing import Optional

from errors import ConfigurationError

logger = logging.getLogger(__name__)

_api_client: Optional[kubernetes.client.ApiClient] = None


def load_cluster_config() -> str:
    """
    Load cluster credentials, preferring a kubeconfig file over the
    in-cluster service account.

    Returns:
        "kubeconfig" or "in-cluster", naming the source that was loaded

    Raises:
        ConfigurationError: When neither source is usable
    """
    kubeconfig_path = os.environ.get("KUBECONFIG", "~/.kube/config")
    kubeconfig_file = Path(os.path.expanduser(kubeconfig_path))

    if kubeconfig_file.exists():
        try:
            kubernetes.config.load_kube_config(config_file=str(kubeconfig_file))
            logger.info(f"Loaded kubeconfig from {kubeconfig_file}")
            return "kubeconfig"
        except kubernetes.config.ConfigException as e:
            logger.warning(f"Failed to load kubeconfig {kubeconfig_file}: {e}")
    else:
        logger.info(f"Kubeconfig file not found: {kubeconfig_file}")

    if not os.environ.get("KUBERNETES_SERVICE_HOST"):
        logger.warning("KUBERNETES_SERVICE_HOST not set, in-cluster config will likely fail")

    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException as e:
        raise ConfigurationError(f"No usable Kubernetes credentials: {e}") from e
    logger.info("Loaded in-cluster config")
    return "in-cluster"


def get_api_client() -> kubernetes.client.ApiClient:
    """Shared API client, loading cluster credentials on first use"""
    global _api_client
    if _api_client is None:
        load_cluster_config()
        _api_client = kubernetes.client.ApiClient()
    return _api_client


def get_core_v1_api() -> kubernetes.client.CoreV1Api:
    return kubernetes.client.CoreV1Api(get_api_client())


def get_custom_objects_api() -> kubernetes.client.CustomObjectsApi:
    return kubernetes.client.CustomObjectsApi(get_api_client())
