from __future__ import annotations

import logging

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from maintenance.errors import SetupError


logger = logging.getLogger("maintenance.setup")


OPENSHIFT_CONFIG_GROUP = "config.openshift.io"


def load_cluster_config() -> client.ApiClient:
    # In-cluster config first (running in a pod), kubeconfig for local runs.
    try:
        config.load_incluster_config()
        logger.info("loaded in-cluster Kubernetes configuration")
    except ConfigException:
        try:
            config.load_kube_config()
            logger.info("loaded kubeconfig from default location")
        except (ConfigException, OSError) as e:
            raise SetupError(f"unable to load Kubernetes configuration: {e}") from e
    return client.ApiClient()


def is_openshift(api_client: client.ApiClient) -> bool:
    try:
        groups = client.ApisApi(api_client).get_api_versions().groups or []
    except ApiException as e:
        raise SetupError(f"failed to check if we run on Openshift: {e.status} {e.reason}") from e
    except urllib3.exceptions.HTTPError as e:
        raise SetupError(f"failed to check if we run on Openshift: {e}") from e
    return any(g.name == OPENSHIFT_CONFIG_GROUP for g in groups)
