"""Kubernetes API clients for the resource kinds the node manager watches."""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .config import KSMTUNED_GROUP, KSMTUNED_VERSION, KSMTUNED_PLURAL

logger = logging.getLogger(__name__)


class ResourceClient:
    """
    Uniform access to one cluster-scoped resource kind.

    Objects are exchanged as plain dicts in their API (camelCase) form.
    """

    kind = ""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client

    def list(self) -> Tuple[List[Dict[str, Any]], str]:
        """Return (items, resourceVersion) of a full list."""
        raise NotImplementedError

    def _list_func(self):
        raise NotImplementedError

    def _list_kwargs(self) -> Dict[str, Any]:
        return {}

    def watch(self, resource_version: str = "", timeout: int = 300) -> Iterator[Dict[str, Any]]:
        """
        Stream watch events starting after resource_version.

        Yields:
            Dicts with "type" and "object" (the raw API object).
        """
        w = watch.Watch()
        kwargs = self._list_kwargs()
        if resource_version:
            kwargs["resource_version"] = resource_version

        try:
            for event in w.stream(self._list_func(), timeout_seconds=timeout, **kwargs):
                yield {"type": event["type"], "object": event["raw_object"]}
        finally:
            w.stop()

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class NodeClient(ResourceClient):
    """Client for core v1 Nodes."""

    kind = "Node"

    def __init__(self, api_client: client.ApiClient):
        super().__init__(api_client)
        self.v1 = client.CoreV1Api(api_client)

    def _to_dict(self, obj) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    def list(self):
        nodes = self.v1.list_node()
        items = [self._to_dict(node) for node in nodes.items]
        return items, nodes.metadata.resource_version or ""

    def _list_func(self):
        return self.v1.list_node

    def get(self, name):
        try:
            return self._to_dict(self.v1.read_node(name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise


class KsmtunedClient(ResourceClient):
    """Client for the cluster-scoped Ksmtuned custom resource."""

    kind = "Ksmtuned"

    def __init__(self, api_client: client.ApiClient):
        super().__init__(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    def _list_kwargs(self):
        return {
            "group": KSMTUNED_GROUP,
            "version": KSMTUNED_VERSION,
            "plural": KSMTUNED_PLURAL,
        }

    def list(self):
        try:
            response = self.custom_api.list_cluster_custom_object(**self._list_kwargs())
        except ApiException as e:
            if e.status == 404:
                logger.warning("Ksmtuned CRD not found. Please install the CRD first.")
            raise
        resource_version = response.get("metadata", {}).get("resourceVersion", "")
        return response.get("items", []), resource_version

    def _list_func(self):
        return self.custom_api.list_cluster_custom_object

    def get(self, name):
        try:
            return self.custom_api.get_cluster_custom_object(name=name, **self._list_kwargs())
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, body):
        return self.custom_api.create_cluster_custom_object(body=body, **self._list_kwargs())

    def update(self, body):
        return self.custom_api.replace_cluster_custom_object(
            name=body["metadata"]["name"],
            body=body,
            **self._list_kwargs()
        )

    def update_status(self, body):
        return self.custom_api.replace_cluster_custom_object_status(
            name=body["metadata"]["name"],
            body=body,
            **self._list_kwargs()
        )
