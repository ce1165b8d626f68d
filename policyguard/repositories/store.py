"""Resource store backed by the Kubernetes dynamic client."""

from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import (
    ResourceNotFoundError as DiscoveryNotFoundError,
)

from policyguard.core.exceptions import (ResourceConflictError,
                                         ResourceNotFoundError, StoreError)
from policyguard.core.logging import get_logger
from policyguard.models.resources import ResourceKind

logger = get_logger(__name__)


def format_label_selector(labels: Mapping[str, Optional[str]]) -> str:
    """Render {key: value} as a selector; a None value means "key exists"."""
    parts = []
    for key, value in sorted(labels.items()):
        parts.append(key if value is None else f"{key}={value}")
    return ",".join(parts)


def _describe(kind: ResourceKind, name: Optional[str], namespace: Optional[str]):
    if namespace:
        return f"{kind.kind} {namespace}/{name}"
    return f"{kind.kind} {name}"


@contextmanager
def translate_api_errors(action: str, kind: ResourceKind, name=None, namespace=None):
    """Map API exceptions onto the store error taxonomy."""
    try:
        yield
    except ApiException as e:
        target = _describe(kind, name, namespace)
        if e.status == 404:
            raise ResourceNotFoundError(f"{target} not found") from e
        if e.status == 409:
            raise ResourceConflictError(f"cannot {action} {target}: conflict") from e
        raise StoreError(f"cannot {action} {target}: {e.reason or e}") from e


class ResourceStore:
    """Reads and writes cluster objects as plain dictionaries.

    Every read goes straight to the API server, so results are authoritative.
    Updates carry ``metadata.resourceVersion`` and therefore fail with
    ResourceConflictError when another writer got there first.
    """

    def __init__(self, dynamic_client: DynamicClient):
        self.client = dynamic_client
        self._apis: Dict[ResourceKind, Any] = {}

    def _api(self, kind: ResourceKind):
        api = self._apis.get(kind)
        if api is None:
            try:
                api = self.client.resources.get(
                    api_version=kind.api_version, kind=kind.kind
                )
            except DiscoveryNotFoundError as e:
                raise StoreError(
                    f"{kind.api_version} {kind.kind} is not served by the cluster"
                ) from e
            self._apis[kind] = api
        return api

    @staticmethod
    def _namespace(kind: ResourceKind, namespace: Optional[str]) -> Optional[str]:
        return (namespace or None) if kind.namespaced else None

    def get(
        self, kind: ResourceKind, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        namespace = self._namespace(kind, namespace)
        with translate_api_errors("get", kind, name, namespace):
            return self._api(kind).get(name=name, namespace=namespace).to_dict()

    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, Optional[str]]] = None,
    ) -> List[Dict[str, Any]]:
        namespace = self._namespace(kind, namespace)
        kwargs = {}
        if label_selector:
            kwargs["label_selector"] = format_label_selector(label_selector)
        with translate_api_errors("list", kind, "*", namespace):
            result = self._api(kind).get(namespace=namespace, **kwargs).to_dict()
        return result.get("items") or []

    def create(self, kind: ResourceKind, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body.get("metadata", {})
        namespace = self._namespace(kind, metadata.get("namespace"))
        with translate_api_errors("create", kind, metadata.get("name"), namespace):
            created = self._api(kind).create(body=body, namespace=namespace)
        logger.debug(f"Created {_describe(kind, metadata.get('name'), namespace)}")
        return created.to_dict()

    def replace(self, kind: ResourceKind, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body.get("metadata", {})
        namespace = self._namespace(kind, metadata.get("namespace"))
        with translate_api_errors("update", kind, metadata.get("name"), namespace):
            return self._api(kind).replace(body=body, namespace=namespace).to_dict()

    def replace_status(
        self, kind: ResourceKind, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        metadata = body.get("metadata", {})
        namespace = self._namespace(kind, metadata.get("namespace"))
        with translate_api_errors(
            "update status of", kind, metadata.get("name"), namespace
        ):
            api = self._api(kind)
            return api.status.replace(body=body, namespace=namespace).to_dict()

    def delete(
        self, kind: ResourceKind, name: str, namespace: Optional[str] = None
    ) -> None:
        namespace = self._namespace(kind, namespace)
        with translate_api_errors("delete", kind, name, namespace):
            self._api(kind).delete(name=name, namespace=namespace)
        logger.debug(f"Deleted {_describe(kind, name, namespace)}")
