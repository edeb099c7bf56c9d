"""
Per logical cluster API clients
Every tenant workspace is reached through <virtual workspace URL>/clusters/<name>.
Handles are built once per cluster and share a single connection pool.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from kubernetes import client
from kubernetes.client import rest
from kubernetes.client.rest import ApiException

from .resources import CAMEL_GROUP, KCP_SCHEDULING_GROUP, ResourceRegistry

logger = logging.getLogger(__name__)

FIELD_MANAGER = 'camel-kcp'
APPLY_PATCH_CONTENT_TYPE = 'application/apply-patch+yaml'


class Namespaces:
    """Namespace reader/writer"""

    def __init__(self, core: client.CoreV1Api):
        self.core = core

    def get(self, name: str) -> Optional[client.V1Namespace]:
        try:
            return self.core.read_namespace(name=name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, name: str) -> client.V1Namespace:
        namespace = client.V1Namespace(
            api_version='v1',
            kind='Namespace',
            metadata=client.V1ObjectMeta(name=name)
        )
        return self.core.create_namespace(body=namespace)


class Platforms:
    """IntegrationPlatform reader/writer"""

    def __init__(self, custom: client.CustomObjectsApi, registry: ResourceRegistry):
        self.custom = custom
        self.kind = registry.lookup(f'{CAMEL_GROUP}/v1', 'IntegrationPlatform')

    def get(self, namespace: str, name: str) -> Optional[Dict]:
        try:
            return self.custom.get_namespaced_custom_object(
                group=self.kind.group,
                version=self.kind.version,
                namespace=namespace,
                plural=self.kind.plural,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, body: Dict) -> Dict:
        return self.custom.create_namespaced_custom_object(
            group=self.kind.group,
            version=self.kind.version,
            namespace=body['metadata']['namespace'],
            plural=self.kind.plural,
            body=body
        )


class Placements:
    """Placement reader/writer"""

    def __init__(self, custom: client.CustomObjectsApi, registry: ResourceRegistry):
        self.custom = custom
        self.kind = registry.lookup(f'{KCP_SCHEDULING_GROUP}/v1alpha1', 'Placement')

    def get(self, name: str) -> Optional[Dict]:
        try:
            return self.custom.get_cluster_custom_object(
                group=self.kind.group,
                version=self.kind.version,
                plural=self.kind.plural,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, body: Dict) -> Dict:
        return self.custom.create_cluster_custom_object(
            group=self.kind.group,
            version=self.kind.version,
            plural=self.kind.plural,
            body=body
        )


class Ingresses:
    """Ingress reader"""

    def __init__(self, networking: client.NetworkingV1Api):
        self.networking = networking

    def get(self, namespace: str, name: str) -> Optional[client.V1Ingress]:
        try:
            return self.networking.read_namespaced_ingress(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise


class Applier:
    """Server-side apply, forcing ownership of the applied fields"""

    def __init__(self, api_client: client.ApiClient, registry: ResourceRegistry, field_manager: str = FIELD_MANAGER):
        self.api_client = api_client
        self.registry = registry
        self.field_manager = field_manager

    def apply(self, manifest: Dict, field_manager: Optional[str] = None) -> Dict:
        """Apply a manifest, owning its fields as field_manager (the default manager if unset)"""
        kind = self.registry.for_object(manifest)
        metadata = manifest.get('metadata', {})
        path = kind.path(metadata['name'], metadata.get('namespace'))

        return self.api_client.call_api(
            path,
            'PATCH',
            query_params=[('fieldManager', field_manager or self.field_manager), ('force', 'true')],
            header_params={
                'Accept': 'application/json',
                'Content-Type': APPLY_PATCH_CONTENT_TYPE,
            },
            body=manifest,
            response_type='object',
            auth_settings=['BearerToken'],
            _return_http_data_only=True
        )


@dataclass
class ClusterClient:
    """API access scoped to a single logical cluster"""

    cluster: str
    api_client: client.ApiClient
    namespaces: Namespaces
    platforms: Platforms
    placements: Placements
    ingresses: Ingresses
    applier: Applier
    custom: client.CustomObjectsApi

    def close(self) -> None:
        self.api_client.close()


def cluster_configuration(base: client.Configuration, cluster: str) -> client.Configuration:
    cfg = copy.deepcopy(base)
    cfg.host = f"{base.host.rstrip('/')}/clusters/{cluster}"
    return cfg


def build_cluster_client(cluster: str, base: client.Configuration, registry: ResourceRegistry,
                         field_manager: str = FIELD_MANAGER,
                         transport: Optional[rest.RESTClientObject] = None) -> ClusterClient:
    """Compose the capability clients of a logical cluster over one ApiClient"""
    api_client = client.ApiClient(cluster_configuration(base, cluster))
    if transport is not None:
        # Requests carry absolute URLs, so the connection pool is safe to share
        api_client.rest_client = transport

    custom = client.CustomObjectsApi(api_client)
    return ClusterClient(
        cluster=cluster,
        api_client=api_client,
        namespaces=Namespaces(client.CoreV1Api(api_client)),
        platforms=Platforms(custom, registry),
        placements=Placements(custom, registry),
        ingresses=Ingresses(client.NetworkingV1Api(api_client)),
        applier=Applier(api_client, registry, field_manager),
        custom=custom,
    )


class ClusterClientCache:
    """Builds a ClusterClient once per logical cluster and keeps it for the process lifetime"""

    def __init__(self, config: Optional[client.Configuration], registry: ResourceRegistry,
                 field_manager: str = FIELD_MANAGER,
                 factory: Optional[Callable[[str], ClusterClient]] = None):
        self.config = config
        self.registry = registry
        self.field_manager = field_manager
        self._lock = threading.Lock()
        self._clients: Dict[str, ClusterClient] = {}

        if factory is None:
            self._transport = rest.RESTClientObject(config)
            factory = self._build
        self._factory = factory

    def _build(self, cluster: str) -> ClusterClient:
        return build_cluster_client(cluster, self.config, self.registry, self.field_manager, self._transport)

    def for_cluster(self, cluster: str) -> ClusterClient:
        """Return the client of the given logical cluster, building it on first use"""
        if not cluster:
            raise ValueError('A logical cluster name is required')

        handle = self._clients.get(cluster)
        if handle is not None:
            return handle

        # Built outside the lock, failures propagate and leave nothing cached
        candidate = self._factory(cluster)

        with self._lock:
            handle = self._clients.setdefault(cluster, candidate)

        if handle is candidate:
            logger.debug(f"Created client for logical cluster {cluster}")
        else:
            # Another worker stored its client first
            close = getattr(candidate, 'close', None)
            if close is not None:
                close()

        return handle

    def __len__(self) -> int:
        return len(self._clients)
