"""
Resource kinds known to the operator
Maps apiVersion/kind pairs to the REST paths used to read and apply them
"""

from dataclasses import dataclass
from typing import Dict, Optional

from .errors import ConfigurationError

# kcp APIs
KCP_APIS_GROUP = 'apis.kcp.io'
KCP_APIS_VERSION = 'v1alpha1'
KCP_SCHEDULING_GROUP = 'scheduling.kcp.io'

# Annotation carrying the logical cluster of objects listed through /clusters/*
CLUSTER_ANNOTATION = 'kcp.io/cluster'
WILDCARD_CLUSTER = '*'

CAMEL_GROUP = 'camel.apache.org'


@dataclass(frozen=True)
class ResourceKind:
    """A single REST resource: group, version, kind, plural and scope"""

    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f'{self.group}/{self.version}'

    def path(self, name: str, namespace: Optional[str] = None) -> str:
        """REST path of a single object of this kind"""
        if self.group:
            prefix = f'/apis/{self.group}/{self.version}'
        else:
            prefix = f'/api/{self.version}'

        if self.namespaced:
            if not namespace:
                raise ValueError(f'{self.kind} {name} requires a namespace')
            prefix = f'{prefix}/namespaces/{namespace}'

        return f'{prefix}/{self.plural}/{name}'


class ResourceRegistry:
    """Registry of resource kinds, built once at startup and passed to the components that need it"""

    def __init__(self):
        self._kinds: Dict[tuple, ResourceKind] = {}

    def register(self, kind: ResourceKind) -> None:
        key = (kind.api_version, kind.kind)
        if key in self._kinds:
            raise ConfigurationError(f'{kind.kind} ({kind.api_version}) is already registered')
        self._kinds[key] = kind

    def lookup(self, api_version: str, kind: str) -> ResourceKind:
        try:
            return self._kinds[(api_version, kind)]
        except KeyError:
            raise ConfigurationError(f'Unknown resource kind {kind} ({api_version})') from None

    def for_object(self, obj: Dict) -> ResourceKind:
        """Resolve the kind of a manifest from its apiVersion and kind fields"""
        return self.lookup(obj.get('apiVersion', ''), obj.get('kind', ''))

    def __contains__(self, key) -> bool:
        return key in self._kinds

    def __len__(self) -> int:
        return len(self._kinds)


def default_registry() -> ResourceRegistry:
    """Build the registry with every kind the operator reads, creates or applies"""
    registry = ResourceRegistry()
    for kind in (
        ResourceKind(KCP_APIS_GROUP, KCP_APIS_VERSION, 'APIExport', 'apiexports', False),
        ResourceKind(KCP_APIS_GROUP, KCP_APIS_VERSION, 'APIBinding', 'apibindings', False),
        ResourceKind(KCP_SCHEDULING_GROUP, 'v1alpha1', 'Placement', 'placements', False),
        ResourceKind(CAMEL_GROUP, 'v1', 'IntegrationPlatform', 'integrationplatforms', True),
        ResourceKind('', 'v1', 'Namespace', 'namespaces', False),
        ResourceKind('', 'v1', 'ServiceAccount', 'serviceaccounts', True),
        ResourceKind('', 'v1', 'Service', 'services', True),
        ResourceKind('apps', 'v1', 'Deployment', 'deployments', True),
        ResourceKind('rbac.authorization.k8s.io', 'v1', 'ClusterRole', 'clusterroles', False),
        ResourceKind('rbac.authorization.k8s.io', 'v1', 'ClusterRoleBinding', 'clusterrolebindings', False),
        ResourceKind('networking.k8s.io', 'v1', 'Ingress', 'ingresses', True),
    ):
        registry.register(kind)
    return registry
