import copy

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from camel_kcp.clients import ClusterClientCache
from camel_kcp.resources import default_registry


def api_error(status, reason=None):
    return ApiException(status=status, reason=reason or {404: 'Not Found', 409: 'Conflict'}.get(status, 'Error'))


class FakeNamespaces:
    def __init__(self):
        self.items = {}
        self.create_calls = []
        self.create_error = None

    def get(self, name):
        return self.items.get(name)

    def create(self, name):
        self.create_calls.append(name)
        if self.create_error is not None:
            raise self.create_error
        if name in self.items:
            raise api_error(409)
        self.items[name] = {'metadata': {'name': name}}
        return self.items[name]


class FakePlatforms:
    def __init__(self):
        self.items = {}
        self.create_calls = []
        self.create_error = None
        self.get_error = None

    def get(self, namespace, name):
        if self.get_error is not None:
            raise self.get_error
        return self.items.get((namespace, name))

    def create(self, body):
        self.create_calls.append(copy.deepcopy(body))
        if self.create_error is not None:
            raise self.create_error
        key = (body['metadata']['namespace'], body['metadata']['name'])
        if key in self.items:
            raise api_error(409)
        self.items[key] = copy.deepcopy(body)
        return body


class FakePlacements:
    def __init__(self):
        self.items = {}
        self.create_calls = []
        self.create_error = None

    def get(self, name):
        return self.items.get(name)

    def create(self, body):
        self.create_calls.append(copy.deepcopy(body))
        if self.create_error is not None:
            raise self.create_error
        self.items[body['metadata']['name']] = copy.deepcopy(body)
        return body


class FakeIngresses:
    def __init__(self):
        self.items = {}
        self.get_error = None

    def get(self, namespace, name):
        if self.get_error is not None:
            raise self.get_error
        return self.items.get((namespace, name))


class FakeApplier:
    def __init__(self):
        self.applied = []
        self.objects = {}
        # kind -> exception raised when applying that kind
        self.errors = {}

    def apply(self, manifest, field_manager=None):
        self.applied.append((copy.deepcopy(manifest), field_manager))
        error = self.errors.get(manifest['kind'])
        if error is not None:
            raise error
        metadata = manifest['metadata']
        self.objects[(manifest['kind'], metadata.get('namespace', ''), metadata['name'])] = copy.deepcopy(manifest)
        return manifest


class FakeCluster:
    """In-memory stand-in for a ClusterClient"""

    def __init__(self, cluster):
        self.cluster = cluster
        self.namespaces = FakeNamespaces()
        self.platforms = FakePlatforms()
        self.placements = FakePlacements()
        self.ingresses = FakeIngresses()
        self.applier = FakeApplier()
        self.closed = False

    def close(self):
        self.closed = True

    def state(self):
        return (
            copy.deepcopy(self.namespaces.items),
            copy.deepcopy(self.platforms.items),
            copy.deepcopy(self.placements.items),
            copy.deepcopy(self.applier.objects),
        )


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def clusters():
    return {}


@pytest.fixture
def clients(registry, clusters):
    return ClusterClientCache(None, registry, factory=lambda name: clusters.setdefault(name, FakeCluster(name)))


def make_ingress(namespace, name, ip=None, hostname=None):
    points = []
    if ip or hostname:
        points.append(client.V1IngressLoadBalancerIngress(ip=ip, hostname=hostname))
    return client.V1Ingress(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        status=client.V1IngressStatus(load_balancer=client.V1IngressLoadBalancerStatus(ingress=points)),
    )
