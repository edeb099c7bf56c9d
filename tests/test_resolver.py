import threading
from unittest import mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from camel_kcp.errors import AmbiguousOrMissing, Cancelled, ConfigurationError, WatchFailed
from camel_kcp.resolver import (
    EndpointResolver, NamedSurface, UniqueSurface, check_kcp_apis, is_ready, surface_reference,
)

from conftest import api_error

VW_URL = 'https://kcp.example.com/services/apiexport/root:org/camel-k'


def export(name='camel-k', urls=(VW_URL,), condition='True'):
    status = {'virtualWorkspaces': [{'url': u} for u in urls]}
    if condition is not None:
        status['conditions'] = [{'type': 'VirtualWorkspaceURLsReady', 'status': condition}]
    return {'metadata': {'name': name}, 'status': status}


def listing(*items, resource_version='100'):
    return {'metadata': {'resourceVersion': resource_version}, 'items': list(items)}


class FakeWatch:
    """Replays one scripted batch of events per stream call"""

    def __init__(self, batches, stop=None):
        self.batches = list(batches)
        self.stop_event = stop
        self.calls = []
        self.resource_version = None
        self.stopped = 0

    def __call__(self):
        return self

    def stream(self, func, **kwargs):
        self.calls.append(kwargs)
        if not self.batches:
            if self.stop_event is not None:
                self.stop_event.set()
            return
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        for event in batch:
            if 'resourceVersion' in event:
                self.resource_version = event['resourceVersion']
                continue
            yield event

    def stop(self):
        self.stopped += 1


@pytest.fixture
def base():
    cfg = client.Configuration()
    cfg.host = 'https://kcp.example.com/clusters/root:org'
    return cfg


@pytest.fixture
def api():
    return mock.Mock(spec=client.CustomObjectsApi)


def make_resolver(api, registry, fake_watch=None):
    return EndpointResolver(api, registry, watch_factory=fake_watch or FakeWatch([]))


def test_reference_from_configured_name():
    assert surface_reference('camel-k') == NamedSurface('camel-k')
    assert surface_reference('') == UniqueSurface()
    assert surface_reference(None) == UniqueSurface()


def test_readiness_needs_condition_and_url():
    assert is_ready(export())
    assert not is_ready(export(urls=()))
    assert not is_ready(export(condition='False'))
    assert not is_ready(export(condition=None))
    assert not is_ready({})


def test_ready_export_resolves_without_watching(api, registry, base):
    api.list_cluster_custom_object.return_value = listing(export())
    fake = FakeWatch([])

    cfg = make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), threading.Event())

    assert cfg.host == VW_URL
    assert base.host == 'https://kcp.example.com/clusters/root:org'
    assert fake.calls == []
    api.list_cluster_custom_object.assert_called_once_with(
        group='apis.kcp.io', version='v1alpha1', plural='apiexports', field_selector='metadata.name=camel-k')


def test_unique_export_is_listed_without_selector(api, registry, base):
    api.list_cluster_custom_object.return_value = listing(export())

    make_resolver(api, registry).resolve(base, UniqueSurface(), threading.Event())

    assert 'field_selector' not in api.list_cluster_custom_object.call_args.kwargs


@pytest.mark.parametrize('items', [(), (export('a'), export('b'))])
def test_unique_reference_needs_exactly_one_export(api, registry, base, items):
    api.list_cluster_custom_object.return_value = listing(*items)
    fake = FakeWatch([])

    with pytest.raises(AmbiguousOrMissing):
        make_resolver(api, registry, fake).resolve(base, UniqueSurface(), threading.Event())

    assert fake.calls == []


def test_export_is_waited_for_until_its_url_shows_up(api, registry, base):
    api.list_cluster_custom_object.return_value = listing(export(urls=()), resource_version='100')
    fake = FakeWatch([
        [{'type': 'MODIFIED', 'object': export(condition='False')}, {'resourceVersion': '105'}],
        [{'type': 'MODIFIED', 'object': export()}],
    ])

    cfg = make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), threading.Event())

    assert cfg.host == VW_URL
    assert [c.get('resource_version') for c in fake.calls] == ['100', '105']
    assert all(c['field_selector'] == 'metadata.name=camel-k' for c in fake.calls)
    assert fake.stopped == 1


def test_missing_named_export_is_waited_for(api, registry, base):
    api.list_cluster_custom_object.return_value = listing()
    fake = FakeWatch([[{'type': 'ADDED', 'object': export()}]])

    cfg = make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), threading.Event())

    assert cfg.host == VW_URL


def test_watch_error_event_fails_the_wait(api, registry, base):
    api.list_cluster_custom_object.return_value = listing()
    # The stream raises error events from the server as ApiException
    fake = FakeWatch([ApiException(status=500, reason='InternalError: etcd unavailable')])

    with pytest.raises(WatchFailed, match='etcd unavailable'):
        make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), threading.Event())

    assert fake.stopped == 1


def test_expired_watch_restarts_from_current_state(api, registry, base):
    api.list_cluster_custom_object.return_value = listing(resource_version='100')
    fake = FakeWatch([
        ApiException(status=410, reason='Expired: too old resource version'),
        [{'type': 'ADDED', 'object': export()}],
    ])

    cfg = make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), threading.Event())

    assert cfg.host == VW_URL
    assert [c.get('resource_version') for c in fake.calls] == ['100', None]


def test_api_error_fails_the_wait(api, registry, base):
    api.list_cluster_custom_object.return_value = listing()
    error = api_error(403, 'Forbidden')
    fake = FakeWatch([error])

    with pytest.raises(WatchFailed) as excinfo:
        make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), threading.Event())

    assert excinfo.value.__cause__ is error
    assert fake.stopped == 1


def test_stop_cancels_the_wait(api, registry, base):
    api.list_cluster_custom_object.return_value = listing()
    stop = threading.Event()
    fake = FakeWatch([[{'type': 'MODIFIED', 'object': export(urls=())}]], stop=stop)

    with pytest.raises(Cancelled):
        make_resolver(api, registry, fake).resolve(base, NamedSurface('camel-k'), stop)

    assert fake.stopped >= 1


class BlockingWatch:
    """Blocks in stream like an idle watch connection until stopped"""

    def __init__(self):
        self.streaming = threading.Event()
        self.stopped = threading.Event()

    def __call__(self):
        return self

    def stream(self, func, **kwargs):
        self.streaming.set()
        self.stopped.wait()
        raise ConnectionError('connection closed')
        yield

    def stop(self):
        self.stopped.set()


def test_stop_interrupts_a_pending_watch(api, registry, base):
    api.list_cluster_custom_object.return_value = listing()
    stop = threading.Event()
    fake = BlockingWatch()
    resolver = EndpointResolver(api, registry, watch_factory=fake, poll_seconds=3600)
    errors = []

    def resolve():
        try:
            resolver.resolve(base, NamedSurface('camel-k'), stop)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=resolve)
    thread.start()
    assert fake.streaming.wait(5)

    stop.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(errors) == 1 and isinstance(errors[0], Cancelled)


def test_unsupported_reference_is_rejected(api, registry, base):
    with pytest.raises(TypeError):
        make_resolver(api, registry).resolve(base, 'camel-k', threading.Event())

    api.list_cluster_custom_object.assert_not_called()


def api_versions(*groups):
    return client.V1APIGroupList(groups=[
        client.V1APIGroup(name=name, versions=[
            client.V1GroupVersionForDiscovery(group_version=f'{name}/{version}', version=version)
        ])
        for name, version in groups
    ])


def test_kcp_apis_are_detected():
    with mock.patch.object(client, 'ApisApi') as apis:
        apis.return_value.get_api_versions.return_value = api_versions(('apps', 'v1'), ('apis.kcp.io', 'v1alpha1'))
        check_kcp_apis(mock.Mock())


def test_plain_kubernetes_is_rejected():
    with mock.patch.object(client, 'ApisApi') as apis:
        apis.return_value.get_api_versions.return_value = api_versions(('apps', 'v1'))
        with pytest.raises(ConfigurationError):
            check_kcp_apis(mock.Mock())
