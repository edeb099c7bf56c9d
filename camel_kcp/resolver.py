"""
APIExport virtual workspace resolution
The virtual workspace URL of an APIExport is published asynchronously, so the
resolver lists first and then waits on a watch until the URL shows up.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .errors import AmbiguousOrMissing, Cancelled, ConfigurationError, WatchFailed
from .resources import KCP_APIS_GROUP, KCP_APIS_VERSION, ResourceRegistry

logger = logging.getLogger(__name__)

READY_CONDITION = 'VirtualWorkspaceURLsReady'


@dataclass(frozen=True)
class NamedSurface:
    """An APIExport referenced by name"""

    name: str


@dataclass(frozen=True)
class UniqueSurface:
    """The only APIExport of the workspace"""


SurfaceReference = Union[NamedSurface, UniqueSurface]


def surface_reference(name: Optional[str]) -> SurfaceReference:
    if name:
        return NamedSurface(name)
    return UniqueSurface()


def virtual_workspace_urls(export: Dict) -> List[str]:
    workspaces = export.get('status', {}).get('virtualWorkspaces') or []
    return [vw['url'] for vw in workspaces if vw.get('url')]


def is_ready(export: Dict) -> bool:
    """An APIExport is ready once its URLs condition is True and at least one URL is published"""
    conditions = export.get('status', {}).get('conditions') or []
    condition_true = any(
        c.get('type') == READY_CONDITION and c.get('status') == 'True'
        for c in conditions
    )
    return condition_true and bool(virtual_workspace_urls(export))


def resolved_configuration(base: client.Configuration, export: Dict) -> client.Configuration:
    """Copy the base configuration, pointing it at the first virtual workspace URL"""
    cfg = copy.deepcopy(base)
    # TODO: pick the URL of the shard serving the workspace once exports are sharded
    cfg.host = virtual_workspace_urls(export)[0]
    return cfg


def check_kcp_apis(api_client: client.ApiClient) -> None:
    """Fail unless the control plane serves the kcp apis group"""
    groups = client.ApisApi(api_client).get_api_versions().groups or []
    for group in groups:
        if group.name != KCP_APIS_GROUP:
            continue
        if any(v.version == KCP_APIS_VERSION for v in group.versions or []):
            return
    raise ConfigurationError(f'{KCP_APIS_GROUP}/{KCP_APIS_VERSION} is not served by the control plane')


class EndpointResolver:
    """Resolves an APIExport reference to the configuration of its virtual workspace"""

    def __init__(self, api: client.CustomObjectsApi, registry: ResourceRegistry,
                 watch_factory: Callable[[], watch.Watch] = watch.Watch, poll_seconds: int = 10):
        self.api = api
        self.kind = registry.lookup(f'{KCP_APIS_GROUP}/{KCP_APIS_VERSION}', 'APIExport')
        self.watch_factory = watch_factory
        self.poll_seconds = poll_seconds

    def resolve(self, base: client.Configuration, reference: SurfaceReference,
                stop: threading.Event) -> client.Configuration:
        """Return the virtual workspace configuration, blocking until the APIExport is ready"""
        if isinstance(reference, NamedSurface):
            field_selector = f'metadata.name={reference.name}'
            description = f'APIExport {reference.name!r}'
        elif isinstance(reference, UniqueSurface):
            field_selector = None
            description = 'the only APIExport'
        else:
            raise TypeError(f'Unsupported APIExport reference: {reference!r}')

        exports = self._list(field_selector)
        items = exports.get('items', [])

        if isinstance(reference, UniqueSurface) and len(items) != 1:
            raise AmbiguousOrMissing(f'Expected exactly one APIExport, found {len(items)}')
        if len(items) > 1:
            raise AmbiguousOrMissing(f'Found {len(items)} APIExports named {reference.name!r}')

        if items and is_ready(items[0]):
            logger.info(f"Resolved {description} without waiting")
            return resolved_configuration(base, items[0])

        name = items[0]['metadata']['name'] if isinstance(reference, UniqueSurface) else reference.name
        resource_version = exports.get('metadata', {}).get('resourceVersion')
        logger.info(f"Waiting for the virtual workspace URL of APIExport {name!r}")
        return self._wait(base, name, resource_version, stop)

    def _list(self, field_selector: Optional[str]) -> Dict:
        kwargs = {}
        if field_selector:
            kwargs['field_selector'] = field_selector
        return self.api.list_cluster_custom_object(
            group=self.kind.group,
            version=self.kind.version,
            plural=self.kind.plural,
            **kwargs
        )

    def _wait(self, base: client.Configuration, name: str, resource_version: Optional[str],
              stop: threading.Event) -> client.Configuration:
        w = self.watch_factory()
        finished = threading.Event()
        threading.Thread(target=self._stop_watch_on, args=(w, stop, finished),
                         name='apiexport-watch-stop', daemon=True).start()
        try:
            while not stop.is_set():
                kwargs = {'field_selector': f'metadata.name={name}', 'timeout_seconds': self.poll_seconds}
                if resource_version:
                    kwargs['resource_version'] = resource_version

                # Watch error events are raised by the stream as ApiException
                try:
                    for event in w.stream(self.api.list_cluster_custom_object,
                                          group=self.kind.group,
                                          version=self.kind.version,
                                          plural=self.kind.plural,
                                          **kwargs):
                        if stop.is_set():
                            break
                        if event.get('type') not in ('ADDED', 'MODIFIED'):
                            continue

                        export = event.get('object') or {}
                        if is_ready(export):
                            logger.info(f"APIExport {name!r} is ready")
                            return resolved_configuration(base, export)

                        logger.info(f"APIExport {name!r} has no virtual workspace URL yet, waiting")

                except ApiException as e:
                    if stop.is_set():
                        break
                    if e.status == 410:
                        # The resume point expired, watch again from the current state
                        logger.info(f"Watch of APIExport {name!r} expired, restarting")
                        resource_version = None
                        continue
                    raise WatchFailed(f'Watch of APIExport {name!r} failed: {e.status} {e.reason}') from e
                except Exception:
                    # Stopping the watch tears down the connection under a pending read
                    if stop.is_set():
                        break
                    raise

                # Resume where the previous watch stopped
                resource_version = getattr(w, 'resource_version', None) or resource_version
        finally:
            finished.set()
            w.stop()

        raise Cancelled(f'Stopped while waiting for APIExport {name!r}')

    @staticmethod
    def _stop_watch_on(w: watch.Watch, stop: threading.Event, finished: threading.Event) -> None:
        """Stop the watch as soon as stop is set, unblocking a pending read"""
        while not finished.is_set():
            if stop.wait(0.2):
                w.stop()
                return
