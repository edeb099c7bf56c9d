"""
APIBinding provisioner
Creates the default resources of a consumer workspace once its APIBinding is Bound
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from kubernetes.client.rest import ApiException

from . import kaoto
from .clients import ClusterClient, ClusterClientCache
from .config import DEFAULT_OPERATOR_NAMESPACE, DEFAULT_PLATFORM_NAME, ObjectTemplate
from .controller import Outcome, Request
from .errors import ConfigurationError, ReconcileFailed, RetryLater
from .resources import CAMEL_GROUP, KCP_SCHEDULING_GROUP

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuxiliaryBundle:
    """Kaoto application deployed into the consumer workspace"""

    namespace: str = kaoto.KAOTO_NAMESPACE
    catalog_namespace: str = DEFAULT_OPERATOR_NAMESPACE


@dataclass(frozen=True)
class ProvisioningBundle:
    platform: Optional[ObjectTemplate] = None
    placement: Optional[ObjectTemplate] = None
    auxiliary: Optional[AuxiliaryBundle] = None


class BindingProvisioner:
    """Reconciles Bound APIBindings into the provisioning bundle"""

    def __init__(self, name: str, clients: ClusterClientCache, bundle: ProvisioningBundle,
                 operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE,
                 platform_name: str = DEFAULT_PLATFORM_NAME):
        if bundle.placement is not None and not bundle.placement.name:
            raise ConfigurationError(f'{name}: the default placement must have a name')

        self.name = name
        self.clients = clients
        self.bundle = bundle
        self.operator_namespace = operator_namespace
        self.platform_name = platform_name

    def reconcile(self, request: Request) -> Outcome:
        """Provision the bundle into the request's logical cluster"""
        logger.info(f"[{self.name}] Reconciling APIBinding {request.cluster}|{request.name}")

        # Everything below goes through the client of the binding's logical cluster
        cluster = self.clients.for_cluster(request.cluster)

        try:
            if self.bundle.platform is not None:
                platform = self.bundle.platform.with_defaults(
                    namespace=self.operator_namespace,
                    name=self.platform_name
                )
                self.ensure_namespace(cluster, platform.namespace)
                self.ensure_platform(cluster, platform)

            if self.bundle.placement is not None:
                self.ensure_placement(cluster, self.bundle.placement)

            if self.bundle.auxiliary is not None:
                self.ensure_namespace(cluster, self.bundle.auxiliary.namespace)
                self.apply_auxiliary(cluster, self.bundle.auxiliary)

        except RetryLater as e:
            logger.info(f"[{self.name}] Bound APIs are not yet served in {request.cluster}: {e}")
            return Outcome.RETRY_LATER
        except ApiException as e:
            raise ReconcileFailed(
                f'{self.name}: provisioning {request.cluster}|{request.name} failed: {e.status} {e.reason}'
            ) from e

        logger.info(f"✓ [{self.name}] Provisioned {request.cluster}|{request.name}")
        return Outcome.DONE

    def _create(self, description: str, create: Callable, *args) -> None:
        """Create an object, a concurrent creation counting as success"""
        try:
            create(*args)
        except ApiException as e:
            if e.status == 404:
                raise RetryLater(f'cannot create {description} yet') from e
            if e.status == 409:
                logger.info(f"  {description} was created concurrently")
                return
            raise
        logger.info(f"  Created {description}")

    def ensure_namespace(self, cluster: ClusterClient, name: str) -> None:
        if cluster.namespaces.get(name) is not None:
            return
        self._create(f'Namespace {name}', cluster.namespaces.create, name)

    def ensure_platform(self, cluster: ClusterClient, platform: ObjectTemplate) -> None:
        # Existing platforms are left untouched, whatever their spec
        if cluster.platforms.get(platform.namespace, platform.name) is not None:
            return
        body = platform.manifest(f'{CAMEL_GROUP}/v1', 'IntegrationPlatform')
        self._create(f'IntegrationPlatform {platform.namespace}/{platform.name}', cluster.platforms.create, body)

    def ensure_placement(self, cluster: ClusterClient, placement: ObjectTemplate) -> None:
        if cluster.placements.get(placement.name) is not None:
            return
        body = placement.manifest(f'{KCP_SCHEDULING_GROUP}/v1alpha1', 'Placement')
        self._create(f'Placement {placement.name}', cluster.placements.create, body)

    def apply_auxiliary(self, cluster: ClusterClient, bundle: AuxiliaryBundle) -> None:
        """Apply the Kaoto manifests in order, stopping at the first error"""
        for manifest in kaoto.build_catalog(cluster.cluster, bundle.catalog_namespace, bundle.namespace):
            metadata = manifest['metadata']
            name = metadata['name']
            if metadata.get('namespace'):
                name = f"{metadata['namespace']}/{name}"
            description = f"{manifest['kind']} {name}"
            try:
                cluster.applier.apply(manifest)
            except ApiException as e:
                if e.status == 404:
                    raise RetryLater(f'cannot apply {description} yet') from e
                raise
            logger.debug(f"  Applied {description}")
