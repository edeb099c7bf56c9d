"""
Ingress status relay
Publishes the external URL of a tenant's Kaoto UI, as observed on the load
balancer status of the generated ingress, onto the tenant-facing ingress.
"""

import logging
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .clients import ClusterClientCache
from .config import IngressRelaySettings
from .controller import Outcome, Request
from .errors import ReconcileFailed

logger = logging.getLogger(__name__)

RELAY_FIELD_MANAGER = 'camel-kcp-ingress-relay'


def first_address(ingress: Optional[client.V1Ingress]) -> Optional[str]:
    """IP, or hostname, of the first load balancer ingress point"""
    if ingress is None or ingress.status is None or ingress.status.load_balancer is None:
        return None
    for point in ingress.status.load_balancer.ingress or []:
        address = point.ip or point.hostname
        if address:
            return address
    return None


class IngressStatusRelay:
    """Annotates the tenant-facing ingress with the externally reachable URL"""

    def __init__(self, clients: ClusterClientCache, settings: IngressRelaySettings):
        self.clients = clients
        self.settings = settings

    def external_url(self, cluster: str, address: str) -> str:
        return f'{self.settings.scheme}://{address}/{cluster}/kaoto'

    def reconcile(self, request: Request) -> Outcome:
        logger.info(f"Reconciling Ingress {request.cluster}|{request.namespace}/{request.name}")

        cluster = self.clients.for_cluster(request.cluster)
        target = f'{self.settings.target_namespace}/{request.name}'

        try:
            ingress = cluster.ingresses.get(request.namespace, request.name)
            address = first_address(ingress)
            if address is None:
                # Addresses went away between the event and the read
                logger.info(f"  Ingress {request.namespace}/{request.name} has no address, skipping")
                return Outcome.DONE

            url = self.external_url(request.cluster, address)

            # Only annotate, never create the tenant-facing ingress
            if cluster.ingresses.get(self.settings.target_namespace, request.name) is None:
                raise ReconcileFailed(f'Ingress {target} does not exist in {request.cluster}')

            cluster.applier.apply({
                'apiVersion': 'networking.k8s.io/v1',
                'kind': 'Ingress',
                'metadata': {
                    'name': request.name,
                    'namespace': self.settings.target_namespace,
                    'annotations': {self.settings.annotation: url},
                },
            }, field_manager=RELAY_FIELD_MANAGER)

        except ApiException as e:
            raise ReconcileFailed(
                f'Relaying ingress address to {request.cluster}|{target} failed: {e.status} {e.reason}'
            ) from e

        logger.info(f"✓ Annotated Ingress {request.cluster}|{target} with {url}")
        return Outcome.DONE
