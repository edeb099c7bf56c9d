"""
camel-kcp operator
Provisions Camel K and Kaoto resources into kcp workspaces binding their APIExports
"""

import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from kubernetes import client, config

from .clients import ClusterClientCache
from .config import APIExportConfig, ServiceConfiguration, load_configuration
from .controller import Controller
from .errors import Cancelled, OperatorError
from .predicates import BindingFilter, IngressAddressFilter
from .provisioner import AuxiliaryBundle, BindingProvisioner, ProvisioningBundle
from .relay import IngressStatusRelay
from .resolver import EndpointResolver, check_kcp_apis, surface_reference
from .resources import KCP_APIS_GROUP, KCP_APIS_VERSION, WILDCARD_CLUSTER, ResourceRegistry, default_registry

logger = logging.getLogger(__name__)


def load_kubernetes_configuration() -> client.Configuration:
    """In-cluster service account configuration, or the local kubeconfig"""
    cfg = client.Configuration()
    try:
        config.load_incluster_config(client_configuration=cfg)
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config(config_file=os.getenv('KUBECONFIG'), client_configuration=cfg)
        logger.info("Loaded local Kubernetes config")
    return cfg


class Operator:
    """Resolves the APIExports and runs their controllers until a shutdown signal"""

    def __init__(self, settings: ServiceConfiguration, base_config: client.Configuration,
                 registry: Optional[ResourceRegistry] = None):
        self.settings = settings
        self.base_config = base_config
        self.registry = registry or default_registry()
        self.stop = threading.Event()
        self.controllers: List[Controller] = []

    def _handle_shutdown(self, signum, frame):
        """Handle graceful shutdown"""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop.set()

    def resolve(self, export: APIExportConfig) -> client.Configuration:
        """Wait for the virtual workspace of an APIExport"""
        api = client.CustomObjectsApi(client.ApiClient(self.base_config))
        resolver = EndpointResolver(api, self.registry)
        cfg = resolver.resolve(self.base_config, surface_reference(export.api_export_name), self.stop)
        logger.info(f"Using virtual workspace URL {cfg.host}")
        return cfg

    def binding_controller(self, name: str, clients: ClusterClientCache, bundle: ProvisioningBundle) -> Controller:
        provisioner = BindingProvisioner(name, clients, bundle, operator_namespace=self.settings.operator_namespace)
        kind = self.registry.lookup(f'{KCP_APIS_GROUP}/{KCP_APIS_VERSION}', 'APIBinding')
        return Controller(
            f'{name}-apibinding',
            clients.for_cluster(WILDCARD_CLUSTER).custom.list_cluster_custom_object,
            {'group': kind.group, 'version': kind.version, 'plural': kind.plural},
            BindingFilter(),
            provisioner.reconcile,
            self.stop,
            workers=self.settings.workers
        )

    def ingress_controller(self, clients: ClusterClientCache) -> Controller:
        relay = IngressStatusRelay(clients, self.settings.ingress_relay)
        kind = self.registry.lookup('networking.k8s.io/v1', 'Ingress')
        return Controller(
            'kaoto-ingress',
            clients.for_cluster(WILDCARD_CLUSTER).custom.list_cluster_custom_object,
            {'group': kind.group, 'version': kind.version, 'plural': kind.plural},
            IngressAddressFilter(self.settings.ingress_relay.watch_namespace),
            relay.reconcile,
            self.stop,
            workers=self.settings.workers
        )

    def setup(self) -> None:
        check_kcp_apis(client.ApiClient(self.base_config))

        camel_k = self.settings.camel_k
        camel_k_clients = ClusterClientCache(self.resolve(camel_k), self.registry)
        self.controllers.append(self.binding_controller('camel-k', camel_k_clients, ProvisioningBundle(
            platform=camel_k.on_api_binding.default_platform,
            placement=camel_k.on_api_binding.default_placement,
        )))

        kaoto = self.settings.kaoto
        if kaoto is None:
            logger.info("Kaoto APIExport not configured")
            return

        # Kaoto lists the Kamelets of the default Camel K platform namespace
        catalog_namespace = self.settings.operator_namespace
        if camel_k.on_api_binding.default_platform is not None:
            catalog_namespace = camel_k.on_api_binding.default_platform.namespace or catalog_namespace

        kaoto_clients = ClusterClientCache(self.resolve(kaoto), self.registry)
        self.controllers.append(self.binding_controller('kaoto', kaoto_clients, ProvisioningBundle(
            placement=kaoto.on_api_binding.default_placement,
            auxiliary=AuxiliaryBundle(catalog_namespace=catalog_namespace),
        )))
        self.controllers.append(self.ingress_controller(kaoto_clients))

    def run(self) -> None:
        """Main service loop"""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        self.setup()
        for controller in self.controllers:
            controller.start()

        logger.info("Operator started")
        self.stop.wait()

        for controller in self.controllers:
            controller.join(timeout=10)
        logger.info("[shutdown] Service stopped cleanly")


def main() -> int:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )

    try:
        settings = load_configuration()
        Operator(settings, load_kubernetes_configuration()).run()
    except Cancelled:
        logger.info("[shutdown] Stopped before the operator was ready")
    except OperatorError as e:
        logger.error(f"FATAL ERROR: {e}")
        return 1
    except Exception as e:
        logger.error(f"FATAL ERROR: {e}", exc_info=True)
        return 1

    return 0
