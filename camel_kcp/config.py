"""
Service configuration
Loaded from a YAML file, with a few settings overridable from the environment
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/camel-kcp/config.yaml'
DEFAULT_PLATFORM_NAME = 'camel-k'
DEFAULT_OPERATOR_NAMESPACE = 'camel-k'
DEFAULT_WORKERS = 2


@dataclass(frozen=True)
class ObjectTemplate:
    """Metadata and spec of an object created verbatim in tenant workspaces"""

    metadata: Dict[str, Any] = field(default_factory=dict)
    spec: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.get('name') or ''

    @property
    def namespace(self) -> str:
        return self.metadata.get('namespace') or ''

    def with_defaults(self, namespace: str = '', name: str = '') -> 'ObjectTemplate':
        """Return a copy with empty name/namespace replaced by the given defaults"""
        metadata = copy.deepcopy(self.metadata)
        if namespace and not metadata.get('namespace'):
            metadata['namespace'] = namespace
        if name and not metadata.get('name'):
            metadata['name'] = name
        return ObjectTemplate(metadata=metadata, spec=copy.deepcopy(self.spec))

    def manifest(self, api_version: str, kind: str) -> Dict[str, Any]:
        return {
            'apiVersion': api_version,
            'kind': kind,
            'metadata': copy.deepcopy(self.metadata),
            'spec': copy.deepcopy(self.spec),
        }


@dataclass(frozen=True)
class OnAPIBinding:
    """Desired state of a consumer workspace once the APIExport is bound into it"""

    default_platform: Optional[ObjectTemplate] = None
    default_placement: Optional[ObjectTemplate] = None


@dataclass(frozen=True)
class APIExportConfig:
    """Reference to an APIExport and what to provision when it gets bound"""

    api_export_name: str = ''
    on_api_binding: OnAPIBinding = field(default_factory=OnAPIBinding)


@dataclass(frozen=True)
class IngressRelaySettings:
    watch_namespace: str = 'kaoto-ingress'
    target_namespace: str = 'kaoto'
    scheme: str = 'http'
    annotation: str = 'kaoto.io/ingress'


@dataclass(frozen=True)
class ServiceConfiguration:
    camel_k: APIExportConfig = field(default_factory=APIExportConfig)
    # None when the Kaoto APIExport is not served by this operator
    kaoto: Optional[APIExportConfig] = None
    ingress_relay: IngressRelaySettings = field(default_factory=IngressRelaySettings)
    operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE
    workers: int = DEFAULT_WORKERS


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f'{where} must be a mapping, got {type(value).__name__}')
    return dict(value)


def _parse_template(value: Any, where: str) -> Optional[ObjectTemplate]:
    if value is None:
        return None
    data = _mapping(value, where)
    return ObjectTemplate(
        metadata=_mapping(data.get('metadata'), f'{where}.metadata'),
        spec=_mapping(data.get('spec'), f'{where}.spec'),
    )


def _parse_export(value: Any, where: str, platforms: bool = True) -> APIExportConfig:
    data = _mapping(value, where)
    on_binding = _mapping(data.get('onApiBinding'), f'{where}.onApiBinding')
    if not platforms and on_binding.get('createDefaultPlatform') is not None:
        # IntegrationPlatform is only served through the Camel K virtual workspace
        raise ConfigurationError(f'{where}.onApiBinding.createDefaultPlatform is not supported')
    return APIExportConfig(
        api_export_name=data.get('apiExportName') or '',
        on_api_binding=OnAPIBinding(
            default_platform=_parse_template(
                on_binding.get('createDefaultPlatform'), f'{where}.onApiBinding.createDefaultPlatform'),
            default_placement=_parse_template(
                on_binding.get('createDefaultPlacement'), f'{where}.onApiBinding.createDefaultPlacement'),
        ),
    )


def parse_configuration(data: Any, env: Optional[Mapping[str, str]] = None) -> ServiceConfiguration:
    """Build the service configuration from parsed YAML and environment overrides"""
    if env is None:
        env = os.environ

    service = _mapping(_mapping(data, 'configuration').get('service'), 'service')
    exports = _mapping(service.get('apiExports'), 'service.apiExports')

    camel_k = _parse_export(exports.get('camel-k'), 'service.apiExports.camel-k')
    if env.get('API_EXPORT_NAME'):
        camel_k = APIExportConfig(api_export_name=env['API_EXPORT_NAME'], on_api_binding=camel_k.on_api_binding)

    kaoto = None
    if 'kaoto' in exports:
        kaoto = _parse_export(exports.get('kaoto'), 'service.apiExports.kaoto', platforms=False)
        if not kaoto.api_export_name:
            # Two unnamed exports would both resolve to "the only APIExport"
            raise ConfigurationError('service.apiExports.kaoto.apiExportName is required')

    relay = _mapping(service.get('ingressRelay'), 'service.ingressRelay')
    defaults = IngressRelaySettings()
    ingress_relay = IngressRelaySettings(
        watch_namespace=relay.get('watchNamespace', defaults.watch_namespace),
        target_namespace=relay.get('targetNamespace', defaults.target_namespace),
        scheme=relay.get('scheme', defaults.scheme),
        annotation=relay.get('annotation', defaults.annotation),
    )
    if ingress_relay.watch_namespace == ingress_relay.target_namespace:
        raise ConfigurationError('service.ingressRelay watch and target namespaces must differ')

    try:
        workers = int(env.get('WORKERS', service.get('workers', DEFAULT_WORKERS)))
    except (TypeError, ValueError):
        raise ConfigurationError('workers must be an integer') from None
    if workers < 1:
        raise ConfigurationError(f'workers must be at least 1, got {workers}')

    return ServiceConfiguration(
        camel_k=camel_k,
        kaoto=kaoto,
        ingress_relay=ingress_relay,
        operator_namespace=env.get('NAMESPACE') or DEFAULT_OPERATOR_NAMESPACE,
        workers=workers,
    )


def load_configuration(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> ServiceConfiguration:
    """Load the service configuration file, an absent file meaning an empty configuration"""
    if env is None:
        env = os.environ
    if path is None:
        path = env.get('CAMEL_KCP_CONFIG', DEFAULT_CONFIG_PATH)

    data = {}
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f'Failed to parse {path}: {e}') from e
        logger.info(f"Loaded configuration from {path}")
    else:
        logger.info(f"Configuration file {path} not found, using defaults")

    return parse_configuration(data, env)
