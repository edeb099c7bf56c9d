"""
Kaoto resources provisioned into workspaces binding the Kaoto APIExport
"""

from typing import Dict, List

KAOTO_NAMESPACE = 'kaoto'
KAOTO_NAME = 'kaoto'
KAOTO_UI_IMAGE = 'ghcr.io/astefanutti/kaoto-ui:latest'
KAOTO_BACKEND_IMAGE = 'ghcr.io/astefanutti/kaoto-backend:latest'


def ingress_path(cluster: str) -> str:
    """Path prefix routing a tenant to its Kaoto UI"""
    return f'/{cluster}/kaoto(/|$)(.*)'


def _deployment(name: str, namespace: str, image: str, port: int, **pod_spec) -> Dict:
    labels = {'app': name}
    container = {
        'name': name,
        'image': image,
        'ports': [{'name': 'http', 'containerPort': port, 'protocol': 'TCP'}],
        'terminationMessagePolicy': 'File',
        'terminationMessagePath': '/dev/termination-log',
    }
    env = pod_spec.pop('env', None)
    if env:
        container['env'] = env

    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': {'name': name, 'namespace': namespace},
        'spec': {
            'replicas': 1,
            'selector': {'matchLabels': labels},
            'template': {
                'metadata': {'labels': labels},
                'spec': dict(containers=[container], restartPolicy='Always', **pod_spec),
            },
        },
    }


def _service(name: str, namespace: str, app: str, port: int) -> Dict:
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': {'name': name, 'namespace': namespace},
        'spec': {
            'ports': [{'name': 'http', 'protocol': 'TCP', 'port': port, 'targetPort': 'http'}],
            'selector': {'app': app},
            'sessionAffinity': 'None',
            'publishNotReadyAddresses': True,
        },
    }


def build_catalog(cluster: str, catalog_namespace: str, namespace: str = KAOTO_NAMESPACE) -> List[Dict]:
    """
    Manifests of the Kaoto bundle, in apply order:
    identity, role, role binding, deployments, services, ingress.
    The backend lists Kamelets from catalog_namespace.
    """
    service_account = {
        'apiVersion': 'v1',
        'kind': 'ServiceAccount',
        'metadata': {'name': KAOTO_NAME, 'namespace': namespace},
    }

    cluster_role = {
        'apiVersion': 'rbac.authorization.k8s.io/v1',
        'kind': 'ClusterRole',
        'metadata': {'name': KAOTO_NAME},
        'rules': [
            {
                'apiGroups': ['camel.apache.org'],
                'resources': ['integrations', 'kameletbindings', 'kamelets'],
                'verbs': ['create', 'get', 'list', 'patch', 'update', 'watch'],
            },
            {
                'apiGroups': [''],
                'resources': ['pods'],
                'verbs': ['get', 'list', 'watch'],
            },
        ],
    }

    cluster_role_binding = {
        'apiVersion': 'rbac.authorization.k8s.io/v1',
        'kind': 'ClusterRoleBinding',
        'metadata': {'name': KAOTO_NAME},
        'subjects': [{'kind': 'ServiceAccount', 'namespace': namespace, 'name': KAOTO_NAME}],
        'roleRef': {'apiGroup': 'rbac.authorization.k8s.io', 'kind': 'ClusterRole', 'name': KAOTO_NAME},
    }

    ingress = {
        'apiVersion': 'networking.k8s.io/v1',
        'kind': 'Ingress',
        'metadata': {
            'name': KAOTO_NAME,
            'namespace': namespace,
            'annotations': {
                'nginx.ingress.kubernetes.io/use-regex': 'true',
                'nginx.ingress.kubernetes.io/rewrite-target': '/$2',
            },
        },
        'spec': {
            'rules': [{
                'http': {
                    'paths': [{
                        'path': ingress_path(cluster),
                        'pathType': 'Prefix',
                        'backend': {'service': {'name': 'kaoto-ui', 'port': {'name': 'http'}}},
                    }],
                },
            }],
        },
    }

    return [
        service_account,
        cluster_role,
        cluster_role_binding,
        _deployment('kaoto-ui', namespace, KAOTO_UI_IMAGE, 8080),
        _deployment('kaoto-backend', namespace, KAOTO_BACKEND_IMAGE, 8081,
                    env=[{'name': 'CATALOG_NAMESPACE', 'value': catalog_namespace}],
                    serviceAccountName=KAOTO_NAME),
        _service('kaoto-ui', namespace, 'kaoto-ui', 80),
        _service('kaoto-backend-svc', namespace, 'kaoto-backend', 8081),
        ingress,
    ]
