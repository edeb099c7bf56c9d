"""
Event filters
Decide which watch events of a resource type are worth a reconcile
"""

from typing import Dict, List

BOUND_PHASE = 'Bound'


class EventFilter:
    """Accepts every event; subclasses narrow it down"""

    def create(self, obj: Dict) -> bool:
        return True

    def update(self, old: Dict, new: Dict) -> bool:
        return True

    def delete(self, obj: Dict) -> bool:
        return True


class BindingFilter(EventFilter):
    """APIBindings that reached the Bound phase and are not being deleted"""

    @staticmethod
    def is_bound(binding: Dict) -> bool:
        if binding.get('metadata', {}).get('deletionTimestamp'):
            return False
        return binding.get('status', {}).get('phase') == BOUND_PHASE

    def create(self, obj: Dict) -> bool:
        return self.is_bound(obj)

    def update(self, old: Dict, new: Dict) -> bool:
        return self.is_bound(new)

    def delete(self, obj: Dict) -> bool:
        # Provisioning is never reverted
        return False


def load_balancer_addresses(ingress: Dict) -> List[Dict]:
    status = ingress.get('status') or {}
    return (status.get('loadBalancer') or {}).get('ingress') or []


class IngressAddressFilter(EventFilter):
    """Updates of ingresses in one namespace whose load balancer addresses changed"""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def create(self, obj: Dict) -> bool:
        return False

    def update(self, old: Dict, new: Dict) -> bool:
        if new.get('metadata', {}).get('namespace') != self.namespace:
            return False
        return load_balancer_addresses(old) != load_balancer_addresses(new)

    def delete(self, obj: Dict) -> bool:
        return False
