"""Domain-level exceptions raised synchronously to callers."""

from typing import Optional


class BasementError(Exception):
    """Base exception for control plane errors."""
    pass


class InstanceAlreadyExistsError(BasementError):
    """Customer already owns a non-terminal instance."""

    def __init__(self, customer_id: str, instance_id: Optional[int] = None):
        self.customer_id = customer_id
        self.instance_id = instance_id
        super().__init__(f"Customer {customer_id} already has an active instance")


class InstanceNotFoundError(BasementError):
    def __init__(self, instance_id: int):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} not found")


class DomainNotFoundError(BasementError):
    def __init__(self, domain_id: int):
        self.domain_id = domain_id
        super().__init__(f"Domain {domain_id} not found")


class UnknownPlanError(BasementError):
    def __init__(self, plan: str):
        self.plan = plan
        super().__init__(f"Unknown plan: {plan}")


class ChargeAlreadyProcessedError(BasementError):
    """A payment already started a provisioning attempt."""

    def __init__(self, charge_reference: str):
        self.charge_reference = charge_reference
        super().__init__(f"Charge {charge_reference} was already processed")
