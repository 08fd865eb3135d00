"""Domain services for the multiplexer."""

from db_multiplexer.domain.services.instance_pool import InstancePool, validate_db_name
from db_multiplexer.domain.services.managed_instance import InstanceStats, ManagedInstance
from db_multiplexer.domain.services.port_allocator import PortAllocator, probe_bind

__all__ = [
    "InstancePool",
    "InstanceStats",
    "ManagedInstance",
    "PortAllocator",
    "probe_bind",
    "validate_db_name",
]
