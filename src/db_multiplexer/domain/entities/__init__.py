"""Domain entities.

Exports:
    - RegistryEntry: one logical database bound to a port by a process
    - RegistryState: full registry snapshot keyed by data directory
"""

from db_multiplexer.domain.entities.registry_entry import RegistryEntry, RegistryState

__all__ = [
    "RegistryEntry",
    "RegistryState",
]
