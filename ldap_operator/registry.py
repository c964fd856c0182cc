"""
Explicit registry mapping (apiVersion, kind) to resource classes.

The registry is constructed once at startup and handed to the store, the
resolver and the manifest loader. There is no module-level registration.
"""

import logging
from typing import Dict, List, Optional, Type

from ldap_operator.resources import (
    Resource,
    DirectoryRoot,
    OrganizationalUnit,
    Group,
    User,
    Secret,
)

logger = logging.getLogger(__name__)


class UnknownKindError(Exception):
    """Raised when a kind is not registered."""
    pass


class KindRegistry:
    """Maps kind names to resource classes."""
    
    def __init__(self):
        self._kinds: Dict[str, Type[Resource]] = {}
    
    def register(self, resource_class: Type[Resource]) -> None:
        kind = resource_class.KIND
        if not kind:
            raise ValueError(f"{resource_class.__name__} does not define KIND")
        existing = self._kinds.get(kind)
        if existing is not None and existing is not resource_class:
            raise ValueError(f"Kind {kind} is already registered to {existing.__name__}")
        self._kinds[kind] = resource_class
        logger.debug(f"Registered kind {resource_class.API_VERSION}/{kind}")
    
    def get(self, kind: str, api_version: Optional[str] = None) -> Type[Resource]:
        """
        Look up a kind, optionally checking its apiVersion.
        
        Raises:
            UnknownKindError: If the kind is unknown or the apiVersion does not match
        """
        resource_class = self._kinds.get(kind)
        if resource_class is None:
            raise UnknownKindError(f"Unknown kind: {kind}")
        if api_version and api_version != resource_class.API_VERSION:
            raise UnknownKindError(
                f"Kind {kind} is served as {resource_class.API_VERSION}, not {api_version}")
        return resource_class
    
    def is_registered(self, kind: str) -> bool:
        return kind in self._kinds
    
    def kinds(self) -> List[str]:
        return list(self._kinds)


def default_registry() -> KindRegistry:
    """Build a registry containing every kind the operator manages."""
    registry = KindRegistry()
    for resource_class in (Secret, DirectoryRoot, OrganizationalUnit, Group, User):
        registry.register(resource_class)
    return registry
