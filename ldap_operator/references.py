"""
Reference resolution and distinguished-name derivation.

References between control-plane objects resolve to one of three states:
resolved (with the target), unresolved (the target does not exist yet, which
is transient and retried later), or error (the reference is malformed, the
backend failed, or the target lacks a required capability, which is permanent
for the current attempt). The DNComputer walks directory and parent references
to build an object's DN with a visited-set and depth guard.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Set, Type

from ldap_operator.registry import KindRegistry, UnknownKindError
from ldap_operator.resources import (
    Resource,
    DirectoryObject,
    DirectoryRoot,
    NamedDirectoryObject,
    ObjectKey,
    ObjectReference,
    LocalReference,
    Secret,
    PHASE_READY,
)

logger = logging.getLogger(__name__)

STATE_RESOLVED = 'resolved'
STATE_UNRESOLVED = 'unresolved'
STATE_ERROR = 'error'

DEFAULT_MAX_DEPTH = 32


class ReferenceResolutionError(Exception):
    """Base class for reference failures."""
    pass


class UnresolvedReferenceError(ReferenceResolutionError):
    """A referenced object does not exist yet; retry later."""
    pass


class DirectoryNotReadyError(UnresolvedReferenceError):
    """The owning directory exists but is not ready to accept entries."""
    pass


class InvalidReferenceError(ReferenceResolutionError):
    """A reference is malformed or points at an object without the required capability."""
    pass


class CyclicReferenceError(InvalidReferenceError):
    """The parent chain loops back on itself or is deeper than allowed."""
    pass


@dataclass
class ResolvedReference:
    state: str
    target: Optional[Resource] = None
    message: str = ''
    
    @classmethod
    def resolved(cls, target: Resource) -> 'ResolvedReference':
        return cls(STATE_RESOLVED, target=target)
    
    @classmethod
    def unresolved(cls, message: str) -> 'ResolvedReference':
        return cls(STATE_UNRESOLVED, message=message)
    
    @classmethod
    def error(cls, message: str) -> 'ResolvedReference':
        return cls(STATE_ERROR, message=message)
    
    @property
    def is_resolved(self) -> bool:
        return self.state == STATE_RESOLVED
    
    @property
    def is_unresolved(self) -> bool:
        return self.state == STATE_UNRESOLVED
    
    @property
    def is_error(self) -> bool:
        return self.state == STATE_ERROR
    
    def raise_for_state(self) -> Resource:
        """Return the target, or raise the exception matching the state."""
        if self.is_resolved:
            return self.target
        if self.is_unresolved:
            raise UnresolvedReferenceError(self.message)
        raise InvalidReferenceError(self.message)


class ReferenceResolver:
    """
    Resolves named references against the object store.
    
    Resolution never waits: a missing target is reported as unresolved
    immediately.
    """
    
    def __init__(self, store, registry: KindRegistry):
        self.store = store
        self.registry = registry
    
    def resolve(self, ref: ObjectReference, referrer: Resource,
                capability: Optional[Type] = None) -> ResolvedReference:
        """
        Resolve a reference to an object of any registered kind.
        
        Args:
            ref: The reference (kind, apiVersion and name; namespace defaults to the referrer's)
            referrer: The object holding the reference
            capability: A class the target must be an instance of
        """
        if ref is None or not ref.name:
            return ResolvedReference.error(f"{referrer.key}: reference has no name")
        if not ref.kind:
            return ResolvedReference.error(f"{referrer.key}: reference to {ref.name} has no kind")
        
        try:
            target_class = self.registry.get(ref.kind, ref.api_version or None)
        except UnknownKindError as e:
            return ResolvedReference.error(f"{referrer.key}: {e}")
        
        return self._lookup(target_class, ref.namespace or referrer.metadata.namespace,
                            ref.name, referrer, capability)
    
    def resolve_local(self, kind: str, ref: LocalReference, referrer: Resource,
                      capability: Optional[Type] = None) -> ResolvedReference:
        """Resolve a reference whose kind is fixed by the field it appears in."""
        if ref is None or not ref.name:
            return ResolvedReference.error(f"{referrer.key}: {kind} reference has no name")
        try:
            target_class = self.registry.get(kind)
        except UnknownKindError as e:
            return ResolvedReference.error(f"{referrer.key}: {e}")
        return self._lookup(target_class, referrer.metadata.namespace, ref.name, referrer, capability)
    
    def resolve_directory(self, obj: DirectoryObject) -> ResolvedReference:
        return self.resolve_local(DirectoryRoot.KIND, obj.spec.directory_ref, obj,
                                  capability=NamedDirectoryObject)
    
    def resolve_secret(self, ref: LocalReference, referrer: Resource) -> ResolvedReference:
        return self.resolve_local(Secret.KIND, ref, referrer)
    
    def _lookup(self, target_class, namespace: str, name: str, referrer: Resource,
                capability: Optional[Type]) -> ResolvedReference:
        key = ObjectKey(target_class.KIND, namespace, name)
        try:
            target = self.store.get(key.kind, key.namespace, key.name)
        except Exception as e:
            logger.error(f"Failed to look up {key} for {referrer.key}: {e}")
            return ResolvedReference.error(f"failed to look up {key}: {e}")
        
        if target is None:
            logger.debug(f"{referrer.key}: referenced {key} does not exist yet")
            return ResolvedReference.unresolved(f"referenced {key} not found")
        
        if capability is not None and not isinstance(target, capability):
            return ResolvedReference.error(
                f"referenced {key} is not a {capability.__name__}")
        
        return ResolvedReference.resolved(target)


class DNComputer:
    """
    Derives distinguished names by walking parent references up to a directory root.
    
    The walk tracks visited objects and a maximum depth, so a reference cycle
    fails with CyclicReferenceError instead of recursing forever.
    """
    
    def __init__(self, resolver: ReferenceResolver, max_depth: int = DEFAULT_MAX_DEPTH):
        self.resolver = resolver
        self.max_depth = max_depth
    
    def compute(self, obj: DirectoryObject, visited: Optional[Set[ObjectKey]] = None) -> str:
        """
        Compute the DN of a directory object.
        
        Raises:
            UnresolvedReferenceError: A directory or parent does not exist yet
            InvalidReferenceError: A reference is malformed or has the wrong capability
            CyclicReferenceError: The parent chain repeats or exceeds the maximum depth
        """
        visited = set() if visited is None else visited
        if obj.key in visited:
            raise CyclicReferenceError(f"cyclic parent reference through {obj.key}")
        if len(visited) >= self.max_depth:
            raise CyclicReferenceError(
                f"parent chain of {obj.key} is deeper than {self.max_depth} levels")
        visited.add(obj.key)
        
        directory = self.resolver.resolve_directory(obj).raise_for_state()
        
        if obj.spec.parent_ref is None:
            parent_dn = directory.get_distinguished_name(self)
        else:
            parent = self.resolver.resolve(
                obj.spec.parent_ref, obj, capability=NamedDirectoryObject).raise_for_state()
            parent_dn = self._parent_dn(obj, parent, directory, visited)
        
        return f"{obj.relative_dn()},{parent_dn}"
    
    def parent_dn(self, obj: DirectoryObject) -> str:
        """The DN the object's entry is placed under."""
        return self.compute(obj)[len(obj.relative_dn()) + 1:]
    
    def _parent_dn(self, obj: DirectoryObject, parent: Resource, directory: DirectoryRoot,
                   visited: Set[ObjectKey]) -> str:
        if isinstance(parent, DirectoryRoot):
            if parent.key != directory.key:
                raise InvalidReferenceError(
                    f"{obj.key}: parent {parent.key} is not the object's directory {directory.key}")
            return parent.get_distinguished_name(self)
        
        if isinstance(parent, DirectoryObject):
            if parent.spec.directory_ref is None or parent.spec.directory_ref.name != directory.metadata.name:
                raise InvalidReferenceError(
                    f"{obj.key}: parent {parent.key} belongs to a different directory")
        
        return parent.get_distinguished_name(self, visited)


def ensure_directory_ready(directory: DirectoryRoot) -> None:
    """Raise DirectoryNotReadyError unless the directory has reached the Ready phase."""
    if directory.get_phase() != PHASE_READY:
        raise DirectoryNotReadyError(f"directory {directory.key} is not ready")
