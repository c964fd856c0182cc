"""
Control-plane object storage.

The operator treats the declarative store as an external collaborator. This
module defines the interface it relies on, an in-memory implementation with the
usual semantics (generations, finalizers, deletion markers, change
notifications), and a loader that applies YAML manifests into a store.
"""

import os
import glob
import copy
import threading
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional

import yaml

from ldap_operator.registry import KindRegistry, UnknownKindError
from ldap_operator.resources import Resource, ObjectKey, ObservedStatus, InvalidSpecError
from ldap_operator.resources.base import utcnow

logger = logging.getLogger(__name__)

# Events kept by the in-memory store; the least recently repeated go first
DEFAULT_MAX_EVENTS = 1000


class StoreError(Exception):
    """Raised when the store backend fails."""
    pass


class ObjectNotFoundError(StoreError):
    """Raised when an object does not exist."""
    pass


class AlreadyExistsError(StoreError):
    """Raised when creating an object that already exists."""
    pass


class ManifestError(Exception):
    """Raised when a manifest file cannot be parsed."""
    pass


ChangeListener = Callable[[ObjectKey], None]


class ObjectStore(ABC):
    """Operations the reconcilers need from the control plane."""
    
    @abstractmethod
    def get(self, kind: str, namespace: str, name: str) -> Optional[Resource]:
        """Return a private copy of the object, or None if it does not exist."""
        pass
    
    @abstractmethod
    def list(self, kind: Optional[str] = None, namespace: Optional[str] = None) -> List[Resource]:
        pass
    
    @abstractmethod
    def create(self, resource: Resource) -> Resource:
        pass
    
    @abstractmethod
    def apply(self, resource: Resource) -> Resource:
        """Create the object or update its spec, bumping the generation on change."""
        pass
    
    @abstractmethod
    def patch(self, key: ObjectKey, mutate: Callable[[Resource], None]) -> Optional[Resource]:
        """Read-modify-write the object's metadata; returns None once the object is gone."""
        pass
    
    @abstractmethod
    def update_status(self, key: ObjectKey, mutate: Callable[[ObservedStatus], None]) -> Resource:
        """Read-modify-write the object's status."""
        pass
    
    @abstractmethod
    def delete(self, key: ObjectKey) -> None:
        """Request deletion: marks Deleting while finalizers remain."""
        pass
    
    @abstractmethod
    def subscribe(self, listener: ChangeListener) -> None:
        pass
    
    @abstractmethod
    def record_event(self, event) -> None:
        pass
    
    @abstractmethod
    def events(self, key: Optional[ObjectKey] = None) -> List:
        pass
    
    def get_by_key(self, key: ObjectKey) -> Optional[Resource]:
        return self.get(key.kind, key.namespace, key.name)


class InMemoryObjectStore(ObjectStore):
    """Thread-safe in-memory store with Kubernetes-like object semantics."""
    
    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        self._lock = threading.RLock()
        self._objects: Dict[ObjectKey, Resource] = {}
        self._events: "OrderedDict[tuple, object]" = OrderedDict()
        self._max_events = max_events
        self._listeners: List[ChangeListener] = []
        self._resource_version = 0
    
    def _next_version(self) -> int:
        self._resource_version += 1
        return self._resource_version
    
    def _notify(self, key: ObjectKey) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception as e:
                logger.error(f"Change listener failed for {key}: {e}", exc_info=True)
    
    def get(self, kind: str, namespace: str, name: str) -> Optional[Resource]:
        with self._lock:
            resource = self._objects.get(ObjectKey(kind, namespace, name))
            return copy.deepcopy(resource) if resource is not None else None
    
    def list(self, kind: Optional[str] = None, namespace: Optional[str] = None) -> List[Resource]:
        with self._lock:
            return [
                copy.deepcopy(resource)
                for key, resource in sorted(self._objects.items(), key=lambda item: str(item[0]))
                if (kind is None or key.kind == kind) and (namespace is None or key.namespace == namespace)
            ]
    
    def create(self, resource: Resource) -> Resource:
        key = resource.key
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(f"{key} already exists")
            stored = copy.deepcopy(resource)
            stored.metadata.generation = 1
            stored.metadata.resource_version = self._next_version()
            stored.metadata.deletion_timestamp = None
            self._objects[key] = stored
            self._drop_events(key)
            result = copy.deepcopy(stored)
        logger.debug(f"Created {key}")
        self._notify(key)
        return result
    
    def apply(self, resource: Resource) -> Resource:
        key = resource.key
        with self._lock:
            existing = self._objects.get(key)
            if existing is None:
                stored = copy.deepcopy(resource)
                stored.metadata.generation = 1
                stored.metadata.resource_version = self._next_version()
                stored.metadata.deletion_timestamp = None
                self._objects[key] = stored
                self._drop_events(key)
                result = copy.deepcopy(stored)
                changed = True
            else:
                result, changed = self._apply_existing(existing, resource)
        
        if changed:
            logger.debug(f"Applied {key} (generation {result.metadata.generation})")
            self._notify(key)
        return result
    
    def _apply_existing(self, existing: Resource, resource: Resource):
        changed = False
        if existing.spec != resource.spec:
            existing.spec = copy.deepcopy(resource.spec)
            existing.metadata.generation += 1
            changed = True
        if existing.metadata.labels != resource.metadata.labels:
            existing.metadata.labels = dict(resource.metadata.labels)
            changed = True
        if changed:
            existing.metadata.resource_version = self._next_version()
        return copy.deepcopy(existing), changed
    
    def patch(self, key: ObjectKey, mutate: Callable[[Resource], None]) -> Optional[Resource]:
        with self._lock:
            existing = self._objects.get(key)
            if existing is None:
                raise ObjectNotFoundError(f"{key} not found")
            working = copy.deepcopy(existing)
            mutate(working)
            # Only metadata is patchable here; spec and status have their own paths
            existing.metadata.finalizers = list(working.metadata.finalizers)
            existing.metadata.labels = dict(working.metadata.labels)
            existing.metadata.resource_version = self._next_version()
            
            removed = existing.metadata.deletion_timestamp is not None and not existing.metadata.finalizers
            if removed:
                del self._objects[key]
                result = None
            else:
                result = copy.deepcopy(existing)
        
        if removed:
            logger.info(f"Removed {key} after its finalizers completed")
        self._notify(key)
        return result
    
    def update_status(self, key: ObjectKey, mutate: Callable[[ObservedStatus], None]) -> Resource:
        with self._lock:
            existing = self._objects.get(key)
            if existing is None:
                raise ObjectNotFoundError(f"{key} not found")
            status = copy.deepcopy(existing.status)
            mutate(status)
            existing.status = status
            existing.metadata.resource_version = self._next_version()
            return copy.deepcopy(existing)
    
    def delete(self, key: ObjectKey) -> None:
        with self._lock:
            existing = self._objects.get(key)
            if existing is None:
                raise ObjectNotFoundError(f"{key} not found")
            if existing.metadata.finalizers:
                if existing.metadata.deletion_timestamp is None:
                    existing.metadata.deletion_timestamp = utcnow()
                    existing.metadata.resource_version = self._next_version()
                logger.debug(f"Marked {key} for deletion")
            else:
                del self._objects[key]
                logger.debug(f"Deleted {key}")
        self._notify(key)
    
    def subscribe(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)
    
    def record_event(self, event) -> None:
        with self._lock:
            existing = self._events.get(event.dedup_key)
            if existing is not None:
                existing.count += 1
                existing.last_timestamp = event.last_timestamp
                self._events.move_to_end(event.dedup_key)
            else:
                self._events[event.dedup_key] = event
            while len(self._events) > self._max_events:
                self._events.popitem(last=False)
    
    def _drop_events(self, key: ObjectKey) -> None:
        # Left over from an earlier object under the same key
        for dedup_key in [k for k, event in self._events.items() if event.key == key]:
            del self._events[dedup_key]
    
    def events(self, key: Optional[ObjectKey] = None) -> List:
        with self._lock:
            return [
                copy.copy(event) for event in self._events.values()
                if key is None or event.key == key
            ]


def _manifest_files(paths: Iterable[str]) -> List[str]:
    files = []
    for path in paths:
        if os.path.isdir(path):
            matches = glob.glob(os.path.join(path, '*.yaml')) + glob.glob(os.path.join(path, '*.yml'))
            files.extend(sorted(matches))
        elif os.path.exists(path):
            files.append(path)
        else:
            raise ManifestError(f"Manifest path not found: {path}")
    return files


def parse_manifests(text: str, registry: KindRegistry, source: str = '<string>') -> List[Resource]:
    """
    Parse a multi-document YAML string into resources.
    
    Raises:
        ManifestError: If the YAML is invalid or a document names an unknown kind
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {source}: {e}")
    
    resources = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise ManifestError(f"{source} document {index}: expected a mapping")
        try:
            resource_class = registry.get(document.get('kind', ''), document.get('apiVersion'))
            resources.append(resource_class.from_manifest(document))
        except (UnknownKindError, InvalidSpecError) as e:
            raise ManifestError(f"{source} document {index}: {e}")
    return resources


def load_manifests(paths: Iterable[str], registry: KindRegistry) -> List[Resource]:
    """Load every resource from the given files and directories."""
    resources = []
    for path in _manifest_files(paths):
        with open(path, 'r') as f:
            resources.extend(parse_manifests(f.read(), registry, source=path))
        logger.debug(f"Loaded manifests from {path}")
    return resources


def apply_manifests(store: ObjectStore, resources: Iterable[Resource]) -> int:
    """Apply resources to the store; returns how many were applied."""
    count = 0
    for resource in resources:
        store.apply(resource)
        count += 1
    logger.info(f"Applied {count} manifests")
    return count
