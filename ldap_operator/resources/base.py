"""
Base types shared by all control-plane resource kinds.

This module defines object metadata, references, observed status with
conditions, and the abstract interfaces every managed kind implements. Concrete
kinds live in sibling modules and are registered with a KindRegistry at startup.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional

from ldap3.utils.dn import escape_rdn

logger = logging.getLogger(__name__)

API_GROUP = 'ldap.gpu-ninja.com'
API_VERSION = f'{API_GROUP}/v1alpha1'
FINALIZER_NAME = f'{API_GROUP}/finalizer'
DEFAULT_NAMESPACE = 'default'

PHASE_PENDING = 'Pending'
PHASE_READY = 'Ready'
PHASE_FAILED = 'Failed'
PHASES = (PHASE_PENDING, PHASE_READY, PHASE_FAILED)

LIFECYCLE_ACTIVE = 'Active'
LIFECYCLE_DELETING = 'Deleting'

CONDITION_TRUE = 'True'
CONDITION_FALSE = 'False'


class InvalidSpecError(Exception):
    """Raised when a manifest or spec is malformed."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a control-plane object."""
    kind: str
    namespace: str
    name: str
    
    def __str__(self):
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass
class ObjectMeta:
    name: str
    namespace: str = DEFAULT_NAMESPACE
    generation: int = 1
    resource_version: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    
    @property
    def lifecycle(self) -> str:
        """Active until a deletion has been requested, Deleting afterwards."""
        return LIFECYCLE_DELETING if self.deletion_timestamp is not None else LIFECYCLE_ACTIVE
    
    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers
    
    def add_finalizer(self, finalizer: str) -> bool:
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True
    
    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.finalizers:
            return False
        self.finalizers.remove(finalizer)
        return True
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ObjectMeta':
        if not isinstance(data, dict) or not data.get('name'):
            raise InvalidSpecError("metadata.name is required")
        return cls(
            name=str(data['name']),
            namespace=str(data.get('namespace') or DEFAULT_NAMESPACE),
            generation=int(data.get('generation', 1)),
            labels=dict(data.get('labels') or {}),
            finalizers=list(data.get('finalizers') or []),
        )
    
    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.name,
            'namespace': self.namespace,
            'generation': self.generation,
            'resourceVersion': str(self.resource_version),
        }
        if self.labels:
            data['labels'] = dict(self.labels)
        if self.finalizers:
            data['finalizers'] = list(self.finalizers)
        if self.deletion_timestamp:
            data['deletionTimestamp'] = self.deletion_timestamp.isoformat()
        return data


@dataclass(frozen=True)
class LocalReference:
    """Reference to an object of a fixed kind in the referrer's namespace."""
    name: str
    
    @classmethod
    def from_dict(cls, data: Any, field_name: str) -> Optional['LocalReference']:
        if data is None:
            return None
        if not isinstance(data, dict) or not data.get('name'):
            raise InvalidSpecError(f"{field_name}.name is required")
        return cls(name=str(data['name']))
    
    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name}


@dataclass(frozen=True)
class ObjectReference:
    """Reference to an object of any registered kind."""
    name: str
    kind: str = ''
    api_version: str = ''
    namespace: Optional[str] = None
    
    @classmethod
    def from_dict(cls, data: Any, field_name: str) -> Optional['ObjectReference']:
        if data is None:
            return None
        if not isinstance(data, dict) or not data.get('name'):
            raise InvalidSpecError(f"{field_name}.name is required")
        return cls(
            name=str(data['name']),
            kind=str(data.get('kind') or ''),
            api_version=str(data.get('apiVersion') or ''),
            namespace=data.get('namespace'),
        )
    
    def to_dict(self) -> Dict[str, Any]:
        data = {'name': self.name}
        if self.kind:
            data['kind'] = self.kind
        if self.api_version:
            data['apiVersion'] = self.api_version
        if self.namespace:
            data['namespace'] = self.namespace
        return data


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str
    observed_generation: int = 0
    last_transition_time: datetime = field(default_factory=utcnow)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'status': self.status,
            'reason': self.reason,
            'message': self.message,
            'observedGeneration': self.observed_generation,
            'lastTransitionTime': self.last_transition_time.isoformat(),
        }


@dataclass
class ObservedStatus:
    phase: Optional[str] = None
    observed_generation: int = 0
    message: str = ''
    conditions: List[Condition] = field(default_factory=list)
    
    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None
    
    def set_condition(self, new: Condition) -> None:
        """
        Insert or update a condition of the same type.
        
        lastTransitionTime only moves when the truth value changes.
        """
        existing = self.get_condition(new.type)
        if existing is None:
            self.conditions.append(new)
            return
        if existing.status != new.status:
            existing.status = new.status
            existing.last_transition_time = new.last_transition_time
        existing.reason = new.reason
        existing.message = new.message
        existing.observed_generation = new.observed_generation
    
    def set_phase(self, phase: str, generation: int, reason: str, message: str) -> None:
        """Move to a phase, making its condition True and the other phase conditions False."""
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        self.phase = phase
        self.observed_generation = generation
        self.message = message
        now = utcnow()
        for candidate in PHASES:
            if candidate == phase:
                self.set_condition(Condition(candidate, CONDITION_TRUE, reason, message, generation, now))
            elif self.get_condition(candidate) is not None:
                self.set_condition(Condition(candidate, CONDITION_FALSE, reason, message, generation, now))
    
    def to_dict(self) -> Dict[str, Any]:
        data = {
            'observedGeneration': self.observed_generation,
            'conditions': [condition.to_dict() for condition in self.conditions],
        }
        if self.phase:
            data['phase'] = self.phase
        if self.message:
            data['message'] = self.message
        return data


class Resource(ABC):
    """
    A control-plane object: metadata, a typed spec and an observed status.
    
    Subclasses set KIND and API_VERSION and implement spec parsing.
    """
    
    KIND = ''
    API_VERSION = API_VERSION
    
    def __init__(self, metadata: ObjectMeta, spec: Any, status: Optional[ObservedStatus] = None):
        self.metadata = metadata
        self.spec = spec
        self.status = status if status is not None else self.new_status()
    
    @classmethod
    def new_status(cls) -> ObservedStatus:
        return ObservedStatus()
    
    @classmethod
    @abstractmethod
    def parse_spec(cls, data: Dict[str, Any]) -> Any:
        """Build the typed spec from its manifest mapping."""
        pass
    
    @classmethod
    def from_manifest(cls, document: Dict[str, Any]) -> 'Resource':
        metadata = ObjectMeta.from_dict(document.get('metadata') or {})
        spec_data = document.get(cls.spec_field()) or {}
        if not isinstance(spec_data, dict):
            raise InvalidSpecError(f"{cls.KIND} {metadata.name}: {cls.spec_field()} must be a mapping")
        return cls(metadata, cls.parse_spec(spec_data))
    
    @classmethod
    def spec_field(cls) -> str:
        return 'spec'
    
    def spec_to_dict(self) -> Dict[str, Any]:
        return {}
    
    def to_manifest(self) -> Dict[str, Any]:
        return {
            'apiVersion': self.API_VERSION,
            'kind': self.KIND,
            'metadata': self.metadata.to_dict(),
            self.spec_field(): self.spec_to_dict(),
            'status': self.status.to_dict(),
        }
    
    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.KIND, self.metadata.namespace, self.metadata.name)
    
    def validate(self) -> List[str]:
        """Return a list of human-readable spec problems; empty when valid."""
        return []
    
    def get_spec(self) -> Any:
        return self.spec
    
    def set_status(self, status: ObservedStatus) -> None:
        self.status = status
    
    def get_phase(self) -> Optional[str]:
        return self.status.phase
    
    def deepcopy(self) -> 'Resource':
        return copy.deepcopy(self)
    
    def __repr__(self):
        return f"<{self.KIND} {self.metadata.namespace}/{self.metadata.name} gen={self.metadata.generation}>"


class NamedDirectoryObject(ABC):
    """Capability: the object can produce a distinguished name."""
    
    @abstractmethod
    def get_distinguished_name(self, dn_computer, visited=None) -> str:
        pass


class ReconcilableObject(ABC):
    """Capability: the object carries references to resolve and a simple status."""
    
    @abstractmethod
    def resolve_references(self, resolver):
        """Return the first non-resolved ResolvedReference, or a resolved one when all resolve."""
        pass
    
    @abstractmethod
    def get_spec(self) -> Any:
        pass
    
    @abstractmethod
    def set_status(self, status: ObservedStatus) -> None:
        pass
    
    @abstractmethod
    def get_phase(self) -> Optional[str]:
        pass


@dataclass
class DirectoryObjectSpec:
    """Fields shared by every object placed in a directory tree."""
    directory_ref: Optional[LocalReference]
    parent_ref: Optional[ObjectReference] = None
    
    @staticmethod
    def parse_common(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'directory_ref': LocalReference.from_dict(data.get('directoryRef'), 'directoryRef'),
            'parent_ref': ObjectReference.from_dict(data.get('parentRef'), 'parentRef'),
        }
    
    def common_to_dict(self) -> Dict[str, Any]:
        data = {}
        if self.directory_ref:
            data['directoryRef'] = self.directory_ref.to_dict()
        if self.parent_ref:
            data['parentRef'] = self.parent_ref.to_dict()
        return data


@dataclass
class DirectoryObjectStatus(ObservedStatus):
    # DN of the entry last written; the entry is removed there when the object moves or goes away
    dn: str = ''

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.dn:
            data['dn'] = self.dn
        return data


class DirectoryObject(Resource, NamedDirectoryObject, ReconcilableObject):
    """
    An organizational unit, group or user placed under a directory root.

    Subclasses define RDN_ATTRIBUTE and rdn_value(); the DN itself is derived by
    the DNComputer so that the parent walk is guarded in a single place.
    """

    RDN_ATTRIBUTE = 'cn'

    @classmethod
    def new_status(cls) -> DirectoryObjectStatus:
        return DirectoryObjectStatus()

    @abstractmethod
    def rdn_value(self) -> str:
        pass
    
    def relative_dn(self) -> str:
        value = self.rdn_value()
        if not value:
            raise InvalidSpecError(f"{self.key}: naming attribute {self.RDN_ATTRIBUTE} is empty")
        return f"{self.RDN_ATTRIBUTE}={escape_rdn(value)}"
    
    def get_distinguished_name(self, dn_computer, visited=None) -> str:
        return dn_computer.compute(self, visited)
    
    def resolve_references(self, resolver):
        from ldap_operator.references import ResolvedReference
        
        directory = resolver.resolve_directory(self)
        if not directory.is_resolved:
            return directory
        
        if self.spec.parent_ref is not None:
            parent = resolver.resolve(self.spec.parent_ref, self, capability=NamedDirectoryObject)
            if not parent.is_resolved:
                return parent
        
        for secret_ref in self.secret_references():
            secret = resolver.resolve_secret(secret_ref, self)
            if not secret.is_resolved:
                return secret
        
        return ResolvedReference.resolved(directory.target)
    
    def secret_references(self) -> List[LocalReference]:
        return []
    
    def validate(self) -> List[str]:
        errors = []
        if self.spec.directory_ref is None:
            errors.append("spec.directoryRef is required")
        return errors
