"""
Reconciliation of directory objects against a managed LDAP directory.

A reconciler is invoked with an object key and drives one step of the object's
lifecycle: finalizer handling for deleted objects, reference resolution, DN
computation, entry mapping and the idempotent upsert. Every outcome is written
back as the object's phase and conditions, and a ReconcileResult tells the
dispatcher when to look at the object again.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type

from ldap_operator.ldap_client import (
    DirectoryConnectionError,
    DirectoryOperationError,
    EntryNotFoundError,
    EntryHasChildrenError,
    ParentEntryNotFoundError,
)
from ldap_operator.mapper import EntryMapper
from ldap_operator.notifications import (
    EventRecorder,
    REASON_CREATED,
    REASON_READY,
    REASON_NOT_READY,
    REASON_FAILED,
    REASON_DELETED,
)
from ldap_operator.references import (
    ReferenceResolver,
    DNComputer,
    ReferenceResolutionError,
    UnresolvedReferenceError,
    InvalidReferenceError,
    DirectoryNotReadyError,
    ensure_directory_ready,
    DEFAULT_MAX_DEPTH,
)
from ldap_operator.resources import (
    Resource,
    DirectoryObject,
    Secret,
    ObjectKey,
    InvalidSpecError,
    FINALIZER_NAME,
    PHASE_PENDING,
    PHASE_READY,
    PHASE_FAILED,
    LIFECYCLE_DELETING,
)
from ldap_operator.store import ObjectStore, ObjectNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL = 5.0

REASON_UPDATED = 'Updated'


class ReconcileError(Exception):
    """Raised when a reconcile fails; the object has been marked Failed."""
    
    def __init__(self, key: ObjectKey, cause: Exception):
        self.key = key
        self.cause = cause
        super().__init__(f"{key}: {cause}")


@dataclass
class ReconcileResult:
    # Seconds until the object should be reconciled again; None waits for the next change or resync
    requeue_after: Optional[float] = None


class Reconciler:
    """
    Status, event and finalizer plumbing shared by all reconcilers.
    
    Subclasses implement reconcile(key).
    """
    
    def __init__(self, store: ObjectStore, resolver: ReferenceResolver, client_pool,
                 recorder: EventRecorder, retry_interval: float = DEFAULT_RETRY_INTERVAL):
        self.store = store
        self.resolver = resolver
        self.client_pool = client_pool
        self.recorder = recorder
        self.retry_interval = retry_interval
    
    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        raise NotImplementedError
    
    def ensure_finalizer(self, obj: Resource) -> Resource:
        """Add the operator's finalizer before any remote change is made."""
        if obj.metadata.has_finalizer(FINALIZER_NAME):
            return obj
        updated = self.store.patch(obj.key, lambda o: o.metadata.add_finalizer(FINALIZER_NAME))
        logger.debug(f"Added finalizer to {obj.key}")
        return updated if updated is not None else obj
    
    def remove_finalizer(self, obj: Resource) -> None:
        try:
            self.store.patch(obj.key, lambda o: o.metadata.remove_finalizer(FINALIZER_NAME))
        except ObjectNotFoundError:
            logger.debug(f"{obj.key} already removed")
            return
        self.recorder.forget(obj.key)
        logger.info(f"Removed finalizer from {obj.key}")
    
    def _set_phase(self, obj: Resource, phase: str, reason: str, message: str) -> None:
        generation = obj.metadata.generation
        
        def mutate(status):
            status.set_phase(phase, generation, reason, message)
        
        try:
            updated = self.store.update_status(obj.key, mutate)
        except ObjectNotFoundError:
            logger.debug(f"{obj.key} disappeared before its status could be updated")
            return
        obj.set_status(updated.status)
    
    def mark_pending(self, obj: Resource, message: str) -> ReconcileResult:
        """Record a transient problem and ask to be retried shortly."""
        self._set_phase(obj, PHASE_PENDING, REASON_NOT_READY, message)
        self.recorder.warning(obj, REASON_NOT_READY, message)
        return ReconcileResult(requeue_after=self.retry_interval)
    
    def mark_failed(self, obj: Resource, cause: Exception) -> ReconcileError:
        """Record a failure; the caller raises the returned error."""
        message = str(cause)
        self._set_phase(obj, PHASE_FAILED, REASON_FAILED, message)
        self.recorder.warning(obj, REASON_FAILED, message)
        return ReconcileError(obj.key, cause)
    
    def mark_ready(self, obj: Resource, message: str, changed: bool = False) -> None:
        previous_phase = obj.get_phase()
        never_ready = obj.status.get_condition(PHASE_READY) is None
        up_to_date = previous_phase == PHASE_READY and obj.status.observed_generation == obj.metadata.generation
        if up_to_date and not changed:
            return
        
        self._set_phase(obj, PHASE_READY, REASON_READY, message)
        self.recorder.forget(obj.key)
        
        if previous_phase != PHASE_READY:
            reason = REASON_CREATED if changed and never_ready else REASON_READY
            self.recorder.normal(obj, reason, message)
        elif changed:
            self.recorder.normal(obj, REASON_UPDATED, message)


class ObjectReconciler(Reconciler):
    """
    Generic reconciler for one directory object kind.
    
    The kind class and the function mapping an object to its LDAP entry are
    supplied at construction, so the same reconcile protocol serves
    organizational units, groups and users.
    """
    
    def __init__(self, kind_class: Type[DirectoryObject], store: ObjectStore,
                 resolver: ReferenceResolver, client_pool, recorder: EventRecorder,
                 map_to_entry: EntryMapper, retry_interval: float = DEFAULT_RETRY_INTERVAL,
                 max_depth: int = DEFAULT_MAX_DEPTH):
        super().__init__(store, resolver, client_pool, recorder, retry_interval)
        self.kind_class = kind_class
        self.map_to_entry = map_to_entry
        self.dn_computer = DNComputer(resolver, max_depth)
    
    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Drive one object towards its declared state.
        
        Returns:
            When to reconcile again (requeue_after is set for transient problems)
        
        Raises:
            ReconcileError: If the object was marked Failed
        """
        if key.kind != self.kind_class.KIND:
            raise ValueError(f"{type(self).__name__} for {self.kind_class.KIND} cannot reconcile {key}")
        
        obj = self.store.get_by_key(key)
        if obj is None:
            logger.debug(f"{key} no longer exists")
            return ReconcileResult()
        
        if obj.metadata.lifecycle == LIFECYCLE_DELETING:
            return self._finalize(obj)
        
        obj = self.ensure_finalizer(obj)
        
        errors = obj.validate()
        if errors:
            raise self.mark_failed(obj, InvalidSpecError("; ".join(errors)))
        
        resolved = obj.resolve_references(self.resolver)
        if resolved.is_unresolved:
            return self.mark_pending(obj, resolved.message)
        if resolved.is_error:
            raise self.mark_failed(obj, InvalidReferenceError(resolved.message))
        
        directory = resolved.target
        try:
            ensure_directory_ready(directory)
        except DirectoryNotReadyError as e:
            return self.mark_pending(obj, str(e))
        
        try:
            dn = self.dn_computer.compute(obj)
            entry = self.map_to_entry(obj, dn, self._referenced_secrets(obj))
        except UnresolvedReferenceError as e:
            return self.mark_pending(obj, str(e))
        except (InvalidReferenceError, InvalidSpecError) as e:
            raise self.mark_failed(obj, e)
        
        previous_dn = obj.status.dn
        try:
            client = self.client_pool.get_client(directory)
            changed = client.create_or_update_entry(entry)
            if previous_dn and not same_dn(previous_dn, dn):
                self._delete_entry(client, previous_dn)
                logger.info(f"{obj.key} moved from {previous_dn} to {dn}")
                changed = True
        except EntryHasChildrenError:
            return self.mark_pending(obj, f"previous entry {previous_dn} still has children")
        except (UnresolvedReferenceError, ParentEntryNotFoundError) as e:
            return self.mark_pending(obj, str(e))
        except (InvalidReferenceError, DirectoryConnectionError, DirectoryOperationError) as e:
            raise self.mark_failed(obj, e)
        
        self.record_dn(obj, dn)
        self.mark_ready(obj, f"entry {dn} is up to date", changed)
        return ReconcileResult()
    
    def record_dn(self, obj: DirectoryObject, dn: str) -> None:
        """Remember where the entry was written, so a later move or delete can find it."""
        if obj.status.dn == dn:
            return
        
        def mutate(status):
            status.dn = dn
        
        try:
            updated = self.store.update_status(obj.key, mutate)
        except ObjectNotFoundError:
            logger.debug(f"{obj.key} disappeared before its DN could be recorded")
            return
        obj.set_status(updated.status)
    
    @staticmethod
    def _delete_entry(client, dn: str) -> bool:
        """Delete one entry without its subtree; False when it was already gone."""
        try:
            client.delete_entry(dn, recursive=False)
        except EntryNotFoundError:
            logger.debug(f"Entry {dn} is already gone")
            return False
        return True
    
    def _referenced_secrets(self, obj: DirectoryObject) -> Dict[str, Secret]:
        secrets = {}
        for ref in obj.secret_references():
            secrets[ref.name] = self.resolver.resolve_secret(ref, obj).raise_for_state()
        return secrets
    
    def _finalize(self, obj: DirectoryObject) -> ReconcileResult:
        if not obj.metadata.has_finalizer(FINALIZER_NAME):
            return ReconcileResult()
        
        directory, dns = self._cleanup_targets(obj)
        for dn in dns:
            try:
                client = self.client_pool.get_client(directory)
                removed = self._delete_entry(client, dn)
            except EntryHasChildrenError:
                return self.mark_pending(obj, f"entry {dn} still has children")
            except UnresolvedReferenceError as e:
                logger.info(f"{obj.key}: skipping removal of {dn}: {e}")
                continue
            except (InvalidReferenceError, DirectoryConnectionError, DirectoryOperationError) as e:
                raise self.mark_failed(obj, e)
            if removed:
                self.recorder.normal(obj, REASON_DELETED, f"entry {dn} removed")
        
        self.remove_finalizer(obj)
        return ReconcileResult()
    
    def _cleanup_targets(self, obj: DirectoryObject):
        """
        The directory and the entry DNs to remove.
        
        The recorded DN comes first, then the computed one when it differs.
        Nothing is removed when the directory is gone or being deleted.
        """
        directory = self.resolver.resolve_directory(obj)
        if not directory.is_resolved:
            logger.info(f"{obj.key}: directory is gone, skipping entry removal")
            return None, []
        if directory.target.metadata.lifecycle == LIFECYCLE_DELETING:
            logger.info(f"{obj.key}: directory is being deleted, skipping entry removal")
            return directory.target, []
        
        dns = [obj.status.dn] if obj.status.dn else []
        try:
            computed = self.dn_computer.compute(obj)
        except (ReferenceResolutionError, InvalidSpecError) as e:
            logger.info(f"{obj.key}: cannot compute DN ({e})")
        else:
            if not any(same_dn(computed, dn) for dn in dns):
                dns.append(computed)
        return directory.target, dns


def same_dn(first: str, second: str) -> bool:
    """Whether two DNs name the same entry; naming attributes compare case-insensitively."""
    return first.lower() == second.lower()
