"""
Reconciliation of directory roots.

A directory root becomes Ready once its certificate secret exists, its admin
password secret has been generated, its DN suffix is recorded and the
directory answers a ping. Child objects wait for that before touching the
directory.
"""

import logging
import secrets
import string

from ldap_operator.ldap_client import ADMIN_PASSWORD_KEY, CA_CERT_KEY, DirectoryConnectionError
from ldap_operator.reconciler import Reconciler, ReconcileResult
from ldap_operator.references import UnresolvedReferenceError, InvalidReferenceError
from ldap_operator.resources import (
    DirectoryRoot,
    Secret,
    ObjectKey,
    InvalidSpecError,
    LIFECYCLE_DELETING,
    API_GROUP,
)
from ldap_operator.store import AlreadyExistsError

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_LENGTH = 32
ADMIN_PASSWORD_ALPHABET = string.ascii_letters + string.digits

DIRECTORY_LABEL = f'{API_GROUP}/directory'


def generate_password(length: int = ADMIN_PASSWORD_LENGTH) -> str:
    return ''.join(secrets.choice(ADMIN_PASSWORD_ALPHABET) for _ in range(length))


class DirectoryRootReconciler(Reconciler):
    """Prepares a directory root and gates its readiness on a successful ping."""
    
    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        directory = self.store.get_by_key(key)
        if directory is None:
            self.client_pool.discard(key)
            return ReconcileResult()
        
        if directory.metadata.lifecycle == LIFECYCLE_DELETING:
            # The directory server and its data are owned by the provisioning layer
            self.client_pool.discard(key)
            self.remove_finalizer(directory)
            return ReconcileResult()
        
        directory = self.ensure_finalizer(directory)
        
        errors = directory.validate()
        if errors:
            raise self.mark_failed(directory, InvalidSpecError("; ".join(errors)))
        
        resolved = directory.resolve_references(self.resolver)
        if resolved.is_unresolved:
            return self.mark_pending(directory, resolved.message)
        if resolved.is_error:
            raise self.mark_failed(directory, InvalidReferenceError(resolved.message))
        if not resolved.target.get(CA_CERT_KEY):
            raise self.mark_failed(directory, InvalidReferenceError(
                f"certificate secret {resolved.target.metadata.name} has no {CA_CERT_KEY!r} key"))
        
        self.ensure_admin_secret(directory)
        
        computed_dn = directory.computed_base_dn()
        if directory.status.base_dn and directory.status.base_dn != computed_dn:
            raise self.mark_failed(directory, InvalidSpecError(
                f"domain is immutable (base DN {directory.status.base_dn}); recreate the directory"))
        if not directory.status.base_dn:
            self.record_base_dn(directory, computed_dn)
        
        try:
            self.client_pool.get_client(directory).ping()
        except UnresolvedReferenceError as e:
            return self.mark_pending(directory, str(e))
        except InvalidReferenceError as e:
            raise self.mark_failed(directory, e)
        except DirectoryConnectionError as e:
            return self.mark_pending(directory, f"directory is not reachable: {e}")
        
        self.mark_ready(directory, f"directory {computed_dn} is reachable")
        return ReconcileResult()
    
    def ensure_admin_secret(self, directory: DirectoryRoot) -> None:
        """Generate the admin password secret once; an existing secret is never replaced."""
        name = directory.admin_password_secret_name
        if self.store.get(Secret.KIND, directory.metadata.namespace, name) is not None:
            return
        
        secret = Secret.create(name, directory.metadata.namespace,
                               {ADMIN_PASSWORD_KEY: generate_password()})
        secret.metadata.labels[DIRECTORY_LABEL] = directory.metadata.name
        try:
            self.store.create(secret)
        except AlreadyExistsError:
            logger.debug(f"Admin password secret {name} was created concurrently")
            return
        logger.info(f"Generated admin password secret {name} for {directory.key}")
    
    def record_base_dn(self, directory: DirectoryRoot, base_dn: str) -> None:
        def mutate(status):
            status.base_dn = base_dn
        
        updated = self.store.update_status(directory.key, mutate)
        directory.set_status(updated.status)
        logger.info(f"Recorded base DN {base_dn} for {directory.key}")
