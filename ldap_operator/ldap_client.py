"""
LDAP client for applying entries to a managed directory.

This module provides the wire-level DirectoryEntry, a DirectoryClient that owns
one lazily-established LDAPS connection and exposes idempotent entry-level
create/update/delete primitives, and a DirectoryClientPool that shares one
client per directory root across concurrent reconciles.
"""

import logging
import socket
import ssl
import threading
from typing import Dict, List, Any, Callable, Optional, Tuple

from ldap3 import (
    Server,
    Connection,
    Tls,
    SYNC,
    BASE,
    LEVEL,
    NONE,
    ALL_ATTRIBUTES,
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
)
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.core.results import (
    RESULT_SUCCESS,
    RESULT_NO_SUCH_OBJECT,
    RESULT_NOT_ALLOWED_ON_NON_LEAF,
    RESULT_ENTRY_ALREADY_EXISTS,
)

from ldap_operator.retry import retry_call, retry_logger, MaxRetriesExceeded, TRANSIENT_LDAP_ERRORS
from ldap_operator.references import UnresolvedReferenceError, InvalidReferenceError
from ldap_operator.resources import DirectoryRoot, Secret, ObjectKey

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_KEY = 'password'
CA_CERT_KEY = 'ca.crt'

# Maintained by the server; never part of a desired entry
SERVER_MANAGED_ATTRIBUTES = frozenset(name.lower() for name in (
    'createTimestamp', 'modifyTimestamp', 'creatorsName', 'modifiersName',
    'entryDN', 'entryUUID', 'entryCSN', 'structuralObjectClass',
    'hasSubordinates', 'subschemaSubentry', 'contextCSN', 'memberOf',
    'pwdChangedTime', 'pwdHistory', 'pwdFailureTime', 'pwdAccountLockedTime',
))


class DirectoryConnectionError(Exception):
    """Raised when the directory cannot be reached or authentication fails."""
    pass


class DirectoryOperationError(Exception):
    """Raised when the directory rejects an operation."""
    pass


class EntryNotFoundError(DirectoryOperationError):
    """Raised when no entry exists at a DN."""
    pass


class EntryHasChildrenError(DirectoryOperationError):
    """Raised when a non-recursive delete targets an entry with children."""
    pass


class ParentEntryNotFoundError(DirectoryOperationError):
    """Raised when an entry is added before the entry it is placed under exists."""
    pass


def _normalize_values(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        values = list(value)
    else:
        values = [value]
    
    normalized = []
    for item in values:
        if item is None:
            continue
        if isinstance(item, (bytes, bytearray)):
            item = bytes(item).decode('utf-8', errors='replace')
        elif not isinstance(item, str):
            item = str(item)
        if item != '':
            normalized.append(item)
    return normalized


class DirectoryEntry:
    """
    A DN plus an ordered mapping of attribute name to one or more string values.
    
    Empty values are treated as absent: setting an attribute to None, '' or []
    removes it from the entry.
    """
    
    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        self.dn = dn
        self.attributes: Dict[str, List[str]] = {}
        for name, value in (attributes or {}).items():
            self.set(name, value)
    
    def _find_name(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for existing in self.attributes:
            if existing.lower() == lowered:
                return existing
        return None
    
    def set(self, name: str, value: Any) -> None:
        existing = self._find_name(name)
        if existing is not None:
            del self.attributes[existing]
        values = _normalize_values(value)
        if values:
            self.attributes[name] = values
    
    def get_all(self, name: str) -> List[str]:
        existing = self._find_name(name)
        return list(self.attributes[existing]) if existing is not None else []
    
    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.get_all(name)
        return values[0] if values else default
    
    def has(self, name: str) -> bool:
        return self._find_name(name) is not None
    
    def __eq__(self, other):
        if not isinstance(other, DirectoryEntry):
            return NotImplemented
        return self.dn.lower() == other.dn.lower() and not compute_modifications(other, self) \
            and not compute_modifications(self, other)
    
    def __repr__(self):
        shown = {
            name: ['****'] if name.lower() == 'userpassword' else values
            for name, values in self.attributes.items()
        }
        return f"DirectoryEntry({self.dn!r}, {shown!r})"


def _values_match(existing: List[str], desired: List[str]) -> bool:
    # Hashed passwords carry a verifier; a stored hash of the same secret is kept
    if len(desired) == 1 and len(existing) == 1 and hasattr(desired[0], 'matches'):
        return desired[0] == existing[0] or desired[0].matches(existing[0])
    return set(existing) == set(desired)


def compute_modifications(existing: DirectoryEntry, desired: DirectoryEntry) -> Dict[str, List[Tuple[int, List[str]]]]:
    """
    Compute the minimal ldap3 modify changes turning existing into desired.
    
    Attributes only in desired are added, attributes only in existing are
    removed entirely, and attributes whose value sets differ are replaced.
    Server-managed attributes are ignored.
    """
    existing_by_name = {
        name.lower(): (name, values)
        for name, values in existing.attributes.items()
        if name.lower() not in SERVER_MANAGED_ATTRIBUTES
    }
    
    changes = {}
    for name, values in desired.attributes.items():
        current = existing_by_name.pop(name.lower(), None)
        if current is None:
            changes[name] = [(MODIFY_ADD, list(values))]
        elif not _values_match(current[1], values):
            changes[name] = [(MODIFY_REPLACE, list(values))]
    
    for name, _ in existing_by_name.values():
        changes[name] = [(MODIFY_DELETE, [])]
    
    return changes


class DirectoryClient:
    """
    LDAP client owning one connection to a managed directory.
    
    The connection is opened lazily on first use and reused. Every operation
    holds the client's lock, so a single client can be shared by concurrent
    reconciles of different objects.
    """
    
    def __init__(self, config: Dict[str, Any], server: Optional[Server] = None,
                 client_strategy: str = SYNC):
        """
        Initialize directory client with configuration.
        
        Args:
            config: Connection settings (server_url, bind_dn, bind_password, TLS and timeouts)
            server: Pre-built ldap3 Server, used instead of one derived from server_url
            client_strategy: ldap3 client strategy
        """
        self.config = config
        self.server_url = config.get('server_url', '')
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        
        self.start_tls = config.get('start_tls', False)
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.ca_certs_data = config.get('ca_certs_data')
        
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.max_retries = config.get('max_retries', 3)
        self.retry_wait = config.get('retry_wait_seconds', 2)
        
        self.client_strategy = client_strategy
        self.server = server
        self._server_injected = server is not None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()
    
    @property
    def connected(self) -> bool:
        return self._connected
    
    def connect(self) -> None:
        """
        Establish an authenticated session, retrying transient socket failures.
        
        Raises:
            DirectoryConnectionError: If the directory is unreachable or the bind fails
        """
        with self._lock:
            if self._connected:
                return
            
            if self.server is None or not self._server_injected:
                self.server = self._create_server()
            
            try:
                retry_call(
                    self._open_and_bind,
                    max_attempts=self.max_retries,
                    delay=self.retry_wait,
                    on_retry=retry_logger(f"Connect to {self._endpoint()}")
                )
            except MaxRetriesExceeded as e:
                raise DirectoryConnectionError(
                    f"Failed to connect to {self._endpoint()} after {e.attempts} attempts: {e.last_exception}")
            except LDAPBindError as e:
                raise DirectoryConnectionError(f"Bind to {self._endpoint()} as {self.bind_dn} failed: {e}")
            except LDAPException as e:
                raise DirectoryConnectionError(f"Failed to connect to {self._endpoint()}: {e}")
            
            self._connected = True
            logger.info(f"Connected and bound to {self._endpoint()} as {self.bind_dn}")
    
    def _endpoint(self) -> str:
        return self.server_url or str(self.server)
    
    def _create_server(self) -> Server:
        if not (self.use_ssl or self.start_tls):
            raise DirectoryConnectionError(
                f"Refusing plaintext LDAP to {self.server_url}; use ldaps:// or StartTLS")
        try:
            return Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=NONE,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server for {self.server_url}: {e}")
    
    def _create_tls_config(self) -> Tls:
        tls_config = {
            'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE,
        }
        if not self.verify_ssl:
            logger.warning(f"TLS certificate verification disabled for {self.server_url}")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        if self.ca_certs_data:
            tls_config['ca_certs_data'] = self.ca_certs_data
        
        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")
    
    def _open_and_bind(self) -> None:
        self._close_quietly()
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            client_strategy=self.client_strategy,
            auto_bind=False,
            receive_timeout=self.receive_timeout,
            raise_exceptions=False
        )
        
        self.connection.open()
        
        if self.start_tls and not self.use_ssl:
            if not self.connection.start_tls():
                raise LDAPBindError(f"StartTLS failed: {self.connection.result}")
        
        if not self.connection.bind():
            result = self.connection.result or {}
            raise LDAPBindError(f"Bind failed: {result.get('description', result)}")
    
    def _close_quietly(self) -> None:
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while closing connection: {e}")
            self.connection = None
    
    def disconnect(self) -> None:
        """Close the connection once any in-flight call has finished."""
        with self._lock:
            if self.connection is not None:
                self._close_quietly()
                logger.debug(f"Disconnected from {self._endpoint()}")
            self._connected = False
    
    def abort(self) -> None:
        """
        Shut down the socket without waiting for the lock.
        
        A call blocked on the directory fails with DirectoryConnectionError and
        the next call reconnects.
        """
        connection = self.connection
        sock = getattr(connection, 'socket', None) if connection is not None else None
        if sock is None:
            return
        self._connected = False
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Ignoring error while aborting connection to {self._endpoint()}: {e}")
            return
        logger.info(f"Aborted connection to {self._endpoint()}")
    
    def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run func under the lock on a live connection, translating ldap3 failures."""
        with self._lock:
            self.connect()
            try:
                return func()
            except TRANSIENT_LDAP_ERRORS as e:
                self._connected = False
                self._close_quietly()
                raise DirectoryConnectionError(f"{operation} failed, connection lost: {e}")
            except LDAPException as e:
                raise DirectoryOperationError(f"{operation} failed: {e}")
    
    def _result_code(self) -> int:
        return (self.connection.result or {}).get('result', -1)
    
    def _result_message(self) -> str:
        result = self.connection.result or {}
        description = result.get('description', '')
        message = result.get('message', '')
        return f"{description} {message}".strip() or str(result)
    
    def ping(self) -> None:
        """
        Check that the directory answers requests.

        Reads the bind entry itself. Any LDAP answer counts, noSuchObject
        included, since a bind DN does not have to be an entry.

        Raises:
            DirectoryConnectionError: If the directory is unreachable
        """
        def _ping():
            self.connection.search(
                search_base=self.bind_dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['objectClass']
            )
            if not self.connection.result:
                raise DirectoryConnectionError(f"No response from {self._endpoint()}")
        
        try:
            self._call("Ping", _ping)
        except DirectoryOperationError as e:
            raise DirectoryConnectionError(str(e))
    
    def _find_entry(self, dn: str) -> Optional[DirectoryEntry]:
        found = self.connection.search(
            search_base=dn,
            search_filter='(objectClass=*)',
            search_scope=BASE,
            attributes=ALL_ATTRIBUTES
        )
        if not found:
            if self._result_code() in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
                return None
            raise DirectoryOperationError(f"Lookup of {dn} failed: {self._result_message()}")
        
        for response in self.connection.response or []:
            if response.get('type') == 'searchResEntry':
                return DirectoryEntry(response['dn'], dict(response.get('attributes') or {}))
        return None
    
    def _list_children(self, dn: str) -> List[str]:
        found = self.connection.search(
            search_base=dn,
            search_filter='(objectClass=*)',
            search_scope=LEVEL,
            attributes=['objectClass']
        )
        if not found:
            if self._result_code() in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
                return []
            raise DirectoryOperationError(f"Listing children of {dn} failed: {self._result_message()}")
        
        return [
            response['dn'] for response in self.connection.response or []
            if response.get('type') == 'searchResEntry' and response['dn'].lower() != dn.lower()
        ]
    
    def get_entry(self, dn: str) -> DirectoryEntry:
        """
        Read the entry at dn.
        
        Raises:
            EntryNotFoundError: If no entry exists at dn
        """
        entry = self._call(f"Lookup of {dn}", lambda: self._find_entry(dn))
        if entry is None:
            raise EntryNotFoundError(f"No entry at {dn}")
        return entry
    
    def create_or_update_entry(self, entry: DirectoryEntry) -> bool:
        """
        Idempotently upsert an entry.
        
        Creates the entry when missing; otherwise applies only the attribute
        changes between the stored and desired entry.
        
        Returns:
            True if the entry was created or modified, False if it already matched
        """
        return self._call(f"Apply of {entry.dn}", lambda: self._create_or_update(entry))
    
    def _create_or_update(self, entry: DirectoryEntry) -> bool:
        existing = self._find_entry(entry.dn)
        
        if existing is None:
            attributes = {name: list(values) for name, values in entry.attributes.items()}
            if not self.connection.add(entry.dn, attributes=attributes):
                if self._result_code() == RESULT_ENTRY_ALREADY_EXISTS:
                    raise DirectoryOperationError(f"Entry {entry.dn} appeared concurrently, retry")
                if self._result_code() == RESULT_NO_SUCH_OBJECT:
                    raise ParentEntryNotFoundError(f"Parent entry of {entry.dn} does not exist yet")
                raise DirectoryOperationError(f"Create of {entry.dn} failed: {self._result_message()}")
            logger.info(f"Created entry {entry.dn}")
            return True
        
        changes = compute_modifications(existing, entry)
        if not changes:
            logger.debug(f"Entry {entry.dn} is up to date")
            return False
        
        if not self.connection.modify(entry.dn, changes):
            raise DirectoryOperationError(f"Update of {entry.dn} failed: {self._result_message()}")
        logger.info(f"Updated entry {entry.dn}: {', '.join(sorted(changes))}")
        return True
    
    def delete_entry(self, dn: str, recursive: bool = False) -> None:
        """
        Remove the entry at dn.
        
        Args:
            dn: Entry to remove
            recursive: Remove all descendants first (depth-first)
        
        Raises:
            EntryNotFoundError: If no entry exists at dn
            EntryHasChildrenError: If the entry has children and recursive is False
        """
        self._call(f"Delete of {dn}", lambda: self._delete(dn, recursive))
    
    def _delete(self, dn: str, recursive: bool) -> None:
        if self._find_entry(dn) is None:
            raise EntryNotFoundError(f"No entry at {dn}")
        
        children = self._list_children(dn)
        if children and not recursive:
            raise EntryHasChildrenError(f"Entry {dn} has {len(children)} children")
        
        for child in children:
            self._delete(child, recursive=True)
        
        if not self.connection.delete(dn):
            code = self._result_code()
            if code == RESULT_NO_SUCH_OBJECT:
                raise EntryNotFoundError(f"No entry at {dn}")
            if code == RESULT_NOT_ALLOWED_ON_NON_LEAF:
                raise EntryHasChildrenError(f"Entry {dn} has children")
            raise DirectoryOperationError(f"Delete of {dn} failed: {self._result_message()}")
        logger.info(f"Deleted entry {dn}")
    
    def __enter__(self):
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class DirectoryClientPool:
    """
    Builds and caches one DirectoryClient per directory root.
    
    Connection settings come from the directory spec, its certificate secret and
    the generated admin password secret. A change to any of them replaces the
    cached client.
    """
    
    def __init__(self, store, ldap_config: Optional[Dict[str, Any]] = None,
                 client_factory: Optional[Callable[[Dict[str, Any]], DirectoryClient]] = None):
        self.store = store
        self.ldap_config = ldap_config or {}
        self.client_factory = client_factory or DirectoryClient
        self._clients: Dict[ObjectKey, Tuple[tuple, DirectoryClient]] = {}
        self._lock = threading.Lock()
    
    def endpoint_for(self, directory: DirectoryRoot) -> str:
        if directory.spec.address_override:
            return directory.spec.address_override
        port = self.ldap_config.get('port', 636)
        domain = self.ldap_config.get('service_domain', 'svc')
        return f"ldaps://{directory.service_name}.{directory.metadata.namespace}.{domain}:{port}"
    
    def _secret_value(self, directory: DirectoryRoot, name: str, key: str) -> str:
        secret = self.store.get(Secret.KIND, directory.metadata.namespace, name)
        if secret is None:
            raise UnresolvedReferenceError(f"secret {directory.metadata.namespace}/{name} not found")
        value = secret.get(key)
        if not value:
            raise InvalidReferenceError(f"secret {directory.metadata.namespace}/{name} has no {key!r} key")
        return value
    
    def client_settings(self, directory: DirectoryRoot) -> Dict[str, Any]:
        """
        Connection settings for a directory root.
        
        Raises:
            UnresolvedReferenceError: If a required secret does not exist yet
            InvalidReferenceError: If a secret lacks a required key
        """
        settings = {
            key: self.ldap_config[key]
            for key in ('connection_timeout', 'receive_timeout', 'verify_ssl',
                        'max_retries', 'retry_wait_seconds')
            if key in self.ldap_config
        }
        settings.update({
            'server_url': self.endpoint_for(directory),
            'bind_dn': directory.admin_bind_dn(),
            'bind_password': self._secret_value(
                directory, directory.admin_password_secret_name, ADMIN_PASSWORD_KEY),
        })
        if directory.spec.certificate_secret_ref is not None:
            settings['ca_certs_data'] = self._secret_value(
                directory, directory.spec.certificate_secret_ref.name, CA_CERT_KEY)
        return settings
    
    def get_client(self, directory: DirectoryRoot) -> DirectoryClient:
        settings = self.client_settings(directory)
        fingerprint = tuple(sorted((key, str(value)) for key, value in settings.items()))
        
        with self._lock:
            cached = self._clients.get(directory.key)
            if cached is not None:
                if cached[0] == fingerprint:
                    return cached[1]
                logger.info(f"Connection settings for {directory.key} changed, reconnecting")
                cached[1].disconnect()
            
            client = self.client_factory(settings)
            self._clients[directory.key] = (fingerprint, client)
            return client
    
    def discard(self, key: ObjectKey) -> None:
        with self._lock:
            cached = self._clients.pop(key, None)
        if cached is not None:
            cached[1].disconnect()
    
    def abort_all(self) -> None:
        """Abort in-flight I/O on every cached client; safe to call from a signal handler."""
        with self._lock:
            clients = [client for _, client in self._clients.values()]
        for client in clients:
            client.abort()
    
    def close_all(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for _, client in clients:
            client.disconnect()
        if clients:
            logger.info(f"Closed {len(clients)} directory connections")
