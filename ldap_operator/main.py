"""
Entry point for the LDAP Operator.

This module wires the store, registry, reference resolver, directory client
pool and reconcilers together, loads manifests into the store and runs the
manager either continuously or until the declared objects have settled.
"""

import sys
import signal
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_operator.config import load_config, ConfigurationError
from ldap_operator.directory_reconciler import DirectoryRootReconciler
from ldap_operator.ldap_client import DirectoryClientPool, DirectoryConnectionError
from ldap_operator.logging_setup import setup_logging
from ldap_operator.manager import Manager
from ldap_operator.mapper import MAPPERS
from ldap_operator.notifications import EventRecorder, send_email
from ldap_operator.reconciler import ObjectReconciler
from ldap_operator.references import ReferenceResolver, ReferenceResolutionError
from ldap_operator.registry import KindRegistry, default_registry
from ldap_operator.resources import DirectoryRoot, OrganizationalUnit, Group, User, PHASE_READY
from ldap_operator.store import (
    ObjectStore,
    InMemoryObjectStore,
    ManifestError,
    load_manifests,
    apply_manifests,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_UNEXPECTED = 4


def build_reconcilers(config: Dict[str, Any], store: ObjectStore, resolver: ReferenceResolver,
                      client_pool: DirectoryClientPool, recorder: EventRecorder) -> Dict[str, Any]:
    """Create one reconciler per managed kind, keyed by kind name."""
    retry_interval = config['reconcile']['retry_interval_seconds']
    max_depth = config['reconcile']['max_parent_depth']
    
    reconcilers = {
        DirectoryRoot.KIND: DirectoryRootReconciler(
            store, resolver, client_pool, recorder, retry_interval),
    }
    for kind_class in (OrganizationalUnit, Group, User):
        reconcilers[kind_class.KIND] = ObjectReconciler(
            kind_class, store, resolver, client_pool, recorder,
            MAPPERS[kind_class.KIND], retry_interval, max_depth)
    return reconcilers


class Operator:
    """
    Runs reconciliation for every object in a store.
    
    Coordinates configuration, manifest loading and the manager, and maps the
    outcome to a process exit code.
    """
    
    def __init__(self, config_path: Optional[str] = None, manifest_paths: Optional[List[str]] = None,
                 store: Optional[ObjectStore] = None, registry: Optional[KindRegistry] = None,
                 client_factory=None):
        """
        Initialize the operator.
        
        Args:
            config_path: Path to configuration file
            manifest_paths: Manifest files or directories, in addition to those in the configuration
            store: Object store to reconcile; an in-memory store by default
            registry: Kind registry; the default registry when omitted
            client_factory: Builds a DirectoryClient from connection settings
        """
        self.config_path = config_path
        self.manifest_paths = list(manifest_paths or [])
        self.store = store if store is not None else InMemoryObjectStore()
        self.registry = registry or default_registry()
        self.client_factory = client_factory
        self.config = None
        self.client_pool = None
        self.manager = None
    
    def _load_configuration(self):
        # Manifests given on the command line make the config file optional
        self.config = load_config(self.config_path, allow_missing=bool(self.manifest_paths))
    
    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))
    
    def _load_manifests(self) -> int:
        paths = list(self.config['manifests']['paths']) + self.manifest_paths
        if not paths:
            logger.info("No manifest paths configured")
            return 0
        return apply_manifests(self.store, load_manifests(paths, self.registry))
    
    def _build(self, once: bool) -> Manager:
        resolver = ReferenceResolver(self.store, self.registry)
        self.client_pool = DirectoryClientPool(self.store, self.config['ldap'], self.client_factory)
        recorder = EventRecorder(self.store, self.config['notifications'])
        reconcilers = build_reconcilers(self.config, self.store, resolver, self.client_pool, recorder)
        
        manager_config = self.config['manager']
        self.manager = Manager(
            self.store,
            reconcilers,
            workers=manager_config['workers'],
            resync_interval=manager_config['resync_interval_seconds'],
            once=once,
            namespace=manager_config['namespace'],
        )
        return self.manager
    
    def run(self, once: bool = False, timeout: Optional[float] = None) -> int:
        """
        Run the operator.
        
        Args:
            once: Stop once every object has settled instead of running until signalled
            timeout: In once mode, give up after this many seconds
        
        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self._setup_logging()
            
            logger.info("Starting LDAP Operator")
            self._load_manifests()
            manager = self._build(once)
            
            if once:
                settled = manager.run_until_settled(timeout)
                return self._summarize(settled)
            
            self._install_signal_handlers()
            manager.run()
            logger.info("LDAP Operator stopped")
            return EXIT_OK
        
        except (ConfigurationError, ManifestError) as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()
    
    def _install_signal_handlers(self):
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()
        
        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)
    
    def stop(self):
        """Stop dispatching and abort directory calls in flight; they are retried on the next run."""
        if self.manager is not None:
            self.manager.stop()
        if self.client_pool is not None:
            self.client_pool.abort_all()
    
    def _summarize(self, settled: bool) -> int:
        not_ready = []
        for kind in self.manager.reconcilers:
            for obj in self.store.list(kind=kind, namespace=self.manager.namespace):
                phase = obj.get_phase()
                logger.info(f"  {obj.key}: {phase or 'Unknown'} {obj.status.message}".rstrip())
                if phase != PHASE_READY:
                    not_ready.append(obj.key)
        
        if not settled:
            logger.warning("Reconciliation did not settle before the timeout")
        if not_ready:
            logger.warning(f"Reconciliation finished with {len(not_ready)} objects not ready")
        if not_ready or not settled:
            return EXIT_FAILURES
        
        logger.info("All objects are ready")
        return EXIT_OK
    
    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, manifests, directory reachability and e-mail settings.
        
        Directories whose admin credentials have not been generated yet are
        skipped rather than reported as failures.
        
        Returns:
            {'status': 'healthy' | 'unhealthy', 'timestamp': ..., 'checks': {...}}
        """
        checks: Dict[str, Any] = {}
        report = {'status': 'healthy', 'timestamp': datetime.now().isoformat(), 'checks': checks}
        
        def verdict(status: str, message: str) -> Dict[str, str]:
            if status == 'fail':
                report['status'] = 'unhealthy'
            return {'status': status, 'message': message}
        
        try:
            self._load_configuration()
        except ConfigurationError as e:
            checks['configuration'] = verdict('fail', f'Invalid configuration: {e}')
            return report
        checks['configuration'] = verdict('pass', f'Loaded from {self.config_path or "defaults"}')
        
        try:
            checks['manifests'] = verdict('pass', f'{self._load_manifests()} manifests loaded')
        except ManifestError as e:
            checks['manifests'] = verdict('fail', f'Invalid manifest: {e}')
        
        checks['directories'] = {}
        pool = DirectoryClientPool(self.store, dict(self.config['ldap'], max_retries=1), self.client_factory)
        try:
            for directory in self.store.list(kind=DirectoryRoot.KIND):
                name = f"{directory.metadata.namespace}/{directory.metadata.name}"
                try:
                    pool.get_client(directory).ping()
                except ReferenceResolutionError as e:
                    checks['directories'][name] = verdict('skip', f'No credentials yet: {e}')
                except DirectoryConnectionError as e:
                    checks['directories'][name] = verdict('fail', f'Unreachable: {e}')
                else:
                    checks['directories'][name] = verdict('pass', 'Reachable')
        finally:
            pool.close_all()
        
        notifications = self.config['notifications']
        if not notifications.get('enable_email', False):
            checks['notifications'] = verdict('skip', 'E-mail notifications are disabled')
        else:
            missing = [f for f in ('smtp_server', 'email_from', 'email_to') if not notifications.get(f)]
            checks['notifications'] = (verdict('fail', f"Missing notifications settings: {', '.join(missing)}")
                                       if missing else verdict('pass', 'SMTP settings complete'))
        
        return report
    
    def _cleanup(self):
        if self.client_pool is not None:
            self.client_pool.close_all()


def send_test_email(config: Dict[str, Any]) -> bool:
    """Send a test message with the given notification configuration."""
    body = "\n".join([
        "The LDAP Operator can deliver e-mail with the current notifications settings.",
        "",
        f"SMTP server: {config.get('smtp_server', 'not configured')}:{config.get('smtp_port', 'not configured')}",
        f"Sender:      {config.get('email_from', 'not configured')}",
    ])
    return send_email("LDAP Operator: Configuration Test", body, dict(config, enable_email=True))


def _parse_args(argv: Optional[List[str]] = None):
    import argparse
    
    parser = argparse.ArgumentParser(
        prog='ldap-operator',
        description='Reconcile declared LDAP directories, organizational units, groups and users')
    parser.add_argument('--config', '-c', help='Configuration file (default: $CONFIG_PATH or config.yaml)')
    parser.add_argument('--manifests', '-m', action='append', default=[],
                        help='Manifest file or directory to load (repeatable)')
    parser.add_argument('--once', action='store_true',
                        help='Reconcile until all objects settle, then exit')
    parser.add_argument('--timeout', type=float, default=300.0,
                        help='Seconds to wait for objects to settle with --once')
    
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--health-check', action='store_true',
                      help='Print a JSON health report and exit')
    mode.add_argument('--test-email', action='store_true',
                      help='Send a test e-mail with the notifications settings and exit')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Command line entry point; exits with the operator's exit code."""
    import json
    
    args = _parse_args(argv)
    operator = Operator(config_path=args.config, manifest_paths=args.manifests)
    
    if args.health_check:
        report = operator.health_check()
        print(json.dumps(report, indent=2))
        sys.exit(EXIT_OK if report['status'] == 'healthy' else EXIT_FAILURES)
    
    if args.test_email:
        try:
            operator._load_configuration()
        except ConfigurationError as e:
            print(f"Cannot send test e-mail: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        sent = send_test_email(operator.config['notifications'])
        print("Test e-mail sent" if sent else "Test e-mail could not be sent, see the log for details")
        sys.exit(EXIT_OK if sent else EXIT_FAILURES)
    
    sys.exit(operator.run(once=args.once, timeout=args.timeout))


if __name__ == "__main__":
    main()
