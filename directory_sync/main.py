"""
Main runner for the Directory Sync application.

This module ties the pieces together: it loads the configuration, reads
every configured domain into a snapshot, reconciles it with the snapshot
of the previous run and stores the result for the next one.
"""

import os
import sys
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from directory_sync.config import ConfigLoader, ConfigurationError, dump_config
from directory_sync.directory import (
    DirectoryReader,
    DirectorySnapshot,
    SnapshotError,
    carry_over_failed_domains,
    reconcile,
)
from directory_sync.ldap_client import DomainClient, LDAPConnectionError
from directory_sync.logging_setup import get_logging_stats, setup_logging

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class DirectorySyncRunner:
    """
    Runs one synchronization pass over all configured domains.

    Domains are read independently: a domain that cannot be reached is
    reported and its previous entries are kept, the others are still read.
    """

    def __init__(self, config_path: Optional[str] = None, snapshot_path: Optional[str] = None,
                 dry_run: bool = False, reader_factory=DirectoryReader):
        """
        Initialize the runner.

        Args:
            config_path: Path to configuration file
            snapshot_path: Overrides snapshot.path from the configuration
            dry_run: Reconcile and report without writing the snapshot
            reader_factory: Builds the DirectoryReader (replaced in tests)
        """
        self.config_path = config_path
        self.snapshot_path = snapshot_path
        self.dry_run = dry_run
        self.reader_factory = reader_factory
        self.loaded = None
        self.changes = None

        self.sync_stats = {
            'domains_read': 0,
            'domains_failed': 0,
            'users': 0,
            'groups': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'domain_errors': {},
        }

    @property
    def config(self):
        return self.loaded.directory_sync if self.loaded else None

    def run(self) -> int:
        """
        Run the complete synchronization pass.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.loaded.logging)

            if not self.config.policy.enabled:
                logger.info("Directory sync is disabled in the configuration, nothing to do")
                return EXIT_SUCCESS

            logger.info(f"Starting directory sync for {len(self.config.domains)} domain(s)")

            current = self._read_directories()
            if self.config.domains and self.sync_stats['domains_failed'] == len(self.config.domains):
                raise LDAPConnectionError(
                    "No domain could be read: "
                    + "; ".join(f"{k}: {v}" for k, v in current.errors.items())
                )

            previous = self._load_previous_snapshot()
            carry_over_failed_domains(previous, current)
            self.changes = reconcile(previous, current)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if self.dry_run:
                logger.info("Dry run: snapshot not written")
            else:
                current.save(self._snapshot_path())

            if self.sync_stats['domains_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['domains_failed']} domain failures")
                return EXIT_PARTIAL_FAILURE
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR

    def _load_configuration(self):
        """Load and validate configuration."""
        self.loaded = ConfigLoader(self.config_path).load()
        logger.debug("Configuration loaded successfully")

    def _snapshot_path(self) -> str:
        return self.snapshot_path or self.loaded.snapshot['path']

    def _read_directories(self) -> DirectorySnapshot:
        reader = self.reader_factory(self.config, self.loaded.error_handling)
        snapshot = reader.read()

        self.sync_stats['domains_failed'] = len(snapshot.errors)
        self.sync_stats['domains_read'] = len(snapshot.domains) - len(snapshot.errors)
        self.sync_stats['domain_errors'] = dict(snapshot.errors)
        self.sync_stats['users'] = len(snapshot.users)
        self.sync_stats['groups'] = len(snapshot.groups)
        return snapshot

    def _load_previous_snapshot(self) -> DirectorySnapshot:
        """The snapshot of the last run, or an empty one on the first run."""
        path = self._snapshot_path()
        if not os.path.exists(path):
            logger.info(f"No previous snapshot at {path}, starting from an empty one")
            return DirectorySnapshot()
        try:
            return DirectorySnapshot.load(path)
        except SnapshotError as e:
            raise SyncError(f"Previous snapshot is unusable: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Domains read: {stats['domains_read']}")
        logger.info(f"Domains failed: {stats['domains_failed']}")
        logger.info(f"Users: {stats['users']}")
        logger.info(f"Groups: {stats['groups']}")
        for name, count in self.changes.summary().items():
            logger.info(f"{name.replace('_', ' ').capitalize()}: {count}")
        for domain, error in stats['domain_errors'].items():
            logger.info(f"--- {domain} failed: {error}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully',
                'warnings': list(self.loaded.report.warnings),
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        health_status['checks']['logging'] = dict(get_logging_stats(), status='pass')

        # a single attempt per domain, the health check must stay quick
        error_handling = dict(self.loaded.error_handling, max_retries=0)
        domain_checks = {}
        for endpoint in self.config.domains:
            try:
                with DomainClient(endpoint, error_handling) as client:
                    client.connect()
                    if not client.test_connection():
                        raise SyncError("root DSE search failed")
                domain_checks[endpoint.key] = {
                    'status': 'pass',
                    'message': f'Connected over {endpoint.transport}'
                }
            except (LDAPConnectionError, SyncError) as e:
                domain_checks[endpoint.key] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'

        health_status['checks']['domains'] = domain_checks
        return health_status


def validate_command(config_path: Optional[str]) -> int:
    """Validate a configuration file and print the outcome."""
    try:
        loaded = ConfigLoader(config_path).load()
    except ConfigurationError as e:
        print(str(e))
        return EXIT_CONFIGURATION_ERROR

    for warning in loaded.report.warnings:
        print(f"Warning: {warning}")
    print(f"Configuration is valid: {len(loaded.directory_sync.domains)} domain(s)")
    return EXIT_SUCCESS


def dump_command(config_path: Optional[str], fmt: str) -> int:
    """Print the normalized configuration in the requested format."""
    try:
        loaded = ConfigLoader(config_path).load()
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR

    print(dump_config(loaded.directory_sync, fmt), end='')
    return EXIT_SUCCESS


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='LDAP Directory Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file (YAML, JSON or PHP)')
    parser.add_argument('--validate', action='store_true',
                        help='Validate the configuration and exit')
    parser.add_argument('--dump', choices=['yaml', 'json'],
                        help='Print the normalized configuration and exit')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--snapshot', help='Path of the snapshot file (overrides snapshot.path)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Read and reconcile without writing the snapshot')

    args = parser.parse_args()

    if args.validate:
        sys.exit(validate_command(args.config))

    if args.dump:
        sys.exit(dump_command(args.config, args.dump))

    runner = DirectorySyncRunner(config_path=args.config, snapshot_path=args.snapshot,
                                 dry_run=args.dry_run)

    if args.health_check:
        health_status = runner.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(runner.run())


if __name__ == "__main__":
    main()
