"""
Main orchestrator for SSO Sync application.

This module wires configuration, logging, the LDAP source directory and the SCIM
target store together and runs one synchronization pass.
"""

import sys
import json
import signal
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from sso_sync.config import load_config, ConfigurationError
from sso_sync.context import SyncContext
from sso_sync.errors import OperationError, SyncCancelled, SyncError
from sso_sync.logging_setup import setup_logging, audit_logger
from sso_sync.notifications import (
    send_failure_notification,
    send_success_summary,
    format_runtime
)
from sso_sync.sources.ldap_directory import LDAPDirectory, LDAPConnectionError
from sso_sync.sync import Synchronizer, DEFAULT_SYNC_METHOD
from sso_sync.targets.scim import SCIMClient

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_SYNC_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_CANCELLED = 5


class SyncOrchestrator:
    """
    Main orchestrator for LDAP to SCIM synchronization.

    Owns the collaborators for one run and translates failures into exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Dotted-key configuration overrides from the command line
        """
        self.config = None
        self.config_path = config_path
        self.overrides = overrides or {}
        self.ldap_directory = None
        self.scim_client = None
        self.context = SyncContext()

        self.sync_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'counters': {},
        }
        self._previous_handlers = {}

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self._install_signal_handlers()
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            method = self.config['sync'].get('method', DEFAULT_SYNC_METHOD)
            logger.info(f"Starting SSO Sync: sync_method={method}")

            self._connect_ldap()
            self.scim_client = SCIMClient(self.config['scim'], self.config.get('error_handling', {}))

            synchronizer = Synchronizer(self.config['sync'], self.ldap_directory, self.scim_client)
            result = synchronizer.run(self.context)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self.sync_stats['counters'] = result.as_dict()

            self._log_sync_summary()
            self._send_success_notification(method)

            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_failure_notification("LDAP Connection Failed", str(e), 'connect',
                                            self.config['ldap']['server_url'])
            return EXIT_LDAP_ERROR
        except SyncCancelled:
            logger.warning("Sync cancelled, changes applied so far are kept")
            return EXIT_CANCELLED
        except OperationError as e:
            logger.error(f"Sync failed: operation={e.operation} key={e.key} error={e.cause}")
            self._send_failure_notification("Sync Failed", str(e.cause), e.operation, e.key)
            return EXIT_SYNC_FAILED
        except SyncError as e:
            logger.error(f"Sync failed: {e}")
            self._send_failure_notification("Sync Failed", str(e))
            return EXIT_SYNC_FAILED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()
            self._restore_signal_handlers()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path, self.overrides)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_ldap(self):
        """Establish LDAP connection."""
        ldap_config = self.config['ldap']
        error_config = self.config.get('error_handling', {})

        self.ldap_directory = LDAPDirectory(ldap_config)

        try:
            self.ldap_directory.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
            audit_logger.log_authentication_attempt('ldap', ldap_config['bind_dn'], success=True)
        except LDAPConnectionError:
            audit_logger.log_authentication_attempt('ldap', ldap_config['bind_dn'], success=False)
            self.ldap_directory = None
            raise

    def _handle_signal(self, signum, frame):
        logger.warning(f"Received signal {signum}, cancelling sync")
        self.context.cancel()

    def _install_signal_handlers(self):
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # Not running in the main thread
                logger.debug(f"Cannot install handler for signal {signum}")

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    def _send_failure_notification(self, title: str, error_message: str,
                                   operation: Optional[str] = None, key: Optional[str] = None):
        """Send email notification for failures."""
        if not self.config:
            return
        try:
            notifications_config = self.config.get('notifications', {})
            send_failure_notification(title, error_message, notifications_config,
                                      operation=operation, key=key)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_success_notification(self, method: str):
        """Send email notification for successful sync."""
        try:
            notifications_config = self.config.get('notifications', {})
            send_success_summary(self.sync_stats['counters'], notifications_config,
                                 sync_method=method,
                                 runtime_seconds=self.sync_stats['runtime_seconds'])
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        for name, value in stats['counters'].items():
            logger.info(f"{name.replace('_', ' ').capitalize()}: {value}")

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
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if not self.config:
            return health_status

        try:
            test_directory = LDAPDirectory(self.config['ldap'])
            test_directory.connect(max_retries=1, retry_wait=1)
            test_directory.disconnect()

            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except Exception as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            with SCIMClient(self.config['scim'], {'max_retries': 0}) as client:
                reachable = client.test_connection()
            health_status['checks']['scim'] = {
                'status': 'pass' if reachable else 'fail',
                'message': 'SCIM endpoint reachable' if reachable else 'SCIM endpoint not reachable'
            }
            if not reachable:
                health_status['status'] = 'unhealthy'
        except Exception as e:
            health_status['checks']['scim'] = {
                'status': 'fail',
                'message': f'SCIM client setup failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.scim_client:
            self.scim_client.close()
            self.scim_client = None
        if self.ldap_directory:
            self.ldap_directory.disconnect()
            self.ldap_directory = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Synchronize LDAP users and groups into a SCIM target')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--sync-method', choices=['groups', 'users_groups'],
                        help='Override sync.method')
    parser.add_argument('--user-match', help='Override sync.user_match (LDAP filter fragment)')
    parser.add_argument('--group-match', help='Override sync.group_match (LDAP filter fragment)')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    overrides = {
        'sync.method': args.sync_method,
        'sync.user_match': args.user_match,
        'sync.group_match': args.group_match,
    }
    orchestrator = SyncOrchestrator(config_path=args.config, overrides=overrides)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

        from sso_sync.notifications import test_notification_config
        notifications_config = dict(orchestrator.config.get('notifications', {}))
        notifications_config['enable_email'] = True
        if test_notification_config(notifications_config):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
