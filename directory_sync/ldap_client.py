"""
LDAP client for one configured directory domain.

A DomainClient turns a DomainEndpoint into an ldap3 server pool and
connection (LDAPS, STARTTLS or plaintext), binds with the configured bind
format and runs paged searches for users and groups under the domain's
user_path and group_path.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ldap3 import (
    ALL,
    AUTO_BIND_NONE,
    FIRST,
    RANDOM,
    SUBTREE,
    Connection,
    Server,
    ServerPool,
)
from ldap3.core.exceptions import LDAPBindError, LDAPException

from directory_sync.ldap_options import OptionError, build_tls, connection_settings
from directory_sync.logging_setup import security_logger
from directory_sync.models import DomainEndpoint
from directory_sync.retry import (
    MaxRetriesExceeded,
    create_retry_callback,
    retry_call,
    retry_settings,
)

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# Result codes that still carry usable entries
RESULT_SUCCESS = 0
RESULT_SIZE_LIMIT_EXCEEDED = 4

POOL_STRATEGIES = {
    'order': FIRST,
    'random': RANDOM,
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class DomainClient:
    """
    Connection to the servers of one directory domain.

    Servers are tried in the order listed under `hosts` when
    server_selection is 'order', or in random order for 'random'.
    """

    def __init__(self, endpoint: DomainEndpoint, error_handling: Optional[Dict[str, Any]] = None,
                 page_size: int = 1000):
        """
        Initialize the client.

        Args:
            endpoint: Domain to connect to
            error_handling: Retry settings (max_retries, retry_wait_seconds)
            page_size: Entries requested per page of a search

        Raises:
            LDAPConnectionError: If the endpoint options cannot be used
        """
        self.endpoint = endpoint
        self.error_handling = error_handling or {}
        self.page_size = page_size

        try:
            self.settings = connection_settings(endpoint)
        except OptionError as e:
            raise LDAPConnectionError(f"Invalid options for domain {endpoint.key}: {e}")

        self.server_pool = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def _create_server_pool(self) -> ServerPool:
        try:
            tls = build_tls(self.endpoint, self.settings)
        except OptionError as e:
            raise LDAPConnectionError(str(e))

        servers = [
            Server(
                host,
                port=self.endpoint.port,
                use_ssl=self.endpoint.use_ssl,
                tls=tls,
                get_info=ALL,
                connect_timeout=self.settings.connect_timeout,
            )
            for host in self.endpoint.hosts
        ]
        strategy = POOL_STRATEGIES.get(self.endpoint.server_selection, FIRST)
        logger.debug(f"Created server pool for domain {self.endpoint.key}: "
                     f"{list(self.endpoint.hosts)} ({self.endpoint.transport}, "
                     f"selection={self.endpoint.server_selection})")
        # one pass over the pool per attempt; retries are handled by retry_call
        return ServerPool(servers, strategy, active=1, exhaust=False)

    def connect(self) -> bool:
        """
        Establish the connection with retry logic.

        With lazy_bind the socket is opened and the bind performed on the
        first search instead.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        if not self.endpoint.hosts:
            raise LDAPConnectionError(f"No hosts configured for domain {self.endpoint.key}")

        self.server_pool = self._create_server_pool()

        try:
            retry_call(
                self._open_and_bind,
                exceptions=(LDAPException, LDAPConnectionError),
                on_retry=create_retry_callback(f"Connection to domain {self.endpoint.key}"),
                **retry_settings(self.error_handling)
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to domain {self.endpoint.key} after {e.attempts} attempts: "
                f"{e.last_exception}"
            )

        self._connected = True
        if self.endpoint.lazy_bind:
            logger.info(f"Prepared lazy connection to domain {self.endpoint.key}")
        else:
            logger.info(f"Successfully connected and bound to domain {self.endpoint.key}")
        return True

    def _open_and_bind(self):
        self.connection = Connection(
            self.server_pool,
            user=self.endpoint.bind_user(),
            password=self.endpoint.password,
            auto_bind=AUTO_BIND_NONE,
            client_strategy=self.settings.client_strategy,
            auto_referrals=self.settings.auto_referrals,
            version=self.settings.version,
            receive_timeout=self.settings.receive_timeout,
            read_only=True,
            lazy=self.endpoint.lazy_bind,
        )

        try:
            # open() returns nothing; socket failures raise LDAPSocketOpenError
            self.connection.open()

            if self.endpoint.use_tls and not self.endpoint.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                security_logger.log_bind_attempt(self.endpoint.key, self.endpoint.bind_user(), False)
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
            if not self.endpoint.lazy_bind:
                security_logger.log_bind_attempt(self.endpoint.key, self.endpoint.bind_user(), True)
        except (LDAPException, LDAPConnectionError):
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection is None:
            return
        try:
            self.connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error while discarding connection: {e}")
        self.connection = None

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug(f"Connection to domain {self.endpoint.key} closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, search_base: str, search_filter: str, attributes: Iterable[str]) -> List[Dict[str, Any]]:
        """
        Run a paged subtree search.

        Returns:
            List of {'dn': str, 'attributes': mapping} entries

        Raises:
            LDAPQueryError: If not connected or the server reports an error
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        attributes = sorted(set(attributes))
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        page_count = 0
        try:
            while True:
                self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    size_limit=self.settings.size_limit,
                    time_limit=self.settings.time_limit,
                    paged_size=self.page_size,
                    paged_cookie=cookie,
                )
                result = self.connection.result or {}
                code = result.get('result', RESULT_SUCCESS)
                if code == RESULT_SIZE_LIMIT_EXCEEDED:
                    logger.warning(f"Size limit reached searching {search_base}, results are truncated")
                elif code != RESULT_SUCCESS:
                    raise LDAPQueryError(
                        f"Search in {search_base} failed: {result.get('description')} {result.get('message', '')}".strip()
                    )

                page_count += 1
                page = [
                    {'dn': item['dn'], 'attributes': item.get('attributes', {})}
                    for item in (self.connection.response or [])
                    if item.get('type') == 'searchResEntry'
                ]
                entries.extend(page)
                logger.debug(f"Page {page_count}: Retrieved {len(page)} entries")

                cookie = self._next_cookie(result)
                if not cookie or code == RESULT_SIZE_LIMIT_EXCEEDED:
                    break
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

        logger.info(f"Retrieved {len(entries)} entries from {search_base} across {page_count} pages")
        return entries

    @staticmethod
    def _next_cookie(result: Dict[str, Any]) -> Optional[bytes]:
        controls = result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID)
        if not control:
            return None
        return control.get('value', {}).get('cookie') or None

    def search_users(self, search_filter: str, attributes: Iterable[str]) -> List[Dict[str, Any]]:
        """Search user entries under user_path."""
        return self.search(self.endpoint.user_base, search_filter, attributes)

    def search_groups(self, search_filter: str, attributes: Iterable[str]) -> List[Dict[str, Any]]:
        """Search group entries under group_path."""
        return self.search(self.endpoint.group_base, search_filter, attributes)

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return bool(self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope='BASE',
                attributes=['namingContexts'],
                size_limit=1
            ))
        except (LDAPException, LDAPConnectionError, LDAPQueryError) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_server_info(self) -> Dict[str, Any]:
        """
        Get information about the server currently in use.

        Returns:
            Dictionary with server information
        """
        server = getattr(self.connection, 'server', None)
        info = getattr(server, 'info', None)
        if not info:
            return {}

        return {
            'host': getattr(server, 'host', None),
            'naming_contexts': getattr(info, 'naming_contexts', []),
            'supported_controls': getattr(info, 'supported_controls', []),
            'vendor_name': getattr(info, 'vendor_name', 'Unknown'),
            'vendor_version': getattr(info, 'vendor_version', 'Unknown')
        }

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'domain': self.endpoint.key,
            'connected': self._connected,
            'hosts': list(self.endpoint.hosts),
            'port': self.endpoint.port,
            'transport': self.endpoint.transport,
            'lazy_bind': self.endpoint.lazy_bind,
            'bind_user': self.endpoint.bind_user(),
            'base_dn': self.endpoint.base_dn,
        }

        if self.connection:
            stats.update({
                'server_host': getattr(self.connection.server, 'host', None),
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
