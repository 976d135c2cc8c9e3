"""
LDAP identity provider.

This module resolves external identity references against an LDAP directory.
References carry the entry DN; group membership is read from the user's or
group's memberOf attribute.
"""

import os
import ssl
import logging
import tempfile
from typing import Any, Dict, Iterator, List, Optional

from ldap3 import Server, Connection, BASE, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError, LDAPInvalidDnError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn

from identity_sync.identities import ExternalIdentity, ExternalIdentityRef, IdentityKind
from identity_sync.retry import MaxRetriesExceeded, RetryPolicy
from .base import IdentityProvider, ProviderConnectionError, ProviderLookupError

logger = logging.getLogger(__name__)

# LDAP resultCode noSuchObject
NO_SUCH_OBJECT = 32


class LdapIdentityProvider(IdentityProvider):
    """
    Identity provider backed by an LDAP directory.

    Group principal names are the value of the first RDN of the group DN, which
    allows mapping references to principal names without a directory lookup.
    """

    DEFAULT_GROUP_OBJECT_CLASSES = ['group', 'groupOfNames', 'groupOfUniqueNames', 'posixGroup']

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        Initialize LDAP provider with configuration.

        Args:
            name: Provider name written into every reference
            config: LDAP configuration dictionary
        """
        super().__init__(name)
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_base_dn = config.get('group_base_dn') or self.user_base_dn
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_filter = config.get('group_filter', '(objectClass=groupOfNames)')
        self.user_id_attribute = config.get('user_id_attribute', 'uid')
        self.group_name_attribute = config.get('group_name_attribute', 'cn')
        self.member_of_attribute = config.get('member_of_attribute', 'memberOf')
        self.attributes = config.get('attributes', ['cn', 'givenName', 'sn', 'mail'])
        self.group_object_classes = {c.lower() for c in config.get('group_object_classes',
                                                                   self.DEFAULT_GROUP_OBJECT_CLASSES)}
        self.supports_direct_principal_name = config.get('use_dn_for_principal_names', True)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')
        self.keystore_file = config.get('keystore_file')
        self.keystore_password = config.get('keystore_password')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Retries after the first failed attempt
            retry_wait: Seconds to wait between attempts

        Returns:
            True if connection successful

        Raises:
            ProviderConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise ProviderConnectionError(f"Failed to create LDAP server: {e}")

        try:
            RetryPolicy(max_retries, retry_wait).call(
                self._open_and_bind,
                exceptions=(LDAPException,),
                description=f"LDAP bind to {self.server_url}"
            )
        except MaxRetriesExceeded as e:
            raise ProviderConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: "
                                          f"{e.last_exception}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            connection.open()
            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPBindError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")
            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except LDAPException:
            connection.unbind()
            raise
        self.connection = connection

    def _create_tls_config(self) -> Optional[Tls]:
        """Build the ldap3 Tls object for ldaps:// or StartTLS, None for plain LDAP."""
        if not (self.use_ssl or self.start_tls):
            return None

        if not self.verify_ssl:
            logger.warning("Server certificate is not verified (verify_ssl is off)")
        options = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if self.ca_cert_file:
            options['ca_certs_file'] = self.ca_cert_file

        client_pair = None
        if self.keystore_file:
            client_pair = self._extract_pkcs12(self.keystore_file, self.keystore_password)
        elif self.cert_file and self.key_file:
            client_pair = (self.cert_file, self.key_file)
        if client_pair:
            options['local_certificate_file'], options['local_private_key_file'] = client_pair
            logger.debug(f"Presenting client certificate {client_pair[0]}")

        try:
            return Tls(**options)
        except LDAPException as e:
            raise ProviderConnectionError(f"Failed to create TLS configuration: {e}")

    def _extract_pkcs12(self, keystore_file: str, password: Optional[str]):
        """Write the certificate and key of a PKCS12 keystore to temporary PEM files."""
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.serialization import pkcs12

        try:
            with open(keystore_file, 'rb') as f:
                p12_data = f.read()
            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                p12_data, password.encode() if password else None
            )
        except (OSError, ValueError) as e:
            raise ProviderConnectionError(f"Failed to load PKCS12 keystore {keystore_file}: {e}")

        if private_key is None or certificate is None:
            raise ProviderConnectionError(f"PKCS12 keystore {keystore_file} lacks a certificate or key")

        with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as cert_file:
            cert_file.write(certificate.public_bytes(serialization.Encoding.PEM))
        with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as key_file:
            key_file.write(private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            ))
        os.chmod(key_file.name, 0o600)
        logger.info(f"Loaded PKCS12 client certificate: {keystore_file}")
        return cert_file.name, key_file.name

    def close(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def resolve(self, ref: ExternalIdentityRef) -> Optional[ExternalIdentity]:
        if not self.owns(ref):
            return None
        entries = self._search(ref.external_id, '(objectClass=*)', BASE)
        if not entries:
            return None
        return self._to_identity(entries[0]['dn'], entries[0]['attributes'])

    def get_user(self, user_id: str) -> Optional[ExternalIdentity]:
        search_filter = f"(&{self.user_filter}({self.user_id_attribute}={escape_filter_chars(user_id)}))"
        return self._find_one(self.user_base_dn, search_filter)

    def get_group(self, name: str) -> Optional[ExternalIdentity]:
        search_filter = f"(&{self.group_filter}({self.group_name_attribute}={escape_filter_chars(name)}))"
        return self._find_one(self.group_base_dn, search_filter)

    def list_users(self) -> Iterator[ExternalIdentity]:
        """Iterate over all users matching the user filter, page by page."""
        self._require_connection()
        try:
            for entry in self.connection.extend.standard.paged_search(
                search_base=self.user_base_dn,
                search_filter=self.user_filter,
                search_scope=SUBTREE,
                attributes=self._requested_attributes(),
                paged_size=self.page_size,
                generator=True
            ):
                if entry.get('type') != 'searchResEntry':
                    continue
                identity = self._to_identity(entry['dn'], entry['attributes'])
                if identity is not None:
                    yield identity
        except LDAPException as e:
            raise ProviderLookupError(f"Paged user search failed: {e}")

    def direct_principal_name(self, ref: ExternalIdentityRef) -> str:
        if not self.supports_direct_principal_name:
            return super().direct_principal_name(ref)
        try:
            rdns = parse_dn(ref.external_id)
        except LDAPInvalidDnError as e:
            raise ProviderLookupError(f"Invalid group DN {ref.external_id}: {e}")
        if not rdns:
            raise ProviderLookupError(f"Empty group DN in reference {ref}")

        attribute, value = rdns[0][0], rdns[0][1]
        if attribute.lower() == self.group_name_attribute.lower():
            return value

        # the RDN does not carry the principal name, read it from the entry
        logger.debug(f"RDN attribute {attribute} of {ref.external_id} is not {self.group_name_attribute}, "
                     f"fetching the group")
        identity = self.resolve(ref)
        if identity is None or not identity.is_group:
            raise ProviderLookupError(f"Not an external group: {ref}")
        return identity.principal_name

    def _find_one(self, base_dn: str, search_filter: str) -> Optional[ExternalIdentity]:
        entries = self._search(base_dn, search_filter, SUBTREE)
        if not entries:
            return None
        if len(entries) > 1:
            logger.warning(f"Filter {search_filter} matched {len(entries)} entries, using the first")
        return self._to_identity(entries[0]['dn'], entries[0]['attributes'])

    def _search(self, base_dn: str, search_filter: str, scope) -> List[Dict[str, Any]]:
        self._require_connection()
        logger.debug(f"Searching with filter: {search_filter} in base: {base_dn}")
        try:
            success = self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=scope,
                attributes=self._requested_attributes()
            )
        except LDAPException as e:
            raise ProviderLookupError(f"LDAP query failed for {base_dn}: {e}")

        if not success:
            if self.connection.result.get('result') == NO_SUCH_OBJECT:
                return []
            raise ProviderLookupError(f"Search failed for {base_dn}: {self.connection.result}")
        return [entry for entry in self.connection.response or [] if entry.get('type') == 'searchResEntry']

    def _require_connection(self):
        if not self._connected:
            raise ProviderConnectionError("Not connected to LDAP server")

    def _requested_attributes(self) -> List[str]:
        requested = ['objectClass', self.user_id_attribute, self.group_name_attribute, self.member_of_attribute]
        return list(dict.fromkeys(requested + list(self.attributes)))

    def _to_identity(self, dn: str, attributes: Dict[str, Any]) -> Optional[ExternalIdentity]:
        """Convert a search result entry into an identity."""
        object_classes = {str(c).lower() for c in _values(attributes, 'objectClass')}
        if object_classes & self.group_object_classes:
            kind = IdentityKind.GROUP
            id_values = _values(attributes, self.group_name_attribute)
        else:
            kind = IdentityKind.USER
            id_values = _values(attributes, self.user_id_attribute)

        if not id_values:
            logger.warning(f"Entry has no identifier: {dn}")
            return None

        identity_id = str(id_values[0])
        properties = {}
        for name in self.attributes:
            values = _values(attributes, name)
            if values:
                properties[name] = values[0] if len(values) == 1 else list(values)

        return ExternalIdentity(
            id=identity_id,
            principal_name=identity_id,
            external_id=ExternalIdentityRef(dn, self.name),
            kind=kind,
            declared_groups=tuple(ExternalIdentityRef(str(group_dn), self.name)
                                  for group_dn in _values(attributes, self.member_of_attribute)),
            properties=properties,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _values(attributes: Dict[str, Any], name: str) -> List[Any]:
    """Return attribute values as a list regardless of single/multi-valued schema."""
    for key, value in attributes.items():
        if key.lower() == name.lower():
            if value is None:
                return []
            return list(value) if isinstance(value, (list, tuple)) else [value]
    return []
