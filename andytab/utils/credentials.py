"""Secure credential storage using system keyring."""

import logging

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

# Keyring service name for AndyTab
SERVICE_NAME = "AndyTab"


class CredentialStore:
    """Manages secure storage of WebDAV credentials using system keyring."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """
        Initialize credential store.

        Args:
            service_name: Name of the service in keyring (default: "AndyTab")
        """
        self.service_name = service_name

    def set_webdav_password(self, username: str, password: str) -> None:
        """
        Store WebDAV password in system keyring.

        Args:
            username: WebDAV username
            password: WebDAV password to store securely

        Raises:
            keyring.errors.PasswordSetError: If password cannot be stored
        """
        try:
            keyring.set_password(self.service_name, f"webdav:{username}", password)
            logger.info(f"Stored WebDAV password for user: {username}")
        except Exception as e:
            logger.error(f"Failed to store WebDAV password: {e}")
            raise

    def get_webdav_password(self, username: str) -> str | None:
        """
        Retrieve WebDAV password from system keyring.

        Returns:
            Password if found, None otherwise
        """
        try:
            password = keyring.get_password(self.service_name, f"webdav:{username}")
            if password:
                logger.debug(f"Retrieved WebDAV password for user: {username}")
            else:
                logger.debug(f"No WebDAV password found for user: {username}")
            return password
        except Exception as e:
            logger.error(f"Failed to retrieve WebDAV password: {e}")
            return None

    def delete_webdav_password(self, username: str) -> bool:
        """
        Delete WebDAV password from system keyring.

        Returns:
            True if deleted, False if not found or error
        """
        try:
            keyring.delete_password(self.service_name, f"webdav:{username}")
            logger.info(f"Deleted WebDAV password for user: {username}")
            return True
        except keyring.errors.PasswordDeleteError:
            logger.warning(f"No WebDAV password found to delete for user: {username}")
            return False
        except Exception as e:
            logger.error(f"Failed to delete WebDAV password: {e}")
            return False
