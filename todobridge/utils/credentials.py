"""Secure credential storage using system keyring."""

import logging

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

# Keyring service name for TodoBridge
SERVICE_NAME = "TodoBridge"


class CredentialStore:
    """Manages secure storage of the Microsoft app client secret using system keyring."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """
        Initialize credential store.

        Args:
            service_name: Name of the service in keyring (default: "TodoBridge")
        """
        self.service_name = service_name

    @staticmethod
    def _key(client_id: str) -> str:
        return f"microsoft:client_secret:{client_id}"

    def set_client_secret(self, client_id: str, secret: str) -> None:
        """
        Store the OAuth client secret in system keyring.

        Args:
            client_id: Application (client) id registered with Microsoft
            secret: Client secret to store securely

        Raises:
            keyring.errors.PasswordSetError: If the secret cannot be stored
        """
        try:
            keyring.set_password(self.service_name, self._key(client_id), secret)
            logger.info(f"Stored client secret for Microsoft app: {client_id}")
        except Exception as e:
            logger.error(f"Failed to store client secret: {e}")
            raise

    def get_client_secret(self, client_id: str) -> str | None:
        """
        Retrieve the OAuth client secret from system keyring.

        Returns:
            Secret if found, None otherwise
        """
        try:
            secret = keyring.get_password(self.service_name, self._key(client_id))
            if secret:
                logger.debug(f"Retrieved client secret for Microsoft app: {client_id}")
            return secret
        except Exception as e:
            logger.debug(f"Failed to retrieve client secret: {e}")
            return None

    def delete_client_secret(self, client_id: str) -> bool:
        """
        Delete the OAuth client secret from system keyring.

        Returns:
            True if deleted, False if not found or error
        """
        try:
            keyring.delete_password(self.service_name, self._key(client_id))
            logger.info(f"Deleted client secret for Microsoft app: {client_id}")
            return True
        except keyring.errors.PasswordDeleteError:
            logger.warning(f"No client secret found to delete for Microsoft app: {client_id}")
            return False
        except Exception as e:
            logger.error(f"Failed to delete client secret: {e}")
            return False

    def has_client_secret(self, client_id: str) -> bool:
        return self.get_client_secret(client_id) is not None
