"""Typed failures raised by the vault core."""

from typing import Optional


class FamilyVaultError(Exception):
    """Base exception for vault, key and storage operations."""

    message = "Vault operation failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class VaultNotFound(FamilyVaultError):
    message = "Vault could not be located."


class ItemNotFound(FamilyVaultError):
    message = "Requested vault item does not exist."


class UserNotAuthorized(FamilyVaultError):
    message = "You are not authorized for this action."


class EncryptionFailed(FamilyVaultError):
    message = "Unable to encrypt data."


class DecryptionFailed(FamilyVaultError):
    message = "Unable to decrypt data."


class StorageFailure(FamilyVaultError):
    """Blob or record store error; `detail` carries the underlying cause."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Storage error: {detail}.")


class RecoverableStorageError(StorageFailure):
    """A storage error the caller may retry after `retry_after` seconds."""

    def __init__(self, detail: str, retry_after: Optional[float] = None):
        super().__init__(detail)
        self.retry_after = retry_after


class SecureEnclaveUnavailable(FamilyVaultError):
    message = "Secure key storage is not available."


class KeyDerivationFailed(FamilyVaultError):
    message = "Could not derive necessary encryption keys."


class InvalidPolicy(FamilyVaultError):
    message = "Access policy invalid or incomplete."
