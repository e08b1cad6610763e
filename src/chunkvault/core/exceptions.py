"""
Exceptions for ChunkVault
Everything raised by the library derives from ChunkVaultError so callers have
a single error catcher
"""


class ChunkVaultError(Exception):
    # general container for errors
    pass


class KeyGenerationError(ChunkVaultError):
    # raised when the secure random source is unavailable
    pass


class KeyDerivationError(ChunkVaultError):
    # raised on an invalid master key or a bad chunk index
    pass


class KeyExportError(ChunkVaultError):
    # raised when exporting a non-extractable key
    pass


class KeyWrapError(ChunkVaultError):
    # raised when a master key cannot be wrapped / unwrapped for a recipient
    pass


class AuthenticationError(ChunkVaultError):
    # raised on a tag mismatch (corrupted / tampered data or wrong key)
    pass


class DecryptionFailedError(AuthenticationError):
    # raised when a chunk fails authentication during reconstruction

    def __init__(self, index: int, message: str | None = None):
        self.index = index
        super().__init__(
            message
            or f"Decryption failed at chunk {index}. "
            "The file might be corrupted or the key is incorrect."
        )


class MalformedInputError(ChunkVaultError):
    # raised when ciphertext / iv / source bytes have the wrong shape
    pass


class MalformedManifestError(ChunkVaultError):
    # raised when the manifest does not match the ciphertext blob
    pass


class OperationCancelledError(ChunkVaultError):
    # raised when the caller cancels a running encrypt / decrypt
    pass


class StorageError(ChunkVaultError):
    # raised if the local blob store fails in some way
    pass


class BlobNotFoundError(StorageError):
    # raised if a blob is not in the store
    pass
