"""Storage error taxonomy shared by the backend and the pipelines."""

from __future__ import annotations

FS_ERROR_NOFS = 3
FS_ERROR_UNCLEAN = 4
INIT_ERROR_MISSING_TOOL = 1
ENTROPY_ERROR = 2


class StorageError(RuntimeError):
    def __init__(self, message: str, domain: str = "generic", code: int = 0):
        super().__init__(message)
        self.message = message
        self.domain = domain
        self.code = code

    def prefixed(self, prefix: str) -> "StorageError":
        """Copy of this error with ``prefix`` put in front of the message."""

        return self.__class__(prefix + self.message, domain=self.domain, code=self.code)

    def describe(self) -> str:
        return f"{self.message} ({self.domain}, {self.code})"


class NoFilesystemError(StorageError):
    """Nothing to wipe: the device carries no signature."""

    def __init__(self, message: str, domain: str = "fs", code: int = FS_ERROR_NOFS):
        super().__init__(message, domain=domain, code=code)


class BackendInitError(StorageError):
    def __init__(self, message: str, domain: str = "init", code: int = INIT_ERROR_MISSING_TOOL):
        super().__init__(message, domain=domain, code=code)


class FilesystemCheckError(StorageError):
    def __init__(self, message: str, domain: str = "fs", code: int = FS_ERROR_UNCLEAN):
        super().__init__(message, domain=domain, code=code)
