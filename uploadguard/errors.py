class UploadGuardError(Exception):
    """Base class for errors that escape the inspection pipeline."""

    exit_code = 2


class OperationalError(UploadGuardError):
    """An input could not be read (I/O failure, vanished file, closed stream)."""

    exit_code = 2

    def __init__(self, message: str, identifier: str = "") -> None:
        super().__init__(message)
        self.identifier = identifier


class PolicyConfigError(UploadGuardError):
    """The policy document is unreadable, unparseable or semantically invalid."""

    exit_code = 4
