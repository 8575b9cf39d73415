class SyncError(Exception):
    """Base class for failures a sync run reports in its run log."""


class ConfigurationError(SyncError):
    pass


class DatasetLocationRequired(ConfigurationError):
    def __init__(self, dataset_id: str) -> None:
        super().__init__(
            f"dataset '{dataset_id}' does not exist and the job has no dataset location to create it in"
        )
        self.dataset_id = dataset_id


class SourceError(SyncError):
    pass


class SourceUnreachable(SourceError):
    pass


class SourceConnectionError(SourceError):
    pass


class RangeInvalid(SourceError):
    pass


class UnsupportedFormat(SourceError):
    pass


class DestinationError(SyncError):
    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        message = super().__str__()
        if self.detail:
            return f"{message}: {self.detail}"
        return message


class StagingWriteError(DestinationError):
    pass


class LoadError(DestinationError):
    pass


class MergeError(DestinationError):
    pass
