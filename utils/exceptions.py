class ConfigLoaderError(Exception):
    """
    Custom exception for errors encountered during configuration loading or validation.
    """
    pass


class StoreUnavailableError(Exception):
    """
    Raised when a dataset store cannot be opened or created.
    """
    def __init__(self, link_id, reason):
        self.link_id = link_id
        self.reason = reason
        message = f"Store for dataset '{link_id}' is unavailable: {reason}"
        super().__init__(message)


class IngestionError(Exception):
    """
    Raised when writing parsed rows or metadata to a dataset store fails.
    Field-level parse problems never raise; only storage failures do.
    """
    def __init__(self, link_id, stage, reason):
        self.link_id = link_id
        self.stage = stage
        self.reason = reason
        message = f"Ingestion of dataset '{link_id}' failed during {stage}: {reason}"
        super().__init__(message)


class MappingBuildError(Exception):
    """
    Describes a failed mapping index build. Carried inside a MappingBuildResult and
    logged by callers; mapping failures never abort ingestion or search.
    """
    def __init__(self, link_id, reason):
        self.link_id = link_id
        self.reason = reason
        message = f"Mapping build for dataset '{link_id}' failed: {reason}"
        super().__init__(message)
