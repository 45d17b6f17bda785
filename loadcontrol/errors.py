class LoadControlError(RuntimeError):
    pass


class PackageNotFound(LoadControlError):
    def __init__(self, package_name: str) -> None:
        super().__init__(f"package '{package_name}' is not provisioned")
        self.package_name = package_name


class AlreadyRunning(LoadControlError):
    def __init__(self, package_name: str) -> None:
        super().__init__(f"package '{package_name}' is already running")
        self.package_name = package_name


class TransactionFailure(LoadControlError):
    pass


class PartitionAborted(LoadControlError):
    pass


class QuarantineEntryNotFound(LoadControlError):
    def __init__(self, entry_id: int) -> None:
        super().__init__(f"quarantine entry {entry_id} does not exist")
        self.entry_id = entry_id


class ResolutionConflict(LoadControlError):
    def __init__(self, entry_id: int, resolved_by: str | None) -> None:
        super().__init__(f"quarantine entry {entry_id} was already resolved by {resolved_by}")
        self.entry_id = entry_id
        self.resolved_by = resolved_by
