class WipeError(Exception):
    """Base class for every failure raised by the overwrite engine."""


class NoVolumeSelected(WipeError):
    def __init__(self, message: str = "No volume selected"):
        super().__init__(message)


class ResolveError(WipeError):
    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"{reference}: {reason}")


class StaleReference(ResolveError):
    pass


class TargetMissing(ResolveError):
    pass


class CapacityUnavailable(WipeError):
    def __init__(self, path: str, reason: str = ""):
        self.path = path
        super().__init__(f"Free capacity unavailable for {path}" + (f": {reason}" if reason else ""))


class DirectoryCreateFailed(WipeError):
    def __init__(self, path: str, reason: str = ""):
        self.path = path
        super().__init__(f"Can't create folder {path}" + (f": {reason}" if reason else ""))


class WriteProcessFailed(WipeError):
    def __init__(self, message: str, returncode: int | None = None, log: str = ""):
        self.returncode = returncode
        self.log = log
        super().__init__(message)
