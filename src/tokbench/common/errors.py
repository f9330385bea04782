class BenchError(Exception):
    """Base class for benchmark failures."""


class ConfigurationError(BenchError):
    """A unit of work cannot run as configured; it is skipped."""


class DatasetNotFound(ConfigurationError):
    pass


class EmptyDataset(ConfigurationError):
    pass


class ServiceBinaryNotFound(ConfigurationError):
    pass


class MalformedEntry(BenchError):
    """A dataset entry has no usable prompt field."""

    def __init__(self, index: int, reason: str):
        super().__init__(f"entry {index}: {reason}")
        self.index = index
        self.reason = reason


class StartupFailed(BenchError):
    """The service never became ready inside the probing window."""


class RetryExhausted(BenchError):
    def __init__(self, dataset: str, attempts: int, reason: str = ""):
        msg = f"dataset {dataset} still failing after {attempts} attempts"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.dataset = dataset
        self.attempts = attempts
