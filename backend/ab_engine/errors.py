"""Error taxonomy for the experiment engine.

Validation and not-found errors are raised before any write happens, so a
rejected call never leaves partial state behind. Small samples are not an
error: they surface as a non-significant analysis.
"""


class ABTestError(Exception):
    """Base class for experiment engine errors"""


class ExperimentValidationError(ABTestError):
    """Bad configuration or an invalid state transition"""


class ExperimentNotFoundError(ABTestError):
    """Missing experiment, variant or result"""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")
