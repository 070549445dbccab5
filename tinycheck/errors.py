class TinycheckError(Exception):
    pass


class DimensionError(TinycheckError):
    pass


class DtypeError(TinycheckError):
    pass


class DeviceError(TinycheckError):
    pass


class GradientError(TinycheckError):
    pass


class GradientCheckError(TinycheckError):
    """Raised when analytic and numerical gradients disagree.

    ``mismatches`` holds every element that was out of tolerance, across all
    checked inputs, not just the first one found.
    """

    def __init__(self, message, mismatches=()):
        super().__init__(message)
        self.mismatches = list(mismatches)
