"""Exceptions raised by the lap-time utilities."""


class LapTimeError(ValueError):
    """Base class for lap-time utility errors."""


class FormatError(LapTimeError):
    """A duration string or field set could not be parsed."""


class InvalidInputError(LapTimeError):
    """A caller passed input that violates a precondition."""


__all__ = ["LapTimeError", "FormatError", "InvalidInputError"]
