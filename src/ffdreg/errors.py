"""Error kinds raised by FFDReg.

Every error carries optional diagnostic context that the registration
orchestrator fills in when a level fails:

- ``stage``: pipeline stage name ('read', 'prepare', 'optimize', 'commit',
  'finalize', 'write')
- ``level``: zero-based pyramid level index
- ``last_transform``: copy of the last fully committed transform, or None if
  no level completed
"""


class RegistrationError(Exception):
    """Base class of all FFDReg errors."""

    def __init__(self, message, stage=None, level=None, last_transform=None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.level = level
        self.last_transform = last_transform

    def __str__(self):
        context = []
        if self.stage is not None:
            context.append(f"stage={self.stage}")
        if self.level is not None:
            context.append(f"level={self.level}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return str(self.message)


class VolumeDecodeError(RegistrationError):
    """A volume file could not be read or decoded."""


class EncodeError(RegistrationError):
    """A volume could not be encoded or written."""


class GeometryMismatchError(RegistrationError, ValueError):
    """Volumes have invalid or incompatible geometry (e.g. not 3-D)."""


class DegenerateOverlapError(RegistrationError):
    """Too few metric samples map inside the moving volume."""


class OptimizerStallError(RegistrationError):
    """The line search failed before any usable progress was made."""


class ConfigurationError(RegistrationError, ValueError):
    """Invalid pyramid schedule, mesh size, parameter vector or option."""
