# qsmrecon/exceptions.py
"""Exception hierarchy for the QSM reconstruction pipeline.

Every error records the pipeline stage it came from and, where it applies,
the 1-based echo number and the background-removal backend name, so a failed
run can be diagnosed from the message alone.
"""

import typing


class QSMError(Exception):
    """Base class for all errors raised by qsmrecon."""

    def __init__(
        self,
        message: str,
        stage: typing.Optional[str] = None,
        echo: typing.Optional[int] = None,
        backend: typing.Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.echo = echo
        self.backend = backend

    def __str__(self) -> str:
        context = []
        if self.stage is not None:
            context.append(f"stage={self.stage}")
        if self.echo is not None:
            context.append(f"echo={self.echo}")
        if self.backend is not None:
            context.append(f"backend={self.backend}")
        if not context:
            return self.message
        return f"[{', '.join(context)}] {self.message}"


class ConfigurationError(QSMError, ValueError):
    """Invalid or unrecognised configuration, raised before any volume is processed."""

    def __init__(self, message: str, stage: str = 'configuration', **kwargs):
        super().__init__(message, stage=stage, **kwargs)


class UnwrappingError(QSMError):
    """Failure of a phase unwrapping strategy for one echo; fatal to the run."""

    def __init__(self, message: str, stage: str = 'phase_unwrapping', **kwargs):
        super().__init__(message, stage=stage, **kwargs)


class EmptyMaskError(QSMError, ValueError):
    """A mask-restricted statistic was requested over a mask with no voxels."""


class BackendError(QSMError):
    """Failure inside one background-removal backend or its dipole inversion."""

    def __init__(self, message: str, stage: str = 'background_removal', **kwargs):
        super().__init__(message, stage=stage, **kwargs)
