"""Error taxonomy for the bundle pipeline.

Every pipeline failure derives from :class:`PipelineError`. The ``client``
flag and ``status_code`` decide how the outer HTTP boundary reports it:

    MalformedInput / InvalidBundle      → 400, not retried
    ServiceNotFound / NoDiagram         → 404
    NoMasterData / SubprocessNotFound   → 404
    everything else                     → 500

Local recovery rules (skip-and-warn for element mismatches, degrade on
missing templates, per-file upload retries) are applied by the services
before an error ever reaches the boundary.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the bundle pipeline."""

    status_code: int = 500
    client: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class MalformedInput(PipelineError):
    """BPMN text is not well-formed XML or lacks a definitions root."""

    status_code = 400
    client = True


class CorruptedDiagram(MalformedInput):
    """Markup-wrapped diagram whose inner BPMN payload could not be recovered."""


class ElementNotFound(PipelineError):
    def __init__(self, element_id: str) -> None:
        self.element_id = element_id
        super().__init__(f"No element with id '{element_id}'")


class ElementIdConflict(PipelineError):
    def __init__(self, element_id: str, new_id: str) -> None:
        self.element_id = element_id
        self.new_id = new_id
        super().__init__(f"Cannot rename '{element_id}' to '{new_id}': id already in use")


class TemplatesUnavailable(PipelineError):
    pass


class InvalidTemplateOutput(PipelineError):
    pass


class ServiceNotFound(PipelineError):
    status_code = 404
    client = True

    def __init__(self, service_key: str) -> None:
        self.service_key = service_key
        super().__init__(f"Manual service '{service_key}' not found")


class NoDiagram(PipelineError):
    status_code = 404
    client = True

    def __init__(self, service_key: str) -> None:
        self.service_key = service_key
        super().__init__(f"No BPMN diagram stored for service '{service_key}'")


class InvalidBundle(PipelineError):
    status_code = 400
    client = True


class AuthenticationError(PipelineError):
    pass


class ApiError(PipelineError):
    """Non-2xx or unreadable response from the transfer target API."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class UploadError(ApiError):
    pass


class ExportError(PipelineError):
    pass


class BlobNotFound(PipelineError):
    status_code = 404
    client = True

    def __init__(self, bucket: str, path: str) -> None:
        self.bucket = bucket
        self.path = path
        super().__init__(f"No blob at '{bucket}/{path}'")


class TextGenerationError(PipelineError):
    pass


class NoMasterData(PipelineError):
    status_code = 404
    client = True

    def __init__(self, service_key: str) -> None:
        self.service_key = service_key
        super().__init__(f"No master-data steps imported for service '{service_key}'")


class SubprocessNotFound(PipelineError):
    status_code = 404
    client = True

    def __init__(self, subprocess_id: str) -> None:
        self.subprocess_id = subprocess_id
        super().__init__(f"Subprocess '{subprocess_id}' not found")
