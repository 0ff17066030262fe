"""Error taxonomy for talm.

Every failure raised by the core carries a stable kind, a machine-readable
code and a process exit code. The CLI maps uncaught ``TalmError`` instances
to their ``exit_code``; everything else exits with 1.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error kinds."""
    VALIDATION = 'Validation'
    VALUE_TYPE = 'ValueType'
    VALUE_SHAPE = 'ValueShape'
    SECRETS_MISSING = 'SecretsMissing'
    SECRETS_INVALID = 'SecretsInvalid'
    OFFLINE_FACT_REQUIRED = 'OfflineFactRequired'
    DISCOVERY_UNAVAILABLE = 'DiscoveryUnavailable'
    TIMEOUT = 'Timeout'
    CANCELLED = 'Cancelled'
    TEMPLATE_PARSE = 'TemplateParse'
    TEMPLATE_EVAL = 'TemplateEval'
    TEMPLATE_TOO_COMPLEX = 'TemplateTooComplex'
    OUTPUT_MALFORMED = 'OutputMalformed'
    SCHEMA_MISMATCH = 'SchemaMismatch'
    MODELINE_INVALID = 'ModelineInvalid'
    INVALID_TRANSITION = 'InvalidTransition'
    FILESYSTEM_EXISTS = 'FilesystemExists'
    FILESYSTEM = 'Filesystem'
    INTERNAL = 'Internal'


EXIT_CODES = {
    ErrorKind.VALIDATION: 2,
    ErrorKind.VALUE_TYPE: 2,
    ErrorKind.VALUE_SHAPE: 2,
    ErrorKind.SECRETS_MISSING: 2,
    ErrorKind.SECRETS_INVALID: 2,
    ErrorKind.MODELINE_INVALID: 2,
    ErrorKind.INVALID_TRANSITION: 2,
    ErrorKind.FILESYSTEM_EXISTS: 3,
    ErrorKind.FILESYSTEM: 3,
    ErrorKind.OFFLINE_FACT_REQUIRED: 4,
    ErrorKind.TEMPLATE_PARSE: 4,
    ErrorKind.TEMPLATE_EVAL: 4,
    ErrorKind.TEMPLATE_TOO_COMPLEX: 4,
    ErrorKind.OUTPUT_MALFORMED: 4,
    ErrorKind.SCHEMA_MISMATCH: 4,
    ErrorKind.DISCOVERY_UNAVAILABLE: 5,
    ErrorKind.TIMEOUT: 5,
    ErrorKind.CANCELLED: 5,
    ErrorKind.INTERNAL: 1,
}


class TalmError(Exception):
    """Base error with kind, code, details and an optional cause."""

    kind = ErrorKind.INTERNAL
    default_code = 'INTERNAL'

    def __init__(
        self,
        message: str,
        details: str = '',
        code: Optional[str] = None,
        path: Optional[str] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.code = code or self.default_code
        self.path = path
        self.original = original

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.kind, 1)

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.details:
            text += f": {self.details}"
        if self.path:
            text += f" (at {self.path})"
        if self.original is not None:
            text += f"; caused by: {self.original}"
        return text


class ValidationError(TalmError):
    kind = ErrorKind.VALIDATION
    default_code = 'VALIDATION'


class VersionContractError(ValidationError):
    default_code = 'VERSION_CONTRACT'


class ValueTypeError(TalmError):
    kind = ErrorKind.VALUE_TYPE
    default_code = 'VALUE_TYPE'


class ValueShapeError(TalmError):
    kind = ErrorKind.VALUE_SHAPE
    default_code = 'VALUE_SHAPE'


class SecretsMissing(TalmError):
    kind = ErrorKind.SECRETS_MISSING
    default_code = 'SECRETS_MISSING'


class SecretsInvalid(TalmError):
    kind = ErrorKind.SECRETS_INVALID
    default_code = 'SECRETS_INVALID'


class SecretPathMissing(SecretsInvalid):
    """A template asked for a secrets field that the bundle does not have."""
    default_code = 'SECRET_PATH_MISSING'


class OfflineFactRequired(TalmError):
    kind = ErrorKind.OFFLINE_FACT_REQUIRED
    default_code = 'OFFLINE_FACT_REQUIRED'


class DiscoveryUnavailable(TalmError):
    kind = ErrorKind.DISCOVERY_UNAVAILABLE
    default_code = 'DISCOVERY_UNAVAILABLE'


class OperationTimeout(TalmError):
    kind = ErrorKind.TIMEOUT
    default_code = 'TIMEOUT'


class Cancelled(TalmError):
    kind = ErrorKind.CANCELLED
    default_code = 'CANCELLED'


class TemplateParseError(TalmError):
    kind = ErrorKind.TEMPLATE_PARSE
    default_code = 'TEMPLATE_PARSE'


class TemplateEvalError(TalmError):
    kind = ErrorKind.TEMPLATE_EVAL
    default_code = 'TEMPLATE_EVAL'


class TemplateTooComplex(TalmError):
    kind = ErrorKind.TEMPLATE_TOO_COMPLEX
    default_code = 'TEMPLATE_TOO_COMPLEX'


class OutputMalformed(TalmError):
    kind = ErrorKind.OUTPUT_MALFORMED
    default_code = 'OUTPUT_MALFORMED'


class SchemaMismatch(TalmError):
    kind = ErrorKind.SCHEMA_MISMATCH
    default_code = 'SCHEMA_MISMATCH'


class ModelineInvalid(TalmError):
    kind = ErrorKind.MODELINE_INVALID
    default_code = 'MODELINE_INVALID'


class InvalidTransition(TalmError):
    kind = ErrorKind.INVALID_TRANSITION
    default_code = 'INVALID_TRANSITION'


class FilesystemExists(TalmError):
    kind = ErrorKind.FILESYSTEM_EXISTS
    default_code = 'FILESYSTEM_EXISTS'

    def __init__(self, path: str, message: Optional[str] = None, **kwargs):
        super().__init__(
            message or f"file {path!r} already exists, use --force to overwrite",
            path=path,
            **kwargs,
        )


class FilesystemError(TalmError):
    kind = ErrorKind.FILESYSTEM
    default_code = 'FILESYSTEM'


class InternalError(TalmError):
    kind = ErrorKind.INTERNAL
    default_code = 'INTERNAL'
