"""
core/errors.py -- Exception types raised across the kcfg-vex engine.

Recoverable anomalies inside graph evaluation (unresolved references, select
cycles) are NOT exceptions -- they become evidence-trail notes. Parse problems
in individual Kconfig entries become ParseDiagnostic records. Only caller
errors and collaborator failures are raised.
"""

from typing import Optional


class KcfgVexError(Exception):
    """Base class for every error raised by this package."""


class KconfigReadError(KcfgVexError):
    """The root Kconfig file could not be read. The only fatal parse error."""


class ExprSyntaxError(KcfgVexError, ValueError):
    """A Kconfig expression could not be parsed."""


class InvalidQueryError(KcfgVexError, ValueError):
    """The caller asked for an evaluation that cannot be answered (e.g. no targets)."""


class FetchError(KcfgVexError):
    """A CVE record could not be retrieved.

    Carries the CVE id so a batch can still emit an entry for it.
    """

    def __init__(self, cve_id: str, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{cve_id}: {reason}")
        self.cve_id = cve_id
        self.reason = reason
        self.status_code = status_code


class CacheError(KcfgVexError):
    """The CVE cache could not be read or written."""


class SbomFormatError(KcfgVexError, ValueError):
    """The supplied SBOM is not CycloneDX JSON."""


class YoctoFormatError(KcfgVexError, ValueError):
    """The supplied Yocto CVE summary is not in the expected shape."""


class ResolutionError(KcfgVexError):
    """A symbol's dependencies could not be resolved within the interpreter's stack."""
