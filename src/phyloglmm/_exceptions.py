"""Exception hierarchy for the phyloglmm package.

Every error raised for a structural problem derives from
:class:`PhyloGLMMError`, so callers can catch the whole family with a
single ``except`` clause.  The concrete classes also inherit from the
built-in exception that best describes them (``ValueError`` for bad
inputs, ``LookupError`` for missing terms) so that code written
against the standard hierarchy keeps working.

None of these errors is ever recovered from internally.  A tree or
random-effects structure that is "almost right" would still produce a
model that fits, but with misaligned variance parameters or the wrong
degrees of freedom, and nothing downstream would notice.
"""

from __future__ import annotations

from typing import Any


class PhyloGLMMError(Exception):
    """Base class for all phyloglmm errors."""


class MalformedTreeError(PhyloGLMMError, ValueError):
    """The edge list does not describe a single rooted tree.

    Raised for missing or multiple roots, children with more than one
    parent, cycles, and inconsistent node numbering.  No partial
    :class:`~phyloglmm.tree.Tree` is ever returned.
    """


class UnknownTermError(PhyloGLMMError, LookupError):
    """The requested random-effects term is not in the structure.

    Attributes:
        term: The name (or id) that failed to resolve.
        available: Names of the terms the structure does contain.
    """

    def __init__(self, term: Any, available: tuple[str, ...] = ()) -> None:
        self.term = term
        self.available = tuple(available)
        msg = f"Unknown random-effects term {term!r}. Available terms: {list(self.available)}"
        super().__init__(msg)


class StructuralMismatchError(PhyloGLMMError, ValueError):
    """Parallel random-effects structures disagree on a dimension.

    Attributes:
        term: Term being processed, or ``None`` for a global check.
        expected: The dimension the structure requires.
        actual: The dimension that was supplied.
    """

    def __init__(
        self,
        message: str,
        *,
        term: str | None = None,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        self.term = term
        self.expected = expected
        self.actual = actual
        super().__init__(message)


__all__ = [
    "MalformedTreeError",
    "PhyloGLMMError",
    "StructuralMismatchError",
    "UnknownTermError",
]
