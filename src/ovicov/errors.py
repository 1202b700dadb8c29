#!/usr/bin/env python3
"""ovicov.errors

Error and warning types shared by every ovicov subsystem.

Exceptions abort the stage that raised them; no checkpoint is written.
Warnings flag data-quality conditions that still yield a valid (if sparse)
table, so they go through `warnings.warn` and callers decide what to do.
"""

from __future__ import annotations


class CovariateError(Exception):
    """Base class for fatal pipeline errors."""


class SchemaError(CovariateError):
    """An expected column/field is missing or holds malformed values."""


class SourceUnavailable(CovariateError):
    """A covariate source (raster, polygon layer, table, checkpoint) can't be read."""


class AlignmentError(CovariateError):
    """Row count or row identity drifted during a merge."""


class JoinKeyMismatch(UserWarning):
    """Almost nothing matched in an attribute join; key construction is suspect."""


class RegionMismatch(UserWarning):
    """The region of interest does not intersect a raster's extent."""
